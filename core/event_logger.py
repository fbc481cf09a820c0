"""
Append-only audit trail for authentication and account events.

The identity core emits events here (logins, refreshes, reuse detections,
MFA changes, lockouts) but never reads them back to make decisions.
Recording an event must not fail the request that produced it.

Usage:
    from core.event_logger import audit_logger

    audit_logger.log("auth.login", user_id="42", ip_address="10.0.0.7")
    recent = audit_logger.get_events(limit=20, action="auth.refreshReuse")
"""

import json
import logging
import re
import threading
from collections import deque
from pathlib import Path
from typing import Optional, Protocol

from core.timestamps import isonow

logger = logging.getLogger(__name__)

MAX_EVENTS = 1000

# =============================================================================
# Log Redaction
# =============================================================================

MAX_REDACTION_LENGTH = 10240  # Skip redaction on strings > 10KB

REDACTION_PATTERNS = [
    (re.compile(r'\b(password|passwd|pwd)\s*[=:]\s*\S+', re.IGNORECASE), r'\1=***REDACTED***'),
    (re.compile(r'\b(secret|code|otp|refresh[_-]?token|reset[_-]?token)\s*[=:]\s*\S+', re.IGNORECASE), r'\1=***REDACTED***'),
    (re.compile(r'(Bearer\s+)[A-Za-z0-9\-_\.]{20,}', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(["\'](?:password|secret|token|code)["\'])\s*:\s*["\'][^"\']+["\']', re.IGNORECASE), r'\1: "***REDACTED***"'),
]


def _redact_sensitive(text: Optional[str]) -> Optional[str]:
    """Remove secret-looking values from free-form event details."""
    if not text or len(text) > MAX_REDACTION_LENGTH:
        return text

    result = text
    for pattern, replacement in REDACTION_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


class AuditSink(Protocol):
    def log(
        self,
        action: str,
        user_id: Optional[str] = None,
        status: str = "success",
        details: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict: ...


class AuditLogger:
    """
    Thread-safe audit logger with optional JSON file persistence.

    Keeps the last max_events in memory. When log_file is set, the buffer is
    written out after every event so the trail survives restarts.
    """

    def __init__(self, log_file: Optional[Path] = None, max_events: int = MAX_EVENTS):
        self._log_file = Path(log_file) if log_file else None
        self._max_events = max_events
        self._events: deque = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._loaded = False

    def load(self) -> None:
        """Load previously persisted events."""
        with self._lock:
            if self._loaded:
                return
            self._loaded = True
            if not self._log_file or not self._log_file.exists():
                return
            try:
                with open(self._log_file, "r") as f:
                    events = json.load(f)
                self._events = deque(events[-self._max_events:], maxlen=self._max_events)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load audit log {self._log_file}: {e}")

    def _save(self) -> None:
        # Caller holds the lock
        if not self._log_file:
            return
        try:
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_file, "w") as f:
                json.dump(list(self._events), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save audit log: {e}")

    def log(
        self,
        action: str,
        user_id: Optional[str] = None,
        status: str = "success",
        details: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        """
        Record an event.

        Args:
            action: Event name (see iam.auth.config.AuditEvents)
            user_id: Account the event is about
            status: "success", "failure" or "warning"
            details: Free-form text, redacted before storage
            ip_address: Client address when known
            user_agent: Client user agent when known

        Returns:
            The event dict that was recorded
        """
        if not self._loaded:
            self.load()

        event = {
            "timestamp": isonow(),
            "action": action,
            "user_id": user_id,
            "status": status,
            "details": _redact_sensitive(details),
        }
        if ip_address:
            event["ip_address"] = ip_address
        if user_agent:
            event["user_agent"] = user_agent[:500]

        with self._lock:
            self._events.append(event)
            self._save()

        logger.info(f"audit {action} status={status}", extra={"event": action, "user_id": user_id})
        return event

    def get_events(
        self,
        limit: int = 50,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[dict]:
        """
        Get events with optional filtering.

        Returns:
            List of event dicts, most recent first
        """
        if not self._loaded:
            self.load()

        with self._lock:
            events = list(self._events)

        if action:
            events = [e for e in events if e.get("action") == action]
        if user_id:
            events = [e for e in events if e.get("user_id") == user_id]

        return list(reversed(events[-limit:]))

    def clear(self) -> None:
        """Clear all events."""
        with self._lock:
            self._events.clear()
            self._save()


# Global singleton instance (memory only; services.py wires a file-backed one when configured)
audit_logger = AuditLogger()
