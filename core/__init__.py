"""
Core shared utilities for the identity service.

Errors, timestamps, the SQLite connection factory, TTL caches and the
audit trail live here so that iam/ modules and transport layers share
one implementation of each.
"""

from .event_logger import AuditLogger, audit_logger
from .timestamps import now, isonow, parse_timestamp

__all__ = [
    "AuditLogger",
    "audit_logger",
    "now",
    "isonow",
    "parse_timestamp",
]
