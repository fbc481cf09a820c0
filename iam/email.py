"""
Outgoing email for one-time codes and password resets.

Delivery is fire-and-forget from the auth core's point of view: every
send method returns a bool and logs failures instead of raising, so a
mail outage never turns into an authentication error.

When SMTP_HOST is unset the service runs in dev mode and only logs the
(redacted) recipient and subject.
"""
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send_otp_code(self, to_email: str, code: str, ttl_seconds: int) -> bool: ...

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int) -> bool: ...


def _redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP email sender with a logging dev mode."""

    def __init__(
        self,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "IAM Core",
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        email = settings.email
        return cls(
            smtp_host=email.host or None,
            smtp_port=email.port,
            smtp_user=email.user or None,
            smtp_password=email.password.get_secret_value() or None,
            smtp_use_tls=email.use_tls,
            from_email=email.from_email or None,
            from_name=email.from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, text_body: str, html_body: Optional[str] = None) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(f"Email dev mode: to={_redact_email(to_email)} subject={subject!r}")
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed for {self.smtp_user}@{self.smtp_host}: {e}")
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(f"Email to {_redact_email(to_email)} failed ({type(e).__name__}): {e}")
            return False

        logger.info(f"Email sent: to={_redact_email(to_email)} subject={subject!r}")
        return True

    def send_otp_code(self, to_email: str, code: str, ttl_seconds: int) -> bool:
        """Send a one-time login code."""
        minutes = max(1, ttl_seconds // 60)
        subject = "Your sign-in code"
        text_body = (
            f"Your verification code is: {code}\n\n"
            f"It expires in {minutes} minutes. If you did not try to sign in, "
            "change your password.\n"
        )
        html_body = (
            f"<p>Your verification code is:</p><p><strong>{code}</strong></p>"
            f"<p>It expires in {minutes} minutes.</p>"
        )
        return self._send_email(to_email, subject, text_body, html_body)

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int) -> bool:
        """Send a password reset token."""
        subject = "Reset your password"
        text_body = (
            "We received a request to reset your password.\n\n"
            f"Reset token: {token}\n\n"
            f"This token expires in {ttl_minutes} minutes. "
            "If you didn't request this, you can safely ignore this email.\n"
        )
        return self._send_email(to_email, subject, text_body)
