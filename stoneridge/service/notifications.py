from __future__ import annotations

import smtplib
import ssl
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from stoneridge.logging import get_logger, redact_email

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    VERIFICATION = "verification"
    SECURITY_ALERT = "security_alert"
    NEW_DEVICE = "new_device"
    PASSWORD_RESET = "password_reset"


class NotificationSink(Protocol):
    def notify(self, email: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        """Deliver a notification. Must never raise."""


@dataclass
class RecordedNotification:
    email: str
    kind: NotificationKind
    payload: Dict[str, Any]
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RecordingNotificationSink:
    """Keeps every notification in memory; backs TEST_MODE and the test suite."""

    def __init__(self) -> None:
        self.sent: List[RecordedNotification] = []
        self._lock = threading.Lock()

    def notify(self, email: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.sent.append(RecordedNotification(email=email, kind=kind, payload=dict(payload)))
        logger.debug("notification_recorded", kind=kind.value, to=redact_email(email))

    def of_kind(self, kind: NotificationKind) -> List[RecordedNotification]:
        with self._lock:
            return [n for n in self.sent if n.kind is kind]


class EmailNotificationSink:
    """Sends notifications as plain-text mail over SMTP.

    Supports:
    - STARTTLS or implicit SSL
    - Fallback to logging when no SMTP host is configured (dev mode)
    - Swallowing every delivery failure after logging it
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "StoneRidge Marketplace",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8080").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def render(self, kind: NotificationKind, payload: Dict[str, Any]) -> Tuple[str, str]:
        if kind is NotificationKind.VERIFICATION:
            link = f"{self.base_url}/verify-email?token={payload.get('token', '')}"
            return (
                "Verify your StoneRidge email",
                f"Welcome {payload.get('name', '')}!\n\n"
                f"Confirm your email address by visiting:\n{link}\n\n"
                f"This link expires in {payload.get('expires_in_hours', 24)} hours.\n",
            )
        if kind is NotificationKind.PASSWORD_RESET:
            link = f"{self.base_url}/reset-password?token={payload.get('token', '')}"
            return (
                "Reset your StoneRidge password",
                "We received a request to reset your password. Choose a new one here:\n"
                f"{link}\n\n"
                f"This link expires in {payload.get('expires_in_minutes', 60)} minutes.\n"
                "If you didn't request this, you can ignore this email.\n",
            )
        if kind is NotificationKind.NEW_DEVICE:
            return (
                "New device trusted on your StoneRidge account",
                f"A new device was trusted on your account.\n\n"
                f"Device: {payload.get('device_name', 'Unknown Device')}\n"
                f"IP address: {payload.get('ip_address') or 'unknown'}\n\n"
                "If this wasn't you, revoke the device and change your password.\n",
            )
        return (
            "Security alert: account locked",
            f"Your account was locked after {payload.get('failed_attempts', 'several')} "
            "failed login attempts.\n"
            f"It will unlock automatically in {payload.get('lock_minutes', 30)} minutes.\n"
            "If this wasn't you, reset your password once the lock clears.\n",
        )

    def notify(self, email: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        try:
            subject, body = self.render(kind, payload)
            self._send_email(email, subject, body)
        except Exception as exc:
            logger.error(
                "notification_failed",
                kind=kind.value,
                to=redact_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _send_email(self, to_email: str, subject: str, body: str) -> bool:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=body[:200],
            )
            return True

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True


def notify_safely(
    sink: NotificationSink, email: str, kind: NotificationKind, payload: Dict[str, Any]
) -> None:
    """Call a sink and absorb anything it raises despite the protocol."""
    try:
        sink.notify(email, kind, payload)
    except Exception as exc:
        logger.error("notification_sink_raised", kind=kind.value, error=str(exc))
