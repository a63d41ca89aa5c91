from __future__ import annotations

import smtplib
import ssl
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol

import httpx

from panelflow.logging import get_logger
from panelflow.service.errors import NotificationError

logger = get_logger(__name__)


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"
    SYSTEM = "system"


@dataclass
class Notification:
    channel: NotificationChannel
    title: str
    message: str
    recipients: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    execution_id: Optional[str] = None
    definition_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class DeliveryResult:
    channel: NotificationChannel
    delivered: List[str] = field(default_factory=list)
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "delivered": list(self.delivered),
            "detail": self.detail,
        }


class NotificationTransport(Protocol):
    def send(self, notification: Notification) -> DeliveryResult:
        ...


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailTransport:
    """SMTP delivery; logs instead of sending when SMTP is not configured."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "PanelFlow",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(self, notification: Notification, to_email: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = notification.title
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(notification.message, "plain"))
        return msg

    def send(self, notification: Notification) -> DeliveryResult:
        if not self.is_configured:
            for recipient in notification.recipients:
                logger.info(
                    "email_dev_mode",
                    to=_redact_email(recipient),
                    subject=notification.title,
                    body_preview=notification.message[:200],
                )
            return DeliveryResult(
                channel=NotificationChannel.EMAIL,
                delivered=list(notification.recipients),
                detail="logged (smtp not configured)",
            )

        delivered: List[str] = []
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                server: smtplib.SMTP = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            else:
                server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
            with server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                for recipient in notification.recipients:
                    msg = self._build_message(notification, recipient)
                    server.sendmail(self.from_email, recipient, msg.as_string())
                    delivered.append(recipient)
                    logger.info("email_sent", to=_redact_email(recipient), subject=notification.title)
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, user=self.smtp_user, error=str(e))
            raise NotificationError("email authentication failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", refused=len(e.recipients), error=str(e))
            raise NotificationError("email recipient refused", detail={"delivered": delivered}) from e
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "email_send_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise NotificationError(f"email delivery failed: {type(e).__name__}") from e
        return DeliveryResult(channel=NotificationChannel.EMAIL, delivered=delivered, detail="sent")


class SmsTransport:
    """Posts ``{"to", "message"}`` to an HTTP SMS gateway."""

    def __init__(self, gateway_url: Optional[str] = None, *, timeout: float = 10.0, client: Optional[httpx.Client] = None) -> None:
        self.gateway_url = gateway_url
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(self.timeout, connect=min(5.0, self.timeout)))
        return self._client

    def send(self, notification: Notification) -> DeliveryResult:
        if not self.gateway_url:
            for recipient in notification.recipients:
                logger.info(
                    "sms_dev_mode",
                    phone=recipient,
                    body_preview=notification.message[:160],
                )
            return DeliveryResult(
                channel=NotificationChannel.SMS,
                delivered=list(notification.recipients),
                detail="logged (gateway not configured)",
            )
        delivered: List[str] = []
        client = self._get_client()
        for recipient in notification.recipients:
            try:
                response = client.post(
                    self.gateway_url,
                    json={"to": recipient, "message": f"{notification.title}: {notification.message}"},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error("sms_gateway_error", status_code=e.response.status_code, error=str(e))
                raise NotificationError(
                    f"sms gateway returned HTTP {e.response.status_code}",
                    detail={"delivered": delivered},
                ) from e
            except httpx.HTTPError as e:
                logger.error("sms_gateway_unreachable", error_type=type(e).__name__, error=str(e))
                raise NotificationError("sms gateway unreachable", detail={"delivered": delivered}) from e
            delivered.append(recipient)
        return DeliveryResult(channel=NotificationChannel.SMS, delivered=delivered, detail="sent")


class WebhookTransport:
    """Posts a JSON payload to every recipient URL."""

    def __init__(self, *, timeout: float = 10.0, client: Optional[httpx.Client] = None) -> None:
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout, connect=min(5.0, self.timeout)),
                follow_redirects=False,
            )
        return self._client

    @staticmethod
    def payload(notification: Notification) -> Dict[str, Any]:
        return {
            "title": notification.title,
            "message": notification.message,
            "timestamp": int(notification.created_at.timestamp() * 1000),
            "execution_id": notification.execution_id,
            "definition_id": notification.definition_id,
            "data": notification.data,
        }

    def send(self, notification: Notification) -> DeliveryResult:
        client = self._get_client()
        body = self.payload(notification)
        delivered: List[str] = []
        for url in notification.recipients:
            try:
                response = client.post(url, json=body)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error("webhook_error_status", url=url, status_code=e.response.status_code)
                raise NotificationError(
                    f"webhook returned HTTP {e.response.status_code}",
                    detail={"delivered": delivered},
                ) from e
            except httpx.HTTPError as e:
                logger.error("webhook_unreachable", url=url, error_type=type(e).__name__, error=str(e))
                raise NotificationError("webhook unreachable", detail={"delivered": delivered}) from e
            delivered.append(url)
            logger.info("webhook_sent", url=url, status_code=response.status_code)
        return DeliveryResult(channel=NotificationChannel.WEBHOOK, delivered=delivered, detail="sent")


class SystemTransport:
    """In-process inbox for operator-facing notices."""

    def __init__(self, max_messages: int = 500) -> None:
        self.inbox: Deque[Notification] = deque(maxlen=max_messages)
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> DeliveryResult:
        with self._lock:
            self.inbox.append(notification)
        logger.info(
            "system_notification",
            title=notification.title,
            definition_id=notification.definition_id,
        )
        return DeliveryResult(channel=NotificationChannel.SYSTEM, delivered=["system"], detail="queued")

    def messages(self) -> List[Notification]:
        with self._lock:
            return list(self.inbox)


class NotificationDispatcher:
    """Routes notifications to the transport registered for their channel."""

    def __init__(self, transports: Optional[Dict[NotificationChannel, NotificationTransport]] = None) -> None:
        self.transports: Dict[NotificationChannel, NotificationTransport] = dict(transports or {})
        self.transports.setdefault(NotificationChannel.SYSTEM, SystemTransport())

    @classmethod
    def from_settings(cls, settings: Any) -> "NotificationDispatcher":
        return cls(
            {
                NotificationChannel.EMAIL: EmailTransport(
                    smtp_host=settings.smtp_host,
                    smtp_port=settings.smtp_port,
                    smtp_user=settings.smtp_user,
                    smtp_password=settings.smtp_password,
                    smtp_use_tls=settings.smtp_use_tls,
                    from_email=settings.email_from_address,
                    from_name=settings.email_from_name,
                ),
                NotificationChannel.SMS: SmsTransport(settings.sms_gateway_url, timeout=settings.webhook_timeout),
                NotificationChannel.WEBHOOK: WebhookTransport(timeout=settings.webhook_timeout),
                NotificationChannel.SYSTEM: SystemTransport(),
            }
        )

    def dispatch(self, notification: Notification) -> DeliveryResult:
        transport = self.transports.get(notification.channel)
        if transport is None:
            raise NotificationError(f"no transport for channel {notification.channel.value}")
        if notification.channel != NotificationChannel.SYSTEM and not notification.recipients:
            raise NotificationError(f"{notification.channel.value} notification has no recipients")
        return transport.send(notification)
