"""Notification channel implementations.

Each channel handles delivery for one transport (email, webhook, in-app).
The NotificationManager dispatches to the appropriate channel.
"""

import asyncio
import logging
import smtplib
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from enum import Enum
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


# ─── Data Types ────────────────────────────────────────────────

class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


@dataclass
class Notification:
    """A notification to be delivered."""
    title: str
    message: str
    channel: NotificationChannel
    priority: NotificationPriority = NotificationPriority.NORMAL
    recipient: Optional[str] = None  # email address, webhook URL, user id
    event_type: Optional[str] = None
    tenant_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    success: bool
    channel: str
    recipient: Optional[str]
    message: str = ""
    error: Optional[str] = None
    delivered_at: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Base Channel ──────────────────────────────────────────────

class BaseChannel(ABC):
    """Abstract base for notification channels."""

    channel_type: NotificationChannel

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryResult:
        """Send a notification through this channel."""
        ...

    def _failed(self, notification: Notification, error: str) -> DeliveryResult:
        return DeliveryResult(
            success=False,
            channel=self.channel_type.value,
            recipient=notification.recipient,
            error=error,
        )


# ─── Email Channel ─────────────────────────────────────────────

class EmailChannel(BaseChannel):
    """Send mail via SMTP.

    Doubles as the email sender used by the ``send_email`` action.

    Config:
        smtp_host, smtp_port, smtp_user, smtp_password,
        from_address, use_tls
    """

    channel_type = NotificationChannel.EMAIL

    def __init__(self, config: dict = None):
        self.config = config or {}

    async def send_email(
        self,
        to: list[str],
        subject: str,
        body: str,
        html: Optional[str] = None,
        cc: Optional[list[str]] = None,
    ) -> dict:
        """Send one message. Raises on SMTP errors."""
        smtp_host = self.config.get("smtp_host")
        if not smtp_host:
            raise RuntimeError("SMTP host not configured")

        from_addr = self.config.get("from_address") or self.config.get("smtp_user") or "workflows@localhost"
        cc = cc or []

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = ", ".join(to)
        if cc:
            msg["Cc"] = ", ".join(cc)
        message_id = make_msgid()
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(body, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))

        # Blocking SMTP session runs in the default executor
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: self._send_smtp(from_addr, to + cc, msg),
        )
        return {"message_id": message_id}

    def _send_smtp(self, from_addr, to_addrs, msg):
        """Synchronous SMTP send."""
        host = self.config["smtp_host"]
        port = int(self.config.get("smtp_port", 587))
        user = self.config.get("smtp_user")
        password = self.config.get("smtp_password")
        with smtplib.SMTP(host, port, timeout=30) as server:
            if self.config.get("use_tls", True):
                server.starttls()
            if user and password:
                server.login(user, password)
            server.sendmail(from_addr, to_addrs, msg.as_string())

    async def send(self, notification: Notification) -> DeliveryResult:
        if not notification.recipient:
            return self._failed(notification, "No email recipient")
        try:
            await self.send_email(
                to=[notification.recipient],
                subject=notification.title,
                body=notification.message,
            )
        except Exception as e:
            logger.error(f"Email send failed: {e}")
            return self._failed(notification, str(e))

        return DeliveryResult(
            success=True,
            channel=self.channel_type.value,
            recipient=notification.recipient,
            message="Email sent",
            delivered_at=_now(),
        )


# ─── Webhook Channel ──────────────────────────────────────────

class WebhookChannel(BaseChannel):
    """Send notifications to arbitrary HTTP endpoints.

    Config:
        url: Default target URL when the notification has no recipient
        headers: Additional headers
        timeout: Request timeout in seconds
    """

    channel_type = NotificationChannel.WEBHOOK

    def __init__(self, config: dict = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or {}
        self._transport = transport

    async def send(self, notification: Notification) -> DeliveryResult:
        url = notification.recipient or self.config.get("url")
        if not url:
            return self._failed(notification, "No webhook URL")

        headers = {
            "Content-Type": "application/json",
            "X-Workflow-Event": notification.event_type or "notification",
            **self.config.get("headers", {}),
        }
        payload = {
            "title": notification.title,
            "message": notification.message,
            "priority": notification.priority.value,
            "type": notification.event_type,
            "metadata": notification.metadata,
            "timestamp": notification.created_at,
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.config.get("timeout", 15), transport=self._transport
            ) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook send failed: {e}")
            return self._failed(notification, str(e))

        return DeliveryResult(
            success=True,
            channel=self.channel_type.value,
            recipient=url,
            message=f"Webhook delivered (HTTP {response.status_code})",
            delivered_at=_now(),
        )


# ─── In-App Channel ───────────────────────────────────────────

class InAppChannel(BaseChannel):
    """Keep recent notifications per tenant for the application to poll."""

    channel_type = NotificationChannel.IN_APP

    def __init__(self, max_per_tenant: int = 500):
        self._inbox: dict[str, deque] = defaultdict(lambda: deque(maxlen=max_per_tenant))

    async def send(self, notification: Notification) -> DeliveryResult:
        entry = {
            "id": str(uuid.uuid4()),
            "title": notification.title,
            "message": notification.message,
            "type": notification.event_type,
            "recipient": notification.recipient,
            "priority": notification.priority.value,
            "metadata": notification.metadata,
            "created_at": notification.created_at,
        }
        self._inbox[notification.tenant_id or ""].appendleft(entry)
        return DeliveryResult(
            success=True,
            channel=self.channel_type.value,
            recipient=notification.recipient,
            message="Stored in inbox",
            delivered_at=_now(),
        )

    def recent(self, tenant_id: str, limit: int = 50) -> list[dict]:
        """Newest first."""
        return list(self._inbox.get(tenant_id, ()))[:limit]
