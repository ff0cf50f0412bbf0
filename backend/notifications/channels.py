"""Notification channel implementations.

Each channel handles delivery for one transport (email, webhook, in-app
inbox). The NotificationManager routes workflow notifications to them.
Channels report failures through ``DeliveryResult`` and never raise.
"""

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from html import escape
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


# ─── Data Types ────────────────────────────────────────────────

class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


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
    recipient: str = ""  # email address, webhook URL or user id
    metadata: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    instance_id: Optional[str] = None
    step_id: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    success: bool
    channel: NotificationChannel
    recipient: str
    message: str = ""
    error: Optional[str] = None
    delivered_at: Optional[str] = None


def _delivered(channel: NotificationChannel, recipient: str, message: str) -> DeliveryResult:
    return DeliveryResult(
        success=True,
        channel=channel,
        recipient=recipient,
        message=message,
        delivered_at=datetime.now(timezone.utc).isoformat(),
    )


# ─── Base Channel ──────────────────────────────────────────────

class BaseChannel(ABC):
    """Abstract base for notification channels."""

    channel_type: NotificationChannel

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryResult:
        """Send a notification through this channel."""
        ...

    @abstractmethod
    async def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        """Validate channel-specific configuration."""
        ...


# ─── Email Channel ─────────────────────────────────────────────

class EmailChannel(BaseChannel):
    """Send notifications via SMTP email.

    Config:
        smtp_host, smtp_port, smtp_user, smtp_password,
        from_address, use_tls
    """

    channel_type = NotificationChannel.EMAIL

    def __init__(self, config: dict = None):
        self.config = config or {}

    def build_message(self, notification: Notification) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = notification.title
        msg["From"] = self.config.get("from_address", "workflows@localhost")
        msg["To"] = notification.recipient
        msg.attach(MIMEText(notification.message, "plain"))

        body = escape(notification.message).replace("\n", "<br>")
        html = f"""
        <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">
            <h2 style="color: #333;">{escape(notification.title)}</h2>
            <div style="color: #555; line-height: 1.6;">{body}</div>
        </div>
        """
        msg.attach(MIMEText(html, "html"))
        return msg

    async def send(self, notification: Notification) -> DeliveryResult:
        if not notification.recipient:
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient="",
                error="No email recipient",
            )
        try:
            msg = self.build_message(notification)
            # smtplib blocks; keep it off the event loop
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._send_smtp, notification.recipient, msg)
            return _delivered(self.channel_type, notification.recipient, "Email sent")
        except Exception as e:
            logger.error(f"Email send failed: {e}")
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=notification.recipient,
                error=str(e),
            )

    def _send_smtp(self, to_addr: str, msg: MIMEMultipart) -> None:
        host = self.config.get("smtp_host", "localhost")
        port = self.config.get("smtp_port", 587)
        user = self.config.get("smtp_user", "")
        password = self.config.get("smtp_password", "")
        with smtplib.SMTP(host, port) as server:
            if self.config.get("use_tls", True):
                server.starttls()
            if user and password:
                server.login(user, password)
            server.sendmail(msg["From"], to_addr, msg.as_string())

    async def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        if not config.get("smtp_host"):
            return False, "Missing smtp_host"
        return True, None


# ─── Webhook Channel ──────────────────────────────────────────

class WebhookChannel(BaseChannel):
    """POST workflow notifications to an HTTP endpoint.

    Config:
        url: Target URL (a per-notification recipient overrides it)
        method: HTTP method (default POST)
        headers: Additional headers
        timeout: Seconds (default 15)
    """

    channel_type = NotificationChannel.WEBHOOK

    def __init__(self, config: dict = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or {}
        self._transport = transport

    def build_payload(self, notification: Notification) -> dict[str, Any]:
        return {
            "title": notification.title,
            "message": notification.message,
            "priority": notification.priority.value,
            "user_id": notification.user_id,
            "instance_id": notification.instance_id,
            "step_id": notification.step_id,
            "metadata": notification.metadata,
            "timestamp": notification.created_at,
        }

    async def send(self, notification: Notification) -> DeliveryResult:
        url = notification.recipient or self.config.get("url")
        if not url:
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient="",
                error="No webhook URL",
            )

        method = self.config.get("method", "POST").upper()
        headers = {
            "Content-Type": "application/json",
            "X-Workflow-Event": notification.metadata.get("event", "notification"),
            **self.config.get("headers", {}),
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.config.get("timeout", 15),
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method, url, json=self.build_payload(notification), headers=headers
                )
                response.raise_for_status()
            return _delivered(self.channel_type, url, f"Webhook delivered (HTTP {response.status_code})")
        except Exception as e:
            logger.error(f"Webhook send failed: {e}")
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=url,
                error=str(e),
            )

    async def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        if not config.get("url"):
            return False, "Missing url"
        return True, None


# ─── In-App Channel ───────────────────────────────────────────

class InAppChannel(BaseChannel):
    """Keep notifications in a bounded per-user inbox."""

    channel_type = NotificationChannel.IN_APP

    def __init__(self, max_per_user: int = 200):
        self._inbox: dict[str, deque] = defaultdict(lambda: deque(maxlen=max_per_user))

    async def send(self, notification: Notification) -> DeliveryResult:
        user_id = notification.user_id or notification.recipient
        if not user_id:
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient="",
                error="No in-app recipient",
            )
        self._inbox[user_id].append(notification)
        return _delivered(self.channel_type, user_id, "Stored in inbox")

    def inbox(self, user_id: str) -> list[Notification]:
        return list(self._inbox.get(user_id, ()))

    def clear(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._inbox.clear()
        else:
            self._inbox.pop(user_id, None)

    async def validate_config(self, config: dict) -> tuple[bool, Optional[str]]:
        return True, None
