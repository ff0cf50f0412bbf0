"""Notification Manager: routes notifications to registered channels."""

import logging
from typing import Optional

from notifications.channels import (
    BaseChannel,
    DeliveryResult,
    EmailChannel,
    InAppChannel,
    Notification,
    NotificationChannel,
    NotificationPriority,
    WebhookChannel,
)

logger = logging.getLogger(__name__)


class NotificationManager:
    """Central notification router.

    Manages channel registration and delivery. Singleton; use
    get_notification_manager().
    """

    def __init__(self):
        self._channels: dict[NotificationChannel, BaseChannel] = {}
        self._sent = 0
        self._failed = 0
        self._initialized = False

    def register_channel(self, channel: BaseChannel) -> None:
        """Register (or replace) the channel for its transport."""
        self._channels[channel.channel_type] = channel
        logger.info(f"Notification channel registered: {channel.channel_type.value}")

    def get_channel(self, channel_type: NotificationChannel) -> Optional[BaseChannel]:
        return self._channels.get(channel_type)

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels.keys())

    def configure_from_settings(self, settings) -> None:
        """Register the channels listed in ``NOTIFICATION_CHANNELS``."""
        for name in settings.notification_channels_list:
            if name == NotificationChannel.IN_APP.value:
                self.register_channel(InAppChannel())
            elif name == NotificationChannel.EMAIL.value:
                self.register_channel(
                    EmailChannel(
                        {
                            "smtp_host": settings.SMTP_HOST,
                            "smtp_port": settings.SMTP_PORT,
                            "smtp_user": settings.SMTP_USER,
                            "smtp_password": settings.SMTP_PASSWORD,
                            "from_address": settings.SMTP_FROM_ADDRESS,
                            "use_tls": settings.SMTP_USE_TLS,
                        }
                    )
                )
            elif name == NotificationChannel.WEBHOOK.value:
                self.register_channel(WebhookChannel({"url": settings.NOTIFICATION_WEBHOOK_URL}))
            else:
                logger.warning(f"Unknown notification channel in settings: {name}")
        self._initialized = True

    async def send(self, notification: Notification) -> DeliveryResult:
        """Send a notification through the channel it names."""
        channel = self._channels.get(notification.channel)
        if not channel:
            result = DeliveryResult(
                success=False,
                channel=notification.channel,
                recipient=notification.recipient,
                error=f"Channel not configured: {notification.channel.value}",
            )
        else:
            result = await channel.send(notification)

        if result.success:
            self._sent += 1
            logger.info(
                f"Notification sent via {notification.channel.value} to {result.recipient}"
            )
        else:
            self._failed += 1
            logger.warning(
                f"Notification failed via {notification.channel.value}: {result.error}"
            )

        return result

    async def send_multi(
        self,
        title: str,
        message: str,
        channels: list[NotificationChannel],
        recipients: dict[NotificationChannel, str] = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        metadata: dict = None,
        user_id: str = None,
        instance_id: str = None,
        step_id: str = None,
    ) -> list[DeliveryResult]:
        """Send the same notification to several channels.

        Returns:
            List of DeliveryResults, one per channel
        """
        recipients = recipients or {}
        results = []

        for ch in channels:
            notification = Notification(
                title=title,
                message=message,
                channel=ch,
                priority=priority,
                recipient=recipients.get(ch, ""),
                metadata=dict(metadata or {}),
                user_id=user_id,
                instance_id=instance_id,
                step_id=step_id,
            )
            results.append(await self.send(notification))

        return results

    def get_status(self) -> dict:
        return {
            "initialized": self._initialized,
            "channels": [ch.value for ch in self._channels.keys()],
            "sent": self._sent,
            "failed": self._failed,
        }


# ─── Singleton ─────────────────────────────────────────────────

_manager: Optional[NotificationManager] = None


def get_notification_manager() -> NotificationManager:
    """Get or create the singleton NotificationManager."""
    global _manager
    if _manager is None:
        _manager = NotificationManager()
    return _manager
