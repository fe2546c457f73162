"""Notification Manager: central dispatcher for all notification channels.

Routes a notification to the channel it names. Used by the
``send_notification`` action and for execution-failure alerts.
"""

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
    """Central notification dispatcher.

    Manages channel registration and routing. Use get_notification_manager()
    for the process-wide instance.
    """

    def __init__(self):
        self._channels: dict[NotificationChannel, BaseChannel] = {}
        self._initialized = False

    def register_channel(self, channel: BaseChannel) -> None:
        """Register a notification channel, replacing any previous one."""
        self._channels[channel.channel_type] = channel
        logger.info(f"Notification channel registered: {channel.channel_type.value}")

    def get_channel(self, channel: NotificationChannel) -> Optional[BaseChannel]:
        return self._channels.get(channel)

    def configure_channels(self, config: dict) -> None:
        """Configure all channels from app settings.

        Args:
            config: Dict with channel configs:
                {
                    "email": {"smtp_host": ..., "smtp_port": ...},
                    "webhook": {"url": ...},
                }

        The in-app channel is always available.
        """
        self.register_channel(InAppChannel())

        if config.get("email", {}).get("smtp_host"):
            self.register_channel(EmailChannel(config["email"]))

        if "webhook" in config:
            self.register_channel(WebhookChannel(config["webhook"]))

        self._initialized = True

    async def send(self, notification: Notification) -> DeliveryResult:
        """Send a notification through the channel it names."""
        channel = self._channels.get(notification.channel)
        if not channel:
            return DeliveryResult(
                success=False,
                channel=str(notification.channel),
                recipient=notification.recipient,
                error=f"Channel not configured: {notification.channel}",
            )

        result = await channel.send(notification)

        if result.success:
            logger.info(f"Notification sent via {result.channel} to {result.recipient}")
        else:
            logger.warning(f"Notification failed via {result.channel}: {result.error}")

        return result

    async def notify_workflow_failed(
        self,
        tenant_id: str,
        workflow_name: str,
        execution_id: str,
        error: str,
    ) -> DeliveryResult:
        """In-app alert when an execution fails."""
        return await self.send(
            Notification(
                title=f"Workflow FAILED: {workflow_name}",
                message=f"Execution {execution_id[:8]} failed: {error}",
                channel=NotificationChannel.IN_APP,
                priority=NotificationPriority.HIGH,
                event_type="execution_failed",
                tenant_id=tenant_id,
                metadata={"execution_id": execution_id, "error": error},
            )
        )

    def get_status(self) -> dict:
        """Get notification manager status."""
        return {
            "initialized": self._initialized,
            "channels": [ch.value for ch in self._channels.keys()],
        }


# ─── Singleton ─────────────────────────────────────────────────

_manager: Optional[NotificationManager] = None


def get_notification_manager() -> NotificationManager:
    """Get or create the singleton NotificationManager."""
    global _manager
    if _manager is None:
        _manager = NotificationManager()
    return _manager
