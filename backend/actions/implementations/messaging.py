"""Messaging actions: email and notifications.

Both delegate to collaborators on ActionServices; the engine never talks to
SMTP or a notification channel directly.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from actions.base_action import ActionContext, BaseAction
from core.constants import ActionKind
from core.exceptions import StepExecutionError
from notifications.channels import Notification, NotificationChannel, NotificationPriority


def _as_recipients(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(item) for item in value if item]


class SendEmailAction(BaseAction):
    """Send an email through the configured sender.

    Config:
        to: Address or list of addresses (comma-separated string accepted)
        subject: Subject line
        body: Plain text body
        html: Optional HTML body
        cc: Optional address or list of addresses
    """

    action_kind = ActionKind.SEND_EMAIL.value
    display_name = "Send Email"
    description = "Send an email message"

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        recipients = _as_recipients(config.get("to"))
        subject = config.get("subject") or ""
        if not recipients:
            # Nothing to send when every recipient resolved empty
            return {
                "sent": False,
                "to": [],
                "subject": subject,
                "reason": "no recipients",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        sender = context.services.email_sender
        if sender is None:
            raise StepExecutionError("send_email: no email sender configured", step_id=context.step_id)

        result = await sender.send_email(
            to=recipients,
            subject=str(subject),
            body=str(config.get("body") or ""),
            html=config.get("html"),
            cc=_as_recipients(config.get("cc")),
        )
        return {
            "sent": True,
            "to": recipients,
            "subject": subject,
            "messageId": (result or {}).get("message_id"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["to"],
            "properties": {
                "to": {"type": ["string", "array"]},
                "subject": {"type": "string"},
                "body": {"type": "string"},
                "html": {"type": "string"},
                "cc": {"type": ["string", "array"]},
            },
        }


class SendNotificationAction(BaseAction):
    """Deliver a notification over a channel (in_app, email, webhook)."""

    action_kind = ActionKind.SEND_NOTIFICATION.value
    display_name = "Send Notification"
    description = "Send a notification to a user or channel"

    async def execute(self, config: Dict[str, Any], context: ActionContext) -> Any:
        notifier = context.services.notifier
        if notifier is None:
            raise StepExecutionError("send_notification: no notifier configured", step_id=context.step_id)

        message = config.get("message")
        priority = config.get("priority") or NotificationPriority.NORMAL.value
        if priority not in NotificationPriority._value2member_map_:
            priority = NotificationPriority.NORMAL.value

        channel_name = config.get("channel") or NotificationChannel.IN_APP.value
        if channel_name not in NotificationChannel._value2member_map_:
            raise StepExecutionError(
                f"send_notification: unknown channel '{channel_name}'", step_id=context.step_id
            )

        notification = Notification(
            channel=NotificationChannel(channel_name),
            recipient=config.get("recipient"),
            title=str(config.get("title") or ""),
            message="" if message is None else str(message),
            priority=NotificationPriority(priority),
            event_type=config.get("type"),
            tenant_id=context.tenant_id,
            metadata={"workflow_id": context.workflow_id, "execution_id": context.execution_id},
        )
        result = await notifier.send(notification)
        if not result.success:
            raise StepExecutionError(
                f"send_notification: {result.error or 'delivery failed'}", step_id=context.step_id
            )
        return {
            "sent": True,
            "channel": result.channel,
            "type": notification.event_type,
            "message": notification.message,
            "timestamp": result.delivered_at,
        }


MESSAGING_ACTIONS = {
    ActionKind.SEND_EMAIL.value: SendEmailAction,
    ActionKind.SEND_NOTIFICATION.value: SendNotificationAction,
}
