"""
Steps that tell people something.

NOTIFICATION: in-app notification per recipient
EMAIL:        formatted message handed to the configured email transport
"""

from core.constants import NotificationType, StepType
from core.exceptions import StepHandlerError
from notifications.email import EmailMessage
from steps.base_step import BaseStepHandler, StepContext, StepResult


class NotificationHandler(BaseStepHandler):
    """Notify users; defaults to whoever started the instance."""

    step_type = StepType.NOTIFICATION.value
    display_name = "Notify"
    description = "Send in-app notifications"
    config_keys = ("user_ids", "title", "message", "type")

    async def execute(self, ctx: StepContext) -> StepResult:
        config = ctx.configuration
        user_ids = config.get("user_ids") or [ctx.triggered_by]
        if isinstance(user_ids, str):
            user_ids = [user_ids]

        notifications = await ctx.notification_service.notify_many(
            organization_id=ctx.organization_id,
            user_ids=user_ids,
            title=config.get("title") or ctx.step.name,
            message=config.get("message") or "",
            notification_type=config.get("type") or NotificationType.WORKFLOW.value,
            details={"instance_id": ctx.instance.id, "step_id": ctx.step.id},
        )
        return StepResult.done(notifications_sent=len(notifications))


class EmailHandler(BaseStepHandler):
    """Send an email; recipient defaults to the context's ``email``."""

    step_type = StepType.EMAIL.value
    display_name = "Send Email"
    description = "Send an email through the configured transport"
    config_keys = ("to", "subject", "body")

    async def execute(self, ctx: StepContext) -> StepResult:
        config = ctx.configuration
        to = config.get("to") or ctx.context_data.get("email")
        if not to:
            raise StepHandlerError("Email step has no recipient")
        if ctx.email_transport is None:
            raise StepHandlerError("No email transport configured")

        message = EmailMessage(
            to=str(to),
            subject=config.get("subject") or ctx.step.name,
            body=config.get("body") or "",
            metadata={"instance_id": ctx.instance.id, "execution_id": ctx.execution.id},
        )
        message_id = await ctx.email_transport.send(message)
        return StepResult.done(to=message.to, subject=message.subject, message_id=message_id)


MESSAGING_STEP_TYPES = {
    NotificationHandler.step_type: NotificationHandler,
    EmailHandler.step_type: EmailHandler,
}
