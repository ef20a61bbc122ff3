"""Built-in workflow actions: notifications, webhooks and CRM field updates."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional
import httpx

from ..core.logging import get_logger
from ..core.registry import ActionExecutor, ActionRegistry
from ..models.core import ActionResult, TriggerContext

logger = get_logger(__name__)

NOTIFICATION_CHANNELS = ("email", "sms", "slack", "push")
WEBHOOK_PREVIEW_LENGTH = 200


def _config_str(config: Dict[str, Any], key: str, default: str) -> str:
    """Read a string option, falling back when it is absent or not a string."""
    value = config.get(key)
    return value if isinstance(value, str) else default


class NotificationDispatchAction(ActionExecutor):
    """Queues a notification to customers or staff.

    Config:
        channel: one of email, sms, slack, push (default email)
        template: template name, required for a valid graph
        audience: who receives it (default customer)
    """

    type = "notifications.dispatch"
    label = "Send Notification"
    description = "Queues an email, SMS, or in-app notification."
    supports_simulation = True

    def run(self, node, context, payload, trigger: TriggerContext, simulation: bool) -> ActionResult:
        config = node.config or {}
        channel = _config_str(config, "channel", "email")
        template = _config_str(config, "template", "generic")
        audience = _config_str(config, "audience", "customer")

        message = f"Notification ({channel}) using template {template} targeted at {audience}"
        return ActionResult.success(
            message=message,
            context_patch={
                "lastNotificationAt": datetime.utcnow().isoformat(),
                "lastNotificationMessage": message,
                "lastNotificationChannel": channel,
            }
        )

    def validate(self, node) -> List[str]:
        config = node.config or {}
        errors = []
        if not config.get("template"):
            errors.append("Notification node is missing a template selection")
        channel = config.get("channel")
        if channel and str(channel) not in NOTIFICATION_CHANNELS:
            errors.append(f"Unsupported notification channel: {channel}")
        return errors


class WebhookAction(ActionExecutor):
    """Posts the workflow context and trigger payload to an external URL.

    Without an HTTP client the request is only recorded as enqueued. With
    one, the merged payload is POSTed and transport or HTTP status errors
    fail the action. Simulations never leave the process.
    """

    type = "integrations.webhook"
    label = "Invoke Webhook"
    description = "Posts workflow payload to an external system."
    supports_simulation = True

    def __init__(self, client: Optional[httpx.Client] = None):
        self.client = client

    def run(self, node, context, payload, trigger: TriggerContext, simulation: bool) -> ActionResult:
        config = node.config or {}
        url = config.get("url") if isinstance(config.get("url"), str) else ""
        if not url:
            return ActionResult.failure("Webhook URL is required")

        merged = {**context, **(payload or {})}
        body = json.dumps(merged, default=str, separators=(",", ":"))
        preview = body[:WEBHOOK_PREVIEW_LENGTH]
        patch = {"lastWebhookUrl": url, "lastWebhookPreview": preview}

        if simulation:
            return ActionResult.success(
                message=f"Simulated webhook to {url} with payload preview {preview}",
                context_patch=patch
            )

        if self.client is None:
            return ActionResult.success(message=f"Webhook request enqueued for {url}", context_patch=patch)

        try:
            response = self.client.post(
                url,
                content=body,
                headers={
                    "Content-Type": "application/json",
                    "X-Workflow-Id": trigger.workflow.id,
                    "X-Workflow-Trigger": trigger.trigger_type,
                }
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery to {url} failed: {str(e)}")
            return ActionResult.failure(f"Webhook delivery to {url} failed: {str(e)}", context_patch=patch)

        return ActionResult.success(
            message=f"Webhook delivered to {url} ({response.status_code})",
            context_patch=patch
        )

    def validate(self, node) -> List[str]:
        if not (node.config or {}).get("url"):
            return ["Webhook nodes require a URL"]
        return []


class CrmUpdateFieldAction(ActionExecutor):
    """Writes a value into the context under ``crm:<field>``.

    The value comes from ``config.value`` when set, else from the context
    entry named ``field``, else from the context entry named by
    ``config.source`` (default ``total``).
    """

    type = "crm.update-field"
    label = "Update CRM Field"
    description = "Writes calculated fields back to the CRM or marketing list."
    supports_simulation = True

    def run(self, node, context, payload, trigger: TriggerContext, simulation: bool) -> ActionResult:
        config = node.config or {}
        field = _config_str(config, "field", "lifetime_value")
        source = _config_str(config, "source", "total")

        value = config.get("value")
        if value is None:
            value = context.get(field)
        if value is None:
            value = context.get(source)

        return ActionResult.success(
            message=f"Updated {field} to {value}",
            context_patch={f"crm:{field}": value}
        )


def register_builtin_actions(registry: ActionRegistry, http_client: Optional[httpx.Client] = None) -> None:
    """Register the notification, webhook and CRM actions shipped with the engine."""
    registry.register(NotificationDispatchAction())
    registry.register(WebhookAction(client=http_client))
    registry.register(CrmUpdateFieldAction())
