"""Built-in trigger and action types."""

from typing import Optional
import httpx

from ..core.registry import ActionRegistry, TriggerRegistry
from .actions import (
    CrmUpdateFieldAction,
    NotificationDispatchAction,
    WebhookAction,
    register_builtin_actions,
)
from .triggers import (
    CustomerSegmentedPayload,
    OrderCreatedPayload,
    register_builtin_triggers,
)


def register_builtins(
    triggers: TriggerRegistry,
    actions: ActionRegistry,
    http_client: Optional[httpx.Client] = None
) -> None:
    """Populate both registries with the built-in types."""
    register_builtin_triggers(triggers)
    register_builtin_actions(actions, http_client=http_client)


__all__ = [
    "CrmUpdateFieldAction",
    "NotificationDispatchAction",
    "WebhookAction",
    "CustomerSegmentedPayload",
    "OrderCreatedPayload",
    "register_builtin_actions",
    "register_builtin_triggers",
    "register_builtins",
]
