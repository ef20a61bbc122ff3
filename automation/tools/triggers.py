"""Built-in business event triggers."""

from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, NonNegativeFloat, NonNegativeInt

from ..core.registry import TriggerRegistry


class OrderCreatedPayload(BaseModel):
    """Payload of the ``orders.created`` event."""
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    branch_id: Optional[str] = Field(None, alias="branchId")
    total: Optional[Union[NonNegativeInt, NonNegativeFloat]] = None
    customer_id: Optional[str] = Field(None, alias="customerId")


class CustomerSegmentedPayload(BaseModel):
    """Payload of the ``customers.segmented`` event."""
    model_config = ConfigDict(populate_by_name=True)

    customer_id: str = Field(..., alias="customerId")
    segment: str
    branch_id: Optional[str] = Field(None, alias="branchId")


def resolve_order_created(payload: OrderCreatedPayload) -> Dict[str, Any]:
    return {
        "orderId": payload.order_id,
        "branchId": payload.branch_id,
        "total": payload.total if payload.total is not None else 0,
        "customerId": payload.customer_id,
    }


def resolve_customer_segmented(payload: CustomerSegmentedPayload) -> Dict[str, Any]:
    return {
        "customerId": payload.customer_id,
        "segment": payload.segment,
        "branchId": payload.branch_id,
    }


def register_builtin_triggers(registry: TriggerRegistry) -> None:
    """Register the order and customer events shipped with the engine."""
    registry.register(
        "orders.created",
        "Order Created",
        OrderCreatedPayload,
        resolve_order_created,
        description="Fires whenever a new order is entered into the system."
    )
    registry.register(
        "customers.segmented",
        "Customer Segmented",
        CustomerSegmentedPayload,
        resolve_customer_segmented,
        description="Runs when a customer is added to a marketing segment."
    )
