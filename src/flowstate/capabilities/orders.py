"""
Order placement and delivery tracking capabilities.

``commerce.place_order`` walks a customer from reviewing an order to a
confirmed purchase, with an explicit failure edge when payment is declined.
``commerce.track_delivery`` is started as a child of a confirmed order and is
kept current with render-data patches as the carrier reports progress.
"""

from typing import Any

from pydantic import BaseModel, Field

from ..core.collaborators import CallerContext, HandlerInvocation, HandlerResult
from ..core.errors import HandlerFailed, HydrationFailed, RecoveryHint
from ..core.machine import Edge, MachineDefinition
from ..core.registry import CapabilityDefinition, CapabilityRegistry
from ..observability.logging import get_logger

logger = get_logger(__name__)

CATALOG: dict[str, dict[str, Any]] = {
    "sku-espresso": {"name": "Espresso Beans 1kg", "unit_price": 24.0},
    "sku-grinder": {"name": "Burr Grinder", "unit_price": 129.0},
    "sku-filters": {"name": "Paper Filters (100)", "unit_price": 6.5},
}

DECLINED_TOKENS = frozenset({"tok_declined", "tok_insufficient_funds"})


class PaymentGateway:
    """
    In-process payment gateway.

    Charges are keyed by an operation key so a handler re-run after a commit
    conflict never charges twice.
    """

    def __init__(self):
        self.charges: dict[str, dict[str, Any]] = {}

    def charge(self, operation_key: str, amount: float, token: str | None) -> str:
        existing = self.charges.get(operation_key)
        if existing is not None:
            return existing["order_id"]
        if not token:
            raise HandlerFailed("A payment method is required", recovery=RecoveryHint.MODIFY)
        if token in DECLINED_TOKENS:
            raise HandlerFailed("Your card was declined")

        order_id = f"ord-{len(self.charges) + 1:05d}"
        self.charges[operation_key] = {"order_id": order_id, "amount": amount, "token": token}
        logger.info("Charged order", order_id=order_id, amount=amount)
        return order_id


# Schemas


class OrderEntities(BaseModel):
    customer_id: str = Field(min_length=1)
    sku: str = Field(min_length=1)
    quantity: int = Field(1, ge=1, le=99)


class OrderRenderData(BaseModel):
    sku: str
    product_name: str
    quantity: int = Field(ge=1)
    unit_price: float = Field(ge=0)
    total: float = Field(ge=0)
    currency: str = "USD"
    status: str = "review"
    order_id: str | None = None
    message: str | None = None


class EditPayload(BaseModel):
    quantity: int = Field(ge=1, le=99)


class ConfirmPayload(BaseModel):
    accept_terms: bool = False
    payment_token: str | None = None


class DeliveryEntities(BaseModel):
    order_id: str = Field(min_length=1)
    carrier: str = "flowstate-express"


class DeliveryRenderData(BaseModel):
    order_id: str
    carrier: str
    status: str = "in_transit"
    eta_minutes: int | None = Field(None, ge=0)
    location: str | None = None


# Order placement


def hydrate_order(entities: dict[str, Any], caller: CallerContext) -> dict[str, Any]:
    product = CATALOG.get(entities["sku"])
    if product is None:
        raise HydrationFailed("That product is no longer available", sku=entities["sku"])
    quantity = entities["quantity"]
    return {
        "sku": entities["sku"],
        "product_name": product["name"],
        "quantity": quantity,
        "unit_price": product["unit_price"],
        "total": round(product["unit_price"] * quantity, 2),
        "status": "review",
    }


def apply_edit(invocation: HandlerInvocation) -> HandlerResult:
    quantity = invocation.payload["quantity"]
    unit_price = invocation.render_data["unit_price"]
    return HandlerResult(
        render_data_patch={"quantity": quantity, "total": round(unit_price * quantity, 2)}
    )


def make_submit_order(gateway: PaymentGateway):
    def submit_order(invocation: HandlerInvocation) -> HandlerResult:
        token = invocation.payload.get("payment_token") or invocation.context.get(
            "payment_token"
        )
        order_id = gateway.charge(
            invocation.instance_id, invocation.render_data["total"], token
        )
        return HandlerResult(
            context_patch={"order_id": order_id, "payment_token": token},
            render_data_patch={
                "status": "confirmed",
                "order_id": order_id,
                "message": "Thanks, your order is on its way",
            },
        )

    return submit_order


def restore_review(invocation: HandlerInvocation) -> HandlerResult:
    return HandlerResult(render_data_patch={"status": "review", "message": None})


def terms_accepted(context, payload) -> bool:
    return bool(payload.get("accept_terms"))


ORDER_MACHINE = MachineDefinition(
    initial="review",
    transitions={
        "review": [
            Edge("CONFIRM", "confirmed", guard=terms_accepted, effect="submit_order"),
            Edge("EDIT", "review", effect="apply_edit"),
            Edge("FAILURE", "payment_failed"),
        ],
        "payment_failed": [Edge("RETRY", "review", effect="restore_review")],
    },
    final=frozenset({"confirmed"}),
)


# Delivery tracking


def hydrate_delivery(entities: dict[str, Any], caller: CallerContext) -> dict[str, Any]:
    return {
        "order_id": entities["order_id"],
        "carrier": entities["carrier"],
        "status": "in_transit",
    }


def mark_delivered(invocation: HandlerInvocation) -> HandlerResult:
    return HandlerResult(
        render_data_patch={"status": "delivered", "eta_minutes": 0},
        context_patch={"delivered_state": invocation.state},
    )


DELIVERY_MACHINE = MachineDefinition(
    initial="in_transit",
    transitions={
        "in_transit": [Edge("OUT_FOR_DELIVERY", "out_for_delivery")],
        "out_for_delivery": [Edge("DELIVER", "delivered", effect="mark_delivered")],
    },
    final=frozenset({"delivered"}),
)


def register_capabilities(
    registry: CapabilityRegistry, gateway: PaymentGateway | None = None
) -> None:
    gateway = gateway or PaymentGateway()

    registry.register(
        CapabilityDefinition(
            capability_id="commerce.place_order",
            machine=ORDER_MACHINE,
            entity_schema=OrderEntities,
            render_data_schema=OrderRenderData,
            hydrator=hydrate_order,
            handlers={
                "submit_order": make_submit_order(gateway),
                "apply_edit": apply_edit,
                "restore_review": restore_review,
            },
            payload_schemas={"EDIT": EditPayload, "CONFIRM": ConfirmPayload},
            required_permissions=frozenset({"orders:write"}),
            description="Review and confirm a product order",
        )
    )
    registry.register(
        CapabilityDefinition(
            capability_id="commerce.track_delivery",
            machine=DELIVERY_MACHINE,
            entity_schema=DeliveryEntities,
            render_data_schema=DeliveryRenderData,
            hydrator=hydrate_delivery,
            handlers={"mark_delivered": mark_delivered},
            required_permissions=frozenset({"orders:read"}),
            description="Follow a confirmed order to the door",
        )
    )
