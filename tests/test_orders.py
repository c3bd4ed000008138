"""
Tests for the bundled order capabilities.

Tests cover:
- Hydrating an order from the catalog
- Editing quantities before confirmation
- Declined payments, retry and successful confirmation
- Charging at most once per order
- Delivery tracking as a child instance kept current by patches
"""

import pytest

from flowstate.capabilities.orders import PaymentGateway
from flowstate.core.errors import HandlerFailed, InvalidEntities, InvalidPayload, RecoveryHint
from flowstate.core.messages import MessageKind
from flowstate.core.orchestrator import ProtocolState


async def place_order(orchestrator, caller, **entities):
    entities = {"customer_id": "cust-42", "sku": "sku-espresso", **entities}
    result = await orchestrator.create("commerce.place_order", entities, caller=caller)
    return result.instance


class TestPlaceOrder:
    """Test the order placement flow."""

    @pytest.mark.asyncio
    async def test_hydrated_from_catalog(self, orchestrator, caller):
        order = await place_order(orchestrator, caller, quantity=2)
        assert order.state == "review"
        assert order.render_data["product_name"] == "Espresso Beans 1kg"
        assert order.render_data["total"] == 48.0
        assert order.valid_events == ["CONFIRM", "EDIT", "FAILURE"]

    @pytest.mark.asyncio
    async def test_quantity_bounds(self, orchestrator, caller):
        with pytest.raises(InvalidEntities):
            await place_order(orchestrator, caller, quantity=100)

    @pytest.mark.asyncio
    async def test_edit_recomputes_total(self, orchestrator, caller):
        order = await place_order(orchestrator, caller)
        result = await orchestrator.apply_event(order.instance_id, "EDIT", {"quantity": 3})

        assert result.instance.state == "review"
        assert result.instance.render_data["quantity"] == 3
        assert result.instance.render_data["total"] == 72.0

    @pytest.mark.asyncio
    async def test_confirm(self, orchestrator, gateway, caller):
        order = await place_order(orchestrator, caller, sku="sku-grinder")
        result = await orchestrator.apply_event(
            order.instance_id, "CONFIRM", {"accept_terms": True, "payment_token": "tok_visa"}
        )

        assert result.instance.state == "confirmed"
        assert result.instance.protocol_state is ProtocolState.FINALIZING
        assert result.instance.render_data["order_id"] == "ord-00001"
        assert result.instance.render_data["status"] == "confirmed"
        assert gateway.charges[order.instance_id]["amount"] == 129.0

    @pytest.mark.asyncio
    async def test_declined_payment_then_retry(self, orchestrator, gateway, caller):
        order = await place_order(orchestrator, caller)

        failed = await orchestrator.apply_event(
            order.instance_id, "CONFIRM", {"accept_terms": True, "payment_token": "tok_declined"}
        )
        assert failed.instance.state == "payment_failed"
        [message] = failed.messages
        assert message.kind is MessageKind.FAILED
        assert message.payload["error"]["message"] == "Your card was declined"
        assert message.payload["recovery"] == "retry"
        assert gateway.charges == {}

        retried = await orchestrator.apply_event(order.instance_id, "RETRY")
        assert retried.instance.state == "review"
        assert retried.instance.render_data["status"] == "review"

        confirmed = await orchestrator.apply_event(
            order.instance_id, "CONFIRM", {"accept_terms": True, "payment_token": "tok_visa"}
        )
        assert confirmed.instance.state == "confirmed"
        assert confirmed.instance.version == 4

    @pytest.mark.asyncio
    async def test_missing_payment_method(self, orchestrator, caller):
        order = await place_order(orchestrator, caller)
        result = await orchestrator.apply_event(
            order.instance_id, "CONFIRM", {"accept_terms": True}
        )
        assert result.messages[0].payload["recovery"] == "modify"


class TestPaymentGateway:
    """Test the in-process gateway."""

    def test_charge_is_idempotent_per_key(self):
        gateway = PaymentGateway()
        first = gateway.charge("order-a", 10.0, "tok_visa")
        again = gateway.charge("order-a", 10.0, "tok_visa")
        other = gateway.charge("order-b", 5.0, "tok_visa")

        assert first == again == "ord-00001"
        assert other == "ord-00002"
        assert len(gateway.charges) == 2

    @pytest.mark.parametrize(
        "token,recovery", [(None, RecoveryHint.MODIFY), ("tok_insufficient_funds", None)]
    )
    def test_rejected_charges(self, token, recovery):
        with pytest.raises(HandlerFailed) as exc_info:
            PaymentGateway().charge("order-a", 10.0, token)
        assert exc_info.value.recovery is recovery


class TestDelivery:
    """Test delivery tracking under a confirmed order."""

    @pytest.mark.asyncio
    async def test_delivery_child(self, orchestrator, caller):
        order = await place_order(orchestrator, caller)
        await orchestrator.apply_event(
            order.instance_id, "CONFIRM", {"accept_terms": True, "payment_token": "tok_visa"}
        )

        created = await orchestrator.create(
            "commerce.track_delivery",
            {"order_id": "ord-00001"},
            parent_instance_id=order.instance_id,
            caller=caller,
        )
        delivery_id = created.instance.instance_id
        assert created.instance.render_data["carrier"] == "flowstate-express"

        patched = await orchestrator.patch_render_data(
            delivery_id, {"eta_minutes": 25, "location": "Depot 4"}
        )
        assert patched.instance.render_data["eta_minutes"] == 25
        assert patched.instance.state == "in_transit"

        await orchestrator.apply_event(delivery_id, "OUT_FOR_DELIVERY")
        delivered = await orchestrator.apply_event(delivery_id, "DELIVER")

        assert delivered.instance.state == "delivered"
        assert delivered.instance.render_data["eta_minutes"] == 0
        assert delivered.instance.render_data["location"] == "Depot 4"
        assert await orchestrator.list_children(order.instance_id) == [delivery_id]

    @pytest.mark.asyncio
    async def test_negative_eta_rejected(self, orchestrator, caller):
        created = await orchestrator.create(
            "commerce.track_delivery", {"order_id": "ord-1"}, caller=caller
        )
        with pytest.raises(InvalidPayload):
            await orchestrator.patch_render_data(created.instance.instance_id, {"eta_minutes": -5})
