"""End-to-end tests of the EscrowService facade.

Each class walks one marketplace scenario through the service, the same
entry point used by the REST routes, the MCP tools and the simulation.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from multisig_escrow.config import Settings
from multisig_escrow.domain.enums import (
    ContractRole,
    EscrowStep,
    EventType,
    OrderState,
    PaymentStatus,
)
from multisig_escrow.domain.exceptions import (
    ContractFrozenError,
    ContractNotFoundError,
    InvalidTransitionError,
    OrderNotFoundError,
    UnauthorizedActorError,
)
from multisig_escrow.services.escrow_service import EscrowService

BUYER = "BUYER_GHOST_01"
SELLER = "VENDOR_NEXUS_PRIME"


class TestCheckout:
    @pytest.mark.asyncio
    async def test_checkout_creates_pending_order(self, service: EscrowService) -> None:
        order_id = await service.start_checkout(
            buyer_id=BUYER,
            seller_id=SELLER,
            listing_id="LST-1",
            listing_title="NEURAL_INTERFACE_KIT",
            unit_price=Decimal("1.2500"),
            quantity=3,
        )

        order = service.get_order(order_id)
        contract = service.contract_for_order(order_id)
        assert order_id.startswith("ORD-")
        assert contract.id.startswith("CTR-")
        assert order.state is OrderState.PENDING
        assert contract.current_step is EscrowStep.AWAITING_DEPOSIT
        assert contract.amount == Decimal("3.7500")
        assert contract.multisig_address.startswith("888")
        assert service.watcher.is_watching(order_id)

        await service.watcher.wait(order_id)
        assert service.payment_status(order_id).status is PaymentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_buyer_and_seller_must_differ(self, service: EscrowService) -> None:
        with pytest.raises(InvalidTransitionError):
            await service.start_checkout(
                buyer_id=BUYER,
                seller_id=BUYER,
                listing_id="LST-1",
                listing_title="SELF_DEALING",
                unit_price=Decimal("1"),
            )
        assert len(service.store) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("unit_price", "quantity"),
        [(Decimal("0"), 1), (Decimal("-1"), 1), (Decimal("0.00001"), 1), (Decimal("1"), 0)],
    )
    async def test_rejects_worthless_orders(
        self, service: EscrowService, unit_price: Decimal, quantity: int
    ) -> None:
        with pytest.raises(InvalidTransitionError, match="unit price must be positive"):
            await service.start_checkout(
                buyer_id=BUYER,
                seller_id=SELLER,
                listing_id="LST-1",
                listing_title="NEURAL_INTERFACE_KIT",
                unit_price=unit_price,
                quantity=quantity,
            )
        assert len(service.store) == 0

    @pytest.mark.asyncio
    async def test_cancel_checkout(self, settings: Settings) -> None:
        svc = EscrowService.build(settings.model_copy(update={"detection_delay_seconds": 5.0}))
        await svc.startup()
        try:
            order_id = await svc.start_checkout(
                buyer_id=BUYER,
                seller_id=SELLER,
                listing_id="LST-1",
                listing_title="NEURAL_INTERFACE_KIT",
                unit_price=Decimal("1"),
            )
            assert await svc.cancel_checkout(order_id) is True
            assert svc.contract_for_order(order_id).current_step is EscrowStep.AWAITING_DEPOSIT
            assert svc.payment_status(order_id).status is PaymentStatus.WAITING_FOR_TX
        finally:
            await svc.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_unknown_order(self, service: EscrowService) -> None:
        with pytest.raises(OrderNotFoundError):
            await service.cancel_checkout("ORD-NOPE")


class TestHappyPath:
    """Checkout -> lock -> ship -> partial signature -> countersignature."""

    @pytest.mark.asyncio
    async def test_full_release(self, service: EscrowService, funded) -> None:
        order_id, contract_id = funded

        shipped = await service.ship(contract_id, ContractRole.SELLER, "TRK-9981")
        assert shipped.current_step is EscrowStep.SHIPPED
        assert shipped.tracking_payload == "TRK-9981"
        assert service.get_order(order_id).state is OrderState.SHIPPED

        partial = await service.initiate_release(order_id, ContractRole.BUYER, confirmed=True)
        assert partial.current_step is EscrowStep.SIGNATURE_PARTIAL

        completed = await service.finalize_release(order_id, ContractRole.SELLER)
        assert completed.current_step is EscrowStep.COMPLETED
        assert completed.final_tx_hash
        assert service.get_order(order_id).state is OrderState.FINALIZED

        assert [e.event_type for e in service.get_events(contract_id)] == [
            EventType.ORDER_PLACED,
            EventType.PAYMENT_DETECTED,
            EventType.FUNDS_LOCKED,
            EventType.SHIPMENT_STARTED,
            EventType.SHIPMENT_SENT,
            EventType.RELEASE_INITIATED,
            EventType.RELEASE_FINALIZED,
        ]

    @pytest.mark.asyncio
    async def test_steps_only_move_forward(self, service: EscrowService, funded) -> None:
        order_id, contract_id = funded
        await service.ship(contract_id, ContractRole.SELLER, "TRK-9981")
        await service.initiate_release(order_id, ContractRole.BUYER, confirmed=True)
        await service.finalize_release(order_id, ContractRole.SELLER)

        events = service.get_events(contract_id)
        for evt in events[1:]:
            assert evt.new_step.has_reached(evt.old_step)
        versions_seen = len(events) - 1
        assert service.get_contract(contract_id).version == versions_seen

    @pytest.mark.asyncio
    async def test_two_step_shipping(self, service: EscrowService, funded) -> None:
        _, contract_id = funded
        pending = await service.start_shipment(contract_id, ContractRole.SELLER)
        assert pending.current_step is EscrowStep.SHIPPING_PENDING

        shipped = await service.mark_shipped(contract_id, ContractRole.SELLER, "  PGP:BLOB  ")
        assert shipped.current_step is EscrowStep.SHIPPED
        assert shipped.tracking_payload == "PGP:BLOB"

    @pytest.mark.asyncio
    async def test_subscribers_see_each_step(self, service: EscrowService, funded) -> None:
        _, contract_id = funded
        queue = service.subscribe(contract_id)
        await service.ship(contract_id, ContractRole.SELLER, "TRK-9981")

        assert queue.get_nowait().event_type is EventType.SHIPMENT_STARTED
        assert queue.get_nowait().event_type is EventType.SHIPMENT_SENT


class TestShippingRejections:
    @pytest.mark.asyncio
    async def test_empty_payload_leaves_contract_locked(
        self, service: EscrowService, funded
    ) -> None:
        _, contract_id = funded
        with pytest.raises(InvalidTransitionError, match="tracking payload is empty"):
            await service.ship(contract_id, ContractRole.SELLER, "   ")

        contract = service.get_contract(contract_id)
        assert contract.current_step is EscrowStep.FUNDS_LOCKED
        assert contract.tracking_payload is None

    @pytest.mark.asyncio
    async def test_buyer_cannot_ship(self, service: EscrowService, funded) -> None:
        _, contract_id = funded
        with pytest.raises(UnauthorizedActorError):
            await service.ship(contract_id, ContractRole.BUYER, "TRK-9981")

    @pytest.mark.asyncio
    async def test_mark_shipped_with_empty_payload(self, service: EscrowService, funded) -> None:
        _, contract_id = funded
        await service.start_shipment(contract_id, ContractRole.SELLER)
        with pytest.raises(InvalidTransitionError):
            await service.mark_shipped(contract_id, ContractRole.SELLER, "")
        assert service.get_contract(contract_id).current_step is EscrowStep.SHIPPING_PENDING

    @pytest.mark.asyncio
    async def test_cannot_ship_twice(self, service: EscrowService, funded) -> None:
        _, contract_id = funded
        await service.ship(contract_id, ContractRole.SELLER, "TRK-9981")
        with pytest.raises(InvalidTransitionError):
            await service.ship(contract_id, ContractRole.SELLER, "TRK-9982")


class TestDisputeLock:
    """Once disputed, every mutation is rejected as frozen."""

    @pytest.mark.asyncio
    async def test_dispute_freezes_everything(self, service: EscrowService, funded) -> None:
        order_id, contract_id = funded
        await service.ship(contract_id, ContractRole.SELLER, "TRK-9981")

        disputed = await service.raise_dispute(
            contract_id, ContractRole.BUYER, confirmed=True, reason="wrong item"
        )
        assert disputed.current_step is EscrowStep.DISPUTE
        assert disputed.final_tx_hash is None

        with pytest.raises(ContractFrozenError):
            await service.initiate_release(order_id, ContractRole.BUYER, confirmed=True)
        with pytest.raises(ContractFrozenError):
            await service.finalize_release(order_id, ContractRole.SELLER)
        with pytest.raises(ContractFrozenError):
            await service.ship(contract_id, ContractRole.SELLER, "TRK-9982")
        with pytest.raises(ContractFrozenError):
            await service.mark_shipped(contract_id, ContractRole.SELLER, "")
        with pytest.raises(ContractFrozenError):
            await service.raise_dispute(contract_id, ContractRole.SELLER, confirmed=True)

        assert service.get_events(contract_id)[-1].event_type is EventType.DISPUTE_RAISED

    @pytest.mark.asyncio
    async def test_status_of_disputed_contract(self, service: EscrowService, funded) -> None:
        _, contract_id = funded
        await service.raise_dispute(contract_id, ContractRole.SELLER, confirmed=True)

        status = service.get_status(contract_id)
        assert status["current_step"] == "DISPUTE"
        assert status["order_state"] == "DISPUTE"
        assert status["is_terminal"] is True
        assert status["allowed_events"] == []
        assert status["auto_release_due"] is False


class TestReads:
    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(self, service: EscrowService, funded) -> None:
        order_id, contract_id = funded
        status = service.get_status(contract_id)

        assert status["order_id"] == order_id
        assert status["current_step"] == "FUNDS_LOCKED"
        assert set(status["allowed_events"]) == {
            "start_shipment",
            "certify_receipt",
            "raise_dispute",
        }
        assert status["signing_progress"] is None
        assert status["version"] == 2

    @pytest.mark.asyncio
    async def test_role_resolution(self, service: EscrowService, funded) -> None:
        _, contract_id = funded
        assert service.role_of(contract_id, BUYER) is ContractRole.BUYER
        assert service.role_of(contract_id, SELLER) is ContractRole.SELLER
        with pytest.raises(ContractNotFoundError):
            service.role_of(contract_id, "EVE")

    @pytest.mark.asyncio
    async def test_list_contracts(self, service: EscrowService, funded) -> None:
        _, contract_id = funded
        views = service.list_contracts(SELLER)
        assert [v.contract.id for v in views] == [contract_id]
        assert views[0].counterparty == BUYER


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_startup_seeds_demo_contracts(self, settings: Settings) -> None:
        settings = settings.model_copy(
            update={"seed_demo_contracts": True, "demo_participant": "demo_user"}
        )
        svc = EscrowService.build(settings)
        await svc.startup()
        try:
            assert len(svc.store) == 3
            status = svc.payment_status("ORD-9928-AX")
            assert status.status is PaymentStatus.CONFIRMED
            assert status.confirmations == settings.required_confirmations

            # The seeded SIGNATURE_PARTIAL contract can be countersigned by its vendor.
            completed = await svc.finalize_release("ORD-3321-CC", ContractRole.SELLER)
            assert completed.current_step is EscrowStep.COMPLETED
        finally:
            await svc.shutdown()

    @pytest.mark.asyncio
    async def test_persist_without_database(self, service: EscrowService) -> None:
        assert await service.persist() == 0
