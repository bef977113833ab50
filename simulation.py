#!/usr/bin/env python3
"""Multisig Escrow: End-to-End Simulation.

Simulates four scenarios with BuyerBot and SellerBot participants:

    Scenario A: Deposit and lock
        - Buyer checks out a 4.2500 XMR listing
        - Payment watcher sees the deposit, 2 confirmations at t=9s
        - Contract FUNDS_LOCKED, order ESCROW_LOCKED, auto-release in 14 days

    Scenario B: Shipping
        - Seller tries to ship with an empty payload -> rejected
        - Seller ships with "TRK-9981" -> SHIPPING_PENDING -> SHIPPED

    Scenario C: Round-robin release
        - Buyer certifies receipt and signs (phase 1) -> SIGNATURE_PARTIAL
        - Seller countersigns and broadcasts (phase 2) -> COMPLETED

    Scenario D: Dispute
        - Buyer tries to dispute without confirming -> rejected
        - Buyer confirms -> DISPUTE, every later call is frozen

Usage:
    # Real timings (the deposit alone takes ~9 seconds):
    uv run python simulation.py

    # Compressed timings (100x faster):
    uv run python simulation.py --fast

    # Persist to SQLite in-memory and flush at the end:
    uv run python simulation.py --fast --sqlite

    # Run a specific scenario:
    uv run python simulation.py --fast --scenario C
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from decimal import Decimal

from multisig_escrow.config import Settings
from multisig_escrow.domain.enums import ContractRole, EscrowStep
from multisig_escrow.domain.exceptions import EscrowError
from multisig_escrow.logging_config import get_logger, setup_logging
from multisig_escrow.services.dispute_gate import CONFIRM_PROMPT
from multisig_escrow.services.escrow_service import EscrowService

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")


def build_settings(fast: bool = False, use_sqlite: bool = False) -> Settings:
    """Settings for a simulation run, optionally compressed 100x."""
    overrides: dict = {"seed_demo_contracts": False}
    if fast:
        overrides.update(
            detection_delay_seconds=0.03,
            confirmation_interval_seconds=0.03,
            countdown_tick_seconds=0.01,
            phase1_duration_seconds=0.025,
            phase2_duration_seconds=0.03,
        )
    if use_sqlite:
        overrides["database_url"] = "sqlite+aiosqlite:///:memory:"
    return Settings(**overrides)


# ---------------------------------------------------------------------------
# Bot Participants
# ---------------------------------------------------------------------------
@dataclass
class BuyerBot:
    """Simulated buyer that checks out, certifies receipt and disputes."""

    participant_id: str = "BUYER_GHOST_01"

    async def checkout(
        self,
        svc: EscrowService,
        seller: SellerBot,
        title: str,
        unit_price: Decimal,
    ) -> str:
        order_id = await svc.start_checkout(
            buyer_id=self.participant_id,
            seller_id=seller.participant_id,
            listing_id=f"LST-{title[:8]}",
            listing_title=title,
            unit_price=unit_price,
        )
        contract = svc.contract_for_order(order_id)
        logger.info(
            "🔵 BUYER: Checked out",
            order_id=order_id,
            amount=str(contract.amount),
            send_to=contract.multisig_address[:16] + "...",
        )
        return order_id

    async def wait_for_lock(self, svc: EscrowService, order_id: str) -> None:
        timer = await svc.watcher.wait(order_id)
        logger.info(
            "🔵 BUYER: Payment watch finished",
            order_id=order_id,
            status=str(timer.status) if timer else "UNKNOWN",
            confirmations=timer.confirmations if timer else 0,
        )

    async def release(self, svc: EscrowService, order_id: str) -> None:
        def show(session) -> None:  # noqa: ANN001
            if session.log:
                print(f"    [{session.progress:3d}%] {session.log[-1]}")

        contract = await svc.initiate_release(
            order_id, ContractRole.BUYER, confirmed=True, on_progress=show
        )
        logger.info("🔵 BUYER: Partial signature sent", step=contract.current_step.name)

    async def dispute(self, svc: EscrowService, contract_id: str, confirmed: bool) -> None:
        contract = await svc.raise_dispute(
            contract_id,
            ContractRole.BUYER,
            confirmed=confirmed,
            reason="Package never arrived",
        )
        logger.info("🔵 BUYER: Dispute raised", contract_id=contract.id)


@dataclass
class SellerBot:
    """Simulated vendor that ships and countersigns."""

    participant_id: str = "VENDOR_NEXUS_PRIME"

    async def ship(self, svc: EscrowService, contract_id: str, payload: str) -> None:
        contract = await svc.ship(contract_id, ContractRole.SELLER, payload)
        logger.info(
            "🟢 SELLER: Shipped",
            contract_id=contract_id,
            step=contract.current_step.name,
        )

    async def finalize(self, svc: EscrowService, order_id: str) -> None:
        def show(session) -> None:  # noqa: ANN001
            if session.log:
                print(f"    [{session.progress:3d}%] {session.log[-1]}")

        contract = await svc.finalize_release(order_id, ContractRole.SELLER, on_progress=show)
        logger.info(
            "🟢 SELLER: Release broadcast",
            step=contract.current_step.name,
            final_tx=contract.final_tx_hash[:16] + "...",
        )


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_contract(svc: EscrowService, contract_id: str) -> None:
    status = svc.get_status(contract_id)
    contract = svc.get_contract(contract_id)
    print(f"  Step: {status['current_step']}  Order: {status['order_state']}")
    if contract.locked_at:
        print(f"  Locked at: {contract.locked_at.isoformat()}")
        print(f"  Auto-release at: {contract.auto_release_at.isoformat()}")
    if contract.final_tx_hash:
        print(f"  Final TX: {contract.final_tx_hash[:20]}...")
    print(f"  Allowed next: {', '.join(status['allowed_events']) or '(none, terminal)'}")


def print_audit_trail(svc: EscrowService, contract_id: str) -> None:
    """Print the full audit trail for a contract."""
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(svc.get_events(contract_id), 1):
        old = evt.old_step.name if evt.old_step is not None else "-"
        print(f"    {i}. [{evt.event_type}] {old} → {evt.new_step.name} (by {evt.actor})")
    print()


def expect_rejection(label: str, exc: EscrowError) -> None:
    print(f"  ✅ {label} rejected: [{exc.code}] {exc.message}")


# ===========================================================================
# Scenarios
# ===========================================================================
async def _funded_order(svc: EscrowService, buyer: BuyerBot, seller: SellerBot) -> tuple[str, str]:
    order_id = await buyer.checkout(svc, seller, "QUANTUM_DATA_SHARD_V4", Decimal("4.2500"))
    await buyer.wait_for_lock(svc, order_id)
    return order_id, svc.contract_for_order(order_id).id


async def scenario_a_deposit(svc: EscrowService) -> None:
    """Checkout, deposit detection and the two confirmations."""
    banner("SCENARIO A: Deposit: 2 confirmations lock the funds")
    buyer, seller = BuyerBot(), SellerBot()

    section("Step 1: Buyer checks out, watcher counts confirmations")
    order_id, contract_id = await _funded_order(svc, buyer, seller)

    section("Step 2: Contract state")
    print_contract(svc, contract_id)
    assert svc.get_contract(contract_id).current_step is EscrowStep.FUNDS_LOCKED
    print_audit_trail(svc, contract_id)


async def scenario_b_shipping(svc: EscrowService) -> None:
    """Seller ships; empty tracking payload is refused."""
    banner("SCENARIO B: Shipping: tracking payload required")
    buyer, seller = BuyerBot(), SellerBot()
    _, contract_id = await _funded_order(svc, buyer, seller)

    section("Step 1: Seller ships with an empty payload")
    try:
        await seller.ship(svc, contract_id, "")
    except EscrowError as exc:
        expect_rejection("Empty payload", exc)

    section("Step 2: Seller ships with TRK-9981")
    await seller.ship(svc, contract_id, "TRK-9981")
    print_contract(svc, contract_id)
    print_audit_trail(svc, contract_id)


async def scenario_c_release(svc: EscrowService) -> None:
    """Round-robin release: buyer signs, seller countersigns."""
    banner("SCENARIO C: Round-robin release")
    buyer, seller = BuyerBot(), SellerBot()
    order_id, contract_id = await _funded_order(svc, buyer, seller)
    await seller.ship(svc, contract_id, "TRK-9981")

    section("Step 1: Seller tries to sign first")
    try:
        await svc.initiate_release(order_id, ContractRole.SELLER, confirmed=True)
    except EscrowError as exc:
        expect_rejection("Out-of-turn signature", exc)

    section("Step 2: Buyer certifies receipt (phase 1)")
    await buyer.release(svc, order_id)

    section("Step 3: Seller countersigns (phase 2)")
    await seller.finalize(svc, order_id)

    section("Step 4: Contract is final")
    print_contract(svc, contract_id)
    try:
        await seller.finalize(svc, order_id)
    except EscrowError as exc:
        expect_rejection("Second release", exc)
    print_audit_trail(svc, contract_id)


async def scenario_d_dispute(svc: EscrowService) -> None:
    """Dispute requires explicit confirmation and freezes the contract."""
    banner("SCENARIO D: Dispute: explicit consent, then frozen")
    buyer, seller = BuyerBot(), SellerBot()
    order_id, contract_id = await _funded_order(svc, buyer, seller)
    await seller.ship(svc, contract_id, "TRK-9981")

    section("Step 1: Buyer disputes without confirming")
    print(f"  Prompt: {CONFIRM_PROMPT}")
    try:
        await buyer.dispute(svc, contract_id, confirmed=False)
    except EscrowError as exc:
        expect_rejection("Unconfirmed dispute", exc)

    section("Step 2: Buyer confirms the dispute")
    await buyer.dispute(svc, contract_id, confirmed=True)
    print_contract(svc, contract_id)

    section("Step 3: Signing is now frozen")
    try:
        await buyer.release(svc, order_id)
    except EscrowError as exc:
        expect_rejection("Release after dispute", exc)
    print_audit_trail(svc, contract_id)


SCENARIOS = {
    "A": scenario_a_deposit,
    "B": scenario_b_shipping,
    "C": scenario_c_release,
    "D": scenario_d_dispute,
}


# ===========================================================================
# Main
# ===========================================================================
async def run(scenarios: list[str], fast: bool = False, use_sqlite: bool = False) -> None:
    """Run the given scenarios on one service instance."""
    settings = build_settings(fast=fast, use_sqlite=use_sqlite)
    svc = EscrowService.build(settings)
    await svc.startup()

    try:
        print("\n" + "🚀" * 35)
        print("  MULTISIG ESCROW: SIMULATION")
        print(f"  Timings: {'compressed 100x' if fast else 'real'}")
        print(f"  Persistence: {'SQLite (in-memory)' if use_sqlite else 'none'}")
        print("🚀" * 35 + "\n")

        for name in scenarios:
            await SCENARIOS[name](svc)

        if use_sqlite:
            written = await svc.persist()
            print(f"  💾 Flushed {written} contracts to SQLite")

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")

    finally:
        await svc.shutdown()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Multisig Escrow Simulation")
    parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        default=None,
        help="Run a specific scenario (A, B, C or D). Default: run all.",
    )
    parser.add_argument(
        "--fast",
        action="store_true",
        help="Compress every timer 100x.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Persist the store to SQLite in-memory.",
    )
    args = parser.parse_args()

    selected = [args.scenario] if args.scenario else list(SCENARIOS)
    asyncio.run(run(selected, fast=args.fast, use_sqlite=args.sqlite))
