"""Tests for the REST API: routes, status codes and the error middleware.

The app runs through its real lifespan (TestClient as a context manager),
seeded with the demo contracts for ``demo_user`` as buyer:

    CTR-8821-X / ORD-9928-AX  SHIPPED            seller VENDOR_NEXUS_PRIME
    CTR-9942-B / ORD-5541-XY  FUNDS_LOCKED       seller VENDOR_CYBER_DYNE
    CTR-3311-C / ORD-3321-CC  SIGNATURE_PARTIAL  seller VENDOR_SYSTEM_SHOCK
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from multisig_escrow.config import Settings
from multisig_escrow.main import create_app


@pytest.fixture
def client(settings: Settings):
    settings = settings.model_copy(
        update={"seed_demo_contracts": True, "demo_participant": "demo_user"}
    )
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def _wait_for_payment(client: TestClient, order_id: str, status: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/v1/orders/{order_id}/payment").json()
        if body["status"] == status or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["contracts"] == 3
        assert body["database"] == "disabled"

    def test_request_id_is_echoed(self, client: TestClient) -> None:
        resp = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert resp.headers["X-Request-ID"] == "req-42"

    def test_request_id_is_generated(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.headers["X-Request-ID"]


class TestCheckout:
    def test_checkout_then_funds_lock(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/orders/checkout",
            json={
                "buyer_id": "BUYER_GHOST_01",
                "seller_id": "VENDOR_NEXUS_PRIME",
                "listing_id": "LST-9928-AX",
                "listing_title": "QUANTUM_DATA_SHARD_V4",
                "unit_price": "4.2500",
                "quantity": 2,
            },
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["amount"] == "8.5000"
        assert body["payment_window_seconds"] == 900
        assert body["multisig_address"].startswith("888")

        payment = _wait_for_payment(client, body["order_id"], "CONFIRMED")
        assert payment["status"] == "CONFIRMED"
        assert payment["confirmations"] == 2

        contract = client.get(f"/api/v1/contracts/{body['contract_id']}").json()
        assert contract["current_step"] == "FUNDS_LOCKED"
        assert contract["step_index"] == 1
        assert contract["locked_at"] is not None

        order = client.get(f"/api/v1/orders/{body['order_id']}").json()
        assert order["state"] == "ESCROW_LOCKED"

    def test_rejects_non_positive_price(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/orders/checkout",
            json={
                "buyer_id": "BUYER_GHOST_01",
                "seller_id": "VENDOR_NEXUS_PRIME",
                "listing_id": "LST-1",
                "listing_title": "FREEBIE",
                "unit_price": "0",
            },
        )
        assert resp.status_code == 422

    def test_self_dealing_is_rejected(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/orders/checkout",
            json={
                "buyer_id": "demo_user",
                "seller_id": "demo_user",
                "listing_id": "LST-1",
                "listing_title": "MIRROR",
                "unit_price": "1.0000",
            },
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_TRANSITION"

    def test_payment_of_seeded_order(self, client: TestClient) -> None:
        resp = client.get("/api/v1/orders/ORD-5541-XY/payment")
        assert resp.status_code == 200
        assert resp.json()["status"] == "CONFIRMED"

    def test_cancel_finished_watch(self, client: TestClient) -> None:
        resp = client.delete("/api/v1/orders/ORD-5541-XY/payment")
        assert resp.status_code == 200
        assert resp.json() == {"order_id": "ORD-5541-XY", "cancelled": False}


class TestContracts:
    def test_list_for_participant(self, client: TestClient) -> None:
        resp = client.get("/api/v1/contracts", params={"participant_id": "demo_user"})
        assert resp.status_code == 200
        body = resp.json()
        assert {c["contract"]["id"] for c in body} == {"CTR-8821-X", "CTR-9942-B", "CTR-3311-C"}
        assert {c["role"] for c in body} == {"BUYER"}

    def test_list_requires_participant(self, client: TestClient) -> None:
        assert client.get("/api/v1/contracts").status_code == 422

    def test_unknown_contract(self, client: TestClient) -> None:
        resp = client.get("/api/v1/contracts/CTR-NOPE")
        assert resp.status_code == 404
        assert resp.json()["error"] == "CONTRACT_NOT_FOUND"

    def test_unknown_order(self, client: TestClient) -> None:
        resp = client.get("/api/v1/orders/ORD-NOPE")
        assert resp.status_code == 404
        assert resp.json()["error"] == "ORDER_NOT_FOUND"

    def test_status(self, client: TestClient) -> None:
        resp = client.get("/api/v1/contracts/CTR-3311-C/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["current_step"] == "SIGNATURE_PARTIAL"
        assert set(body["allowed_events"]) == {"countersign", "raise_dispute"}

    def test_events(self, client: TestClient) -> None:
        resp = client.get("/api/v1/contracts/CTR-8821-X/events")
        assert resp.status_code == 200
        events = resp.json()
        assert [e["event_type"] for e in events] == ["ORDER_PLACED"]
        assert events[0]["actor"] == "SYSTEM"


class TestShipping:
    def test_ship(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/contracts/CTR-9942-B/ship",
            json={"participant_id": "VENDOR_CYBER_DYNE", "tracking_payload": "TRK-9981"},
        )
        assert resp.status_code == 200
        assert resp.json()["current_step"] == "SHIPPED"
        assert resp.json()["tracking_payload"] == "TRK-9981"

    def test_ship_in_two_calls(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/contracts/CTR-9942-B/shipment",
            json={"participant_id": "VENDOR_CYBER_DYNE"},
        )
        assert resp.json()["current_step"] == "SHIPPING_PENDING"

        resp = client.post(
            "/api/v1/contracts/CTR-9942-B/ship",
            json={"participant_id": "VENDOR_CYBER_DYNE", "tracking_payload": "TRK-9981"},
        )
        assert resp.status_code == 200
        assert resp.json()["current_step"] == "SHIPPED"

    def test_buyer_cannot_ship(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/contracts/CTR-9942-B/ship",
            json={"participant_id": "demo_user", "tracking_payload": "TRK-9981"},
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "UNAUTHORIZED_ACTOR"
        assert client.get("/api/v1/contracts/CTR-9942-B").json()["current_step"] == "FUNDS_LOCKED"

    def test_role_cannot_be_claimed(self, client: TestClient) -> None:
        # The buyer asserting a seller role in the body changes nothing.
        resp = client.post(
            "/api/v1/contracts/CTR-9942-B/ship",
            json={
                "participant_id": "demo_user",
                "caller_role": "SELLER",
                "tracking_payload": "TRK-9981",
            },
        )
        assert resp.status_code == 403
        assert client.get("/api/v1/contracts/CTR-9942-B").json()["current_step"] == "FUNDS_LOCKED"

    def test_outsider_gets_not_found(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/contracts/CTR-9942-B/ship",
            json={"participant_id": "VENDOR_NEXUS_PRIME", "tracking_payload": "TRK-9981"},
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "CONTRACT_NOT_FOUND"

    def test_empty_payload(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/contracts/CTR-9942-B/ship",
            json={"participant_id": "VENDOR_CYBER_DYNE", "tracking_payload": ""},
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_TRANSITION"
        assert client.get("/api/v1/contracts/CTR-9942-B").json()["current_step"] == "FUNDS_LOCKED"

    def test_missing_participant(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/contracts/CTR-9942-B/ship",
            json={"tracking_payload": "TRK-9981"},
        )
        assert resp.status_code == 422


class TestRelease:
    def test_round_robin(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/orders/ORD-9928-AX/release",
            json={"participant_id": "demo_user", "confirmed": True},
        )
        assert resp.status_code == 200
        assert resp.json()["current_step"] == "SIGNATURE_PARTIAL"

        finalize = {"participant_id": "VENDOR_NEXUS_PRIME"}
        resp = client.post("/api/v1/orders/ORD-9928-AX/finalize", json=finalize)
        assert resp.status_code == 200
        body = resp.json()
        assert body["current_step"] == "COMPLETED"
        assert len(body["final_tx_hash"]) == 64

        resp = client.post("/api/v1/orders/ORD-9928-AX/finalize", json=finalize)
        assert resp.status_code == 409
        assert resp.json()["error"] == "CONTRACT_FROZEN"

    def test_release_needs_confirmation(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/orders/ORD-9928-AX/release",
            json={"participant_id": "demo_user"},
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_TRANSITION"

    def test_seller_cannot_release(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/orders/ORD-9928-AX/release",
            json={"participant_id": "VENDOR_NEXUS_PRIME", "confirmed": True},
        )
        assert resp.status_code == 403

    def test_finalize_out_of_phase(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/orders/ORD-5541-XY/finalize",
            json={"participant_id": "VENDOR_CYBER_DYNE"},
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "ILLEGAL_PHASE"


class TestDisputes:
    def test_dispute_requires_confirmation(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/contracts/CTR-8821-X/dispute",
            json={"participant_id": "demo_user"},
        )
        assert resp.status_code == 409
        assert client.get("/api/v1/contracts/CTR-8821-X").json()["current_step"] == "SHIPPED"

    def test_dispute_freezes_contract(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/contracts/CTR-8821-X/dispute",
            json={"participant_id": "demo_user", "confirmed": True, "reason": "wrong item"},
        )
        assert resp.status_code == 200
        assert resp.json()["current_step"] == "DISPUTE"
        assert resp.json()["dispute_reason"] == "wrong item"

        resp = client.post(
            "/api/v1/orders/ORD-9928-AX/release",
            json={"participant_id": "demo_user", "confirmed": True},
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "CONTRACT_FROZEN"
