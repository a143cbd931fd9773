"""HTTP surface of the orchestrator."""

import pytest
from fastapi.testclient import TestClient

from payroute.services.orchestrator import main
from payroute.services.provider_adapter.webhooks import compute_signature


@pytest.fixture
def client():
    with TestClient(main.app) as client:
        yield client


def charge_payload(**overrides):
    payload = {
        "customer_id": "cus_api",
        "amount": 2500,
        "currency": "usd",
        "payment_method": "pm_card",
    }
    payload.update(overrides)
    return payload


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_charge_get_and_refund(client):
    created = client.post("/payments/charges", json=charge_payload(), headers={"x-trace-id": "trace-api"})
    assert created.status_code == 201
    payment = created.json()
    assert payment["status"] == "succeeded"
    assert payment["currency"] == "USD"
    assert payment["provider_name"] == "stripe"

    fetched = client.get(f"/payments/{payment['payment_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["provider_charge_id"] == payment["provider_charge_id"]

    refund = client.post("/payments/refunds", json={"payment_id": payment["payment_id"], "amount": 1000})
    assert refund.status_code == 201
    assert refund.json()["provider_name"] == "stripe"
    assert client.get(f"/payments/{payment['payment_id']}").json()["status"] == "refunded"

    again = client.post("/payments/refunds", json={"payment_id": payment["payment_id"], "amount": 100})
    assert again.status_code == 400
    assert again.json()["error"] == "InvalidRequestError"

    listed = client.get(f"/payments/{payment['payment_id']}/refunds").json()
    assert [r["refund_id"] for r in listed] == [refund.json()["refund_id"]]
    assert client.get("/payments/does-not-exist/refunds").status_code == 404


def test_idempotent_charge_replays(client):
    first = client.post("/payments/charges", json=charge_payload(idempotency_key="order-api-1"))
    second = client.post("/payments/charges", json=charge_payload(idempotency_key="order-api-1"))

    assert first.status_code == second.status_code == 201
    assert first.json()["payment_id"] == second.json()["payment_id"]


@pytest.mark.parametrize(
    "overrides",
    [{"amount": 0}, {"currency": "US"}, {"idempotency_key": "abc"}, {"customer_id": ""}],
)
def test_charge_validation(client, overrides):
    assert client.post("/payments/charges", json=charge_payload(**overrides)).status_code == 422


def test_unknown_payment_is_404(client):
    response = client.get("/payments/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


def test_over_refund_is_400(client):
    payment = client.post("/payments/charges", json=charge_payload(amount=500)).json()

    response = client.post("/payments/refunds", json={"payment_id": payment["payment_id"], "amount": 501})

    assert response.status_code == 400


def test_declined_charge_is_502(client):
    response = client.post("/payments/charges", json=charge_payload(customer_id="decline_api"))

    assert response.status_code == 502
    assert response.json()["error"] == "ProviderDeclinedError"


def test_webhook_signature(client, monkeypatch):
    body = b'{"type":"charge.succeeded"}'
    assert client.post("/webhooks/stripe", content=body, headers={"x-signature": "nope"}).status_code == 401

    monkeypatch.setitem(main.webhooks.secrets, "stripe", "whsec_api")
    signed = client.post(
        "/webhooks/stripe",
        content=body,
        headers={"x-signature": f"sha256={compute_signature(body, 'whsec_api')}"},
    )

    assert signed.status_code == 200
    assert signed.json() == {"received": True}


def test_provider_status(client):
    client.post("/payments/charges", json=charge_payload(currency="INR"))

    stats = client.get("/providers").json()

    assert stats["total_providers"] == 4
    assert stats["provider_availability"]["razorpay"] is True
    assert stats["circuit_breakers"]["razorpay:charge"]["state"] == "closed"


def test_reconciliation_endpoint(client):
    payment = client.post("/payments/charges", json=charge_payload(currency="PHP")).json()
    main.mapping_store.delete(payment["provider_charge_id"], "payment")

    report = client.post("/reconciliation/mappings").json()

    assert payment["payment_id"] in report["restored_ids"]
    assert main.mapping_store.get_by_entity(payment["provider_charge_id"], "payment").provider_name == "xendit"


def test_metrics_endpoint(client):
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
