import hashlib
import hmac
import json
import uuid

import pytest
from httpx import AsyncClient, ASGITransport

from ilovevideo import main as app_module

SECRET = "sk_test_secret"


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def charge_event(user_id: str) -> bytes:
    return json.dumps(
        {"event": "charge.success", "data": {"reference": f"ilv-{user_id}-1760000000000"}}
    ).encode()


@pytest.fixture
def paystack(monkeypatch):
    monkeypatch.setattr(app_module, "PAYSTACK_SECRET_KEY", SECRET)
    monkeypatch.setattr(app_module, "PAYSTACK_PUBLIC_KEY", "pk_test_public")


@pytest.mark.asyncio
async def test_valid_webhook_activates_pro(paystack, provider):
    user_id = str(uuid.uuid4())
    body = charge_event(user_id)
    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/api/paystack-webhook",
            content=body,
            headers={"x-paystack-signature": sign(body), "Content-Type": "application/json"},
        )
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert provider.activated == [(user_id, f"ilv-{user_id}-1760000000000")]


@pytest.mark.asyncio
async def test_tampered_body_is_rejected_without_side_effects(paystack, provider):
    original = charge_event(str(uuid.uuid4()))
    tampered = charge_event(str(uuid.uuid4()))
    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/api/paystack-webhook",
            content=tampered,
            headers={"x-paystack-signature": sign(original)},
        )
    assert resp.status_code == 401
    assert resp.json()["error"] == "INVALID_SIGNATURE"
    assert provider.activated == []


@pytest.mark.asyncio
async def test_missing_signature_or_secret_is_rejected(monkeypatch, provider):
    body = charge_event(str(uuid.uuid4()))
    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        monkeypatch.setattr(app_module, "PAYSTACK_SECRET_KEY", "")
        no_secret = await client.post(
            "/api/paystack-webhook", content=body, headers={"x-paystack-signature": sign(body, "")}
        )
        monkeypatch.setattr(app_module, "PAYSTACK_SECRET_KEY", SECRET)
        no_header = await client.post("/api/paystack-webhook", content=body)
    assert no_secret.status_code == 401
    assert no_header.status_code == 401
    assert provider.activated == []


@pytest.mark.asyncio
async def test_signed_garbage_is_bad_request(paystack, provider):
    body = b"not json at all"
    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/api/paystack-webhook", content=body, headers={"x-paystack-signature": sign(body)}
        )
    assert resp.status_code == 400
    assert provider.activated == []


@pytest.mark.asyncio
async def test_other_events_and_foreign_references_are_acked_only(paystack, provider):
    bodies = [
        json.dumps({"event": "transfer.success", "data": {}}).encode(),
        json.dumps({"event": "charge.success", "data": {"reference": "order-123"}}).encode(),
        json.dumps({"event": "charge.success", "data": {"reference": "ilv-a-b-c-d-e-1"}}).encode(),
    ]
    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        for body in bodies:
            resp = await client.post(
                "/api/paystack-webhook", content=body, headers={"x-paystack-signature": sign(body)}
            )
            assert resp.status_code == 200
    assert provider.activated == []


def test_user_id_from_reference():
    uid = str(uuid.uuid4())
    assert app_module.user_id_from_reference(f"ilv-{uid}-1760000000000") == uid
    assert app_module.user_id_from_reference("ilv-123") is None
    assert app_module.user_id_from_reference("") is None


@pytest.mark.asyncio
async def test_create_payment_requires_auth(paystack, provider):
    uid = str(uuid.uuid4())
    provider.add_user("tok", uid, email="buyer@example.com")
    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        anon = await client.post("/api/create-payment")
        resp = await client.post("/api/create-payment", headers={"Authorization": "Bearer tok"})

    assert anon.status_code == 401
    assert anon.json()["error"] == "AUTH_REQUIRED"
    body = resp.json()
    assert body["public_key"] == "pk_test_public"
    assert body["email"] == "buyer@example.com"
    assert body["amount"] == 499
    assert body["currency"] == "USD"
    assert app_module.user_id_from_reference(body["reference"]) == uid
