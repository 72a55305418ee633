"""
API tests through the ASGI app.
"""
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient

from paygate.api.dependencies import build_services
from paygate.api.main import create_app

MOMO_CREATED = (200, {"resultCode": 0, "payUrl": "https://momo.test/pay/abc"})


@pytest_asyncio.fixture
async def client(
    test_settings, session_factory, gateways, audit_sink, order
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client for the app wired to the test database and fake provider."""
    services = build_services(
        test_settings, session_factory=session_factory, gateways=gateways, audit=audit_sink
    )
    app = create_app(test_settings, services)
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _initiate(client: AsyncClient, method: str) -> dict:
    response = await client.post(
        "/payments", json={"order_id": "O1", "amount": 100000, "payment_method": method}
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.integration
@pytest.mark.asyncio
class TestPaymentEndpoints:
    """Initiation, lookup, refund and reconcile endpoints."""

    async def test_create_vnpay_payment(self, client: AsyncClient):
        body = await _initiate(client, "VNPAY")

        assert body["payment"]["status"] == "PENDING"
        assert body["payment"]["order_id"] == "O1"
        assert Decimal(body["payment"]["amount"]) == Decimal("100000")
        assert body["artifact"]["redirect_url"].startswith("https://vnpay.test/")
        assert body["reused"] is False

    async def test_create_payment_reports_violations(self, client: AsyncClient):
        response = await client.post(
            "/payments", json={"amount": -5, "payment_method": "PAYPAL"}
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation_error"
        assert len(body["violations"]) == 3

    async def test_create_payment_unknown_order(self, client: AsyncClient):
        response = await client.post(
            "/payments",
            json={"order_id": "O-404", "amount": 100000, "payment_method": "COD"},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "order_not_found"

    async def test_create_payment_gateway_unavailable(
        self, client: AsyncClient, fake_provider
    ):
        fake_provider.respond("/create", httpx.ConnectTimeout)

        response = await client.post(
            "/payments", json={"order_id": "O1", "amount": 100000, "payment_method": "MOMO"}
        )

        assert response.status_code == 503
        assert response.json()["error"] == "gateway_unavailable"

    async def test_get_payment(self, client: AsyncClient):
        created = await _initiate(client, "COD")

        response = await client.get(f"/payments/{created['payment']['id']}")

        assert response.status_code == 200
        assert response.json()["reference_number"] == created["payment"]["reference_number"]

    @pytest.mark.parametrize("payment_id", [str(uuid.uuid4()), "not-a-uuid"])
    async def test_get_payment_not_found(self, client: AsyncClient, payment_id):
        response = await client.get(f"/payments/{payment_id}")

        assert response.status_code == 404
        assert response.json()["error"] == "payment_not_found"

    async def test_list_order_payments(self, client: AsyncClient):
        await _initiate(client, "COD")
        await _initiate(client, "VNPAY")

        response = await client.get("/payments/order/O1")

        assert response.status_code == 200
        assert {p["payment_method"] for p in response.json()} == {"COD", "VNPAY"}

    async def test_refund_after_callback(
        self, client: AsyncClient, fake_provider, callbacks
    ):
        fake_provider.respond("/create", MOMO_CREATED)
        created = await _initiate(client, "MOMO")
        payment = created["payment"]
        await client.post("/webhooks/momo", json=callbacks.momo(payment["reference_number"]))
        fake_provider.respond("/refund", (200, {"resultCode": 0, "transId": 5566}))

        response = await client.post(
            f"/payments/{payment['id']}/refund",
            json={"reason": "Out of stock"},
            headers={"X-Actor-Id": "ops-1"},
        )

        assert response.status_code == 200, response.text
        assert response.json()["payment"]["status"] == "REFUNDED"
        assert response.json()["refund_id"] == "5566"

    async def test_refund_pending_payment_conflicts(self, client: AsyncClient):
        created = await _initiate(client, "VNPAY")

        response = await client.post(f"/payments/{created['payment']['id']}/refund")

        assert response.status_code == 409
        assert response.json()["error"] == "refund_not_allowed"

    async def test_reconcile(self, client: AsyncClient, fake_provider):
        fake_provider.respond("/create", MOMO_CREATED)
        created = await _initiate(client, "MOMO")
        fake_provider.respond(
            "/query", (200, {"resultCode": 0, "amount": 100000, "transId": 4088878653})
        )

        response = await client.post(f"/payments/{created['payment']['id']}/reconcile")

        assert response.status_code == 200
        body = response.json()
        assert body["applied"] is True
        assert body["remote_outcome"] == "PAID"
        assert body["payment"]["status"] == "PAID"


@pytest.mark.integration
@pytest.mark.asyncio
class TestCodConfirmation:
    """Staff confirmation endpoint."""

    async def test_confirm_collected(self, client: AsyncClient):
        created = await _initiate(client, "COD")

        response = await client.post(
            "/payments/cod/confirm",
            json={
                "reference": created["payment"]["reference_number"],
                "collected": True,
                "amount": "100000",
                "confirmed_by": "staff-7",
            },
        )

        assert response.status_code == 200
        assert response.json()["applied"] is True
        assert response.json()["payment"]["status"] == "PAID"

        refund = await client.post(f"/payments/{created['payment']['id']}/refund")
        assert refund.status_code == 409
        assert refund.json()["error"] == "refund_not_allowed"

    async def test_confirmed_by_defaults_to_actor_header(self, client: AsyncClient, audit_sink):
        created = await _initiate(client, "COD")

        response = await client.post(
            "/payments/cod/confirm",
            json={
                "reference": created["payment"]["reference_number"],
                "collected": True,
                "amount": "100000",
            },
            headers={"X-Actor-Id": "staff-9"},
        )

        assert response.status_code == 200
        assert audit_sink.entries[-1]["actor"] == "staff-9"

    async def test_confirmer_required(self, client: AsyncClient):
        created = await _initiate(client, "COD")

        response = await client.post(
            "/payments/cod/confirm",
            json={
                "reference": created["payment"]["reference_number"],
                "collected": True,
                "amount": "100000",
            },
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    async def test_collected_must_be_boolean(self, client: AsyncClient):
        response = await client.post(
            "/payments/cod/confirm",
            json={"reference": "COD-1", "collected": "yes", "amount": "100000"},
        )

        assert response.status_code == 422


@pytest.mark.integration
@pytest.mark.asyncio
class TestWebhooks:
    """Provider callbacks answered in each provider's shape."""

    async def test_momo_ipn_is_idempotent(self, client: AsyncClient, fake_provider, callbacks):
        fake_provider.respond("/create", MOMO_CREATED)
        created = await _initiate(client, "MOMO")
        payload = callbacks.momo(created["payment"]["reference_number"])

        first = await client.post("/webhooks/momo", json=payload)
        second = await client.post("/webhooks/momo", json=payload)

        assert first.status_code == second.status_code == 200
        assert first.json() == second.json() == {"resultCode": 0, "message": "success"}
        payment = await client.get(f"/payments/{created['payment']['id']}")
        assert payment.json()["status"] == "PAID"
        assert payment.json()["transaction_id"] == "4088878653"

    async def test_momo_amount_mismatch(self, client: AsyncClient, fake_provider, callbacks):
        fake_provider.respond("/create", MOMO_CREATED)
        created = await _initiate(client, "MOMO")
        payload = callbacks.momo(created["payment"]["reference_number"], amount=Decimal("90000"))

        response = await client.post("/webhooks/momo", json=payload)

        assert response.json()["resultCode"] == -1
        assert response.json()["message"] == "amount_mismatch"

    async def test_vnpay_ipn(self, client: AsyncClient, callbacks):
        created = await _initiate(client, "VNPAY")
        params = callbacks.vnpay(created["payment"]["reference_number"])

        response = await client.get("/webhooks/vnpay", params=params)

        assert response.status_code == 200
        assert response.json() == {"RspCode": "00", "Message": "Confirm Success"}

    async def test_vnpay_ipn_bad_signature(self, client: AsyncClient, callbacks):
        created = await _initiate(client, "VNPAY")
        params = callbacks.vnpay(created["payment"]["reference_number"])
        params["vnp_Amount"] = "1000"

        response = await client.get("/webhooks/vnpay", params=params)

        assert response.json()["RspCode"] == "97"

    async def test_zalopay_tampered_callback(
        self, client: AsyncClient, fake_provider, callbacks
    ):
        fake_provider.respond(
            "/createorder",
            (200, {"return_code": 1, "order_url": "https://zalopay.test/order/abc"}),
        )
        created = await _initiate(client, "ZALOPAY")
        payload = callbacks.zalopay(created["payment"]["reference_number"])
        payload["return_code"] = 2

        response = await client.post("/webhooks/zalopay", json=payload)

        assert response.status_code == 200
        assert response.json()["return_code"] == -1
        payment = await client.get(f"/payments/{created['payment']['id']}")
        assert payment.json()["status"] == "PENDING"

    async def test_non_json_callback_is_rejected(self, client: AsyncClient):
        response = await client.post(
            "/webhooks/zalopay",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["return_code"] == -1


@pytest.mark.integration
@pytest.mark.asyncio
class TestMonitoringEndpoints:
    """Health, metrics and request tracing."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["gateways"]["circuits"]["MOMO"] == "closed"

    async def test_liveness(self, client: AsyncClient):
        response = await client.get("/health/live")

        assert response.json()["status"] == "alive"

    async def test_metrics(self, client: AsyncClient, callbacks):
        await client.post("/webhooks/momo", json=callbacks.momo("UNKNOWN"))

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "payment_callbacks_total" in response.text

    async def test_request_id_is_echoed(self, client: AsyncClient):
        response = await client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert "MOMO" in response.json()["payment_methods"]
