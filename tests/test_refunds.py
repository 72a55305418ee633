"""
Tests for refund orchestration.
"""
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from paygate.core.reconciliation import AuditAction
from paygate.database.models import utcnow
from paygate.enums import PaymentMethod, PaymentStatus
from paygate.errors import GatewayUnavailable, PaymentNotFound, ProviderRejected, RefundNotAllowed
from paygate.signing import Operation, Provider


@pytest.fixture
def paid_momo(reconciliation, make_pending, callbacks):
    """A MoMo payment confirmed by callback."""

    async def _paid():
        await make_pending(PaymentMethod.MOMO, "MOMOREF1")
        result = await reconciliation.handle_callback(
            PaymentMethod.MOMO, callbacks.momo("MOMOREF1")
        )
        return result.payment

    return _paid


@pytest.mark.integration
@pytest.mark.asyncio
class TestRefundGating:
    """Refunds rejected before any provider call."""

    async def test_cod_refund_not_allowed(
        self, refunds, reconciliation, make_pending, fake_provider, stored_payment, audit_sink
    ):
        payment = await make_pending(PaymentMethod.COD, "COD-REF1")
        await reconciliation.confirm_cod("COD-REF1", True, Decimal("100000"), "staff-7")

        with pytest.raises(RefundNotAllowed):
            await refunds.refund(payment.id, actor="ops-1")

        assert (await stored_payment(payment.id)).status == "PAID"
        assert fake_provider.requests == []
        assert audit_sink.actions()[-1] == AuditAction.REFUND_FAILED

    @pytest.mark.parametrize("status", [PaymentStatus.PENDING, PaymentStatus.FAILED])
    async def test_only_paid_payments_refund(
        self, refunds, insert_payment, fake_provider, stored_payment, status
    ):
        payment = await insert_payment(status, PaymentMethod.MOMO, reference="MOMOREF1")

        with pytest.raises(RefundNotAllowed):
            await refunds.refund(payment.id)

        assert (await stored_payment(payment.id)).status == status.value
        assert fake_provider.requests == []

    async def test_refund_twice_not_allowed(self, refunds, paid_momo, fake_provider):
        payment = await paid_momo()
        fake_provider.respond("/refund", (200, {"resultCode": 0, "transId": 5566}))

        await refunds.refund(payment.id)
        with pytest.raises(RefundNotAllowed):
            await refunds.refund(payment.id)

        assert len(fake_provider.calls("/refund")) == 1

    async def test_unknown_payment(self, refunds, order):
        with pytest.raises(PaymentNotFound):
            await refunds.refund("00000000-0000-0000-0000-000000000000")


@pytest.mark.integration
@pytest.mark.asyncio
class TestProviderRefunds:
    """Refunds confirmed or declined by the provider."""

    async def test_momo_refund_marks_refunded(
        self, refunds, paid_momo, fake_provider, signer, order_state, audit_sink
    ):
        payment = await paid_momo()
        fake_provider.respond(
            "/refund", (200, {"resultCode": 0, "message": "Successful.", "transId": 5566})
        )

        outcome = await refunds.refund(payment.id, reason="Out of stock", actor="ops-1")

        assert outcome.payment.status == "REFUNDED"
        assert outcome.payment.version == payment.version + 2
        assert outcome.payment.gateway_data["refund"]["refund_id"] == "5566"
        assert outcome.result.refund_id == "5566"
        assert await order_state() == ("PROCESSING", "REFUNDED")
        assert audit_sink.actions()[-1] == AuditAction.REFUNDED
        assert audit_sink.entries[-1]["actor"] == "ops-1"

        body = fake_provider.json_body(fake_provider.calls("/refund")[0])
        assert body["transId"] == "4088878653"
        assert body["amount"] == "100000"
        assert body["description"] == "Out of stock"
        assert body["requestId"] == payment.id.hex[:28] + "0000"
        assert signer.verify(Provider.MOMO, body, Operation.REFUND).valid

    async def test_zalopay_refund_marks_refunded(
        self, refunds, reconciliation, make_pending, callbacks, fake_provider
    ):
        payment = await make_pending(PaymentMethod.ZALOPAY, "261019_abc")
        await reconciliation.handle_callback(
            PaymentMethod.ZALOPAY, callbacks.zalopay("261019_abc")
        )
        fake_provider.respond("/partialrefund", (200, {"return_code": 1, "refund_id": 42}))

        outcome = await refunds.refund(payment.id)

        assert outcome.payment.status == "REFUNDED"
        form = fake_provider.form_body(fake_provider.calls("/partialrefund")[0])
        assert form["zp_trans_id"] == "251019000000123"
        assert form["m_refund_id"].endswith(f"_{payment.id.hex[:28]}0000")

    async def test_provider_decline_keeps_paid(
        self, refunds, paid_momo, fake_provider, stored_payment, order_state, audit_sink
    ):
        payment = await paid_momo()
        fake_provider.respond("/refund", (200, {"resultCode": 1080, "message": "Refund denied"}))

        with pytest.raises(ProviderRejected) as exc_info:
            await refunds.refund(payment.id)

        assert exc_info.value.provider_code == "1080"
        assert (await stored_payment(payment.id)).status == "PAID"
        assert await order_state() == ("PROCESSING", "PAID")
        assert audit_sink.actions()[-1] == AuditAction.REFUND_FAILED
        assert audit_sink.entries[-1]["new_value"]["error"] == "provider_rejected"

        row = await stored_payment(payment.id)
        assert "refund_claim" not in row.gateway_data
        assert row.gateway_data["refund_attempt"] == 1

    async def test_provider_timeout_keeps_paid(
        self, refunds, paid_momo, fake_provider, stored_payment
    ):
        payment = await paid_momo()
        fake_provider.respond("/refund", httpx.ReadTimeout)

        with pytest.raises(GatewayUnavailable):
            await refunds.refund(payment.id)

        assert (await stored_payment(payment.id)).status == "PAID"
        assert len(fake_provider.calls("/refund")) == 1

    async def test_retry_after_decline_uses_next_request_id(
        self, refunds, paid_momo, fake_provider
    ):
        payment = await paid_momo()
        fake_provider.respond(
            "/refund",
            (200, {"resultCode": 1080, "message": "Refund denied"}),
            (200, {"resultCode": 0, "transId": 5566}),
        )

        with pytest.raises(ProviderRejected):
            await refunds.refund(payment.id)
        outcome = await refunds.refund(payment.id)

        first, second = [fake_provider.json_body(r) for r in fake_provider.calls("/refund")]
        assert first["requestId"] == payment.id.hex[:28] + "0000"
        assert second["requestId"] == payment.id.hex[:28] + "0001"
        assert outcome.payment.gateway_data["refund"]["request_id"] == second["requestId"]

    async def test_retry_after_timeout_reuses_request_id(
        self, refunds, paid_momo, fake_provider, stored_payment
    ):
        payment = await paid_momo()
        fake_provider.respond(
            "/refund", httpx.ReadTimeout, (200, {"resultCode": 0, "transId": 5566})
        )

        with pytest.raises(GatewayUnavailable):
            await refunds.refund(payment.id)
        assert "refund_claim" not in (await stored_payment(payment.id)).gateway_data
        await refunds.refund(payment.id)

        first, second = [fake_provider.json_body(r) for r in fake_provider.calls("/refund")]
        assert first["requestId"] == second["requestId"]


@pytest.mark.integration
@pytest.mark.asyncio
class TestRefundClaims:
    """One refund call in flight per payment."""

    async def test_live_claim_blocks_refund(
        self, refunds, reconciliation, paid_momo, fake_provider, stored_payment, audit_sink
    ):
        payment = await paid_momo()
        await reconciliation.claim_refund(payment, "ops-1")

        with pytest.raises(RefundNotAllowed):
            await refunds.refund(payment.id, actor="ops-2")

        assert fake_provider.calls("/refund") == []
        assert (await stored_payment(payment.id)).status == "PAID"
        assert audit_sink.actions()[-1] == AuditAction.REFUND_FAILED

    async def test_stale_claim_is_taken_over(
        self, refunds, reconciliation, paid_momo, fake_provider
    ):
        payment = await paid_momo()
        abandoned = {
            "claimed_by": "ops-1",
            "claimed_at": (utcnow() - timedelta(hours=1)).isoformat(),
        }
        assert await reconciliation._write_gateway_data(
            payment, {**payment.gateway_data, "refund_claim": abandoned}
        )
        fake_provider.respond("/refund", (200, {"resultCode": 0, "transId": 5566}))

        outcome = await refunds.refund(payment.id, actor="ops-2")

        assert outcome.payment.status == "REFUNDED"
        assert "refund_claim" not in outcome.payment.gateway_data
        assert len(fake_provider.calls("/refund")) == 1

    async def test_claim_lost_to_concurrent_writer(self, reconciliation, paid_momo):
        payment = await paid_momo()
        await reconciliation.claim_refund(payment, "ops-1")

        with pytest.raises(RefundNotAllowed):
            await reconciliation.claim_refund(payment, "ops-2")
