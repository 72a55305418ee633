"""
Tests for provider signature canonicalization and verification.
"""
import hashlib
import hmac
from typing import Any, Dict

import pytest

from paygate.errors import ValidationError
from paygate.signing import Operation, Provider, SignatureEngine
from paygate.signing.engine import MOMO_CALLBACK_FIELDS, ZALOPAY_CALLBACK_FIELDS


def _flip(value: Any) -> str:
    """Change the last character of a field's text."""
    text = str(value)
    return text[:-1] + ("2" if text.endswith("1") else "1")


def _hmac(secret: str, message: str, digest: Any) -> str:
    return hmac.new(secret.encode(), message.encode(), digest).hexdigest()


@pytest.mark.unit
class TestCanonicalization:
    """Pre-images per provider and operation."""

    def test_vnpay_sorts_and_encodes_prefixed_fields(self, signer: SignatureEngine):
        fields = {
            "vnp_TxnRef": "ABC123",
            "vnp_OrderInfo": "Thanh toan don hang",
            "vnp_Amount": "10000000",
            "vnp_SecureHash": "ignored",
            "utm_source": "ignored",
        }

        pre_image = signer.canonicalize(Provider.VNPAY, Operation.CREATE, fields)

        assert pre_image == (
            "vnp_Amount=10000000&vnp_OrderInfo=Thanh+toan+don+hang&vnp_TxnRef=ABC123"
        )
        assert signer.sign(Provider.VNPAY, Operation.CREATE, fields) == _hmac(
            "vnpay-test-secret", pre_image, hashlib.sha512
        )

    def test_vnpay_merchant_api_signs_raw_values(self, signer: SignatureEngine):
        fields = {"vnp_OrderInfo": "Query transaction X", "vnp_TxnRef": "X"}

        pre_image = signer.canonicalize(Provider.VNPAY, Operation.QUERY, fields)

        assert pre_image == "vnp_OrderInfo=Query transaction X&vnp_TxnRef=X"

    def test_momo_callback_uses_fixed_field_order(self, signer: SignatureEngine, callbacks):
        payload = callbacks.momo("REF1")

        pre_image = signer.canonicalize(Provider.MOMO, Operation.CALLBACK, payload)

        assert pre_image == (
            "accessKey=momo-access-key&amount=100000&extraData=&message=Successful."
            "&orderId=REF1&orderInfo=Payment for order O1&partnerCode=MOMOTEST"
            "&payType=qr&requestId=REF1&responseTime=1760841000000&resultCode=0"
            "&transId=4088878653"
        )
        assert payload["signature"] == _hmac("momo-secret-key", pre_image, hashlib.sha256)

    def test_zalopay_callback_is_signed_with_key2(self, signer: SignatureEngine, callbacks):
        payload = callbacks.zalopay("261019_abc")

        pre_image = signer.canonicalize(Provider.ZALOPAY, Operation.CALLBACK, payload)

        assert pre_image == "261019_abc|251019000000123|U1|100000|1760841000000|1|success"
        assert payload["mac"] == _hmac("zalopay-key2", pre_image, hashlib.sha256)

    def test_zalopay_query_and_refund_append_key1(self, signer: SignatureEngine):
        query = {"app_id": "2553", "app_trans_id": "261019_abc"}
        refund = {
            "app_id": "2553",
            "zp_trans_id": "123",
            "amount": 100000,
            "description": "Customer refund",
            "timestamp": 1760841000000,
        }

        assert (
            signer.canonicalize(Provider.ZALOPAY, Operation.QUERY, query)
            == "2553|261019_abc|zalopay-key1"
        )
        assert (
            signer.canonicalize(Provider.ZALOPAY, Operation.REFUND, refund)
            == "2553|123|100000|Customer refund|1760841000000|zalopay-key1"
        )

    def test_sign_missing_field_raises_validation_error(self, signer: SignatureEngine):
        with pytest.raises(ValidationError) as exc_info:
            signer.sign(Provider.MOMO, Operation.QUERY, {"orderId": "REF1"})

        assert "missing signed field" in exc_info.value.violations[0]


@pytest.mark.unit
class TestVerification:
    """Verification of inbound payloads."""

    def test_valid_callbacks_verify(self, signer: SignatureEngine, callbacks):
        assert signer.verify(Provider.VNPAY, callbacks.vnpay("REF1")).valid
        assert signer.verify(Provider.MOMO, callbacks.momo("REF1")).valid
        assert signer.verify(Provider.ZALOPAY, callbacks.zalopay("REF1")).valid

    def test_uppercase_hex_signature_is_accepted(self, signer: SignatureEngine, callbacks):
        payload = callbacks.vnpay("REF1")
        payload["vnp_SecureHash"] = payload["vnp_SecureHash"].upper()

        assert signer.verify(Provider.VNPAY, payload).valid

    def test_normalized_fields_exclude_signature(self, signer: SignatureEngine, callbacks):
        result = signer.verify(Provider.VNPAY, callbacks.vnpay("REF1"))

        assert "vnp_SecureHash" not in result.normalized_fields
        assert result.normalized_fields["vnp_TxnRef"] == "REF1"

    def test_vnpay_any_tampered_field_fails(self, signer: SignatureEngine, callbacks):
        original = callbacks.vnpay("REF1")
        signed = [k for k in original if k.startswith("vnp_") and k != "vnp_SecureHash"]

        for name in signed:
            payload = dict(original)
            payload[name] = _flip(payload[name])
            result = signer.verify(Provider.VNPAY, payload)
            assert not result.valid, name
            assert result.reason == "signature_mismatch"

    def test_momo_any_tampered_field_fails(self, signer: SignatureEngine, callbacks):
        original = callbacks.momo("REF1")

        for name in MOMO_CALLBACK_FIELDS:
            if original[name] == "":
                continue
            payload = dict(original)
            payload[name] = _flip(payload[name])
            assert not signer.verify(Provider.MOMO, payload).valid, name

    def test_zalopay_any_tampered_field_fails(self, signer: SignatureEngine, callbacks):
        original = callbacks.zalopay("261019_abc")

        for name in ZALOPAY_CALLBACK_FIELDS:
            payload = dict(original)
            payload[name] = _flip(payload[name])
            assert not signer.verify(Provider.ZALOPAY, payload).valid, name

    def test_unsigned_momo_field_does_not_affect_signature(
        self, signer: SignatureEngine, callbacks
    ):
        payload = callbacks.momo("REF1")
        payload["orderType"] = "something_else"

        assert signer.verify(Provider.MOMO, payload).valid

    def test_tampered_signature_fails(self, signer: SignatureEngine, callbacks):
        payload = callbacks.zalopay("261019_abc")
        payload["mac"] = _flip(payload["mac"])

        assert not signer.verify(Provider.ZALOPAY, payload).valid

    def test_callback_signed_with_wrong_key_fails(self, signer: SignatureEngine, callbacks):
        payload = callbacks.zalopay("261019_abc")
        pre_image = signer.canonicalize(Provider.ZALOPAY, Operation.CALLBACK, payload)
        payload["mac"] = _hmac("zalopay-key1", pre_image, hashlib.sha256)

        assert not signer.verify(Provider.ZALOPAY, payload).valid

    def test_missing_field_is_invalid(self, signer: SignatureEngine, callbacks):
        payload = callbacks.momo("REF1")
        del payload["transId"]

        result = signer.verify(Provider.MOMO, payload)

        assert not result.valid
        assert result.reason == "missing_field:transId"

    @pytest.mark.parametrize(
        "provider,payload,reason",
        [
            (Provider.MOMO, {}, "missing_signature"),
            (Provider.MOMO, {"signature": 12345}, "missing_signature"),
            (Provider.VNPAY, {"vnp_SecureHash": "abc"}, "missing_field:vnp_"),
            (Provider.ZALOPAY, {"mac": "abc", "app_trans_id": None}, "missing_field:app_trans_id"),
            (Provider.MOMO, None, "malformed_payload"),
            (Provider.ZALOPAY, ["mac", "abc"], "malformed_payload"),
        ],
    )
    def test_verify_never_raises(
        self, signer: SignatureEngine, provider: Provider, payload: Dict[str, Any], reason: str
    ):
        result = signer.verify(provider, payload)

        assert not result.valid
        assert result.reason == reason

    def test_non_ascii_signature_is_invalid(self, signer: SignatureEngine, callbacks):
        payload = callbacks.momo("REF1")
        payload["signature"] = "chữ ký"

        assert not signer.verify(Provider.MOMO, payload).valid
