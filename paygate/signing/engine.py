"""
Signature engine for provider payloads.

Each provider signs a different pre-image, and ZaloPay even changes the
pre-image (and the key) per operation. Canonicalization is therefore looked
up in a table keyed by ``(Provider, Operation)``:

- VNPay: ``vnp_*`` fields sorted by key, ``key=value`` joined with ``&``,
  HMAC-SHA512. Payment URLs and callbacks percent-encode values; the
  merchant API (``querydr``/``refund``) signs raw values.
- MoMo: fixed field order per operation, HMAC-SHA256 with the secret key.
- ZaloPay: pipe-delimited templates, HMAC-SHA256 with key1 (create, query,
  refund) or key2 (callback).

``verify`` never raises: a payload that cannot be canonicalized is simply
invalid.
"""
import hashlib
import hmac
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import quote_plus

import structlog

from paygate.config import Settings, get_settings
from paygate.errors import ValidationError

logger = structlog.get_logger(__name__)


class Provider(str, Enum):
    """Providers with a signature scheme."""

    VNPAY = "VNPAY"
    MOMO = "MOMO"
    ZALOPAY = "ZALOPAY"


class Operation(str, Enum):
    """Signed operations."""

    CREATE = "create"
    CALLBACK = "callback"
    QUERY = "query"
    REFUND = "refund"


@dataclass(frozen=True)
class SigningKeys:
    """Shared secrets for every provider."""

    vnpay_hash_secret: str = ""
    momo_access_key: str = ""
    momo_secret_key: str = ""
    zalopay_app_id: str = ""
    zalopay_key1: str = ""
    zalopay_key2: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKeys":
        return cls(
            vnpay_hash_secret=settings.vnpay_hash_secret,
            momo_access_key=settings.momo_access_key,
            momo_secret_key=settings.momo_secret_key,
            zalopay_app_id=settings.zalopay_app_id,
            zalopay_key1=settings.zalopay_key1,
            zalopay_key2=settings.zalopay_key2,
        )


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of verifying an inbound payload."""

    valid: bool
    normalized_fields: Dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None


def _text(fields: Mapping[str, Any], name: str) -> str:
    """Required field as text. Missing or null fields raise KeyError."""
    value = fields[name]
    if value is None:
        raise KeyError(name)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# VNPay

VNPAY_PREFIX = "vnp_"
VNPAY_SIGNATURE_FIELDS = frozenset({"vnp_SecureHash", "vnp_SecureHashType"})


def _vnpay_pairs(fields: Mapping[str, Any]) -> list[Tuple[str, str]]:
    pairs = sorted(
        (key, _text(fields, key))
        for key in fields
        if key.startswith(VNPAY_PREFIX) and key not in VNPAY_SIGNATURE_FIELDS
    )
    if not pairs:
        raise KeyError(VNPAY_PREFIX)
    return pairs


def vnpay_encoded(fields: Mapping[str, Any], keys: SigningKeys) -> str:
    return "&".join(f"{key}={quote_plus(value)}" for key, value in _vnpay_pairs(fields))


def vnpay_raw(fields: Mapping[str, Any], keys: SigningKeys) -> str:
    return "&".join(f"{key}={value}" for key, value in _vnpay_pairs(fields))


# MoMo

MOMO_CREATE_FIELDS = (
    "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
    "partnerCode", "redirectUrl", "requestId", "requestType",
)
MOMO_CALLBACK_FIELDS = (
    "amount", "extraData", "message", "orderId", "orderInfo", "partnerCode",
    "payType", "requestId", "responseTime", "resultCode", "transId",
)
MOMO_QUERY_FIELDS = ("orderId", "partnerCode", "requestId", "requestType")
MOMO_REFUND_FIELDS = (
    "amount", "description", "orderId", "partnerCode",
    "requestId", "requestType", "transId",
)


def _momo(names: Tuple[str, ...]) -> Callable[[Mapping[str, Any], SigningKeys], str]:
    def canonicalize(fields: Mapping[str, Any], keys: SigningKeys) -> str:
        parts = [f"accessKey={keys.momo_access_key}"]
        parts.extend(f"{name}={_text(fields, name)}" for name in names)
        return "&".join(parts)

    return canonicalize


# ZaloPay

ZALOPAY_CREATE_FIELDS = (
    "app_id", "app_trans_id", "app_user", "amount", "app_time", "embed_data", "item",
)
ZALOPAY_CALLBACK_FIELDS = (
    "app_trans_id", "zp_trans_id", "app_user", "amount", "app_time",
    "return_code", "return_message",
)
ZALOPAY_QUERY_FIELDS = ("app_id", "app_trans_id")
ZALOPAY_REFUND_FIELDS = ("app_id", "zp_trans_id", "amount", "description", "timestamp")


def _zalopay(
    names: Tuple[str, ...], append_key1: bool = False
) -> Callable[[Mapping[str, Any], SigningKeys], str]:
    def canonicalize(fields: Mapping[str, Any], keys: SigningKeys) -> str:
        parts = [_text(fields, name) for name in names]
        if append_key1:
            parts.append(keys.zalopay_key1)
        return "|".join(parts)

    return canonicalize


@dataclass(frozen=True)
class Scheme:
    """How one (provider, operation) pair is signed."""

    canonicalize: Callable[[Mapping[str, Any], SigningKeys], str]
    digest: Callable[..., Any]
    secret: Callable[[SigningKeys], str]
    signature_field: str


SCHEMES: Dict[Tuple[Provider, Operation], Scheme] = {
    (Provider.VNPAY, Operation.CREATE): Scheme(
        vnpay_encoded, hashlib.sha512, lambda k: k.vnpay_hash_secret, "vnp_SecureHash"
    ),
    (Provider.VNPAY, Operation.CALLBACK): Scheme(
        vnpay_encoded, hashlib.sha512, lambda k: k.vnpay_hash_secret, "vnp_SecureHash"
    ),
    (Provider.VNPAY, Operation.QUERY): Scheme(
        vnpay_raw, hashlib.sha512, lambda k: k.vnpay_hash_secret, "vnp_SecureHash"
    ),
    (Provider.VNPAY, Operation.REFUND): Scheme(
        vnpay_raw, hashlib.sha512, lambda k: k.vnpay_hash_secret, "vnp_SecureHash"
    ),
    (Provider.MOMO, Operation.CREATE): Scheme(
        _momo(MOMO_CREATE_FIELDS), hashlib.sha256, lambda k: k.momo_secret_key, "signature"
    ),
    (Provider.MOMO, Operation.CALLBACK): Scheme(
        _momo(MOMO_CALLBACK_FIELDS), hashlib.sha256, lambda k: k.momo_secret_key, "signature"
    ),
    (Provider.MOMO, Operation.QUERY): Scheme(
        _momo(MOMO_QUERY_FIELDS), hashlib.sha256, lambda k: k.momo_secret_key, "signature"
    ),
    (Provider.MOMO, Operation.REFUND): Scheme(
        _momo(MOMO_REFUND_FIELDS), hashlib.sha256, lambda k: k.momo_secret_key, "signature"
    ),
    (Provider.ZALOPAY, Operation.CREATE): Scheme(
        _zalopay(ZALOPAY_CREATE_FIELDS), hashlib.sha256, lambda k: k.zalopay_key1, "mac"
    ),
    (Provider.ZALOPAY, Operation.CALLBACK): Scheme(
        _zalopay(ZALOPAY_CALLBACK_FIELDS), hashlib.sha256, lambda k: k.zalopay_key2, "mac"
    ),
    (Provider.ZALOPAY, Operation.QUERY): Scheme(
        _zalopay(ZALOPAY_QUERY_FIELDS, append_key1=True),
        hashlib.sha256,
        lambda k: k.zalopay_key1,
        "mac",
    ),
    (Provider.ZALOPAY, Operation.REFUND): Scheme(
        _zalopay(ZALOPAY_REFUND_FIELDS, append_key1=True),
        hashlib.sha256,
        lambda k: k.zalopay_key1,
        "mac",
    ),
}


class SignatureEngine:
    """
    Computes and verifies provider signatures.

    Holds no state beyond the shared secrets, so one instance can serve
    every adapter.
    """

    def __init__(self, keys: Optional[SigningKeys] = None):
        """
        Initialize signature engine.

        Args:
            keys: Provider secrets (defaults to the configured settings)
        """
        self.keys = keys or SigningKeys.from_settings(get_settings())

    @staticmethod
    def scheme(provider: Provider, operation: Operation) -> Scheme:
        return SCHEMES[(Provider(provider), Operation(operation))]

    def canonicalize(
        self, provider: Provider, operation: Operation, fields: Mapping[str, Any]
    ) -> str:
        """
        Build the pre-image for a payload.

        Raises:
            KeyError: If a required field is missing
        """
        return self.scheme(provider, operation).canonicalize(fields, self.keys)

    def _digest(self, scheme: Scheme, pre_image: str) -> str:
        return hmac.new(
            scheme.secret(self.keys).encode("utf-8"),
            pre_image.encode("utf-8"),
            scheme.digest,
        ).hexdigest()

    def sign(self, provider: Provider, operation: Operation, fields: Mapping[str, Any]) -> str:
        """
        Sign an outbound payload.

        Args:
            provider: Provider whose scheme applies
            operation: Operation being signed
            fields: Payload fields (signature field, if present, is ignored)

        Returns:
            str: Lowercase hex digest

        Raises:
            ValidationError: If a field required by the pre-image is missing
        """
        scheme = self.scheme(provider, operation)
        try:
            pre_image = scheme.canonicalize(fields, self.keys)
        except KeyError as e:
            raise ValidationError(
                [f"missing signed field: {e.args[0]}"],
                provider=provider.value,
                operation=operation.value,
            )
        return self._digest(scheme, pre_image)

    def verify(
        self,
        provider: Provider,
        raw_payload: Mapping[str, Any],
        operation: Operation = Operation.CALLBACK,
    ) -> VerificationResult:
        """
        Verify a signed payload.

        Args:
            provider: Provider that signed the payload
            raw_payload: Payload as received, signature field included
            operation: Which pre-image template applies

        Returns:
            VerificationResult: ``valid`` plus the payload fields as text
        """
        try:
            scheme = self.scheme(provider, operation)
            received = raw_payload.get(scheme.signature_field)
            if not received or not isinstance(received, str):
                return VerificationResult(valid=False, reason="missing_signature")

            pre_image = scheme.canonicalize(raw_payload, self.keys)
            expected = self._digest(scheme, pre_image)

            # Hex digests compare as bytes so non-ascii input cannot raise
            valid = hmac.compare_digest(
                expected.encode("ascii"), received.strip().lower().encode("utf-8")
            )
            normalized = {
                key: "" if value is None else str(value)
                for key, value in raw_payload.items()
                if key != scheme.signature_field and key not in VNPAY_SIGNATURE_FIELDS
            }
            return VerificationResult(
                valid=valid,
                normalized_fields=normalized,
                reason=None if valid else "signature_mismatch",
            )
        except KeyError as e:
            return VerificationResult(valid=False, reason=f"missing_field:{e.args[0]}")
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(
                "signature_payload_malformed",
                provider=str(provider),
                operation=str(operation),
                error=str(e),
            )
            return VerificationResult(valid=False, reason="malformed_payload")
