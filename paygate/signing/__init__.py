"""Provider signature canonicalization and HMAC verification."""
from .engine import (
    Operation,
    Provider,
    SignatureEngine,
    SigningKeys,
    VerificationResult,
)

__all__ = [
    "Operation",
    "Provider",
    "SignatureEngine",
    "SigningKeys",
    "VerificationResult",
]
