"""HMAC-SHA256 integrity tags over encoded offers."""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass

from offer_codec import ProductOffer, encode_offer

# Signatures travel as exactly 64 lowercase hex characters.
_SIGNATURE_FORMAT = re.compile(r"[0-9a-f]{64}")


class SignatureMismatch(ValueError):
    """Raised when a submitted offer signature does not verify."""


@dataclass(frozen=True)
class SignedOffer:
    product_blob: str
    signature: str

    def to_dict(self) -> dict[str, str]:
        return {"productBlob": self.product_blob, "signature": self.signature}


def _as_bytes(value: str | bytes) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def sign(token: str | bytes, secret: bytes) -> str:
    """Return the lowercase hex HMAC of the exact token bytes."""
    return hmac.new(secret, _as_bytes(token), hashlib.sha256).hexdigest()


def verify(token: str | bytes, signature: str, secret: bytes) -> bool:
    """Constant-time check of *signature* against the token.

    Never raises for caller-supplied input: a token that cannot be encoded,
    or a signature that is not 64 lowercase hex characters, simply fails.
    """
    if not isinstance(token, (str, bytes, bytearray)) or not isinstance(signature, str):
        return False
    if not _SIGNATURE_FORMAT.fullmatch(signature):
        return False
    try:
        message = _as_bytes(token)
    except UnicodeEncodeError:
        return False
    expected = hmac.new(secret, message, hashlib.sha256).digest()
    return hmac.compare_digest(bytes.fromhex(signature), expected)


def sign_offer(offer: ProductOffer, secret: bytes) -> SignedOffer:
    product_blob = encode_offer(offer)
    return SignedOffer(product_blob=product_blob, signature=sign(product_blob, secret))


def require_valid(token: str | bytes, signature: str, secret: bytes) -> None:
    if not verify(token, signature, secret):
        raise SignatureMismatch("Product signature verification failed")
