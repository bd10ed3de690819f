from __future__ import annotations

import hashlib
import secrets

from credlife.storage.models import OTP_LENGTH

_DIGITS = "0123456789"


def hash_token(token: str) -> str:
    """Return the lowercase hex SHA-256 digest of a bearer token.

    Only the digest is ever persisted; lookups hash the presented token and
    compare digests.
    """

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_otp_code(length: int = OTP_LENGTH) -> str:
    """Sample a numeric code uniformly from a CSPRNG."""

    return "".join(secrets.choice(_DIGITS) for _ in range(length))


def new_bearer_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def codes_match(expected: str, presented: str) -> bool:
    return secrets.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))
