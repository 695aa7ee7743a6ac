"""HMAC-SHA256 signing for QR payloads."""

import hmac
from hashlib import sha256
from typing import Union

Payload = Union[str, bytes]


def _as_bytes(value: Payload) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def sign(payload: Payload, key: Payload) -> str:
    return hmac.new(_as_bytes(key), _as_bytes(payload), sha256).hexdigest()


def verify(payload: Payload, signature, key: Payload) -> bool:
    """Constant-time check of `signature` against `payload`.

    Anything that is not a well-formed signature string is simply invalid.
    """
    if not isinstance(signature, (str, bytes)) or not isinstance(payload, (str, bytes)):
        return False
    try:
        given = _as_bytes(signature)
    except UnicodeEncodeError:
        return False
    expected = sign(payload, key).encode("ascii")
    return hmac.compare_digest(given, expected)
