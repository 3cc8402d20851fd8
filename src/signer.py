# signer.py
"""Ed25519 request signing for the Backpack API.

Every private REST call and the account WebSocket subscription carry a
signature over a canonical string::

    instruction=<name>&<sorted params>&timestamp=<ms>&window=<ms>

The params segment is dropped entirely when there are no parameters.  The
exchange hands out the secret as a base64 encoded 32 byte seed; it is wrapped
into a PKCS8 DER structure once and loaded through ``cryptography``.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Mapping, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from errors import SignatureError

DEFAULT_WINDOW_MS = 5000

# ASN.1 header of a PKCS8 Ed25519 private key; the 32 raw seed bytes follow.
PKCS8_ED25519_PREFIX = bytes.fromhex("302e020100300506032b657004220420")


def render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def canonical_params(params: Optional[Mapping[str, Any]]) -> str:
    if not params:
        return ""
    return "&".join(f"{key}={render_value(params[key])}" for key in sorted(params))


def build_message(
    instruction: str,
    params: Optional[Mapping[str, Any]],
    timestamp_ms: int,
    window_ms: int,
) -> str:
    query = canonical_params(params)
    return (
        f"instruction={instruction}"
        + (f"&{query}" if query else "")
        + f"&timestamp={timestamp_ms}&window={window_ms}"
    )


def _load_private_key(secret_b64: str) -> ed25519.Ed25519PrivateKey:
    try:
        raw = base64.b64decode(secret_b64, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise SignatureError(f"API secret is not valid base64: {exc}") from exc
    if len(raw) < 32:
        raise SignatureError(f"API secret must hold 32 seed bytes, got {len(raw)}")
    der = PKCS8_ED25519_PREFIX + raw[:32]
    try:
        key = serialization.load_der_private_key(der, password=None)
    except (ValueError, TypeError) as exc:
        raise SignatureError(f"API secret is not a valid Ed25519 seed: {exc}") from exc
    if not isinstance(key, ed25519.Ed25519PrivateKey):
        raise SignatureError("API secret did not decode to an Ed25519 key")
    return key


class Signer:
    """Sign instruction strings with the account's Ed25519 key."""

    def __init__(self, secret_b64: str, window_ms: int = DEFAULT_WINDOW_MS):
        self.window_ms = int(window_ms)
        self._private_key = _load_private_key(secret_b64)

    @property
    def public_key_b64(self) -> str:
        raw = self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return base64.b64encode(raw).decode()

    def sign(
        self,
        instruction: str,
        params: Optional[Mapping[str, Any]],
        timestamp_ms: int,
        window_ms: Optional[int] = None,
    ) -> str:
        """Return the base64 signature for ``instruction`` and ``params``."""
        window = self.window_ms if window_ms is None else int(window_ms)
        message = build_message(instruction, params, timestamp_ms, window)
        signature = self._private_key.sign(message.encode("utf-8"))
        return base64.b64encode(signature).decode()
