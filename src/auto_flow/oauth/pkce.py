"""PKCE (RFC 7636) helpers. All values are unpadded base64url."""

from __future__ import annotations

import base64
import hashlib
import secrets

VERIFIER_BYTES = 32
STATE_BYTES = 16


def base64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def build_code_verifier() -> str:
    return base64url_encode(secrets.token_bytes(VERIFIER_BYTES))


def build_code_challenge(verifier: str) -> str:
    """S256 challenge for ``verifier``."""

    return base64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def build_state() -> str:
    return secrets.token_hex(STATE_BYTES)
