from __future__ import annotations

import base64
import hashlib
import re
import stat
from pathlib import Path

import allure
import pytest

from auto_flow.oauth.crypto import CryptoFormatError, MasterKey, TokenCipher
from auto_flow.oauth.pkce import (
    base64url_encode,
    build_code_challenge,
    build_code_verifier,
    build_state,
)

pytestmark = [
    allure.epic("OAuth Credentials"),
    allure.feature("Encryption and PKCE"),
]


def test_cipher_output_format_and_decrypt() -> None:
    cipher = TokenCipher(MasterKey.generate())

    sealed = cipher.encrypt("access-token-value")

    version, nonce, tag, ciphertext = sealed.split(":")
    assert version == "v1"
    assert len(base64.b64decode(nonce)) == 12
    assert len(base64.b64decode(tag)) == 16
    assert ciphertext
    assert cipher.decrypt(sealed) == "access-token-value"
    assert cipher.encrypt("access-token-value") != sealed


def test_decrypt_with_other_key_fails_authentication() -> None:
    sealed = TokenCipher(MasterKey.generate()).encrypt("secret")

    with pytest.raises(CryptoFormatError, match="authentication"):
        TokenCipher(MasterKey.generate()).decrypt(sealed)


@pytest.mark.parametrize(
    "payload",
    ["", "v1:abc", "v2:AAAA:AAAA:AAAA", "v1::AAAA:AAAA", "v1:!!!:AAAA:AAAA"],
)
def test_decrypt_rejects_malformed_payloads(payload: str) -> None:
    with pytest.raises(CryptoFormatError):
        TokenCipher(MasterKey.generate()).decrypt(payload)


def test_master_key_is_created_once_with_private_mode(tmp_path: Path) -> None:
    path = tmp_path / "data" / "master.key"

    created = MasterKey.load_or_create(path)
    loaded = MasterKey.load_or_create(path)

    assert created == loaded
    assert len(base64.b64decode(path.read_text(encoding="utf-8"))) == 32
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_master_key_rejects_wrong_length(tmp_path: Path) -> None:
    path = tmp_path / "master.key"
    path.write_text(base64.b64encode(b"short").decode("ascii"), encoding="utf-8")

    with pytest.raises(ValueError, match="32 bytes"):
        MasterKey.load_or_create(path)


def test_pkce_values_are_unpadded_base64url() -> None:
    verifier = build_code_verifier()
    challenge = build_code_challenge(verifier)

    assert re.fullmatch(r"[A-Za-z0-9_-]{43}", verifier)
    assert re.fullmatch(r"[A-Za-z0-9_-]{43}", challenge)
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=")
    assert challenge == expected.decode()


def test_pkce_challenge_matches_rfc7636_example() -> None:
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert build_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_state_is_32_hex_chars() -> None:
    assert re.fullmatch(r"[0-9a-f]{32}", build_state())
    assert build_state() != build_state()


def test_base64url_encode_strips_padding() -> None:
    assert base64url_encode(b"\xff\xfe") == "__4"
