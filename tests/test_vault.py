from __future__ import annotations

import os
import stat
from datetime import UTC, datetime, timedelta

import pytest

from mailprint.errors import DecryptError, TokenNotFound
from mailprint.state import generate_encryption_key
from mailprint.vault import NONCE_SIZE, CredentialVault, Token


def make_vault(tmp_path, key: bytes | None = None) -> CredentialVault:
    key = key or generate_encryption_key()
    return CredentialVault(tmp_path / "token.bin", lambda: key)


def sample_token() -> Token:
    return Token(
        access_token="ya29.very-secret-access",
        refresh_token="1//refresh-secret",
        expiry=datetime(2026, 3, 1, 8, 30, tzinfo=UTC),
        extra={"scopes": ["gmail.readonly"]},
    )


def test_encrypt_decrypt_round_trip(tmp_path) -> None:
    vault = make_vault(tmp_path)
    for payload in (b"", b"x", b'{"access_token": "abc"}', os.urandom(4096)):
        assert vault.decrypt(vault.encrypt(payload)) == payload


def test_encrypt_uses_fresh_nonce_every_call(tmp_path) -> None:
    vault = make_vault(tmp_path)
    first = vault.encrypt(b"same input")
    second = vault.encrypt(b"same input")

    assert first != second
    assert first[:NONCE_SIZE] != second[:NONCE_SIZE]


def test_saved_token_never_contains_plaintext(tmp_path) -> None:
    vault = make_vault(tmp_path)
    token = sample_token()

    vault.save(token)
    blob = vault.path.read_bytes()

    assert token.to_json() not in blob
    assert b"very-secret-access" not in blob
    assert b"refresh-secret" not in blob
    assert vault.load() == token


def test_token_file_is_private(tmp_path) -> None:
    vault = make_vault(tmp_path)
    vault.save(sample_token())

    mode = stat.S_IMODE(vault.path.stat().st_mode)
    assert mode == 0o600


def test_flipped_tag_byte_raises_decrypt_error(tmp_path) -> None:
    vault = make_vault(tmp_path)
    vault.save(sample_token())
    blob = bytearray(vault.path.read_bytes())
    blob[-1] ^= 0x01
    vault.path.write_bytes(bytes(blob))

    with pytest.raises(DecryptError):
        vault.load()


def test_truncation_and_tampering_are_indistinguishable(tmp_path) -> None:
    vault = make_vault(tmp_path)
    sealed = bytearray(vault.encrypt(b"payload"))
    sealed[NONCE_SIZE] ^= 0xFF

    with pytest.raises(DecryptError) as truncated:
        vault.decrypt(b"short")
    with pytest.raises(DecryptError) as tampered:
        vault.decrypt(bytes(sealed))

    assert str(truncated.value) == str(tampered.value)


def test_wrong_key_raises_decrypt_error(tmp_path) -> None:
    make_vault(tmp_path).save(sample_token())

    with pytest.raises(DecryptError):
        make_vault(tmp_path).load()


def test_missing_token_raises_not_found(tmp_path) -> None:
    with pytest.raises(TokenNotFound):
        make_vault(tmp_path).load()


def test_failed_encryption_leaves_previous_token(tmp_path) -> None:
    key = generate_encryption_key()
    keys = {"current": key}
    vault = CredentialVault(tmp_path / "token.bin", lambda: keys["current"])
    vault.save(sample_token())
    before = vault.path.read_bytes()

    keys["current"] = b"too short"
    with pytest.raises(ValueError):
        vault.save(Token(access_token="replacement"))

    assert vault.path.read_bytes() == before


def test_clear_removes_token(tmp_path) -> None:
    vault = make_vault(tmp_path)
    vault.save(sample_token())
    vault.clear()
    vault.clear()

    assert not vault.path.exists()


def test_token_repr_hides_secrets() -> None:
    text = repr(sample_token())

    assert "very-secret-access" not in text
    assert "refresh-secret" not in text


def test_expires_soon_honours_margin() -> None:
    now = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)

    assert not Token("a", expiry=now + timedelta(minutes=5)).expires_soon(now)
    assert Token("a", expiry=now + timedelta(seconds=30)).expires_soon(now)
    assert Token("a", expiry=now - timedelta(seconds=1)).expires_soon(now)
    assert not Token("a").expires_soon(now)
