"""Encrypted at-rest storage for provider tokens."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .errors import DecryptError, TokenNotFound
from .utils import ensure_utc, utcnow, write_private_file

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
REFRESH_MARGIN = timedelta(seconds=60)


@dataclass
class Token:
    """Credential bundle persisted by a provider. Secrets are kept out of repr."""

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expiry: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def expires_soon(self, now: datetime | None = None, margin: timedelta = REFRESH_MARGIN) -> bool:
        if self.expiry is None:
            return False
        now = now or utcnow()
        return ensure_utc(self.expiry) - margin <= now

    def to_json(self) -> bytes:
        payload = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry": ensure_utc(self.expiry).isoformat() if self.expiry else None,
            "extra": self.extra,
        }
        return json.dumps(payload).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "Token":
        payload = json.loads(raw)
        expiry = payload.get("expiry")
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expiry=datetime.fromisoformat(expiry) if expiry else None,
            extra=payload.get("extra") or {},
        )


class CredentialVault:
    """Encrypt, decrypt and persist a provider token.

    The vault never stores the key; ``key_source`` is called on every
    operation so the key stays owned by the application state. The on-disk
    format is ``nonce || ciphertext || tag`` (ChaCha20-Poly1305).
    """

    def __init__(self, path: Path, key_source: Callable[[], bytes]) -> None:
        self.path = path
        self._key_source = key_source
        self._lock = threading.Lock()

    def _cipher(self) -> ChaCha20Poly1305:
        return ChaCha20Poly1305(self._key_source())

    def encrypt(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._cipher().encrypt(nonce, plaintext, None)

    def decrypt(self, ciphertext: bytes) -> bytes:
        cipher = self._cipher()
        if len(ciphertext) < NONCE_SIZE:
            raise DecryptError("stored token could not be decrypted")
        nonce, sealed = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
        try:
            return cipher.decrypt(nonce, sealed, None)
        except InvalidTag:
            raise DecryptError("stored token could not be decrypted") from None

    def load(self) -> Token:
        with self._lock:
            try:
                blob = self.path.read_bytes()
            except FileNotFoundError:
                raise TokenNotFound(f"no token stored at {self.path}") from None
        plaintext = self.decrypt(blob)
        try:
            return Token.from_json(plaintext)
        except (ValueError, KeyError, TypeError):
            raise DecryptError("stored token has an unexpected layout") from None

    def save(self, token: Token) -> None:
        # Encrypt before touching the file so a failure leaves the old token intact.
        blob = self.encrypt(token.to_json())
        with self._lock:
            write_private_file(self.path, blob)
        logger.info("Saved encrypted credentials to %s", self.path)

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
