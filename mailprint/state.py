"""Persisted poller state: the fetch watermark and the token encryption key."""

from __future__ import annotations

import base64
import logging
import secrets
import threading
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ValidationError, field_serializer, field_validator

from .utils import ensure_utc, write_private_file

logger = logging.getLogger(__name__)

KEY_SIZE = 32
INITIAL_WATERMARK = datetime.fromtimestamp(1, tz=UTC)


def generate_encryption_key() -> bytes:
    return secrets.token_bytes(KEY_SIZE)


class AppState(BaseModel):
    """Watermark plus the per-installation key used by the credential vault."""

    last_fetch: datetime = INITIAL_WATERMARK
    encryption_key: bytes

    @classmethod
    def fresh(cls) -> "AppState":
        return cls(encryption_key=generate_encryption_key())

    @field_validator("last_fetch")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("encryption_key", mode="before")
    @classmethod
    def _decode_key(cls, value):
        if isinstance(value, str):
            value = base64.b64decode(value, validate=True)
        if isinstance(value, (bytes, bytearray)) and len(value) != KEY_SIZE:
            raise ValueError(f"encryption key must be {KEY_SIZE} bytes")
        return value

    @field_serializer("encryption_key")
    def _encode_key(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    def advance(self, instant: datetime) -> bool:
        """Move the watermark forward; never moves it backwards."""
        instant = ensure_utc(instant)
        if instant <= self.last_fetch:
            return False
        self.last_fetch = instant
        return True


class StateStore:
    """Read and write ``state.json``.

    ``save_async`` hands a snapshot to a background writer and returns at
    once. Every other method first waits for that writer, so a read never
    observes a half-written file and writes never reorder.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._writer: threading.Thread | None = None

    def load(self) -> AppState:
        self.wait()
        if not self.path.exists():
            logger.info("No state file at %s; starting with a fresh state", self.path)
            return AppState.fresh()
        try:
            return AppState.model_validate_json(self.path.read_bytes())
        except (OSError, ValidationError, ValueError) as exc:
            logger.warning("Unable to read state (%s); resetting state", exc)
            return AppState.fresh()

    def save(self, state: AppState) -> None:
        self.wait()
        self._write(state.model_dump_json().encode("utf-8"))

    def save_async(self, state: AppState) -> None:
        """Persist a snapshot without blocking the caller."""
        payload = state.model_dump_json().encode("utf-8")
        with self._lock:
            previous = self._writer
            writer = threading.Thread(
                target=self._write_after,
                args=(previous, payload),
                name="mailprint-state-writer",
                daemon=True,
            )
            self._writer = writer
        writer.start()

    def wait(self, timeout: float | None = None) -> None:
        with self._lock:
            writer = self._writer
        if writer is not None:
            writer.join(timeout)

    def flush(self, state: AppState) -> None:
        """Synchronous final write, used at shutdown."""
        self.save(state)

    def delete(self) -> None:
        self.wait()
        self.path.unlink(missing_ok=True)

    def _write_after(self, previous: threading.Thread | None, payload: bytes) -> None:
        if previous is not None:
            previous.join()
        try:
            self._write(payload)
        except OSError as exc:
            logger.warning("Unable to save state: %s", exc)

    def _write(self, payload: bytes) -> None:
        write_private_file(self.path, payload)
        logger.debug("State written to %s", self.path)
