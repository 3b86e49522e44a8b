"""Utility helpers shared across modules."""

from __future__ import annotations

import base64
import os
import tempfile
from datetime import UTC, datetime
from hashlib import sha256
from pathlib import Path, PurePath

DEFAULT_SUFFIX = ".bin"


def parse_graph_datetime(value: str) -> datetime:
    """Convert Graph ISO strings (with trailing Z) into aware UTC datetimes."""
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Force a datetime into UTC without altering instant."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def isoformat_utc(dt: datetime) -> str:
    """Return an ISO string with a trailing Z, as Graph expects."""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def sha256_hex(payload: bytes) -> str:
    """Convenience wrapper for hex digests."""
    return sha256(payload).hexdigest()


def decode_base64url(data: str | bytes) -> bytes:
    """Decode Gmail's URL-safe base64, tolerating stripped padding."""
    if isinstance(data, str):
        data = data.encode("ascii")
    data = data.strip()
    padding = -len(data) % 4
    return base64.b64decode(data + b"=" * padding, altchars=b"-_", validate=True)


def file_suffix(filename: str) -> str:
    """Return the filename's extension including the dot, or the opaque default."""
    suffix = PurePath(filename).suffix
    if not suffix or suffix == ".":
        return DEFAULT_SUFFIX
    return suffix.lower()


def write_private_file(path: Path, payload: bytes) -> None:
    """Atomically replace ``path`` with ``payload``, readable only by the owner."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        os.chmod(tmp_name, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
