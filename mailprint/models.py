"""Typed containers shared across the pipeline."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass
class MessagePart:
    """One node of a message's MIME tree, as reported by the backend."""

    part_id: str
    filename: str = ""
    mime_type: str = "application/octet-stream"
    body_ref: Optional[str] = None
    encoding: Optional[str] = None
    data: Optional[bytes | str] = None
    parts: list["MessagePart"] = field(default_factory=list)

    def walk(self) -> Iterator["MessagePart"]:
        yield self
        for child in self.parts:
            yield from child.walk()

    @property
    def is_attachment(self) -> bool:
        has_body = bool(self.body_ref) or self.data is not None
        return bool(self.filename.strip()) and has_body


@dataclass
class FetchedMessage:
    """Backend message with its parsed part tree. Never persisted."""

    message_id: str
    sender_email: str
    subject: str
    received: Optional[datetime]
    payload: MessagePart
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def iter_parts(self) -> Iterator[MessagePart]:
        return self.payload.walk()


@dataclass
class ExtractedFile:
    """Attachment materialized on disk. The consumer removes it when done."""

    path: Path
    filename: str
    message_id: str
    attachment_key: str
    checksum: str

    def cleanup(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Unable to remove temporary file %s: %s", self.path, exc)


@dataclass
class ExtractionResult:
    files: list[ExtractedFile] = field(default_factory=list)
    skipped: int = 0

    @property
    def complete(self) -> bool:
        return self.skipped == 0


@dataclass
class FetchResult:
    """Outcome of one provider fetch."""

    files: list[ExtractedFile] = field(default_factory=list)
    messages_seen: int = 0
    messages_deleted: int = 0
    parts_skipped: int = 0
