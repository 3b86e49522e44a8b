"""Turn a fetched message's attachment parts into temporary files."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Callable

from .errors import ExtractionError
from .models import ExtractedFile, ExtractionResult, FetchedMessage, MessagePart
from .utils import file_suffix, sha256_hex

logger = logging.getLogger(__name__)

Retriever = Callable[[FetchedMessage, MessagePart], "bytes | str"]
Decoder = Callable[[MessagePart, "bytes | str"], bytes]


def _identity(part: MessagePart, raw: bytes | str) -> bytes:
    if isinstance(raw, str):
        return raw.encode("utf-8")
    return raw


class AttachmentExtractor:
    """Walk a part tree and materialize every attachment it can.

    A failure on one part is logged and counted; it never discards the
    files already written for the same message.
    """

    def __init__(self, temp_dir: Path | None = None, prefix: str = "mailprint-") -> None:
        self.temp_dir = temp_dir
        self.prefix = prefix

    def extract(
        self,
        message: FetchedMessage,
        retrieve: Retriever,
        decode: Decoder = _identity,
    ) -> ExtractionResult:
        result = ExtractionResult()
        for part in message.iter_parts():
            if not part.is_attachment:
                continue
            try:
                result.files.append(self._materialize(message, part, retrieve, decode))
            except ExtractionError as exc:
                result.skipped += 1
                logger.warning(
                    "Skipping attachment '%s' of message %s: %s",
                    part.filename,
                    message.message_id,
                    exc,
                )
        logger.debug(
            "Message %s: extracted %d attachment(s), skipped %d",
            message.message_id,
            len(result.files),
            result.skipped,
        )
        return result

    def _materialize(
        self,
        message: FetchedMessage,
        part: MessagePart,
        retrieve: Retriever,
        decode: Decoder,
    ) -> ExtractedFile:
        try:
            raw = retrieve(message, part)
        except Exception as exc:
            raise ExtractionError(f"retrieve failed: {exc}") from exc
        try:
            content = decode(part, raw)
        except (ValueError, TypeError) as exc:
            raise ExtractionError(f"decode failed: {exc}") from exc

        fd, name = tempfile.mkstemp(
            suffix=file_suffix(part.filename), prefix=self.prefix, dir=self.temp_dir
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
        except OSError as exc:
            Path(name).unlink(missing_ok=True)
            raise ExtractionError(f"write failed: {exc}") from exc

        return ExtractedFile(
            path=Path(name),
            filename=part.filename,
            message_id=message.message_id,
            attachment_key=f"{part.part_id}:{part.filename}",
            checksum=sha256_hex(content),
        )
