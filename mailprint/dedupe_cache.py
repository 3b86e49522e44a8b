"""SQLite-backed ledger that prevents printing the same attachment twice."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import sqlite_utils

from .utils import ensure_utc


class PrintedLedger:
    """Store printed message+attachment keys."""

    TABLE = "printed_attachments"

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db = sqlite_utils.Database(str(db_path))
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.db[self.TABLE].create(
            {
                "message_id": str,
                "attachment_key": str,
                "filename": str,
                "checksum": str,
                "printer": str,
                "printed_at": str,
            },
            pk=("message_id", "attachment_key"),
            if_not_exists=True,
        )

    def seen(self, message_id: str, attachment_key: str) -> bool:
        table = self.db[self.TABLE]
        return (
            table.count_where(
                "message_id = ? and attachment_key = ?", [message_id, attachment_key]
            )
            > 0
        )

    def record(
        self,
        *,
        message_id: str,
        attachment_key: str,
        filename: str,
        checksum: str,
        printer: str,
        printed_at: datetime | None = None,
    ) -> None:
        self.db[self.TABLE].upsert(
            {
                "message_id": message_id,
                "attachment_key": attachment_key,
                "filename": filename,
                "checksum": checksum,
                "printer": printer,
                "printed_at": ensure_utc(printed_at or datetime.now(tz=UTC)).isoformat(),
            },
            pk=("message_id", "attachment_key"),
        )

    def prune(self, older_than: datetime) -> int:
        """Drop records printed before ``older_than``; returns how many went."""
        table = self.db[self.TABLE]
        where, args = "printed_at < ?", [ensure_utc(older_than).isoformat()]
        removed = table.count_where(where, args)
        if removed:
            table.delete_where(where, args)
        return removed

    def close(self) -> None:
        self.db.close()

    @staticmethod
    def delete(db_path: Path) -> None:
        db_path.unlink(missing_ok=True)
