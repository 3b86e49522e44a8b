from __future__ import annotations

from datetime import UTC, datetime, timedelta

from mailprint.dedupe_cache import PrintedLedger


def record(ledger: PrintedLedger, message_id: str, key: str, printed_at: datetime | None = None) -> None:
    ledger.record(
        message_id=message_id,
        attachment_key=key,
        filename="a.pdf",
        checksum="c0ffee",
        printer="default",
        printed_at=printed_at,
    )


def test_records_are_keyed_by_message_and_attachment(tmp_path) -> None:
    ledger = PrintedLedger(tmp_path / "nested" / "printed.db")
    record(ledger, "m1", "1:a.pdf")

    assert ledger.seen("m1", "1:a.pdf")
    assert not ledger.seen("m1", "2:a.pdf")
    assert not ledger.seen("m2", "1:a.pdf")
    ledger.close()


def test_recording_twice_keeps_one_row(tmp_path) -> None:
    ledger = PrintedLedger(tmp_path / "printed.db")
    record(ledger, "m1", "1:a.pdf")
    record(ledger, "m1", "1:a.pdf")

    assert ledger.db[PrintedLedger.TABLE].count == 1
    ledger.close()


def test_history_survives_reopen_and_delete(tmp_path) -> None:
    path = tmp_path / "printed.db"
    ledger = PrintedLedger(path)
    record(ledger, "m1", "1:a.pdf")
    ledger.close()

    reopened = PrintedLedger(path)
    assert reopened.seen("m1", "1:a.pdf")
    reopened.close()

    PrintedLedger.delete(path)
    PrintedLedger.delete(path)
    assert not path.exists()


def test_prune_drops_only_expired_records(tmp_path) -> None:
    now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    ledger = PrintedLedger(tmp_path / "printed.db")
    record(ledger, "m1", "1:a.pdf", printed_at=now - timedelta(days=91))
    record(ledger, "m2", "1:a.pdf", printed_at=now - timedelta(days=90, seconds=-1))
    record(ledger, "m3", "1:a.pdf")

    assert ledger.prune(now - timedelta(days=90)) == 1
    assert not ledger.seen("m1", "1:a.pdf")
    assert ledger.seen("m2", "1:a.pdf")
    assert ledger.seen("m3", "1:a.pdf")
    assert ledger.prune(now - timedelta(days=90)) == 0
    ledger.close()
