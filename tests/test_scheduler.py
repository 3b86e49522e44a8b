from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mailprint.dedupe_cache import PrintedLedger
from mailprint.errors import AuthError, PrintError, ProviderUnavailable
from mailprint.extractor import AttachmentExtractor
from mailprint.scheduler import PollScheduler
from mailprint.state import INITIAL_WATERMARK
from tests.helpers import FakeProvider, attachment, make_message

START = datetime(2026, 1, 5, 13, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class FakeSink:
    printer = "office"

    def __init__(self) -> None:
        self.printed: list[bytes] = []
        self.fail_contents: set[bytes] = set()

    def print_file(self, path: Path) -> None:
        content = path.read_bytes()
        if content in self.fail_contents:
            raise PrintError("lp exited with status 1", self.printer, "check the printer")
        self.printed.append(content)


class ProviderFactory:
    def __init__(self, setup=None) -> None:
        self.built: list[FakeProvider] = []
        self.setup = setup
        self.error: Exception | None = None

    def __call__(self, context) -> FakeProvider:
        if self.error is not None:
            raise self.error
        provider = FakeProvider.initialize(context, context.settings.delete_printed, context.settings.allowed_senders)
        if self.setup is not None:
            self.setup(provider)
        self.built.append(provider)
        return provider


@pytest.fixture
def ledger(tmp_path):
    ledger = PrintedLedger(tmp_path / "printed.db")
    yield ledger
    ledger.close()


def make_scheduler(context, factory, ledger, sink=None, clock=None, **kwargs) -> PollScheduler:
    return PollScheduler(
        context,
        factory,
        sink or FakeSink(),
        ledger,
        clock=clock or FakeClock(),
        sleep=lambda seconds: None,
        **kwargs,
    )


def two_messages(provider: FakeProvider) -> None:
    provider.add(make_message("m1", [attachment("1", "a.pdf", b"A")]))
    provider.add(make_message("m2", [attachment("1", "b.pdf", b"B")]))


def test_successful_cycle_prints_and_advances_watermark(context, ledger) -> None:
    sink = FakeSink()
    scheduler = make_scheduler(context, ProviderFactory(two_messages), ledger, sink=sink)

    stats = scheduler.run_cycle()

    assert stats.ok
    assert (stats.fetched, stats.printed, stats.failed) == (2, 2, 0)
    assert sorted(sink.printed) == [b"A", b"B"]
    assert context.state.last_fetch == START
    assert ledger.seen("m1", "1:a.pdf")
    context.state_store.wait()
    assert context.state_store.load().last_fetch == START


def test_temporary_files_are_removed(context, ledger, tmp_path) -> None:
    spool = tmp_path / "spool"
    spool.mkdir()

    def setup(provider):
        provider.extractor = AttachmentExtractor(temp_dir=spool)
        two_messages(provider)

    sink = FakeSink()
    scheduler = make_scheduler(context, ProviderFactory(setup), ledger, sink=sink)
    sink.fail_contents.add(b"B")

    scheduler.run_cycle()

    assert list(spool.iterdir()) == []


def test_fetch_failure_keeps_watermark_and_prints_partial(context, ledger) -> None:
    def setup(provider):
        two_messages(provider)
        provider.fail_get.add("m2")

    sink = FakeSink()
    scheduler = make_scheduler(context, ProviderFactory(setup), ledger, sink=sink)

    stats = scheduler.run_cycle()

    assert not stats.ok
    assert sink.printed == [b"A"]
    assert context.state.last_fetch == INITIAL_WATERMARK


def test_duplicates_are_not_printed_twice(context, ledger) -> None:
    ledger.record(message_id="m1", attachment_key="1:a.pdf", filename="a.pdf", checksum="x", printer="office")
    sink = FakeSink()
    scheduler = make_scheduler(context, ProviderFactory(two_messages), ledger, sink=sink)

    stats = scheduler.run_cycle()

    assert sink.printed == [b"B"]
    assert stats.duplicates == 1


def test_print_failure_is_recoverable(context, ledger) -> None:
    sink = FakeSink()
    sink.fail_contents.add(b"A")
    scheduler = make_scheduler(context, ProviderFactory(two_messages), ledger, sink=sink)

    stats = scheduler.run_cycle()

    assert stats.failed == 1
    assert stats.printed == 1
    assert sink.printed == [b"B"]
    assert not ledger.seen("m1", "1:a.pdf")
    assert context.state.last_fetch == START


def test_provider_is_reinitialized_once_per_interval(make_context, ledger) -> None:
    context = make_context(reauth_interval_hours=12)
    clock = FakeClock()
    factory = ProviderFactory()
    scheduler = make_scheduler(context, factory, ledger, clock=clock)

    scheduler.run_cycle()
    clock.advance(timedelta(hours=6))
    scheduler.run_cycle()
    assert len(factory.built) == 1

    clock.advance(timedelta(hours=6, seconds=1))
    scheduler.run_cycle()
    clock.advance(timedelta(minutes=1))
    scheduler.run_cycle()

    assert len(factory.built) == 2
    assert factory.built[0].closed
    assert not factory.built[1].closed


def test_auth_error_on_reinit_propagates(make_context, ledger) -> None:
    context = make_context(reauth_interval_hours=1)
    clock = FakeClock()
    factory = ProviderFactory()
    scheduler = make_scheduler(context, factory, ledger, clock=clock)
    scheduler.run_cycle()

    factory.error = AuthError("refresh token revoked")
    clock.advance(timedelta(hours=2))

    with pytest.raises(AuthError):
        scheduler.run_cycle()


def test_dry_run_leaves_mailbox_and_watermark(make_context, ledger) -> None:
    context = make_context(delete_printed=True)
    sink = FakeSink()
    factory = ProviderFactory(two_messages)
    scheduler = make_scheduler(context, factory, ledger, sink=sink, dry_run=True)

    stats = scheduler.run_cycle()

    assert stats.printed == 2
    assert sink.printed == []
    assert factory.built[0].deleted == []
    assert not ledger.seen("m1", "1:a.pdf")
    assert context.state.last_fetch == INITIAL_WATERMARK


def test_run_stops_after_max_cycles_and_flushes(context, ledger) -> None:
    sleeps: list[float] = []
    factory = ProviderFactory(two_messages)
    scheduler = PollScheduler(
        context, factory, FakeSink(), ledger, clock=FakeClock(), sleep=sleeps.append
    )

    scheduler.run(max_cycles=2)

    assert sleeps == [60.0]
    assert factory.built[0].closed
    assert context.state_store.load().last_fetch == START


def test_later_cycle_uses_previous_start_as_watermark(context, ledger) -> None:
    clock = FakeClock()
    factory = ProviderFactory(two_messages)
    scheduler = make_scheduler(context, factory, ledger, clock=clock)

    scheduler.run_cycle()
    clock.advance(timedelta(minutes=1))
    factory.built[0].add(make_message("m3", [attachment("1", "c.pdf", b"C")], received=START + timedelta(seconds=30)))
    stats = scheduler.run_cycle()

    assert stats.printed == 1
    assert context.state.last_fetch == START + timedelta(minutes=1)


def test_credentials_rejected_mid_fetch_rebuild_provider(context, ledger) -> None:
    def setup(provider):
        two_messages(provider)

        def revoked(message_id):
            raise AuthError("refresh token revoked")

        if len(factory.built) == 0:
            provider.get_message = revoked

    factory = ProviderFactory(setup)
    scheduler = make_scheduler(context, factory, ledger)

    first = scheduler.run_cycle()
    second = scheduler.run_cycle()

    assert not first.ok
    assert factory.built[0].closed
    assert second.ok
    assert second.printed == 2
    assert len(factory.built) == 2


def test_unreachable_provider_on_reinit_is_retried(make_context, ledger) -> None:
    context = make_context(reauth_interval_hours=12)
    clock = FakeClock()
    factory = ProviderFactory(two_messages)
    scheduler = make_scheduler(context, factory, ledger, clock=clock)
    scheduler.run_cycle()

    factory.error = ProviderUnavailable("network unreachable")
    clock.advance(timedelta(hours=13))
    failed = scheduler.run_cycle()

    assert not failed.ok
    assert scheduler.provider is None
    assert factory.built[0].closed
    assert context.state.last_fetch == START

    factory.error = None
    clock.advance(timedelta(minutes=1))
    recovered = scheduler.run_cycle()

    assert recovered.ok
    assert len(factory.built) == 2
    assert context.state.last_fetch == START + timedelta(hours=13, minutes=1)


def test_old_print_records_are_pruned_on_init(make_context, ledger) -> None:
    context = make_context(ledger_retention_days=30)
    ledger.record(
        message_id="old",
        attachment_key="1:a.pdf",
        filename="a.pdf",
        checksum="x",
        printer="office",
        printed_at=START - timedelta(days=31),
    )
    ledger.record(
        message_id="recent",
        attachment_key="1:b.pdf",
        filename="b.pdf",
        checksum="y",
        printer="office",
        printed_at=START - timedelta(days=29),
    )
    scheduler = make_scheduler(context, ProviderFactory(), ledger)

    scheduler.run_cycle()

    assert not ledger.seen("old", "1:a.pdf")
    assert ledger.seen("recent", "1:b.pdf")


def test_zero_retention_keeps_print_records(make_context, ledger) -> None:
    context = make_context(ledger_retention_days=0)
    ledger.record(
        message_id="old",
        attachment_key="1:a.pdf",
        filename="a.pdf",
        checksum="x",
        printer="office",
        printed_at=START - timedelta(days=3650),
    )
    scheduler = make_scheduler(context, ProviderFactory(), ledger)

    scheduler.run_cycle()

    assert ledger.seen("old", "1:a.pdf")
