"""The polling loop: fetch, print, advance the watermark, sleep, repeat."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .context import AppContext
from .dedupe_cache import PrintedLedger
from .errors import AuthError, FetchError, PrintError, ProviderUnavailable
from .models import ExtractedFile, FetchResult
from .printer import PrintSink
from .providers import Provider
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CycleStats:
    fetched: int = 0
    printed: int = 0
    duplicates: int = 0
    failed: int = 0
    ok: bool = True


class PollScheduler:
    """Drive one provider in a strictly sequential fetch/print loop.

    The watermark moves only after a cycle's fetch and print phase has
    finished, and never on a cycle whose fetch failed. Independently of token
    expiry the provider is rebuilt once ``reauth_interval`` has passed since
    the last (re)initialization.
    """

    def __init__(
        self,
        context: AppContext,
        provider_factory: Callable[[AppContext], Provider],
        sink: PrintSink,
        ledger: PrintedLedger,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        dry_run: bool = False,
    ) -> None:
        self.context = context
        self.settings = context.settings
        self.provider_factory = provider_factory
        self.sink = sink
        self.ledger = ledger
        self.clock = clock
        self.sleep = sleep
        self.dry_run = dry_run
        self.provider: Provider | None = None
        self.initialized_at: datetime | None = None

    def ensure_provider(self) -> Provider:
        """Build the provider, or rebuild it when the re-auth interval has elapsed.

        AuthError propagates: without credentials no cycle can make progress.
        ProviderUnavailable propagates too and leaves no provider behind, so the
        next cycle tries again.
        """
        now = self.clock()
        if self.provider is not None and now - self.initialized_at < self.settings.reauth_interval:
            return self.provider
        if self.provider is not None:
            logger.info("Re-authentication interval elapsed; reinitializing provider")
            self._discard_provider()
        self.provider = self.provider_factory(self.context)
        self.initialized_at = now
        self._prune_ledger(now)
        return self.provider

    def _prune_ledger(self, now: datetime) -> None:
        retention = self.settings.ledger_retention
        if retention is None or self.dry_run:
            return
        removed = self.ledger.prune(now - retention)
        if removed:
            logger.info("Pruned %d print record(s) older than %s", removed, retention)

    def _discard_provider(self) -> None:
        if self.provider is not None:
            self.provider.close()
            self.provider = None

    def run_cycle(self) -> CycleStats:
        stats = CycleStats()
        try:
            provider = self.ensure_provider()
        except ProviderUnavailable as exc:
            logger.error("Provider unavailable; retrying next cycle without advancing: %s", exc)
            stats.ok = False
            return stats
        self.context.state_store.wait()
        watermark = self.context.state.last_fetch
        started = self.clock()
        logger.debug("Polling for mail received after %s", watermark.isoformat())

        try:
            # A dry run must leave the mailbox untouched.
            delete = self.settings.delete_printed and not self.dry_run
            result = provider.fetch_attachments(watermark, delete)
        except FetchError as exc:
            logger.error("Fetch failed; retrying next cycle without advancing: %s", exc)
            stats.ok = False
            # Messages already deleted upstream only survive in these files.
            result = exc.partial or FetchResult()
            if isinstance(exc.__cause__, AuthError):
                logger.warning("Credentials rejected during fetch; reinitializing next cycle")
                self._discard_provider()

        stats.fetched = len(result.files)
        for extracted in result.files:
            self._dispatch(extracted, stats)

        if stats.ok and not self.dry_run:
            if self.context.state.advance(started):
                self.context.state_store.save_async(self.context.state)
        logger.info(
            "Cycle done: fetched=%s printed=%s duplicates=%s failed=%s",
            stats.fetched,
            stats.printed,
            stats.duplicates,
            stats.failed,
        )
        return stats

    def _dispatch(self, extracted: ExtractedFile, stats: CycleStats) -> None:
        try:
            if self.ledger.seen(extracted.message_id, extracted.attachment_key):
                logger.info(
                    "Already printed '%s' from message %s; skipping",
                    extracted.filename,
                    extracted.message_id,
                )
                stats.duplicates += 1
                return

            if self.dry_run:
                logger.info("[DRY-RUN] Would print '%s' from message %s", extracted.filename, extracted.message_id)
                stats.printed += 1
                return

            try:
                self.sink.print_file(extracted.path)
            except PrintError as exc:
                logger.error("Failed to print '%s': %s. %s", extracted.filename, exc, exc.hint)
                stats.failed += 1
                return

            self.ledger.record(
                message_id=extracted.message_id,
                attachment_key=extracted.attachment_key,
                filename=extracted.filename,
                checksum=extracted.checksum,
                printer=self.sink.printer,
                printed_at=self.clock(),
            )
            stats.printed += 1
        finally:
            extracted.cleanup()

    def run(self, max_cycles: int | None = None) -> None:
        cycles = 0
        try:
            while True:
                self.run_cycle()
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                self.sleep(self.settings.poll_interval.total_seconds())
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self._discard_provider()
        self.context.state_store.flush(self.context.state)
