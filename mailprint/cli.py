"""Command line entry point: poll the configured mailbox and print attachments."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from .config import Settings
from .context import AppContext
from .dedupe_cache import PrintedLedger
from .errors import AuthError
from .printer import PrintSink
from .providers import build_provider
from .scheduler import PollScheduler
from .utils import ensure_utc

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print mail attachments from allowed senders.")
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    parser.add_argument("--since", type=parse_datetime, help="ISO8601 timestamp (UTC) to start from")
    parser.add_argument(
        "--since-days",
        type=int,
        help="Shortcut for '--since' expressed as N days ago (integers only)",
    )
    parser.add_argument("--dry-run", action="store_true", help="List files without printing or deleting")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Forget the watermark, stored credentials and print history, then exit",
    )
    return parser


def parse_datetime(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(UTC)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid ISO timestamp: {value}") from exc


def resolve_since(args: argparse.Namespace) -> datetime | None:
    if args.since and args.since_days:
        raise SystemExit("Use either --since or --since-days, not both.")
    if args.since:
        return ensure_utc(args.since)
    if args.since_days:
        return datetime.now(tz=UTC) - timedelta(days=args.since_days)
    return None


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def reset(context: AppContext) -> None:
    context.vault.clear()
    context.state_store.delete()
    PrintedLedger.delete(context.settings.ledger_path)
    logger.info("Removed state, credentials and print history from %s", context.settings.data_dir)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level)

    context = AppContext.load(settings)
    if args.reset:
        reset(context)
        return 0

    since = resolve_since(args)
    if since is not None:
        context.state.last_fetch = since

    ledger = PrintedLedger(settings.ledger_path)
    sink = PrintSink(settings.printer, settings.print_flags, rasterize_pdf=settings.rasterize_pdf)
    scheduler = PollScheduler(context, build_provider, sink, ledger, dry_run=args.dry_run)

    try:
        scheduler.run(max_cycles=1 if args.once else None)
    except AuthError as exc:
        logger.error("Authentication failed: %s", exc)
        if exc.remediation:
            print(exc.remediation, file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down")
        return 130
    finally:
        ledger.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
