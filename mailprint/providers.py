"""Provider contract shared by every mail backend, plus the name registry."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Callable, ClassVar, Iterator, Sequence

from .errors import AuthError, DecryptError, FetchError, ProviderUnavailable, TokenNotFound
from .extractor import AttachmentExtractor
from .models import FetchedMessage, FetchResult, MessagePart
from .sender_filter import SenderFilter
from .utils import ensure_utc
from .vault import Token

if TYPE_CHECKING:
    from .context import AppContext

logger = logging.getLogger(__name__)

UNIX_EPOCH = datetime.fromtimestamp(0, tz=UTC)

PROVIDERS: dict[str, type["Provider"]] = {}


def register(name: str) -> Callable[[type["Provider"]], type["Provider"]]:
    def decorator(cls: type["Provider"]) -> type["Provider"]:
        cls.name = name
        PROVIDERS[name] = cls
        return cls

    return decorator


def _load_builtin_providers() -> None:
    from . import gmail_provider, graph_provider, imap_provider  # noqa: F401


def available_providers() -> list[str]:
    _load_builtin_providers()
    return sorted(PROVIDERS)


def get_provider_class(name: str) -> type["Provider"]:
    _load_builtin_providers()
    try:
        return PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown provider '{name}'") from None


def build_provider(context: "AppContext") -> "Provider":
    """Instantiate and authenticate the configured provider."""
    settings = context.settings
    cls = get_provider_class(settings.provider)
    return cls.initialize(context, settings.delete_printed, settings.allowed_senders)


class Provider(ABC):
    """Fetch attachments from allow-listed senders and optionally delete the source.

    Subclasses supply authentication and the backend calls; the
    list/extract/delete sequence lives here so every backend deletes a
    message only after all of its attachments were written to disk.
    """

    name: ClassVar[str] = ""
    # Exceptions from the backend client that mean "this cycle failed, try again later".
    backend_errors: ClassVar[tuple[type[BaseException], ...]] = (OSError,)

    def __init__(
        self,
        context: "AppContext",
        delete_after_fetch: bool,
        allowed_senders: Sequence[str],
        extractor: AttachmentExtractor | None = None,
    ) -> None:
        self.context = context
        self.settings = context.settings
        self.vault = context.vault
        self.delete_after_fetch = delete_after_fetch
        self.allowed_senders = list(allowed_senders)
        self.sender_filter = SenderFilter(self.allowed_senders)
        self.extractor = extractor or AttachmentExtractor()

    @classmethod
    def initialize(
        cls,
        context: "AppContext",
        delete_after_fetch: bool,
        allowed_senders: Sequence[str],
    ) -> "Provider":
        provider = cls(context, delete_after_fetch, allowed_senders)
        provider.authenticate()
        logger.info("Provider '%s' ready", cls.name)
        return provider

    @abstractmethod
    def authenticate(self) -> None:
        """Load, refresh or interactively obtain credentials. Raises AuthError."""

    @abstractmethod
    def list_message_ids(self, since: datetime | None) -> Iterator[str]:
        """Yield ids of messages from allowed senders received after ``since``."""

    @abstractmethod
    def get_message(self, message_id: str) -> FetchedMessage:
        ...

    @abstractmethod
    def retrieve_part(self, message: FetchedMessage, part: MessagePart) -> bytes | str:
        ...

    def decode_part(self, part: MessagePart, raw: bytes | str) -> bytes:
        """Undo the backend's transport encoding."""
        if isinstance(raw, str):
            return raw.encode("utf-8")
        return raw

    @abstractmethod
    def delete_message(self, message_id: str) -> None:
        ...

    def close(self) -> None:
        """Release network resources."""

    def load_token(self) -> Token | None:
        """Read the persisted token, treating a missing or unreadable one as absent."""
        try:
            return self.vault.load()
        except TokenNotFound:
            logger.info("No stored credentials for '%s'; interactive authentication required", self.name)
        except DecryptError as exc:
            logger.warning("Stored credentials unreadable (%s); re-authenticating", exc)
        return None

    def query_since(self, after: datetime, delete_fetched: bool) -> datetime | None:
        """Lower time bound for the backend query.

        Deleted messages cannot be fetched twice, so no bound is needed. Otherwise
        the watermark is pulled back by the configured skew to absorb backend
        indexing lag; duplicates from that window are dropped by the printed ledger.
        The bound never drops below the Unix epoch.
        """
        if delete_fetched:
            return None
        return max(ensure_utc(after) - self.settings.fetch_skew, UNIX_EPOCH)

    def fetch_attachments(self, after: datetime, delete_fetched: bool) -> FetchResult:
        result = FetchResult()
        if not self.sender_filter:
            logger.warning("No allowed senders configured; nothing will be fetched")
            return result

        since = self.query_since(after, delete_fetched)
        try:
            for message_id in self.list_message_ids(since):
                message = self.get_message(message_id)
                if not self.sender_filter.allows(message):
                    logger.info(
                        "Ignoring message %s from %s: sender not allowed", message_id, message.sender_email
                    )
                    continue
                result.messages_seen += 1
                extraction = self.extractor.extract(message, self.retrieve_part, self.decode_part)
                result.files.extend(extraction.files)
                result.parts_skipped += extraction.skipped

                if not delete_fetched:
                    continue
                if not extraction.complete:
                    logger.warning(
                        "Keeping message %s: %d attachment(s) could not be extracted",
                        message_id,
                        extraction.skipped,
                    )
                    continue
                try:
                    self.delete_message(message_id)
                    result.messages_deleted += 1
                except self.backend_errors as exc:
                    logger.error("Unable to delete message %s: %s", message_id, exc)
        except self.backend_errors as exc:
            raise FetchError(f"{self.name} fetch failed: {exc}", partial=result) from exc
        except ProviderUnavailable as exc:
            raise FetchError(f"{self.name} unavailable: {exc}", partial=result) from exc
        except AuthError as exc:
            raise FetchError(f"{self.name} credentials rejected: {exc}", partial=result) from exc

        logger.info(
            "Fetched %d message(s): %d file(s), %d skipped part(s), %d deleted",
            result.messages_seen,
            len(result.files),
            result.parts_skipped,
            result.messages_deleted,
        )
        return result
