from __future__ import annotations

from datetime import UTC, datetime
from typing import Iterator

from mailprint.models import FetchedMessage, MessagePart
from mailprint.providers import Provider


def attachment(part_id: str, filename: str, data: bytes | str | None = b"payload") -> MessagePart:
    return MessagePart(part_id=part_id, filename=filename, mime_type="application/pdf", data=data)


def make_message(
    message_id: str,
    parts: list[MessagePart],
    sender: str = "alice@example.test",
    received: datetime | None = None,
) -> FetchedMessage:
    return FetchedMessage(
        message_id=message_id,
        sender_email=sender,
        subject=f"Subject {message_id}",
        received=received or datetime(2026, 1, 5, 12, 0, tzinfo=UTC),
        payload=MessagePart(part_id="", mime_type="multipart/mixed", parts=parts),
    )


class FakeProvider(Provider):
    """In-memory backend recording every call the base class makes."""

    name = "fake"

    def __init__(self, context, delete_after_fetch=True, allowed_senders=None, extractor=None) -> None:
        if allowed_senders is None:
            allowed_senders = context.settings.allowed_senders
        super().__init__(context, delete_after_fetch, allowed_senders, extractor)
        self.messages: dict[str, FetchedMessage] = {}
        self.broken_parts: set[tuple[str, str]] = set()
        self.fail_delete: set[str] = set()
        self.fail_get: set[str] = set()
        self.deleted: list[str] = []
        self.queries: list[datetime | None] = []
        self.closed = False
        self.authenticated = 0

    def add(self, message: FetchedMessage) -> None:
        self.messages[message.message_id] = message

    def authenticate(self) -> None:
        self.authenticated += 1

    def list_message_ids(self, since) -> Iterator[str]:
        self.queries.append(since)
        for message_id, message in list(self.messages.items()):
            if since is None or message.received >= since:
                yield message_id

    def get_message(self, message_id: str) -> FetchedMessage:
        if message_id in self.fail_get:
            raise OSError(f"connection reset while fetching {message_id}")
        return self.messages[message_id]

    def retrieve_part(self, message, part):
        if (message.message_id, part.part_id) in self.broken_parts:
            raise OSError("attachment body unavailable")
        return part.data

    def delete_message(self, message_id: str) -> None:
        if message_id in self.fail_delete:
            raise OSError("delete refused")
        self.deleted.append(message_id)
        del self.messages[message_id]

    def close(self) -> None:
        self.closed = True
