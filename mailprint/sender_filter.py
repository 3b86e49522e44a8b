"""Client-side check that a fetched message really comes from an allowed sender."""

from __future__ import annotations

import logging
from typing import Iterable

from .models import FetchedMessage

logger = logging.getLogger(__name__)


class SenderFilter:
    """Match sender addresses exactly, or by domain for entries starting with '@'.

    Backend search syntax is looser than this (Gmail's ``from:`` matches
    substrings and display names), so providers re-check every message.
    """

    def __init__(self, allowed_senders: Iterable[str]) -> None:
        self.addresses: set[str] = set()
        self.domains: set[str] = set()
        for sender in allowed_senders:
            sender = sender.strip().lower()
            if not sender:
                continue
            if sender.startswith("@"):
                self.domains.add(sender)
            else:
                self.addresses.add(sender)

    def __bool__(self) -> bool:
        return bool(self.addresses or self.domains)

    def allows(self, message: FetchedMessage) -> bool:
        sender = (message.sender_email or "").lower()
        if not sender:
            logger.debug("Message %s has no sender address", message.message_id)
            return False
        if sender in self.addresses:
            return True
        if any(sender.endswith(domain) for domain in self.domains):
            return True
        logger.debug("Sender %s of message %s is not allowed", sender, message.message_id)
        return False
