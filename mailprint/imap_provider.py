"""IMAP backend (generic servers, Proton Mail Bridge) with a vaulted app password."""

from __future__ import annotations

import base64
import getpass
import imaplib
import logging
import os
import quopri
import re
import time
from datetime import UTC, datetime, timedelta
from email import policy
from email.message import Message
from email.parser import BytesParser
from email.utils import parseaddr, parsedate_to_datetime
from typing import Iterable, Iterator

from .errors import AuthError, ProviderUnavailable
from .models import FetchedMessage, MessagePart
from .providers import Provider, register
from .utils import ensure_utc
from .vault import Token

logger = logging.getLogger(__name__)

ENV_PASSWORD = "IMAP_PASSWORD"
UID_PATTERN = re.compile(rb"UID\s+(\d+)")
LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1"}


def quote_search_value(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_search_criteria(allowed_senders: list[str], since: datetime | None) -> str:
    """IMAP SEARCH program; SINCE is day-granular so callers refine by INTERNALDATE.

    Servers compare SINCE against the date in the message's own timezone, so
    the UTC date is widened by a day to keep west-of-UTC mail in range.
    """
    from_keys = [f"FROM {quote_search_value(sender)}" for sender in allowed_senders]
    senders = "OR " * (len(from_keys) - 1) + " ".join(from_keys)
    criteria = ["UNDELETED", senders]
    if since is not None:
        day = ensure_utc(since) - timedelta(days=1)
        criteria.insert(0, f"SINCE {day.strftime('%d-%b-%Y')}")
    return " ".join(criteria)


def parse_uid_list(data: Iterable[object]) -> list[str]:
    uids: list[str] = []
    for chunk in data:
        if isinstance(chunk, bytes):
            uids.extend(item.decode("ascii") for item in chunk.split())
    return uids


def parse_internaldates(data: Iterable[object]) -> dict[str, datetime]:
    """Map UID to INTERNALDATE from a ``UID FETCH (UID INTERNALDATE)`` response."""
    dates: dict[str, datetime] = {}
    for item in data:
        line = item[0] if isinstance(item, tuple) else item
        if not isinstance(line, bytes):
            continue
        uid_match = UID_PATTERN.search(line)
        stamp = imaplib.Internaldate2tuple(line)
        if uid_match and stamp:
            dates[uid_match.group(1).decode("ascii")] = datetime.fromtimestamp(time.mktime(stamp), tz=UTC)
    return dates


def message_part_tree(message: Message, part_id: str = "") -> MessagePart:
    """Mirror an ``email`` message as MessagePart nodes, keeping transport-encoded bodies."""
    children = []
    if message.is_multipart():
        for index, child in enumerate(message.get_payload(), start=1):
            child_id = f"{part_id}.{index}" if part_id else str(index)
            children.append(message_part_tree(child, child_id))
        data = None
    else:
        data = message.get_payload(decode=False)
    return MessagePart(
        part_id=part_id,
        filename=message.get_filename() or "",
        mime_type=message.get_content_type(),
        encoding=(message.get("Content-Transfer-Encoding") or "7bit").strip().lower(),
        data=data,
        parts=children,
    )


def decode_transfer_encoding(encoding: str | None, raw: bytes | str) -> bytes:
    if isinstance(raw, str):
        raw = raw.encode("ascii", "surrogateescape")
    if encoding == "base64":
        return base64.b64decode(raw)
    if encoding == "quoted-printable":
        return quopri.decodestring(raw)
    return raw


@register("imap")
class ImapProvider(Provider):
    """Poll an IMAP mailbox over one long-lived connection."""

    backend_errors = (imaplib.IMAP4.error, OSError)

    def __init__(self, context, delete_after_fetch, allowed_senders, extractor=None) -> None:
        super().__init__(context, delete_after_fetch, allowed_senders, extractor)
        self.connection: imaplib.IMAP4 | None = None
        self.token: Token | None = None
        self._uidvalidity = ""
        if not self.settings.imap_ssl and self.settings.imap_host not in LOOPBACK_HOSTS:
            logger.warning("IMAP_SSL is disabled for non-local host %s", self.settings.imap_host)

    def authenticate(self) -> None:
        token = self.load_token()
        if token is not None and token.extra.get("user") != self.settings.imap_user:
            logger.info("Stored IMAP credentials belong to another user; asking again")
            token = None
        if token is not None:
            try:
                self._login(token)
                return
            except AuthError as exc:
                logger.warning("Stored IMAP credentials rejected (%s); asking again", exc)

        token = Token(access_token=self._prompt_password(), extra={"user": self.settings.imap_user})
        self._login(token)
        self.vault.save(token)

    def _login(self, token: Token) -> None:
        try:
            self._connect(token)
        except imaplib.IMAP4.abort as exc:
            raise ProviderUnavailable(f"IMAP server {self.settings.imap_host} dropped the connection: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise AuthError(
                f"IMAP login failed for {self.settings.imap_user}: {exc}",
                remediation="Check IMAP_USER and the (app or bridge) password.",
            ) from exc
        except OSError as exc:
            raise ProviderUnavailable(f"Unable to reach IMAP server {self.settings.imap_host}: {exc}") from exc
        self.token = token

    def _prompt_password(self) -> str:
        value = os.environ.get(ENV_PASSWORD)
        if value:
            return value
        return getpass.getpass(f"IMAP password for {self.settings.imap_user}: ")

    def _connect(self, token: Token) -> None:
        self.close()
        host = self.settings.imap_host
        if self.settings.imap_ssl:
            connection = imaplib.IMAP4_SSL(host, self.settings.imap_port or 993)
        else:
            connection = imaplib.IMAP4(host, self.settings.imap_port or 143)
        try:
            connection.login(self.settings.imap_user, token.access_token)
        except imaplib.IMAP4.error:
            connection.shutdown()
            raise
        self.connection = connection

    def _select(self) -> imaplib.IMAP4:
        if self.connection is None:
            if self.token is None:
                raise AuthError("IMAP provider used before authentication")
            self._connect(self.token)
        else:
            try:
                self.connection.noop()
            except (imaplib.IMAP4.abort, OSError):
                logger.info("IMAP connection dropped; reconnecting")
                self._connect(self.token)
        status, _ = self.connection.select(self.settings.imap_mailbox)
        if status != "OK":
            raise imaplib.IMAP4.error(f"cannot select mailbox {self.settings.imap_mailbox}")
        validity = self.connection.response("UIDVALIDITY")[1]
        self._uidvalidity = validity[0].decode("ascii") if validity and validity[0] else ""
        return self.connection

    def _split_id(self, message_id: str) -> str:
        validity, _, uid = message_id.rpartition(":")
        if validity != self._uidvalidity:
            raise imaplib.IMAP4.error(f"UIDVALIDITY changed; message {message_id} is stale")
        return uid

    def list_message_ids(self, since: datetime | None) -> Iterator[str]:
        connection = self._select()
        status, data = connection.uid("SEARCH", None, build_search_criteria(self.allowed_senders, since))
        if status != "OK":
            raise imaplib.IMAP4.error(f"SEARCH failed: {data!r}")
        uids = parse_uid_list(data)
        if not uids:
            return
        if since is not None:
            status, data = connection.uid("FETCH", ",".join(uids), "(UID INTERNALDATE)")
            if status != "OK":
                raise imaplib.IMAP4.error(f"FETCH INTERNALDATE failed: {data!r}")
            dates = parse_internaldates(data)
            uids = [uid for uid in uids if uid not in dates or dates[uid] >= since]
        for uid in uids:
            yield f"{self._uidvalidity}:{uid}"

    def get_message(self, message_id: str) -> FetchedMessage:
        uid = self._split_id(message_id)
        status, data = self.connection.uid("FETCH", uid, "(BODY.PEEK[])")
        raw = next((item[1] for item in data if isinstance(item, tuple)), None)
        if status != "OK" or raw is None:
            raise imaplib.IMAP4.error(f"FETCH failed for UID {uid}")
        parsed = BytesParser(policy=policy.compat32).parsebytes(raw)
        try:
            received = ensure_utc(parsedate_to_datetime(parsed.get("Date", "")))
        except (TypeError, ValueError):
            received = None
        return FetchedMessage(
            message_id=message_id,
            sender_email=parseaddr(parsed.get("From", ""))[1].lower(),
            subject=str(parsed.get("Subject", "")),
            received=received,
            payload=message_part_tree(parsed),
        )

    def retrieve_part(self, message: FetchedMessage, part: MessagePart) -> bytes | str:
        return part.data

    def decode_part(self, part: MessagePart, raw: bytes | str) -> bytes:
        return decode_transfer_encoding(part.encoding, raw)

    def delete_message(self, message_id: str) -> None:
        uid = self._split_id(message_id)
        status, data = self.connection.uid("STORE", uid, "+FLAGS", r"(\Deleted)")
        if status != "OK":
            raise imaplib.IMAP4.error(f"STORE failed for UID {uid}: {data!r}")
        if "UIDPLUS" in self.connection.capabilities:
            status, data = self.connection.uid("EXPUNGE", uid)
        else:
            status, data = self.connection.expunge()
        if status != "OK":
            raise imaplib.IMAP4.error(f"EXPUNGE failed for UID {uid}: {data!r}")
        logger.info("Deleted message UID %s", uid)

    def close(self) -> None:
        if self.connection is None:
            return
        try:
            self.connection.logout()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.debug("IMAP logout failed: %s", exc)
        self.connection = None
