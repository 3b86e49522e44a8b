"""Microsoft Graph backend for Outlook / Microsoft 365 mailboxes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterator

import msal
import requests
from requests import Response

from .errors import AuthError, ProviderUnavailable
from .models import FetchedMessage, MessagePart
from .providers import Provider, register
from .utils import isoformat_utc, parse_graph_datetime
from .vault import Token

logger = logging.getLogger(__name__)

CACHE_KEY = "msal_cache"


def _quote_odata(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_filter(allowed_senders: list[str], since: datetime | None) -> str:
    """OData filter for attachment-bearing mail from the allowed senders.

    Graph has no suffix match on the sender address, so once an ``@domain``
    entry is configured the sender clause is dropped and ``SenderFilter``
    does the matching client-side.
    """
    clauses = []
    if since is not None:
        clauses.append(f"receivedDateTime ge {isoformat_utc(since)}")
    clauses.append("hasAttachments eq true")
    if allowed_senders and not any(sender.startswith("@") for sender in allowed_senders):
        senders = " or ".join(
            f"from/emailAddress/address eq {_quote_odata(sender)}" for sender in allowed_senders
        )
        clauses.append(f"({senders})")
    return " and ".join(clauses)


@register("outlook")
class GraphProvider(Provider):
    """Thin wrapper that authenticates with Graph and yields attachments."""

    GRAPH_BASE = "https://graph.microsoft.com/v1.0"

    backend_errors = (requests.RequestException, OSError)

    def __init__(self, context, delete_after_fetch, allowed_senders, extractor=None) -> None:
        super().__init__(context, delete_after_fetch, allowed_senders, extractor)
        self.session = requests.Session()
        self.scopes = ["Mail.ReadWrite"] if delete_after_fetch else ["Mail.Read"]
        self._token_cache = msal.SerializableTokenCache()
        self.app: msal.PublicClientApplication | None = None

    def authenticate(self) -> None:
        token = self.load_token()
        if token is not None and token.extra.get(CACHE_KEY):
            self._token_cache.deserialize(token.extra[CACHE_KEY])
        self.app = msal.PublicClientApplication(
            client_id=self.settings.graph_client_id,
            authority=self.settings.authority_url,
            token_cache=self._token_cache,
        )
        # Forces a silent refresh or the device flow now rather than on the first fetch.
        self._acquire_token(interactive=True)

    def _acquire_token(self, interactive: bool = False) -> str:
        if self.app is None:
            raise AuthError("Graph provider used before authentication")
        try:
            result = self._request_token(interactive)
        except requests.RequestException as exc:
            raise ProviderUnavailable(f"Unable to reach the Microsoft identity platform: {exc}") from exc
        if "access_token" not in result:
            raise AuthError(
                f"Unable to obtain Graph token: {result.get('error_description')}",
                remediation="Check GRAPH_CLIENT_ID / GRAPH_TENANT_ID and approve the sign-in.",
            )
        self._persist_token_cache()
        return result["access_token"]

    def _request_token(self, interactive: bool) -> dict:
        accounts = self.app.get_accounts()
        result = None
        if accounts:
            result = self.app.acquire_token_silent(self.scopes, account=accounts[0])
        if result:
            return result
        if not interactive:
            raise AuthError(
                "Graph token could not be refreshed silently",
                remediation="Restart mailprint to sign in to Microsoft again.",
            )
        flow = self.app.initiate_device_flow(scopes=self.scopes)
        if "user_code" not in flow:
            raise AuthError(f"Unable to start device code flow: {flow.get('error_description')}")
        print(flow.get("message"), flush=True)
        return self.app.acquire_token_by_device_flow(flow)

    def _persist_token_cache(self) -> None:
        if not self._token_cache.has_state_changed:
            return
        self.vault.save(Token(access_token="", extra={CACHE_KEY: self._token_cache.serialize()}))
        self._token_cache.has_state_changed = False

    def _messages_root(self) -> str:
        if self.settings.graph_mail_folder:
            return f"/me/mailFolders/{self.settings.graph_mail_folder}"
        return "/me"

    def list_message_ids(self, since: datetime | None) -> Iterator[str]:
        url = f"{self.GRAPH_BASE}{self._messages_root()}/messages"
        params = {
            "$select": "id,receivedDateTime",
            "$filter": build_filter(self.allowed_senders, since),
            "$top": self.settings.graph_page_size,
        }
        while url:
            logger.debug("Fetching Graph messages page %s", url)
            payload = self._get(url, params=params).json()
            for raw in payload.get("value", []):
                received = raw.get("receivedDateTime")
                if since is not None and received and parse_graph_datetime(received) < since:
                    continue
                yield raw["id"]
            url = payload.get("@odata.nextLink")
            params = None  # only pass params to the first call

    def get_message(self, message_id: str) -> FetchedMessage:
        raw = self._get(
            f"{self.GRAPH_BASE}/me/messages/{message_id}",
            params={"$select": "id,subject,from,receivedDateTime"},
        ).json()
        sender = (raw.get("from") or {}).get("emailAddress") or {}
        return FetchedMessage(
            message_id=raw["id"],
            sender_email=(sender.get("address") or "").lower(),
            subject=raw.get("subject", ""),
            received=parse_graph_datetime(raw["receivedDateTime"]) if raw.get("receivedDateTime") else None,
            payload=MessagePart(part_id="", parts=self._list_file_attachments(message_id)),
            raw=raw,
        )

    def _list_file_attachments(self, message_id: str) -> list[MessagePart]:
        url = f"{self.GRAPH_BASE}/me/messages/{message_id}/attachments"
        params = {"$select": "id,name,contentType,size,isInline"}
        parts: list[MessagePart] = []

        while url:
            payload = self._get(url, params=params).json()
            for raw in payload.get("value", []):
                if raw.get("@odata.type") != "#microsoft.graph.fileAttachment":
                    continue
                if raw.get("isInline"):
                    logger.debug("Skipping inline attachment %s of message %s", raw.get("name"), message_id)
                    continue
                parts.append(
                    MessagePart(
                        part_id=raw["id"],
                        filename=raw.get("name", ""),
                        mime_type=raw.get("contentType", "application/octet-stream"),
                        body_ref=raw["id"],
                    )
                )
            url = payload.get("@odata.nextLink")
            params = None

        return parts

    def retrieve_part(self, message: FetchedMessage, part: MessagePart) -> bytes:
        url = f"{self.GRAPH_BASE}/me/messages/{message.message_id}/attachments/{part.body_ref}/$value"
        return self._get(url).content

    def delete_message(self, message_id: str) -> None:
        resp = self.session.delete(
            f"{self.GRAPH_BASE}/me/messages/{message_id}",
            headers=self._headers(),
            timeout=30,
        )
        if resp.status_code >= 400:
            logger.error("Graph delete failed (%s): %s", resp.status_code, resp.text)
            resp.raise_for_status()
        logger.info("Deleted message %s", message_id)

    def close(self) -> None:
        self.session.close()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._acquire_token()}"}

    def _get(self, url: str, params: dict | None = None) -> Response:
        resp = self.session.get(url, headers=self._headers(), params=params, timeout=30)
        if resp.status_code >= 400:
            logger.error("Graph request failed (%s): %s", resp.status_code, resp.text)
            resp.raise_for_status()
        return resp
