"""Gmail REST backend with a locally cached, encrypted OAuth token."""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime, timedelta
from email.utils import parseaddr
from typing import Iterator
from urllib.parse import urlencode

import requests
from requests import Response

from .auth_callback import AuthCodeReceiver
from .errors import AuthError, ProviderUnavailable
from .models import FetchedMessage, MessagePart
from .providers import Provider, register
from .utils import decode_base64url, utcnow
from .vault import Token

logger = logging.getLogger(__name__)

READONLY_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"
MODIFY_SCOPE = "https://www.googleapis.com/auth/gmail.modify"
AUTH_TIMEOUT_SECONDS = 600


def build_query(allowed_senders: list[str], since: datetime | None) -> str:
    """Gmail search expression for attachments from the allowed senders."""
    clauses = [f"from:({' OR '.join(allowed_senders)})", "has:attachment"]
    if since is not None:
        clauses.append(f"after:{int(since.timestamp())}")
    return " ".join(clauses)


def parse_part(raw: dict) -> MessagePart:
    body = raw.get("body") or {}
    return MessagePart(
        part_id=raw.get("partId") or "",
        filename=raw.get("filename") or "",
        mime_type=raw.get("mimeType") or "application/octet-stream",
        body_ref=body.get("attachmentId"),
        data=body.get("data"),
        parts=[parse_part(child) for child in raw.get("parts") or []],
    )


@register("google")
class GmailProvider(Provider):
    """Gmail API over ``requests`` with the loopback OAuth callback."""

    AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

    backend_errors = (requests.RequestException, OSError)
    receiver_factory = AuthCodeReceiver

    def __init__(self, context, delete_after_fetch, allowed_senders, extractor=None) -> None:
        super().__init__(context, delete_after_fetch, allowed_senders, extractor)
        self.session = requests.Session()
        self.token: Token | None = None
        self.scopes = [MODIFY_SCOPE if delete_after_fetch else READONLY_SCOPE]

    # -- authentication -------------------------------------------------

    def authenticate(self) -> None:
        token = self.load_token()
        if token is not None and not self._covers_scopes(token):
            logger.info("Stored Gmail token lacks the required scope; re-authenticating")
            token = None
        if token is not None and token.expires_soon():
            try:
                token = self._refresh(token)
            except AuthError as exc:
                logger.warning("Token refresh rejected (%s); re-authenticating", exc)
                token = None
        if token is None:
            token = self._authorize_interactively()
        self.token = token

    def _covers_scopes(self, token: Token) -> bool:
        granted = set(token.extra.get("scopes") or [])
        return set(self.scopes) <= granted or MODIFY_SCOPE in granted

    def _ensure_token(self) -> str:
        if self.token is None:
            raise AuthError("Gmail provider used before authentication")
        if self.token.expires_soon():
            self.token = self._refresh(self.token)
        return self.token.access_token

    def _refresh(self, token: Token) -> Token:
        if not token.refresh_token:
            raise AuthError("Gmail token expired and carries no refresh token")
        logger.debug("Refreshing Gmail access token")
        try:
            response = self.session.post(
                self.TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": token.refresh_token,
                    "client_id": self.settings.google_client_id,
                    "client_secret": self.settings.google_client_secret,
                },
                timeout=30,
            )
        except requests.RequestException as exc:
            raise ProviderUnavailable(f"Unable to reach the Google token endpoint: {exc}") from exc
        refreshed = self._token_from_response(response, fallback_refresh=token.refresh_token)
        refreshed.extra.setdefault("scopes", token.extra.get("scopes") or [])
        self.vault.save(refreshed)
        return refreshed

    def _authorize_interactively(self) -> Token:
        if not (self.settings.google_client_id and self.settings.google_client_secret):
            raise AuthError(
                "Google client credentials are missing",
                remediation="Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.",
            )
        state = secrets.token_urlsafe(16)
        receiver = self.receiver_factory(
            "google", port=self.settings.callback_port, expected_state=state
        )
        receiver.start()
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": receiver.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        print(
            "\nOpen the following link in your browser to authenticate:\n"
            f"{self.AUTH_URL}?{urlencode(params)}\n"
            "Or paste the authorization code here (empty line aborts): ",
            end="",
            flush=True,
        )
        code = receiver.await_code(timeout=AUTH_TIMEOUT_SECONDS)

        try:
            response = self.session.post(
                self.TOKEN_URL,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.settings.google_client_id,
                    "client_secret": self.settings.google_client_secret,
                    "redirect_uri": receiver.redirect_uri,
                },
                timeout=30,
            )
        except requests.RequestException as exc:
            raise AuthError(f"Unable to reach the Google token endpoint: {exc}") from exc
        token = self._token_from_response(response)
        token.extra["scopes"] = self.scopes
        self.vault.save(token)
        return token

    @staticmethod
    def _token_from_response(response: Response, fallback_refresh: str | None = None) -> Token:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderUnavailable(f"Google token endpoint unavailable ({response.status_code})")
        if response.status_code >= 400 or "access_token" not in payload:
            raise AuthError(
                f"Unable to obtain Gmail token: {payload.get('error_description') or payload.get('error') or response.status_code}",
                remediation="Check GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET and that the app may access Gmail.",
            )
        expires_in = int(payload.get("expires_in") or 3600)
        return Token(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or fallback_refresh,
            expiry=utcnow() + timedelta(seconds=expires_in),
        )

    # -- backend calls ----------------------------------------------------

    def list_message_ids(self, since: datetime | None) -> Iterator[str]:
        params = {
            "q": build_query(self.allowed_senders, since),
            "labelIds": "INBOX",
        }
        page_token = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            payload = self._request("GET", f"{self.API_BASE}/messages", params=params).json()
            for raw in payload.get("messages", []):
                yield raw["id"]
            page_token = payload.get("nextPageToken")
            if not page_token:
                return

    def get_message(self, message_id: str) -> FetchedMessage:
        raw = self._request(
            "GET", f"{self.API_BASE}/messages/{message_id}", params={"format": "full"}
        ).json()
        payload = raw.get("payload") or {}
        headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", [])}
        internal_date = raw.get("internalDate")
        return FetchedMessage(
            message_id=raw["id"],
            sender_email=parseaddr(headers.get("from", ""))[1].lower(),
            subject=headers.get("subject", ""),
            received=datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC) if internal_date else None,
            payload=parse_part(payload),
            raw=raw,
        )

    def retrieve_part(self, message: FetchedMessage, part: MessagePart) -> str:
        if part.data is not None:
            return part.data
        url = f"{self.API_BASE}/messages/{message.message_id}/attachments/{part.body_ref}"
        return self._request("GET", url).json()["data"]

    def decode_part(self, part: MessagePart, raw: bytes | str) -> bytes:
        return decode_base64url(raw)

    def delete_message(self, message_id: str) -> None:
        self._request("POST", f"{self.API_BASE}/messages/{message_id}/trash")
        logger.info("Moved message %s to trash", message_id)

    def close(self) -> None:
        self.session.close()

    def _request(self, method: str, url: str, params: dict | None = None) -> Response:
        headers = {"Authorization": f"Bearer {self._ensure_token()}"}
        resp = self.session.request(method, url, headers=headers, params=params, timeout=30)
        if resp.status_code >= 400:
            logger.error("Gmail request failed (%s): %s", resp.status_code, resp.text)
            resp.raise_for_status()
        return resp
