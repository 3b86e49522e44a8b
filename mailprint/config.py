"""Configuration management for the mail-to-printer poller."""

from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env early so BaseSettings can pick values up seamlessly.
load_dotenv()

DEFAULT_PRINTER = "default"


def _default_data_dir() -> Path:
    xdg_data_home = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(xdg_data_home) / "mailprint"


def _split_list(
    value: str | Sequence[str] | None,
    coerce_lower: bool = True,
    pattern: str = r"[;,]",
) -> list[str]:
    """Turn delimiter-separated env strings into cleaned, de-duplicated lists."""
    if value is None:
        return []
    if isinstance(value, str):
        items = re.split(pattern, value)
    else:
        items = list(value)
    cleaned: list[str] = []
    for item in items:
        trimmed = item.strip()
        if not trimmed:
            continue
        if coerce_lower:
            trimmed = trimmed.lower()
        if trimmed not in cleaned:
            cleaned.append(trimmed)
    return cleaned


class Settings(BaseSettings):
    """App configuration derived from environment variables."""

    allowed_senders_raw: str = Field("", alias="ALLOWED_SENDERS")
    delete_printed: bool = Field(True, alias="DELETE_PRINTED")
    printer: str = Field(DEFAULT_PRINTER, alias="PRINTER")
    print_flags_raw: str = Field("", alias="PRINT_FLAGS")
    provider: str = Field("google", alias="PROVIDER")
    rasterize_pdf: bool = Field(False, alias="RASTERIZE_PDF")

    data_dir: Path = Field(default_factory=_default_data_dir, alias="MAILPRINT_DATA_DIR")
    poll_interval_seconds: float = Field(60.0, alias="POLL_INTERVAL_SECONDS")
    reauth_interval_hours: float = Field(12.0, alias="REAUTH_INTERVAL_HOURS")
    fetch_skew_seconds: float = Field(45.0, alias="FETCH_SKEW_SECONDS")
    callback_port: int = Field(8080, alias="CALLBACK_PORT")
    ledger_retention_days: float = Field(90.0, alias="LEDGER_RETENTION_DAYS")

    google_client_id: str | None = Field(None, alias="GOOGLE_CLIENT_ID")
    google_client_secret: str | None = Field(None, alias="GOOGLE_CLIENT_SECRET")

    graph_client_id: str | None = Field(None, alias="GRAPH_CLIENT_ID")
    graph_tenant_id: str | None = Field(None, alias="GRAPH_TENANT_ID")
    graph_authority: str | None = Field(None, alias="GRAPH_AUTHORITY")
    graph_page_size: int = Field(25, alias="GRAPH_PAGE_SIZE")
    graph_mail_folder: str | None = Field("Inbox", alias="GRAPH_MAIL_FOLDER")

    imap_host: str | None = Field(None, alias="IMAP_HOST")
    imap_port: int | None = Field(None, alias="IMAP_PORT")
    imap_user: str | None = Field(None, alias="IMAP_USER")
    imap_ssl: bool = Field(True, alias="IMAP_SSL")
    imap_mailbox: str = Field("INBOX", alias="IMAP_MAILBOX")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator(
        "google_client_id",
        "google_client_secret",
        "graph_client_id",
        "graph_tenant_id",
        "graph_authority",
        "graph_mail_folder",
        "imap_host",
        "imap_port",
        "imap_user",
        mode="before",
    )
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value):
        if isinstance(value, str):
            return value.strip().lower() or "google"
        return value

    @field_validator("printer", mode="before")
    @classmethod
    def _normalize_printer(cls, value):
        if isinstance(value, str):
            return value.strip() or DEFAULT_PRINTER
        return value

    @field_validator("poll_interval_seconds", "reauth_interval_hours")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval must be positive")
        return value

    @field_validator("fetch_skew_seconds", "ledger_retention_days")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @model_validator(mode="after")
    def _validate_provider(self):
        # Imported lazily: provider modules import this one.
        from .providers import available_providers

        names = available_providers()
        if self.provider not in names:
            raise ValueError(
                f"PROVIDER must be one of {', '.join(names)}; got '{self.provider}'."
            )
        if self.provider == "google":
            if not (self.google_client_id and self.google_client_secret):
                raise ValueError(
                    "GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required for the google provider."
                )
        elif self.provider == "outlook":
            if not self.graph_client_id:
                raise ValueError("GRAPH_CLIENT_ID is required for the outlook provider.")
        elif self.provider == "imap":
            if not (self.imap_host and self.imap_user):
                raise ValueError("IMAP_HOST and IMAP_USER are required for the imap provider.")
        return self

    @property
    def allowed_senders(self) -> list[str]:
        return _split_list(self.allowed_senders_raw, coerce_lower=True)

    @property
    def print_flags(self) -> list[str]:
        # Flags are passed to lp verbatim; only ';' separates them since values may hold commas.
        return _split_list(self.print_flags_raw, coerce_lower=False, pattern=r";")

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(seconds=self.poll_interval_seconds)

    @property
    def reauth_interval(self) -> timedelta:
        return timedelta(hours=self.reauth_interval_hours)

    @property
    def fetch_skew(self) -> timedelta:
        return timedelta(seconds=self.fetch_skew_seconds)

    @property
    def ledger_retention(self) -> timedelta | None:
        """How long print records are kept; ``None`` keeps them forever."""
        if not self.ledger_retention_days:
            return None
        return timedelta(days=self.ledger_retention_days)

    @property
    def state_path(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def token_path(self) -> Path:
        return self.data_dir / f"token-{self.provider}.bin"

    @property
    def ledger_path(self) -> Path:
        return self.data_dir / "printed.db"

    @property
    def authority_url(self) -> str:
        if self.graph_authority:
            return self.graph_authority.rstrip("/")
        if self.graph_tenant_id:
            return f"https://login.microsoftonline.com/{self.graph_tenant_id}"
        return "https://login.microsoftonline.com/consumers"
