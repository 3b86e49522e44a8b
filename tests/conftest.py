"""Shared fixtures: settings and an on-disk application context."""

from __future__ import annotations

import pytest

from mailprint.config import Settings
from mailprint.context import AppContext
from mailprint.state import AppState, StateStore
from mailprint.vault import CredentialVault


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> Settings:
        values = {
            "provider": "imap",
            "imap_host": "127.0.0.1",
            "imap_user": "printer@example.test",
            "allowed_senders_raw": "alice@example.test;@school.example",
            "data_dir": tmp_path / "data",
            "fetch_skew_seconds": 45,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def make_context(make_settings):
    def _make(**overrides) -> AppContext:
        settings = make_settings(**overrides)
        state = AppState.fresh()
        store = StateStore(settings.state_path)
        vault = CredentialVault(settings.token_path, lambda: state.encryption_key)
        return AppContext(settings=settings, state=state, state_store=store, vault=vault)

    return _make


@pytest.fixture
def context(make_context) -> AppContext:
    return make_context()
