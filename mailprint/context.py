"""Process-wide collaborators built once at startup and passed explicitly."""

from __future__ import annotations

from dataclasses import dataclass

from .config import Settings
from .state import AppState, StateStore
from .vault import CredentialVault


@dataclass
class AppContext:
    settings: Settings
    state: AppState
    state_store: StateStore
    vault: CredentialVault

    @classmethod
    def load(cls, settings: Settings) -> "AppContext":
        store = StateStore(settings.state_path)
        state = store.load()
        vault = CredentialVault(settings.token_path, lambda: state.encryption_key)
        return cls(settings=settings, state=state, state_store=store, vault=vault)
