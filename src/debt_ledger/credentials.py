"""Bearer credential lookup for ledger API requests.

The authentication provider exposes one logical credential. It may live in
several stores under several legacy key names, so lookups try every key in
priority order and, for each key, every store in priority order.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Protocol

from .config import Settings
from .db import Database

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_KEYS = ("authToken", "token", "jwt")
BEARER_PREFIX = "Bearer "


class CredentialStore(Protocol):
    """A named place a bearer token may be stored under several keys."""

    name: str

    def get(self, key: str) -> str | None: ...


class CredentialProvider(Protocol):
    """Anything that can hand out the current bearer token."""

    def get_token(self) -> str | None: ...


class MappingCredentialStore:
    """In-memory, session-scoped credential store."""

    def __init__(
        self, values: Mapping[str, str | None] | None = None, name: str = "session"
    ):
        self.name = name
        self._values = {k: v for k, v in (values or {}).items() if v}

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str):
        self._values[key] = value

    def clear(self):
        self._values.clear()


class DatabaseCredentialStore:
    """Persistent credential store backed by the local database config table."""

    KEY_PREFIX = "credential."

    def __init__(self, database: Database, name: str = "database"):
        self.name = name
        self.db = database

    def get(self, key: str) -> str | None:
        return self.db.get_config(f"{self.KEY_PREFIX}{key}")

    def save_token(self, token: str, key: str = DEFAULT_TOKEN_KEYS[0]):
        """Persist a token under the given key."""
        self.db.set_config(f"{self.KEY_PREFIX}{key}", token)
        logger.info(f"Stored credential under {self.name}.{key}")

    def clear(self, keys: Iterable[str] = DEFAULT_TOKEN_KEYS) -> int:
        """Remove stored tokens. Returns the number of keys removed."""
        removed = sum(1 for key in keys if self.db.delete_config(f"{self.KEY_PREFIX}{key}"))
        logger.info(f"Cleared {removed} stored credential(s) from {self.name}")
        return removed


class StaticCredentialProvider:
    """Provider for a token known up front (or no token at all)."""

    def __init__(self, token: str | None):
        self.token = token

    def get_token(self) -> str | None:
        return self.token


class PrioritizedCredentialProvider:
    """Probes stores and legacy key names in a fixed priority order."""

    def __init__(
        self,
        stores: Sequence[CredentialStore],
        keys: Sequence[str] = DEFAULT_TOKEN_KEYS,
    ):
        self.stores = list(stores)
        self.keys = list(keys)

    def lookup(self) -> tuple[str, str, str] | None:
        """
        Find the highest-priority stored token.

        Returns:
            Tuple of (store_name, key, token), or None if no store holds a token
        """
        for key in self.keys:
            for store in self.stores:
                token = store.get(key)
                if token:
                    return store.name, key, token
        return None

    def get_token(self) -> str | None:
        found = self.lookup()
        if found is None:
            return None
        store_name, key, token = found
        logger.debug(f"Using credential from {store_name}.{key}")
        return token


def format_bearer(token: str) -> str:
    """Build an Authorization header value without double-prefixing."""
    return token if token.startswith(BEARER_PREFIX) else f"{BEARER_PREFIX}{token}"


def mask_token(token: str | None, length: int = 20) -> str | None:
    """Short preview of a token that is safe to log or display."""
    if not token:
        return None
    return f"{token[:length]}..."


def build_credential_provider(
    settings: Settings, database: Database
) -> PrioritizedCredentialProvider:
    """Primary store is the local database, fallback is the session token from settings."""
    return PrioritizedCredentialProvider(
        stores=[
            DatabaseCredentialStore(database),
            MappingCredentialStore({DEFAULT_TOKEN_KEYS[0]: settings.auth_token}),
        ]
    )
