"""Credential vault – the single source of truth for Slack secrets.

The connection manager never keeps secrets in its own state; it asks the
vault.  :class:`EncryptedVault` keeps one Fernet-encrypted JSON blob in the
``settings`` table, :class:`InMemoryVault` keeps the same record in memory.
"""

from __future__ import annotations

import json
import logging
from abc import ABC
from abc import abstractmethod
from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import replace
from typing import Optional

from chatgate.crud import crud
from chatgate.database import Database
from chatgate.errors import ConfigurationError
from chatgate.utils.crypto import decrypt
from chatgate.utils.crypto import encrypt

logger = logging.getLogger(__name__)

VAULT_SETTING_KEY = "vault.slack_credentials"


@dataclass
class VaultCredentials:
    client_id: str
    client_secret: str
    access_token: Optional[str] = None
    team_id: Optional[str] = None
    team_name: Optional[str] = None

    @property
    def has_token(self) -> bool:
        return bool(self.access_token)

    def __repr__(self) -> str:  # never leak secrets into logs
        return f"VaultCredentials(client_id={self.client_id!r}, has_token={self.has_token}, team_id={self.team_id!r})"


class CredentialVault(ABC):
    """Opaque secure key/value store for the Slack app credentials."""

    @abstractmethod
    async def store(self, client_id: str, client_secret: str) -> None:
        """Persist client credentials (drops a token issued for another client id)."""

    @abstractmethod
    async def store_token(self, access_token: str, team_id: str, team_name: str) -> None:
        """Attach the bot token of a completed OAuth exchange."""

    @abstractmethod
    async def get(self) -> Optional[VaultCredentials]:
        """Return the stored credentials or ``None``."""

    @abstractmethod
    async def delete(self) -> None:
        """Remove everything.  Deleting an empty vault is not an error."""


def _merge(current: Optional[VaultCredentials], client_id: str, client_secret: str) -> VaultCredentials:
    if current is not None and current.client_id == client_id:
        return replace(current, client_secret=client_secret)
    return VaultCredentials(client_id=client_id, client_secret=client_secret)


class InMemoryVault(CredentialVault):
    def __init__(self, credentials: Optional[VaultCredentials] = None):
        self._credentials = credentials

    async def store(self, client_id: str, client_secret: str) -> None:
        self._credentials = _merge(self._credentials, client_id, client_secret)

    async def store_token(self, access_token: str, team_id: str, team_name: str) -> None:
        if self._credentials is None:
            raise ConfigurationError("Cannot store a token before client credentials")
        self._credentials = replace(self._credentials, access_token=access_token, team_id=team_id, team_name=team_name)

    async def get(self) -> Optional[VaultCredentials]:
        return replace(self._credentials) if self._credentials is not None else None

    async def delete(self) -> None:
        self._credentials = None


class EncryptedVault(CredentialVault):
    """Fernet-encrypted vault persisted in the ``settings`` table."""

    def __init__(self, database: Database, key: str = VAULT_SETTING_KEY):
        self._db = database
        self._key = key

    async def store(self, client_id: str, client_secret: str) -> None:
        current = await self.get()
        await self._write(_merge(current, client_id, client_secret))

    async def store_token(self, access_token: str, team_id: str, team_name: str) -> None:
        current = await self.get()
        if current is None:
            raise ConfigurationError("Cannot store a token before client credentials")
        await self._write(replace(current, access_token=access_token, team_id=team_id, team_name=team_name))

    async def get(self) -> Optional[VaultCredentials]:
        blob = await self._db.read(lambda db: crud.get_setting(db, self._key))
        if blob is None:
            return None
        try:
            data = json.loads(decrypt(blob))
            return VaultCredentials(**data)
        except (ValueError, TypeError) as exc:
            # Wrong key or corrupted blob – treat as "no usable credentials".
            logger.error("Vault contents could not be decrypted: %s", exc)
            return None

    async def delete(self) -> None:
        await self._db.write(lambda db: crud.delete_setting(db, self._key))

    async def _write(self, credentials: VaultCredentials) -> None:
        blob = encrypt(json.dumps(asdict(credentials)))
        await self._db.write(lambda db: crud.set_setting(db, self._key, blob))


__all__ = ["CredentialVault", "EncryptedVault", "InMemoryVault", "VaultCredentials", "VAULT_SETTING_KEY"]
