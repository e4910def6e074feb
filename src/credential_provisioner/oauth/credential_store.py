"""Credential storage implementations.

Provides durable storage of provisioned credentials, one row per
provider, with optional encryption at rest.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from credential_provisioner.errors import CredentialMetadataError, CredentialStoreError
from credential_provisioner.logging_config import get_logger

logger = get_logger(__name__)


class ProvisioningSource(str, Enum):
    """Where a stored credential came from."""

    OAUTH = "oauth_generated"
    MANUAL = "manual"


@dataclass(frozen=True)
class CredentialMetadata:
    """Structured metadata attached to a credential row.

    Attributes:
        provisioning_source: Whether the flow or the user created the secret
        key_id: Identifier assigned by the issuing provider
        key_name: Display name of the credential
        created_at: Creation time reported by the provider
        partial_key_hint: Partial form of the secret safe to display
    """

    provisioning_source: ProvisioningSource
    key_id: str | None = None
    key_name: str | None = None
    created_at: str | None = None
    partial_key_hint: str | None = None

    @property
    def is_flow_provisioned(self) -> bool:
        return self.provisioning_source is ProvisioningSource.OAUTH

    def to_dict(self) -> dict[str, str | None]:
        return {
            "type": self.provisioning_source.value,
            "key_id": self.key_id,
            "key_name": self.key_name,
            "created_at": self.created_at,
            "partial_key_hint": self.partial_key_hint,
        }

    @classmethod
    def from_dict(cls, provider: str, data: Any) -> CredentialMetadata:
        """Parse stored metadata.

        Args:
            provider: Provider the row belongs to (for error reporting)
            data: Stored mapping

        Returns:
            CredentialMetadata instance

        Raises:
            CredentialMetadataError: If the record is malformed
        """
        if not isinstance(data, dict):
            detail = f"expected a mapping, got {type(data).__name__}"
            raise CredentialMetadataError(provider, detail)

        try:
            source = ProvisioningSource(data.get("type"))
        except ValueError:
            raise CredentialMetadataError(
                provider, f"unknown provisioning source {data.get('type')!r}"
            ) from None

        values: dict[str, str | None] = {}
        for key in ("key_id", "key_name", "created_at", "partial_key_hint"):
            value = data.get(key)
            if value is not None and not isinstance(value, str | int):
                raise CredentialMetadataError(provider, f"field {key} has invalid type")
            values[key] = None if value is None else str(value)

        return cls(provisioning_source=source, **values)


@dataclass
class Credential:
    """A provider's current credential.

    An empty ``secret`` means the provider row exists but holds no
    usable credential (for example after logout).
    """

    provider: str
    secret: str = field(repr=False)
    metadata: CredentialMetadata | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_secret(self) -> bool:
        return bool(self.secret)


class CredentialStore(ABC):
    """Abstract base class for credential storage.

    Stores hold at most one row per provider and serialize access to a
    single provider's row.
    """

    @abstractmethod
    async def upsert(self, credential: Credential) -> None:
        """Create or replace the row for ``credential.provider``."""

    @abstractmethod
    async def get_by_provider(self, provider: str) -> Credential | None:
        """Retrieve the row for a provider.

        Returns:
            Credential if found, None otherwise

        Raises:
            CredentialMetadataError: If the stored metadata is corrupt
        """

    @abstractmethod
    async def delete(self, provider: str) -> None:
        """Remove the row for a provider entirely."""


class InMemoryCredentialStore(CredentialStore):
    """In-memory credential storage.

    Credentials are lost on restart. Suitable for development and tests.
    """

    def __init__(self) -> None:
        self._credentials: dict[str, Credential] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, credential: Credential) -> None:
        async with self._lock:
            self._credentials[credential.provider] = credential
            logger.debug("Stored credential for %s in memory", credential.provider)

    async def get_by_provider(self, provider: str) -> Credential | None:
        async with self._lock:
            return self._credentials.get(provider)

    async def delete(self, provider: str) -> None:
        async with self._lock:
            if self._credentials.pop(provider, None) is not None:
                logger.debug("Deleted credential for %s", provider)

    def clear(self) -> None:
        """Clear all stored credentials."""
        self._credentials.clear()


class EncryptedFileCredentialStore(CredentialStore):
    """Encrypted file-based credential storage.

    Rows are encrypted as one JSON document with Fernet symmetric
    encryption. Writes go through a temp file and an atomic rename.
    """

    def __init__(self, encryption_key: str, file_path: str | Path) -> None:
        """Initialize encrypted file store.

        Args:
            encryption_key: Fernet-compatible encryption key
            file_path: Path to the credential file

        Raises:
            CredentialStoreError: If encryption key is invalid
        """
        try:
            self._fernet = Fernet(encryption_key.encode())
        except Exception as e:
            raise CredentialStoreError(f"Invalid encryption key: {e}") from e

        self._file_path = Path(file_path)
        self._lock = asyncio.Lock()
        self._data: dict[str, dict[str, Any]] = {}
        self._loaded = False

    async def _load(self) -> None:
        if self._loaded:
            return

        if not self._file_path.exists():
            self._data = {}
            self._loaded = True
            return

        try:
            decrypted = self._fernet.decrypt(self._file_path.read_bytes())
            self._data = json.loads(decrypted.decode())
        except InvalidToken:
            logger.error("Failed to decrypt credential file - wrong key?")
            raise CredentialStoreError("Failed to decrypt credential file") from None
        except json.JSONDecodeError as e:
            logger.error("Failed to parse credential file: %s", e)
            raise CredentialStoreError(f"Failed to parse credential file: {e}") from e

        self._loaded = True
        logger.debug("Loaded %d credential rows from %s", len(self._data), self._file_path)

    async def _save(self) -> None:
        encrypted = self._fernet.encrypt(json.dumps(self._data).encode())

        dir_path = self._file_path.parent
        dir_path.mkdir(parents=True, exist_ok=True)

        fd, temp_path_str = tempfile.mkstemp(dir=dir_path)
        temp_path = Path(temp_path_str)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(encrypted)
            temp_path.replace(self._file_path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    @staticmethod
    def _serialize(credential: Credential) -> dict[str, Any]:
        return {
            "secret": credential.secret,
            "metadata": credential.metadata.to_dict() if credential.metadata else None,
            "created_at": credential.created_at.timestamp(),
        }

    @staticmethod
    def _deserialize(provider: str, row: dict[str, Any]) -> Credential:
        raw_metadata = row.get("metadata")
        metadata = (
            CredentialMetadata.from_dict(provider, raw_metadata)
            if raw_metadata is not None
            else None
        )

        created_at = row.get("created_at")
        return Credential(
            provider=provider,
            secret=str(row.get("secret") or ""),
            metadata=metadata,
            created_at=(
                datetime.fromtimestamp(float(created_at), tz=UTC)
                if created_at is not None
                else datetime.now(UTC)
            ),
        )

    async def upsert(self, credential: Credential) -> None:
        async with self._lock:
            await self._load()
            self._data[credential.provider] = self._serialize(credential)
            await self._save()
            logger.debug("Stored encrypted credential for %s", credential.provider)

    async def get_by_provider(self, provider: str) -> Credential | None:
        async with self._lock:
            await self._load()
            row = self._data.get(provider)
            if row is None:
                return None
            return self._deserialize(provider, row)

    async def delete(self, provider: str) -> None:
        async with self._lock:
            await self._load()
            if provider in self._data:
                del self._data[provider]
                await self._save()
                logger.debug("Deleted encrypted credential for %s", provider)


def create_credential_store(
    encryption_key: str | None = None,
    file_path: str | Path | None = None,
) -> CredentialStore:
    """Create the credential store matching the configuration.

    Args:
        encryption_key: Optional Fernet encryption key
        file_path: Optional path for persistent storage

    Returns:
        Configured CredentialStore instance
    """
    if file_path and encryption_key:
        return EncryptedFileCredentialStore(encryption_key, file_path)
    return InMemoryCredentialStore()
