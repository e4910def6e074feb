"""Tests for credential storage implementations."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from cryptography.fernet import Fernet

if TYPE_CHECKING:
    from pathlib import Path

from credential_provisioner.errors import CredentialMetadataError, CredentialStoreError
from credential_provisioner.oauth.credential_store import (
    Credential,
    CredentialMetadata,
    EncryptedFileCredentialStore,
    InMemoryCredentialStore,
    ProvisioningSource,
    create_credential_store,
)


def create_test_credential(secret: str = "sk-ant-test-secret-value") -> Credential:
    """Create a flow-provisioned Credential for testing."""
    return Credential(
        provider="Anthropic",
        secret=secret,
        metadata=CredentialMetadata(
            provisioning_source=ProvisioningSource.OAUTH,
            key_id="key_01",
            key_name="cli-key",
            created_at="2024-01-01T00:00:00Z",
            partial_key_hint="sk-ant...alue",
        ),
    )


class TestCredentialMetadata:
    """Tests for CredentialMetadata parsing."""

    def test_round_trips_through_dict(self) -> None:
        """Test that to_dict output parses back to the same record."""
        metadata = create_test_credential().metadata
        assert metadata is not None

        assert CredentialMetadata.from_dict("Anthropic", metadata.to_dict()) == metadata

    def test_stores_source_under_type(self) -> None:
        """Test the stored marker of flow-provisioned credentials."""
        metadata = CredentialMetadata(provisioning_source=ProvisioningSource.OAUTH)
        assert metadata.to_dict()["type"] == "oauth_generated"
        assert metadata.is_flow_provisioned is True

    def test_manual_is_not_flow_provisioned(self) -> None:
        """Test manual credentials."""
        metadata = CredentialMetadata(provisioning_source=ProvisioningSource.MANUAL)
        assert metadata.is_flow_provisioned is False

    @pytest.mark.parametrize(
        "data",
        [
            "not-a-mapping",
            {"type": "something_else"},
            {"key_name": "missing type"},
            {"type": "oauth_generated", "key_name": ["list"]},
        ],
    )
    def test_corrupt_metadata_raises(self, data: object) -> None:
        """Test that malformed metadata is reported, not swallowed."""
        with pytest.raises(CredentialMetadataError, match="Anthropic"):
            CredentialMetadata.from_dict("Anthropic", data)


class TestCredential:
    """Tests for Credential dataclass."""

    def test_secret_hidden_from_repr(self) -> None:
        """Test that the secret never appears in repr."""
        credential = create_test_credential()
        assert "sk-ant-test-secret-value" not in repr(credential)

    def test_has_secret(self) -> None:
        """Test the cleared-row check."""
        assert create_test_credential().has_secret is True
        assert Credential(provider="Anthropic", secret="").has_secret is False


class TestInMemoryCredentialStore:
    """Tests for InMemoryCredentialStore class."""

    @pytest.mark.asyncio
    async def test_upsert_and_get(self) -> None:
        """Test storing and retrieving a credential."""
        store = InMemoryCredentialStore()
        credential = create_test_credential()

        await store.upsert(credential)
        retrieved = await store.get_by_provider("Anthropic")

        assert retrieved is not None
        assert retrieved.secret == credential.secret
        assert retrieved.metadata == credential.metadata

    @pytest.mark.asyncio
    async def test_one_row_per_provider(self) -> None:
        """Test that upsert replaces the provider's row."""
        store = InMemoryCredentialStore()

        await store.upsert(create_test_credential("sk-first-secret-1"))
        await store.upsert(create_test_credential("sk-second-secret-2"))

        retrieved = await store.get_by_provider("Anthropic")
        assert retrieved is not None
        assert retrieved.secret == "sk-second-secret-2"

    @pytest.mark.asyncio
    async def test_get_nonexistent(self) -> None:
        """Test retrieving an unknown provider."""
        store = InMemoryCredentialStore()
        assert await store.get_by_provider("Gemini") is None

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        """Test deleting a row."""
        store = InMemoryCredentialStore()
        await store.upsert(create_test_credential())

        await store.delete("Anthropic")

        assert await store.get_by_provider("Anthropic") is None

    def test_clear(self) -> None:
        """Test clearing all rows."""
        store = InMemoryCredentialStore()
        store._credentials["Anthropic"] = create_test_credential()

        store.clear()

        assert len(store._credentials) == 0


class TestEncryptedFileCredentialStore:
    """Tests for EncryptedFileCredentialStore class."""

    @pytest.fixture
    def encryption_key(self) -> str:
        """Generate a valid Fernet key."""
        return Fernet.generate_key().decode()

    @pytest.fixture
    def temp_file(self, tmp_path: Path) -> Path:
        """Create a temporary file path (not the file itself)."""
        return tmp_path / "credentials.enc"

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, encryption_key: str, temp_file: Path) -> None:
        """Test storing and retrieving an encrypted credential."""
        store = EncryptedFileCredentialStore(encryption_key, temp_file)
        credential = create_test_credential()

        await store.upsert(credential)
        retrieved = await store.get_by_provider("Anthropic")

        assert retrieved is not None
        assert retrieved.secret == credential.secret
        assert retrieved.metadata == credential.metadata

    @pytest.mark.asyncio
    async def test_file_is_encrypted(self, encryption_key: str, temp_file: Path) -> None:
        """Test that the secret is not stored in plain text."""
        store = EncryptedFileCredentialStore(encryption_key, temp_file)

        await store.upsert(create_test_credential())

        assert b"sk-ant-test-secret-value" not in temp_file.read_bytes()

    @pytest.mark.asyncio
    async def test_persistence_across_instances(
        self, encryption_key: str, temp_file: Path
    ) -> None:
        """Test that rows persist across store instances."""
        store1 = EncryptedFileCredentialStore(encryption_key, temp_file)
        await store1.upsert(create_test_credential())

        store2 = EncryptedFileCredentialStore(encryption_key, temp_file)
        retrieved = await store2.get_by_provider("Anthropic")

        assert retrieved is not None
        assert retrieved.secret == "sk-ant-test-secret-value"

    @pytest.mark.asyncio
    async def test_cleared_row_is_kept(self, encryption_key: str, temp_file: Path) -> None:
        """Test that an empty secret leaves the provider row in place."""
        store = EncryptedFileCredentialStore(encryption_key, temp_file)
        await store.upsert(create_test_credential())

        await store.upsert(Credential(provider="Anthropic", secret="", metadata=None))
        retrieved = await store.get_by_provider("Anthropic")

        assert retrieved is not None
        assert retrieved.secret == ""
        assert retrieved.metadata is None

    @pytest.mark.asyncio
    async def test_delete(self, encryption_key: str, temp_file: Path) -> None:
        """Test deleting an encrypted row."""
        store = EncryptedFileCredentialStore(encryption_key, temp_file)
        await store.upsert(create_test_credential())

        await store.delete("Anthropic")

        assert await EncryptedFileCredentialStore(encryption_key, temp_file).get_by_provider(
            "Anthropic"
        ) is None

    @pytest.mark.asyncio
    async def test_corrupt_metadata_raises(self, encryption_key: str, temp_file: Path) -> None:
        """Test that unreadable metadata surfaces as CredentialMetadataError."""
        fernet = Fernet(encryption_key.encode())
        payload = {"Anthropic": {"secret": "sk-x", "metadata": {"type": 42}, "created_at": 0}}
        temp_file.write_bytes(fernet.encrypt(json.dumps(payload).encode()))

        store = EncryptedFileCredentialStore(encryption_key, temp_file)

        with pytest.raises(CredentialMetadataError):
            await store.get_by_provider("Anthropic")

    @pytest.mark.asyncio
    async def test_wrong_key_fails(self, encryption_key: str, temp_file: Path) -> None:
        """Test that a wrong key fails to decrypt."""
        await EncryptedFileCredentialStore(encryption_key, temp_file).upsert(
            create_test_credential()
        )

        store = EncryptedFileCredentialStore(Fernet.generate_key().decode(), temp_file)

        with pytest.raises(CredentialStoreError, match="decrypt"):
            await store.get_by_provider("Anthropic")

    def test_invalid_key_raises_error(self, tmp_path: Path) -> None:
        """Test that an invalid encryption key raises error."""
        with pytest.raises(CredentialStoreError, match="Invalid encryption key"):
            EncryptedFileCredentialStore("not-a-valid-key", tmp_path / "test.enc")


class TestCreateCredentialStore:
    """Tests for create_credential_store function."""

    def test_creates_in_memory_by_default(self) -> None:
        """Test that the in-memory store is the default."""
        assert isinstance(create_credential_store(), InMemoryCredentialStore)

    def test_creates_file_store_with_path_and_key(self, tmp_path: Path) -> None:
        """Test that a file store is created with path and key."""
        store = create_credential_store(
            encryption_key=Fernet.generate_key().decode(),
            file_path=str(tmp_path / "credentials.enc"),
        )
        assert isinstance(store, EncryptedFileCredentialStore)
