"""Tests for the encrypted credential repository."""

import stat
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from noderef.auth.credentials import BasicCredential, OAuth2Credential
from noderef.auth.errors import (
    CredentialDecryptionError,
    CredentialError,
    ServerNotFoundError,
)
from noderef.auth.store import CredentialRepository

from conftest import TEST_MASTER_KEY


class TestInitialization:
    """Tests for key selection and directory setup."""

    def test_explicit_master_key_used(self, repository):
        """Test that an explicit master key wins over the keyring."""
        assert repository.key_source == "environment"

    def test_master_key_from_environment(self, tmp_path, monkeypatch):
        """Test that NODEREF_MASTER_KEY is read when no key is passed."""
        monkeypatch.setenv("NODEREF_MASTER_KEY", "from-env")
        repo = CredentialRepository(tmp_path / "data")
        assert repo.key_source == "environment"

    def test_keyring_used_without_master_key(self, tmp_path, monkeypatch):
        """Test that the keyring provides the key when no master key is set."""
        monkeypatch.delenv("NODEREF_MASTER_KEY", raising=False)
        with patch("noderef.auth.store.keyring") as mock_keyring:
            mock_keyring.get_password.return_value = None
            repo = CredentialRepository(tmp_path / "data")

        assert repo.key_source == "keyring"
        mock_keyring.set_password.assert_called_once()

    def test_fallback_when_keyring_unavailable(self, tmp_path, monkeypatch):
        """Test the machine-derived fallback key."""
        monkeypatch.delenv("NODEREF_MASTER_KEY", raising=False)
        with patch("noderef.auth.store.keyring") as mock_keyring:
            mock_keyring.get_password.side_effect = RuntimeError("no backend")
            repo = CredentialRepository(tmp_path / "data")

        assert repo.key_source == "fallback"

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_directory_permissions(self, repository):
        """Test that the data directory is private to the user."""
        mode = stat.S_IMODE(repository.store_dir.stat().st_mode)
        assert mode == 0o700

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_permissions(self, repository, basic_credential):
        """Test that the credential file is private to the user."""
        repository.add_server("local", "http://localhost:8080", basic_credential)
        mode = stat.S_IMODE(repository.path.stat().st_mode)
        assert mode == 0o600


class TestServerRecords:
    """Tests for server registration."""

    def test_add_and_get_server(self, repository, basic_credential):
        """Test that a registered server can be read back."""
        record = repository.add_server("local", "http://localhost:8080", basic_credential, is_admin=True)

        fetched = repository.get_server(record.id)
        assert fetched is not None
        assert fetched.name == "local"
        assert fetched.auth_type == "basic"
        assert fetched.is_admin is True
        assert fetched.last_accessed is None

    def test_ids_auto_increment(self, repository, basic_credential, oauth_credential):
        """Test that ids are assigned in order and listed sorted."""
        first = repository.add_server("a", "http://a", basic_credential)
        second = repository.add_server("b", "http://b", oauth_credential)

        assert second.id == first.id + 1
        assert [r.id for r in repository.list_servers()] == [first.id, second.id]

    def test_ids_not_reused_after_delete(self, repository, basic_credential):
        """Test that a deleted id is not handed out again."""
        first = repository.add_server("a", "http://a", basic_credential)
        repository.delete_server(first.id)
        second = repository.add_server("b", "http://b", basic_credential)
        assert second.id != first.id

    def test_delete_cascades_to_credentials(self, repository, oauth_credential):
        """Test that deleting a server removes its credential."""
        record = repository.add_server("kc", "http://localhost:8080", oauth_credential)

        assert repository.delete_server(record.id) is True
        assert repository.get_server(record.id) is None
        assert repository.get_credentials(record.id) is None
        assert repository.delete_server(record.id) is False

    def test_touch_server(self, repository, basic_credential):
        """Test that touching records the access time."""
        record = repository.add_server("a", "http://a", basic_credential)
        repository.touch_server(record.id)
        assert repository.get_server(record.id).last_accessed is not None

    def test_touch_unknown_server(self, repository):
        """Test that touching an unknown server raises."""
        with pytest.raises(ServerNotFoundError):
            repository.touch_server(42)

    def test_incomplete_credential_rejected(self, repository):
        """Test that a server cannot be added with an incomplete credential."""
        with pytest.raises(CredentialError):
            repository.add_server("a", "http://a", BasicCredential(username="u", secret=""))


class TestCredentials:
    """Tests for credential reads and patches."""

    def test_roundtrip_oauth_credential(self, repository, oauth_credential):
        """Test that an OAuth2 credential survives storage unchanged."""
        record = repository.add_server("kc", "http://localhost:8080", oauth_credential)
        assert repository.get_credentials(record.id) == oauth_credential

    def test_set_credentials_is_idempotent(self, repository, oauth_credential):
        """Test that the same patch twice leaves the same stored record."""
        record = repository.add_server("kc", "http://localhost:8080", oauth_credential)
        patch_data = {"secret": "access-token-2", "token_expiry": None}

        repository.set_credentials(record.id, patch_data)
        once = repository.get_credentials(record.id)
        repository.set_credentials(record.id, patch_data)
        twice = repository.get_credentials(record.id)

        assert once == twice
        assert twice.secret == "access-token-2"
        assert twice.token_expiry is None
        assert twice.refresh_token == "refresh-token-1"

    def test_auth_type_immutable_through_patch(self, repository, basic_credential):
        """Test that set_credentials cannot switch auth type."""
        record = repository.add_server("a", "http://a", basic_credential)

        with pytest.raises(CredentialError):
            repository.set_credentials(
                record.id,
                {"auth_type": "oauth2", "secret": "at", "provider_host": "h", "realm": "r", "client_id": "c"},
            )
        assert isinstance(repository.get_credentials(record.id), BasicCredential)

    def test_replace_credentials_switches_type(self, repository, basic_credential, oauth_credential):
        """Test that replace_credentials is the way to change auth type."""
        record = repository.add_server("a", "http://a", basic_credential)

        repository.replace_credentials(record.id, oauth_credential)

        assert repository.get_server(record.id).auth_type == "oauth2"
        assert isinstance(repository.get_credentials(record.id), OAuth2Credential)

    def test_set_credentials_unknown_server(self, repository):
        """Test that patching an unknown server raises."""
        with pytest.raises(ServerNotFoundError):
            repository.set_credentials(99, {"secret": "x"})

    def test_failed_patch_leaves_record_untouched(self, repository, basic_credential):
        """Test that a rejected patch does not partially apply."""
        record = repository.add_server("a", "http://a", basic_credential)

        with pytest.raises(CredentialError):
            repository.set_credentials(record.id, {"username": "new", "refresh_token": "rt"})

        assert repository.get_credentials(record.id) == basic_credential


class TestEncryption:
    """Tests for encryption at rest."""

    def test_file_does_not_contain_secrets(self, repository, oauth_credential):
        """Test that tokens are not stored in plain text."""
        repository.add_server("kc", "http://localhost:8080", oauth_credential)
        content = repository.path.read_text()

        assert "access-token-1" not in content
        assert "refresh-token-1" not in content

    def test_other_key_cannot_decrypt(self, tmp_path, basic_credential):
        """Test that a different master key fails with a decryption error."""
        data_dir = tmp_path / "data"
        CredentialRepository(data_dir, master_key=TEST_MASTER_KEY).add_server(
            "a", "http://a", basic_credential
        )

        other = CredentialRepository(data_dir, master_key="some-other-key")
        with pytest.raises(CredentialDecryptionError):
            other.list_servers()

    def test_shared_file_between_instances(self, tmp_path, basic_credential):
        """Test that two repositories with the same key see each other's writes."""
        data_dir = tmp_path / "data"
        first = CredentialRepository(data_dir, master_key=TEST_MASTER_KEY)
        second = CredentialRepository(data_dir, master_key=TEST_MASTER_KEY)

        record = first.add_server("a", "http://a", basic_credential)
        assert second.get_credentials(record.id) == basic_credential

    def test_no_temp_files_left_behind(self, repository, basic_credential):
        """Test that atomic replace cleans up its temporary file."""
        repository.add_server("a", "http://a", basic_credential)
        leftovers = list(Path(repository.store_dir).glob(".servers-*.tmp"))
        assert leftovers == []
