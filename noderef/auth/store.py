"""Encrypted credential repository.

Server records and their credentials are kept in one JSON document,
encrypted with:
- Fernet symmetric encryption (AES-128-CBC + HMAC)
- A master key from NODEREF_MASTER_KEY, the OS keyring, or a
  machine-derived fallback, in that order
- Restricted file permissions and file locking

Every mutation is a read-modify-write under an exclusive lock followed by an
atomic replace, so a credential update is atomic per server record.
"""

import base64
import hashlib
import json
import logging
import os
import stat
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .credentials import (
    ServerCredential,
    apply_patch,
    credential_from_dict,
    normalize_auth_type,
)
from .errors import (
    CredentialDecryptionError,
    CredentialError,
    CredentialStoreError,
    ServerNotFoundError,
)

logger = logging.getLogger(__name__)

# File locking support
if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so readers lock exclusively too.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


KEYRING_SERVICE = "noderef"
KEYRING_USERNAME = "credential-encryption-key"

MASTER_KEY_ENV_VAR = "NODEREF_MASTER_KEY"

SERVERS_FILE = "servers.json"


def _derive_fallback_key() -> bytes:
    """Derive an encryption key from machine-specific data.

    Used when neither an explicit master key nor a keyring is available.
    Less secure than keyring but still keeps credentials encrypted at rest.
    """
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "noderef")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


def _key_from_master_secret(secret: str) -> bytes:
    """Turn an operator-supplied master key into a Fernet key.

    A value that already is a Fernet key is used as is; anything else is
    hashed down to 32 bytes.
    """
    raw = secret.strip()
    if not raw:
        raise CredentialStoreError(f"{MASTER_KEY_ENV_VAR} must not be empty")
    try:
        if len(base64.urlsafe_b64decode(raw.encode("ascii"))) == 32:
            return raw.encode("ascii")
    except (ValueError, UnicodeEncodeError):
        pass
    return base64.urlsafe_b64encode(hashlib.sha256(raw.encode("utf-8")).digest())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ServerRecord:
    """A registered remote content server.

    Credentials are not part of the record; fetch them with
    CredentialRepository.get_credentials().
    """

    id: int
    name: str
    base_url: str
    auth_type: str
    is_admin: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    last_accessed: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "base_url": self.base_url,
            "auth_type": self.auth_type,
            "is_admin": self.is_admin,
            "created_at": self.created_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServerRecord":
        last_accessed = data.get("last_accessed")
        return cls(
            id=int(data["id"]),
            name=data["name"],
            base_url=data["base_url"],
            auth_type=normalize_auth_type(data["auth_type"]),
            is_admin=bool(data.get("is_admin", False)),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_accessed=datetime.fromisoformat(last_accessed) if last_accessed else None,
        )


class CredentialRepository:
    """Encrypted, per-server storage of server records and credentials.

    Files live in the data directory (default ~/.noderef) with restricted
    permissions (directory 0700, files 0600).
    """

    def __init__(self, store_dir: Path, master_key: str | None = None):
        """Initialize the repository.

        Args:
            store_dir: Directory holding the encrypted document
            master_key: Optional explicit master key; defaults to
                NODEREF_MASTER_KEY, then the keyring
        """
        self.store_dir = store_dir
        self._cipher: Fernet | None = None
        self._key_source = "uninitialized"

        self._init_storage()
        self._init_encryption(master_key or os.environ.get(MASTER_KEY_ENV_VAR))

    def _init_storage(self) -> None:
        """Initialize storage directory with secure permissions."""
        self.store_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self, master_key: str | None) -> None:
        """Initialize encryption from the master key, keyring or fallback."""
        if master_key:
            self._cipher = Fernet(_key_from_master_secret(master_key))
            self._key_source = "environment"
            logger.debug("Using explicit master key for credential encryption")
            return

        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            self._key_source = "keyring"
            logger.debug("Using keyring for encryption key storage")

        except Exception as e:
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using fallback encryption (machine-derived key). "
                f"Set {MASTER_KEY_ENV_VAR} or install a keyring backend for stronger protection."
            )
            self._cipher = Fernet(_derive_fallback_key())
            self._key_source = "fallback"

    @property
    def key_source(self) -> str:
        """Where the encryption key came from: environment, keyring or fallback."""
        return self._key_source

    @property
    def path(self) -> Path:
        return self.store_dir / SERVERS_FILE

    def _encrypt(self, data: str) -> str:
        if self._cipher is None:
            raise CredentialStoreError("Encryption not initialized")
        return self._cipher.encrypt(data.encode("utf-8")).decode("ascii")

    def _decrypt(self, data: str) -> str:
        if self._cipher is None:
            raise CredentialStoreError("Encryption not initialized")
        try:
            return self._cipher.decrypt(data.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise CredentialDecryptionError(
                "Cannot decrypt stored credentials. The encryption key may have changed. "
                "Remove and re-register the affected servers."
            ) from e

    def _load(self) -> dict[str, Any]:
        """Read and decrypt the document (caller holds the lock)."""
        if not self.path.exists():
            return {"next_id": 1, "servers": {}}

        encrypted = self.path.read_text()
        if not encrypted.strip():
            return {"next_id": 1, "servers": {}}

        try:
            data: dict[str, Any] = json.loads(self._decrypt(encrypted))
        except json.JSONDecodeError as e:
            raise CredentialDecryptionError(
                f"Credential file {self.path.name} is corrupted."
            ) from e

        data.setdefault("next_id", 1)
        data.setdefault("servers", {})
        return data

    def _save(self, data: dict[str, Any]) -> None:
        """Encrypt and atomically replace the document (caller holds the lock)."""
        encrypted = self._encrypt(json.dumps(data, indent=2))

        fd, tmp_name = tempfile.mkstemp(dir=self.store_dir, prefix=".servers-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(encrypted)
            try:
                os.chmod(tmp_name, stat.S_IRUSR | stat.S_IWUSR)
            except OSError as e:
                logger.warning(f"Could not set file permissions: {e}")
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _read(self) -> dict[str, Any]:
        with _file_lock(self.path, exclusive=False):
            return self._load()

    def _update(self, mutate: Callable[[dict[str, Any]], Any]) -> Any:
        """Apply mutate to the document under an exclusive lock and persist it."""
        with _file_lock(self.path, exclusive=True):
            data = self._load()
            result = mutate(data)
            self._save(data)
            return result

    @staticmethod
    def _entry(data: dict[str, Any], server_id: int) -> dict[str, Any]:
        entry = data["servers"].get(str(server_id))
        if entry is None:
            raise ServerNotFoundError(f"Server {server_id} not found", {"server_id": server_id})
        return entry

    # Server operations

    def add_server(
        self,
        name: str,
        base_url: str,
        credential: ServerCredential,
        is_admin: bool = False,
    ) -> ServerRecord:
        """Register a server together with its credential.

        The credential's type fixes the server's auth type.
        """
        if not credential.is_complete():
            raise CredentialError(f"Incomplete {credential.auth_type} credentials")

        def mutate(data: dict[str, Any]) -> ServerRecord:
            server_id = int(data["next_id"])
            data["next_id"] = server_id + 1
            record = ServerRecord(
                id=server_id,
                name=name,
                base_url=base_url,
                auth_type=credential.auth_type,
                is_admin=is_admin,
            )
            data["servers"][str(server_id)] = {
                **record.to_dict(),
                "credential": credential.to_dict(),
            }
            return record

        record = self._update(mutate)
        logger.info(f"Registered server {record.id} ({record.name}, {record.auth_type})")
        return record

    def get_server(self, server_id: int) -> ServerRecord | None:
        entry = self._read()["servers"].get(str(server_id))
        return ServerRecord.from_dict(entry) if entry else None

    def list_servers(self) -> list[ServerRecord]:
        servers = self._read()["servers"]
        return sorted(
            (ServerRecord.from_dict(e) for e in servers.values()), key=lambda s: s.id
        )

    def delete_server(self, server_id: int) -> bool:
        """Delete a server record and, with it, its credential.

        Returns:
            True if deleted, False if not found
        """

        def mutate(data: dict[str, Any]) -> bool:
            return data["servers"].pop(str(server_id), None) is not None

        deleted: bool = self._update(mutate)
        if deleted:
            logger.info(f"Deleted server {server_id} and its credentials")
        return deleted

    def touch_server(self, server_id: int) -> None:
        """Update the last-accessed timestamp."""

        def mutate(data: dict[str, Any]) -> None:
            self._entry(data, server_id)["last_accessed"] = _utcnow().isoformat()

        self._update(mutate)

    def set_admin(self, server_id: int, is_admin: bool) -> None:
        def mutate(data: dict[str, Any]) -> None:
            self._entry(data, server_id)["is_admin"] = is_admin

        self._update(mutate)

    # Credential operations

    def get_credentials(self, server_id: int) -> ServerCredential | None:
        """Get the credential for a server.

        Returns:
            The credential, or None if the server or its credential is absent
        """
        entry = self._read()["servers"].get(str(server_id))
        if not entry or not entry.get("credential"):
            return None

        try:
            return credential_from_dict(entry["credential"])
        except (CredentialError, ValueError) as e:
            logger.warning(f"Invalid credential data for server {server_id}: {e}")
            return None

    def set_credentials(self, server_id: int, patch: dict[str, Any]) -> ServerCredential:
        """Partially update a server's credential.

        The server's auth type cannot change through a patch.

        Returns:
            The stored credential

        Raises:
            ServerNotFoundError: If the server is not registered
            CredentialError: If the patch is invalid for the auth type
        """

        def mutate(data: dict[str, Any]) -> ServerCredential:
            entry = self._entry(data, server_id)
            stored = entry.get("credential")
            current = credential_from_dict(stored) if stored else None
            credential = apply_patch(current, patch, auth_type=entry["auth_type"])
            if credential.auth_type != normalize_auth_type(entry["auth_type"]):
                raise CredentialError(
                    f"Server {server_id} uses {entry['auth_type']} authentication"
                )
            entry["credential"] = credential.to_dict()
            return credential

        credential: ServerCredential = self._update(mutate)
        logger.debug(f"Updated credentials for server {server_id}")
        return credential

    def replace_credentials(self, server_id: int, credential: ServerCredential) -> None:
        """Recreate a server's credential, possibly switching auth type."""
        if not credential.is_complete():
            raise CredentialError(f"Incomplete {credential.auth_type} credentials")

        def mutate(data: dict[str, Any]) -> None:
            entry = self._entry(data, server_id)
            entry["auth_type"] = credential.auth_type
            entry["credential"] = credential.to_dict()

        self._update(mutate)
        logger.info(f"Replaced credentials for server {server_id} ({credential.auth_type})")
