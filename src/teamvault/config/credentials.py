"""
Encrypted storage for deployment service keys.

Exporting or importing a project needs the service key of the deployment
being read from or written to. Those keys grant full table and storage
access, so they are kept encrypted at rest with Fernet symmetric encryption
and a PBKDF2-derived key.

Security Design:
    - Service keys are never written in plaintext
    - Encryption key derived from a passphrase using PBKDF2 (600,000 iterations)
    - A random 256-bit salt per config directory, kept beside the key file
    - Keys decrypted into memory only while the store is unlocked
    - Salt and key files are readable by the owner only (0600)

The TEAMVAULT_SERVICE_KEY environment variable bypasses the store entirely,
which is the usual setup for CI jobs and one-off migrations.
"""

import base64
import json
import os
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from teamvault.config.settings import DEFAULT_CONFIG_DIR

# OWASP 2023 recommends 600,000 iterations for PBKDF2-SHA256
PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 32  # 256 bits
SESSION_TIMEOUT_SECONDS = 3600
MIN_PASSPHRASE_LENGTH = 12

SERVICE_KEY_ENV = "TEAMVAULT_SERVICE_KEY"


class CredentialError(Exception):
    """Base class for service-key store errors."""

    pass


class CredentialStoreNotInitializedError(CredentialError):
    """No salt or key file exists yet in the config directory."""

    pass


class CredentialStoreLockedError(CredentialError):
    """A key was requested while no unlocked session exists."""

    pass


class InvalidPassphraseError(CredentialError):
    """The passphrase does not decrypt the key file."""

    pass


class CredentialNotFoundError(CredentialError):
    """Raised when no service key is stored for a deployment."""

    pass


@dataclass
class CredentialSession:
    """An unlocked window during which service keys can be decrypted."""

    fernet: Fernet
    created_at: float = field(default_factory=time.time)
    timeout_seconds: int = SESSION_TIMEOUT_SECONDS

    def is_expired(self) -> bool:
        """True once the session has outlived its timeout."""
        return time.time() - self.created_at > self.timeout_seconds


class CredentialStore:
    """
    Encrypted service-key storage, one key per named deployment.

    Usage:
        store = CredentialStore()
        if not store.is_initialized():
            store.initialize("correct horse battery")
        store.unlock("correct horse battery")
        store.set_service_key("production", "eyJhbGciOi...")
        key = store.get_service_key("production")
        store.lock()

    File Structure:
        ~/.teamvault/salt             - Random salt for key derivation
        ~/.teamvault/credentials.enc  - Encrypted JSON object {deployment: key}
    """

    def __init__(self, config_dir: Path | None = None) -> None:
        self.config_dir = config_dir or DEFAULT_CONFIG_DIR
        self.salt_path = self.config_dir / "salt"
        self.credentials_path = self.config_dir / "credentials.enc"
        self._session: CredentialSession | None = None

    def is_initialized(self) -> bool:
        """Return True if salt and credentials files exist."""
        return self.salt_path.exists() and self.credentials_path.exists()

    def initialize(self, passphrase: str) -> None:
        """
        Create a new, empty credential store protected by `passphrase`.

        Raises:
            CredentialError: If the store is already initialized.
            ValueError: If the passphrase is shorter than 12 characters.
        """
        if self.is_initialized():
            raise CredentialError(
                f"Credential store already initialized in {self.config_dir}."
            )

        if len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(
                f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters."
            )

        self.config_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.config_dir, 0o700)
        except OSError:
            pass

        salt = secrets.token_bytes(SALT_LENGTH)
        self._write_secure_file(self.salt_path, salt)

        fernet = self._derive_key(passphrase, salt)
        self._write_secure_file(self.credentials_path, fernet.encrypt(b"{}"))

        self._session = CredentialSession(fernet=fernet)

    def unlock(self, passphrase: str, timeout_seconds: int | None = None) -> None:
        """
        Unlock the store for a session.

        Raises:
            CredentialStoreNotInitializedError: If nothing has been stored yet.
            InvalidPassphraseError: If the passphrase does not decrypt the keys.
        """
        if not self.is_initialized():
            raise CredentialStoreNotInitializedError(
                "Credential store not initialized. "
                "Run 'teamvault configure set-key' first."
            )

        fernet = self._derive_key(passphrase, self.salt_path.read_bytes())
        try:
            fernet.decrypt(self.credentials_path.read_bytes())
        except InvalidToken as e:
            raise InvalidPassphraseError(
                "Wrong passphrase for the service key store."
            ) from e

        self._session = CredentialSession(
            fernet=fernet,
            timeout_seconds=timeout_seconds or SESSION_TIMEOUT_SECONDS,
        )

    def lock(self) -> None:
        """Forget the derived key; the passphrase is needed again."""
        self._session = None

    def is_unlocked(self) -> bool:
        """Return True while a non-expired session exists."""
        if self._session is None:
            return False
        if self._session.is_expired():
            self.lock()
            return False
        return True

    def get_service_key(self, deployment: str) -> str:
        """
        Return the service key stored for `deployment`.

        Raises:
            CredentialStoreLockedError: If the store is locked.
            CredentialNotFoundError: If no key is stored for the deployment.
        """
        self._require_unlocked()
        keys = self._load_keys()
        if deployment not in keys:
            raise CredentialNotFoundError(
                f"No service key stored for deployment '{deployment}'"
            )
        return keys[deployment]

    def set_service_key(self, deployment: str, service_key: str) -> None:
        """Store (or replace) the service key for `deployment`."""
        self._require_unlocked()
        if not service_key:
            raise ValueError("Service key cannot be empty")
        keys = self._load_keys()
        keys[deployment] = service_key
        self._save_keys(keys)

    def delete_service_key(self, deployment: str) -> None:
        """
        Remove the service key for `deployment`.

        Raises:
            CredentialNotFoundError: If no key is stored for the deployment.
        """
        self._require_unlocked()
        keys = self._load_keys()
        if deployment not in keys:
            raise CredentialNotFoundError(
                f"No service key stored for deployment '{deployment}'"
            )
        del keys[deployment]
        self._save_keys(keys)

    def list_deployments(self) -> list[str]:
        """Return the deployments that have a stored key, sorted."""
        self._require_unlocked()
        return sorted(self._load_keys())

    def _require_unlocked(self) -> None:
        if not self.is_unlocked():
            raise CredentialStoreLockedError(
                "Service keys are locked; unlock the store with its passphrase first."
            )

    def _derive_key(self, passphrase: str, salt: bytes) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,  # Fernet requires 32-byte keys
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(passphrase.encode())))

    def _load_keys(self) -> dict[str, str]:
        assert self._session is not None
        decrypted = self._session.fernet.decrypt(self.credentials_path.read_bytes())
        data: dict[str, str] = json.loads(decrypted.decode())
        return data

    def _save_keys(self, keys: dict[str, str]) -> None:
        assert self._session is not None
        encrypted = self._session.fernet.encrypt(json.dumps(keys).encode())
        self._write_secure_file(self.credentials_path, encrypted)

    def _write_secure_file(self, path: Path, data: bytes) -> None:
        """Write atomically (temp file + rename) with owner-only permissions."""
        temp_path = path.with_suffix(".tmp")

        try:
            temp_path.write_bytes(data)
            try:
                os.chmod(temp_path, 0o600)
            except OSError:
                pass
            temp_path.replace(path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise


def resolve_service_key(
    deployment: str,
    credential_store: CredentialStore | None = None,
) -> str:
    """
    Find the service key for a deployment.

    The TEAMVAULT_SERVICE_KEY environment variable wins; otherwise the key
    is read from the (already unlocked) credential store.

    Raises:
        CredentialStoreLockedError: If the store is needed but locked.
        CredentialNotFoundError: If no key is available.
    """
    env_key = os.environ.get(SERVICE_KEY_ENV)
    if env_key:
        return env_key
    if credential_store is None:
        raise CredentialNotFoundError(
            f"No service key for '{deployment}': set {SERVICE_KEY_ENV} "
            "or store one with 'teamvault configure set-key'"
        )
    return credential_store.get_service_key(deployment)
