"""Secret vault for Conductor.

Secrets are encrypted at rest with AES-256-GCM. The 256-bit key is derived
with scrypt from the operator-provided master key (CONDUCTOR_MASTER_KEY), so
any implementation that knows the algorithm and the master key can decrypt
a stored value without extra metadata.

Stored format (one text column):
    base64(nonce[12] || tag[16] || ciphertext)

Scopes, highest precedence first:
- runbook: runbook_id set
- environment: only environment set
- organization: neither set

Usage in runbooks:
    steps:
      - id: restart
        name: Restart service
        type: HTTP
        url: https://api.example.com/restart
        headers:
          Authorization: "Bearer ${secrets.API_TOKEN}"
"""

import base64
import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

import Conductor.Core.database as db
import Conductor.Helpers.logSettings as logLevel
from Conductor.Core.exceptions import (
    ConfigurationError,
    DecryptionError,
    SecretNotFoundError,
    SecretResolutionError,
    SecretsError,
)
from Conductor.Core.metrics import record_secret_resolution_failure
from Conductor.Core.utils.datetime_helpers import parse_datetime
from config import get_config

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

MASTER_KEY_ENV_VAR = "CONDUCTOR_MASTER_KEY"

# AES-256-GCM constants
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

# scrypt parameters; changing any of these makes existing secrets unreadable
SCRYPT_SALT = b"conductor-runbook-vault-v1"
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1

INSECURE_DEVELOPMENT_KEY = "conductor-insecure-development-key"

SECRET_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SECRET_COLUMNS = (
    "secret_id, name, type, runbook_id, environment, version, description, "
    "created_by, created_at, updated_at"
)


class SecretType(str, Enum):
    API_KEY = "API_KEY"
    DATABASE_URL = "DATABASE_URL"
    PASSWORD = "PASSWORD"
    TOKEN = "TOKEN"
    CERTIFICATE = "CERTIFICATE"
    OTHER = "OTHER"


class SecretScope(str, Enum):
    RUNBOOK = "runbook"
    ENVIRONMENT = "environment"
    ORGANIZATION = "organization"


@dataclass
class Secret:
    """Secret metadata. Never carries the value."""

    secret_id: int
    name: str
    type: SecretType
    runbook_id: Optional[int]
    environment: Optional[str]
    version: int
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def scope(self) -> SecretScope:
        if self.runbook_id is not None:
            return SecretScope.RUNBOOK
        if self.environment:
            return SecretScope.ENVIRONMENT
        return SecretScope.ORGANIZATION

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (without encrypted value)."""
        return {
            "secret_id": self.secret_id,
            "name": self.name,
            "type": self.type.value,
            "scope": self.scope.value,
            "runbook_id": self.runbook_id,
            "environment": self.environment,
            "version": self.version,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": (self.created_at.isoformat() if self.created_at else None),
            "updated_at": (self.updated_at.isoformat() if self.updated_at else None),
        }


def generate_master_key() -> str:
    """
    Generate a new random master key.

    Returns:
        URL-safe base64 string suitable for CONDUCTOR_MASTER_KEY
    """
    return base64.urlsafe_b64encode(os.urandom(KEY_SIZE)).decode("utf-8")


def derive_key(master_key: str) -> bytes:
    """Derive the AES-256 key from a master key with scrypt."""
    kdf = Scrypt(salt=SCRYPT_SALT, length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(master_key.encode("utf-8"))


def encrypt_value(plaintext: str, key: bytes) -> str:
    """
    Encrypt a value with AES-256-GCM under a fresh random nonce.

    Returns:
        base64(nonce || tag || ciphertext)
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag; the stored layout puts it before the ciphertext
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return base64.b64encode(nonce + tag + ciphertext).decode("ascii")


def decrypt_value(token: str, key: bytes) -> str:
    """
    Decrypt a value produced by encrypt_value.

    Raises:
        DecryptionError: On malformed input, tampering, or the wrong key
    """
    try:
        raw = base64.b64decode(token, validate=True)
    except (ValueError, TypeError) as e:
        raise DecryptionError(f"Malformed ciphertext: {e}")

    if len(raw) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("Malformed ciphertext: too short")

    nonce = raw[:NONCE_SIZE]
    tag = raw[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
    ciphertext = raw[NONCE_SIZE + TAG_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, None).decode("utf-8")
    except InvalidTag:
        raise DecryptionError(
            "Decryption failed. This may indicate tampering or an incorrect master key."
        )


def _parse_secret(data: dict[str, Any]) -> Secret:
    return Secret(
        secret_id=data["secret_id"],
        name=data["name"],
        type=SecretType(data.get("type") or "OTHER"),
        runbook_id=data.get("runbook_id"),
        environment=data.get("environment"),
        version=data.get("version") or 1,
        description=data.get("description"),
        created_by=data.get("created_by"),
        created_at=parse_datetime(data.get("created_at")),
        updated_at=parse_datetime(data.get("updated_at")),
    )


def _scope_rank(row: dict[str, Any]) -> tuple[int, int]:
    """Sort key: runbook scope first, then environment, then organization."""
    if row.get("runbook_id") is not None:
        return (0, 0 if row.get("environment") else 1)
    if row.get("environment"):
        return (1, 0)
    return (2, 0)


def _rows(result: Optional[str], action: str) -> list[dict[str, Any]]:
    if result is None:
        raise SecretsError(f"Database error while trying to {action}")
    return json.loads(str(result))


class SecretVault:
    """
    Encrypts, stores and resolves scoped secrets.

    The vault keeps no per-execution state: every resolve call returns a
    fresh dict, so concurrent executions never see each other's secrets.
    The derived key is computed once and cached behind a lock.
    """

    def __init__(
        self,
        master_key: Optional[str] = None,
        allow_insecure_key: Optional[bool] = None,
    ):
        vault_config = get_config().vault
        self._master_key = master_key if master_key is not None else vault_config.master_key
        self._allow_insecure_key = (
            allow_insecure_key
            if allow_insecure_key is not None
            else vault_config.allow_insecure_key
        )
        self._key: Optional[bytes] = None
        self._key_lock = threading.Lock()
        self._warned_insecure = False

    @property
    def is_configured(self) -> bool:
        return bool(self._master_key)

    def check_configuration(self) -> None:
        """
        Fail loudly when no master key is available.

        Called once at startup. The insecure development key is only used
        when explicitly allowed, and always with a CRITICAL warning.

        Raises:
            ConfigurationError: If no master key is configured
        """
        if self._master_key:
            return
        if not self._allow_insecure_key:
            raise ConfigurationError(
                f"Master key not configured. Set {MASTER_KEY_ENV_VAR} "
                "(generate one with generate_master_key())."
            )
        if not self._warned_insecure:
            self._warned_insecure = True
            logger.log(
                level=50,
                msg=f"{MASTER_KEY_ENV_VAR} is not set; using the INSECURE development "
                "key. Secrets stored now are readable by anyone with this source code.",
            )

    def _get_key(self) -> bytes:
        with self._key_lock:
            if self._key is None:
                self.check_configuration()
                self._key = derive_key(self._master_key or INSECURE_DEVELOPMENT_KEY)
            return self._key

    def encrypt(self, plaintext: str) -> str:
        return encrypt_value(plaintext, self._get_key())

    def decrypt(self, token: str) -> str:
        return decrypt_value(token, self._get_key())

    # ========================================================================
    # Database Operations
    # ========================================================================

    def create(
        self,
        name: str,
        plaintext: str,
        secret_type: SecretType = SecretType.OTHER,
        runbook_id: Optional[int] = None,
        environment: Optional[str] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> int:
        """
        Encrypt and store a new secret.

        Returns:
            The new secret_id

        Raises:
            ConfigurationError: If no master key is configured
            SecretsError: On an invalid name, a duplicate (name, scope),
                or a database error
        """
        if not SECRET_NAME_PATTERN.match(name or ""):
            raise SecretsError(
                f"Invalid secret name format: '{name}'. Must match [A-Za-z_][A-Za-z0-9_]*"
            )

        encrypted = self.encrypt(plaintext)

        if not self.is_name_available(name, runbook_id, environment):
            raise SecretsError(f"Secret '{name}' already exists in this scope")

        rows = _rows(
            db.query_db(
                """
                INSERT INTO conductor.secrets
                (name, encrypted_value, type, runbook_id, environment, description,
                 created_by)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING secret_id
                """,
                (
                    name,
                    encrypted,
                    secret_type.value,
                    runbook_id,
                    environment,
                    description,
                    created_by,
                ),
            ),
            f"create secret '{name}'",
        )
        if not rows:
            raise SecretsError(f"Failed to create secret '{name}'")

        secret_id = rows[0]["secret_id"]
        logger.log(level=20, msg=f"Created secret '{name}' (id: {secret_id})")
        return secret_id

    def _candidates(
        self,
        runbook_id: Optional[int],
        environment: Optional[str],
        name: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        query = (
            "SELECT secret_id, name, encrypted_value, runbook_id, environment "
            "FROM conductor.secrets "
            "WHERE (runbook_id IS NULL OR runbook_id = %s) "
            "AND (environment IS NULL OR environment = %s)"
        )
        params: list[Any] = [runbook_id, environment]
        if name is not None:
            query += " AND name = %s"
            params.append(name)

        rows = _rows(db.query_db(query, tuple(params)), "look up secrets")
        return sorted(rows, key=_scope_rank)

    def resolve(
        self,
        name: str,
        environment: Optional[str] = None,
        runbook_id: Optional[int] = None,
    ) -> str:
        """
        Decrypt the most specific secret with this name.

        Raises:
            SecretNotFoundError: If no scope has a secret with this name
            DecryptionError: If the matching secret cannot be decrypted
        """
        candidates = self._candidates(runbook_id, environment, name)
        if not candidates:
            raise SecretNotFoundError(f"Secret '{name}' not found")
        return self.decrypt(candidates[0]["encrypted_value"])

    def resolve_all_for_execution(
        self, runbook_id: Optional[int], environment: Optional[str]
    ) -> dict[str, str]:
        """
        Materialize every secret visible to one execution.

        A secret that fails to decrypt is logged by name and left out; the
        execution still starts.
        """
        chosen: dict[str, dict[str, Any]] = {}
        for row in self._candidates(runbook_id, environment):
            chosen.setdefault(row["name"], row)

        resolved: dict[str, str] = {}
        for name, row in chosen.items():
            try:
                resolved[name] = self.decrypt(row["encrypted_value"])
            except DecryptionError as e:
                failure = SecretResolutionError(name, str(e))
                logger.log(level=40, msg=str(failure))
                record_secret_resolution_failure()

        logger.log(
            level=10,
            msg=f"Resolved {len(resolved)} of {len(chosen)} secrets for runbook "
            f"{runbook_id} ({environment or 'no environment'})",
        )
        return resolved

    def rotate(self, secret_id: int, new_plaintext: str) -> int:
        """
        Re-encrypt a secret with a new value and bump its version.

        Returns:
            The new version

        Raises:
            SecretNotFoundError: If the secret does not exist
        """
        encrypted = self.encrypt(new_plaintext)
        rows = _rows(
            db.query_db(
                """
                UPDATE conductor.secrets
                SET encrypted_value = %s, version = version + 1, updated_at = NOW()
                WHERE secret_id = %s
                RETURNING version
                """,
                (encrypted, secret_id),
            ),
            f"rotate secret {secret_id}",
        )
        if not rows:
            raise SecretNotFoundError(f"Secret {secret_id} not found")

        version = rows[0]["version"]
        logger.log(level=20, msg=f"Rotated secret {secret_id} to version {version}")
        return version

    def get_secret(self, secret_id: int) -> Optional[Secret]:
        rows = _rows(
            db.query_db(
                f"SELECT {_SECRET_COLUMNS} FROM conductor.secrets WHERE secret_id = %s",
                (secret_id,),
            ),
            f"load secret {secret_id}",
        )
        return _parse_secret(rows[0]) if rows else None

    def list_secrets(
        self, runbook_id: Optional[int] = None, environment: Optional[str] = None
    ) -> list[Secret]:
        """List secret metadata, optionally filtered by scope fields."""
        query = f"SELECT {_SECRET_COLUMNS} FROM conductor.secrets WHERE TRUE"
        params: list[Any] = []
        if runbook_id is not None:
            query += " AND runbook_id = %s"
            params.append(runbook_id)
        if environment is not None:
            query += " AND environment = %s"
            params.append(environment)
        query += " ORDER BY name, secret_id"

        return [
            _parse_secret(r)
            for r in _rows(db.query_db(query, tuple(params)), "list secrets")
        ]

    def delete(self, secret_id: int) -> bool:
        rows = _rows(
            db.query_db(
                "DELETE FROM conductor.secrets WHERE secret_id = %s RETURNING name",
                (secret_id,),
            ),
            f"delete secret {secret_id}",
        )
        if rows:
            logger.log(level=20, msg=f"Deleted secret '{rows[0]['name']}'")
        return bool(rows)

    def is_name_available(
        self,
        name: str,
        runbook_id: Optional[int] = None,
        environment: Optional[str] = None,
    ) -> bool:
        """Check that no secret with this name exists in exactly this scope."""
        rows = _rows(
            db.query_db(
                """
                SELECT secret_id FROM conductor.secrets
                WHERE name = %s
                  AND runbook_id IS NOT DISTINCT FROM %s
                  AND environment IS NOT DISTINCT FROM %s
                """,
                (name, runbook_id, environment),
            ),
            f"check secret name '{name}'",
        )
        return not rows
