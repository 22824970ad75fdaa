"""
Encrypted environment variables for agent-swarm sessions.

Values are sealed with AES-256-GCM under a per-installation key held by a
platform Key Custodian (macOS Keychain, libsecret, or a DPAPI-protected
file on Windows). Only ciphertext ever reaches the registry.
"""

import base64
import binascii
import os
import secrets
import sys
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from agent_swarm.exceptions import (
    DecryptionError,
    InvalidNameError,
    ProviderOperationError,
    SecretNotFoundError,
    UnsupportedPlatformError,
)
from agent_swarm.interfaces.process import ProcessRunner
from agent_swarm.logging import get_logger
from agent_swarm.paths import validate_name
from agent_swarm.powershell import powershell_command, ps_quote
from agent_swarm.registry import Registry
from agent_swarm.ssh import is_valid_env_name

log = get_logger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16

KEYSTORE_SERVICE = "agent-swarm"
KEYSTORE_ACCOUNT = "master-key"


# ── encryption ───────────────────────────────────────────────────────────────

def encrypt_value(plaintext: str, key: bytes) -> str:
    """Seal *plaintext*; returns base64(nonce || ciphertext || tag)."""
    nonce = secrets.token_bytes(NONCE_BYTES)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_value(encoded: str, key: bytes) -> str:
    """Open a value produced by :func:`encrypt_value`.

    Raises DecryptionError on malformed input or a failed tag check.
    """
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("Stored secret is not valid base64") from e
    if len(raw) < NONCE_BYTES + TAG_BYTES:
        raise DecryptionError("Stored secret is truncated")

    nonce, sealed = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, sealed, None)
    except InvalidTag as e:
        raise DecryptionError("Secret failed authentication (wrong key or tampered value)") from e
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted secret is not valid UTF-8") from e


def _parse_hex_key(text: str, source: str) -> bytes:
    try:
        key = bytes.fromhex(text.strip())
    except ValueError as e:
        raise DecryptionError(f"Master key in {source} is malformed") from e
    if len(key) != KEY_BYTES:
        raise DecryptionError(f"Master key in {source} has the wrong length")
    return key


# ── key custodians ───────────────────────────────────────────────────────────

class KeyCustodian(ABC):
    """Holds the installation's 256-bit master key in a platform key store.

    ``get_or_create_key`` generates and stores a key on first use, then
    re-reads the store so that if another process won a first-use race we
    use the key that actually persisted.
    """

    description = "key store"

    def __init__(self, runner: ProcessRunner):
        self.runner = runner
        self._cached: Optional[bytes] = None
        self._lock = threading.Lock()

    def get_or_create_key(self) -> bytes:
        with self._lock:
            if self._cached is not None:
                return self._cached

            key = self._load()
            if key is None:
                log.info("master_key.generate", store=self.description)
                self._store(secrets.token_bytes(KEY_BYTES))
                key = self._load()
                if key is None:
                    raise ProviderOperationError(
                        f"Master key was stored but could not be read back from the {self.description}"
                    )
            self._cached = key
            return key

    @abstractmethod
    def _load(self) -> Optional[bytes]:
        """Return the stored key, or None when there is none yet."""
        pass

    @abstractmethod
    def _store(self, key: bytes) -> None:
        pass


class KeychainKeyCustodian(KeyCustodian):
    """macOS login Keychain via the ``security`` tool."""

    description = "macOS Keychain"

    def _load(self) -> Optional[bytes]:
        result = self.runner.run(
            [
                "security", "find-generic-password",
                "-s", KEYSTORE_SERVICE, "-a", KEYSTORE_ACCOUNT, "-w",
            ],
            check=False,
        )
        if not result.success or not result.stdout:
            return None
        return _parse_hex_key(result.stdout, self.description)

    def _store(self, key: bytes) -> None:
        # no -U: if another process added the item first, ours fails and we read theirs
        self.runner.run(
            [
                "security", "add-generic-password",
                "-s", KEYSTORE_SERVICE, "-a", KEYSTORE_ACCOUNT, "-w", key.hex(),
            ],
            check=False,
        )


class LibsecretKeyCustodian(KeyCustodian):
    """Freedesktop Secret Service via ``secret-tool``; the key goes over stdin."""

    description = "Secret Service"

    def _load(self) -> Optional[bytes]:
        result = self.runner.run(
            ["secret-tool", "lookup", "service", KEYSTORE_SERVICE, "account", KEYSTORE_ACCOUNT],
            check=False,
        )
        if not result.success or not result.stdout:
            return None
        return _parse_hex_key(result.stdout, self.description)

    def _store(self, key: bytes) -> None:
        self.runner.run(
            [
                "secret-tool", "store", f"--label={KEYSTORE_SERVICE}",
                "service", KEYSTORE_SERVICE, "account", KEYSTORE_ACCOUNT,
            ],
            input=key.hex(),
        )


class DpapiKeyCustodian(KeyCustodian):
    """Key file under %APPDATA% encrypted with DPAPI for the current user."""

    description = "DPAPI key file"

    def __init__(self, runner: ProcessRunner, key_file: Optional[Path] = None):
        super().__init__(runner)
        if key_file is None:
            app_data = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
            key_file = Path(app_data) / "agent-swarm" / "master.key"
        self.key_file = Path(key_file)

    def _load(self) -> Optional[bytes]:
        if not self.key_file.exists():
            return None
        script = (
            "Add-Type -AssemblyName System.Security; "
            f"$encrypted = [IO.File]::ReadAllBytes({ps_quote(self.key_file)}); "
            "$plain = [Security.Cryptography.ProtectedData]::Unprotect("
            "$encrypted, $null, [Security.Cryptography.DataProtectionScope]::CurrentUser); "
            "[BitConverter]::ToString($plain).Replace('-', '')"
        )
        return _parse_hex_key(self.runner.run(powershell_command(script)).stdout, self.description)

    def _store(self, key: bytes) -> None:
        self.key_file.parent.mkdir(parents=True, exist_ok=True)
        staging = self.key_file.with_name(f"{self.key_file.name}.{os.getpid()}.tmp")
        script = (
            "Add-Type -AssemblyName System.Security; "
            "$hex = [Console]::In.ReadToEnd().Trim(); "
            "$bytes = [byte[]]($hex -split '(..)' -ne '' | ForEach-Object { [Convert]::ToByte($_, 16) }); "
            "$encrypted = [Security.Cryptography.ProtectedData]::Protect("
            "$bytes, $null, [Security.Cryptography.DataProtectionScope]::CurrentUser); "
            f"[IO.File]::WriteAllBytes({ps_quote(staging)}, $encrypted)"
        )
        self.runner.run(powershell_command(script), input=key.hex())
        try:
            # rename refuses to clobber on Windows, so the first writer wins
            os.rename(staging, self.key_file)
        except FileExistsError:
            staging.unlink(missing_ok=True)


def create_key_custodian(runner: ProcessRunner, platform: str = sys.platform) -> KeyCustodian:
    if platform == "darwin":
        return KeychainKeyCustodian(runner)
    if platform.startswith("linux"):
        return LibsecretKeyCustodian(runner)
    if platform == "win32":
        return DpapiKeyCustodian(runner)
    raise UnsupportedPlatformError(f"Unsupported platform for key storage: {platform}")


# ── backend ──────────────────────────────────────────────────────────────────

class SecretBackend:
    """Scoped, encrypted variables. Scope "" is global; otherwise a project name."""

    def __init__(self, registry: Registry, custodian: KeyCustodian):
        self.registry = registry
        self.custodian = custodian

    def _key(self) -> bytes:
        return self.custodian.get_or_create_key()

    def set(self, name: str, value: str, scope: str = "") -> None:
        if not is_valid_env_name(name):
            raise InvalidNameError(f"Invalid environment variable name: {name!r}")
        if scope:
            validate_name(scope, "project name")
        self.registry.upsert_secret(name, scope, encrypt_value(value, self._key()))
        log.info("secret.set", name=name, scope=scope or "global")

    def get(self, name: str, scope: str = "") -> str:
        stored = self.registry.get_secret(name, scope)
        if stored is None:
            raise SecretNotFoundError(name, scope)
        return decrypt_value(stored, self._key())

    def remove(self, name: str, scope: str = "") -> bool:
        removed = self.registry.remove_secret(name, scope)
        if removed:
            log.info("secret.removed", name=name, scope=scope or "global")
        return removed

    def list(self, scope: Optional[str] = None) -> List[Tuple[str, str]]:
        """``(name, scope)`` pairs; values are never returned in bulk."""
        return [(s.name, s.scope) for s in self.registry.list_secrets(scope)]

    def resolve(self, project: str) -> Dict[str, str]:
        """Variables visible to *project*: globals, overlaid by project values."""
        rows = self.registry.list_secrets("")
        if project:
            rows += self.registry.list_secrets(project)
        if not rows:
            return {}

        key = self._key()
        env: Dict[str, str] = {}
        for secret in rows:
            env[secret.name] = decrypt_value(secret.value, key)
        return env
