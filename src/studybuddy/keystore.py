"""
StudyBuddy - Client key store.

Ensures each user has exactly one RSA keypair and that the private half
never leaves the client:

- LocalKeyStorage is a small key-value file scoped to one application
  install (namespace). It holds the ``privateKey`` entry across sessions,
  optionally sealed under a passphrase with Argon2id + AES-256-GCM.
- KeyStore lazily generates the keypair on the first authenticated session,
  persists the private key locally and publishes the public key to the
  directory. Publishing failures are retried on the next ensure call.
"""

import asyncio
import functools
import inspect
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
from cryptography.hazmat.primitives.asymmetric import rsa

from . import crypto
from .constants import (
    DEFAULT_KEY_NAMESPACE,
    KEY_STORAGE_VERSION,
    PRIVATE_KEY_ENTRY,
    PUBLISH_TIMEOUT,
)
from .errors import ErrorCode, KeyGenerationError, KeyStorageError, PublishError

logger = logging.getLogger(__name__)

# Set while a generated public key still has to reach the directory
PUBLISH_PENDING_ENTRY = "publishPending"

_NAMESPACE_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


class LocalKeyStorage:
    """Scoped, file-backed key-value store for client secrets."""

    def __init__(
        self,
        directory: Path,
        namespace: str = DEFAULT_KEY_NAMESPACE,
        passphrase: Optional[str] = None,
    ):
        """
        Initialize local key storage.

        Args:
            directory: Directory holding the storage file
            namespace: Application install namespace (one file per namespace)
            passphrase: Optional passphrase sealing every stored value
        """
        if not _NAMESPACE_PATTERN.match(namespace):
            raise KeyStorageError(
                ErrorCode.E104_KEY_STORAGE_FAILED,
                f"Invalid storage namespace: {namespace!r}",
            )
        self.namespace = namespace
        self.path = Path(directory).expanduser() / f"keys-{namespace}.json"
        self.passphrase = passphrase
        self._lock = asyncio.Lock()

    async def _read_entries(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except OSError as e:
            raise KeyStorageError(
                ErrorCode.E104_KEY_STORAGE_FAILED,
                f"Cannot read key storage: {e}",
                {"path": str(self.path)},
            ) from e
        except json.JSONDecodeError as e:
            raise KeyStorageError(
                ErrorCode.E104_KEY_STORAGE_FAILED,
                f"Corrupted key storage file: {e}",
                {"path": str(self.path)},
            ) from e

        if not isinstance(data, dict) or not isinstance(data.get("entries", {}), dict):
            raise KeyStorageError(
                ErrorCode.E104_KEY_STORAGE_FAILED,
                "Corrupted key storage file: unexpected layout",
                {"path": str(self.path)},
            )
        if data.get("namespace") != self.namespace:
            raise KeyStorageError(
                ErrorCode.E104_KEY_STORAGE_FAILED,
                "Key storage belongs to a different namespace",
                {"path": str(self.path), "namespace": data.get("namespace")},
            )
        return data.get("entries", {})

    async def _write_entries(self, entries: Dict[str, Any]) -> None:
        data = {"version": KEY_STORAGE_VERSION, "namespace": self.namespace, "entries": entries}
        temp_file = f"{self.path}.tmp"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=2))
            os.replace(temp_file, self.path)
            if os.name == "posix":
                os.chmod(self.path, 0o600)
        except OSError as e:
            raise KeyStorageError(
                ErrorCode.E104_KEY_STORAGE_FAILED,
                f"Cannot write key storage: {e}",
                {"path": str(self.path)},
            ) from e

    async def get(self, name: str) -> Optional[str]:
        """
        Read one entry.

        Returns:
            The stored value, or None if the entry does not exist

        Raises:
            KeyStorageError: If the file is unreadable, or the entry is
                sealed and the passphrase is missing or wrong
        """
        async with self._lock:
            entry = (await self._read_entries()).get(name)
        if entry is None:
            return None
        if "value" in entry:
            return entry["value"]

        if self.passphrase is None:
            raise KeyStorageError(
                ErrorCode.E105_KEY_STORAGE_LOCKED,
                f"Entry {name} is sealed and no passphrase was given",
            )
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, functools.partial(crypto.open_secret, entry["sealed"], self.passphrase)
            )
        except ValueError as e:
            raise KeyStorageError(
                ErrorCode.E105_KEY_STORAGE_LOCKED,
                f"Cannot unseal entry {name}: {e}",
            ) from e

    async def set(self, name: str, value: str) -> None:
        """Write one entry, sealing it when a passphrase is configured."""
        if self.passphrase is not None:
            loop = asyncio.get_running_loop()
            sealed = await loop.run_in_executor(
                None, functools.partial(crypto.seal_secret, value, self.passphrase)
            )
            entry = {"sealed": sealed}
        else:
            entry = {"value": value}

        async with self._lock:
            entries = await self._read_entries()
            entries[name] = entry
            await self._write_entries(entries)

    async def delete(self, name: str) -> bool:
        """Remove one entry. Returns True if it existed."""
        async with self._lock:
            entries = await self._read_entries()
            if name not in entries:
                return False
            del entries[name]
            await self._write_entries(entries)
        return True


class KeyStore:
    """
    Per-user keypair lifecycle.

    The directory is anything with ``set_public_key(user_id, pem)``; the
    method may be a plain function (a local UserDirectory) or a coroutine
    (a remote publish over the message channel).
    """

    def __init__(
        self,
        storage: LocalKeyStorage,
        directory: Any = None,
        publish_timeout: float = PUBLISH_TIMEOUT,
    ):
        """
        Initialize key store.

        Args:
            storage: Local storage holding the private key
            directory: Public key directory to publish to (may be attached later)
            publish_timeout: Seconds to wait for the directory write
        """
        self.storage = storage
        self.directory = directory
        self.publish_timeout = publish_timeout

        self._private_key: Optional[rsa.RSAPrivateKey] = None
        self._public_key_pem: Optional[str] = None

    async def ensure_keypair(self, identity_token: str) -> str:
        """
        Make sure the user has a keypair, creating and publishing it if needed.

        Idempotent: once a key exists and has been published, repeated calls
        do nothing but return the public key.

        Args:
            identity_token: Authenticated user identity the key is published under

        Returns:
            The user's public key as PEM text

        Raises:
            KeyGenerationError: If the cryptography provider cannot generate a key
            PublishError: If the directory write fails (the local key is kept)
            KeyStorageError: If local storage cannot be read or written
        """
        private_key = await self.get_private_key()

        if private_key is None:
            loop = asyncio.get_running_loop()
            try:
                private_key = await loop.run_in_executor(None, crypto.generate_keypair)
            except Exception as e:
                logger.error(f"Keypair generation failed: {e}", exc_info=True)
                raise KeyGenerationError(
                    ErrorCode.E101_KEY_GENERATION_FAILED,
                    f"Cryptography provider unavailable: {e}",
                ) from e

            await self.storage.set(PRIVATE_KEY_ENTRY, crypto.serialize_private_key(private_key))
            await self.storage.set(PUBLISH_PENDING_ENTRY, identity_token)
            self._private_key = private_key
            self._public_key_pem = None
            logger.info(
                f"Generated keypair {crypto.public_key_fingerprint(private_key.public_key())[:16]}"
            )

        public_pem = await self.get_public_key()

        if await self.storage.get(PUBLISH_PENDING_ENTRY) is not None:
            await self._publish(identity_token, public_pem)
            await self.storage.delete(PUBLISH_PENDING_ENTRY)

        return public_pem

    async def _publish(self, identity_token: str, public_pem: str) -> None:
        if self.directory is None:
            raise PublishError(ErrorCode.E102_PUBLISH_FAILED, "No directory to publish to")
        try:
            result = self.directory.set_public_key(identity_token, public_pem)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.publish_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Public key publication timed out for {identity_token}")
            raise PublishError(
                ErrorCode.E103_PUBLISH_TIMEOUT,
                "Public key publication timed out",
                {"timeout": self.publish_timeout},
            ) from e
        except PublishError:
            raise
        except Exception as e:
            logger.warning(f"Public key publication failed for {identity_token}: {e}")
            raise PublishError(
                ErrorCode.E102_PUBLISH_FAILED,
                f"Public key publication failed: {e}",
            ) from e

    async def get_private_key(self) -> Optional[rsa.RSAPrivateKey]:
        """The locally stored private key, or None if never generated."""
        if self._private_key is None:
            pem = await self.storage.get(PRIVATE_KEY_ENTRY)
            if pem is None:
                return None
            try:
                self._private_key = crypto.load_private_key(pem)
            except ValueError as e:
                raise KeyStorageError(
                    ErrorCode.E104_KEY_STORAGE_FAILED,
                    f"Stored private key is unreadable: {e}",
                ) from e
        return self._private_key

    async def get_public_key(self) -> Optional[str]:
        """Own public key PEM, derived from the stored private key and cached."""
        if self._public_key_pem is None:
            private_key = await self.get_private_key()
            if private_key is None:
                return None
            self._public_key_pem = crypto.serialize_public_key(private_key.public_key())
        return self._public_key_pem
