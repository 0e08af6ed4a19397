"""
Credential store: durable identity name -> secret mapping.

Loaded once at startup and rewritten in full after every registration.
Keys are disjoint across identities, but whole-file rewrites from two
identities can still lose an update, so every rewrite goes through one
lock and lands atomically (temp file + os.replace).

The in-memory map is authoritative for the process lifetime: if a write
fails the secret is kept in memory and the error is raised for the caller
to log.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path

import orjson

logger = logging.getLogger(__name__)


class CredentialStoreError(Exception):
    """Raised when the backing file cannot be read or written."""


class CredentialStore:
    """
    Name -> secret mapping backed by a JSON file.

    Usage:
        store = CredentialStore(Path("bots/credentials.json"))
        store.load()
        if store.get("bot_1") is None:
            store.set_secret("bot_1", "hunter2")  # persists whole map
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._secrets: dict[str, str] = {}
        self._write_lock = threading.Lock()
        self.saves: int = 0
        self.save_failures: int = 0

    @property
    def path(self) -> Path:
        """Backing file path."""
        return self._path

    def __contains__(self, name: object) -> bool:
        return name in self._secrets

    def __len__(self) -> int:
        return len(self._secrets)

    def names(self) -> list[str]:
        """Identity names with a stored secret."""
        return sorted(self._secrets)

    def get(self, name: str) -> str | None:
        """Get the stored secret for an identity, if any."""
        return self._secrets.get(name)

    def load(self) -> int:
        """
        Load the mapping from disk, replacing the in-memory map.

        A missing file is an empty store.

        Returns:
            Number of credentials loaded.

        Raises:
            CredentialStoreError: If the file exists but is unreadable or malformed.
        """
        if not self._path.exists():
            self._secrets = {}
            logger.info("No credential file yet", extra={"path": str(self._path)})
            return 0

        try:
            with self._path.open("rb") as f:
                data = orjson.loads(f.read())
        except (OSError, orjson.JSONDecodeError) as e:
            raise CredentialStoreError(f"Cannot read credentials from {self._path}: {e}") from e

        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in data.items()
        ):
            raise CredentialStoreError(
                f"Credential file {self._path} must be a JSON object of string to string"
            )

        self._secrets = dict(data)
        logger.info("Credentials loaded", extra={"count": len(self._secrets)})
        return len(self._secrets)

    def set_secret(self, name: str, secret: str) -> None:
        """
        Store a secret for a new identity and persist the whole map.

        A secret is immutable once set: storing the same value again is a
        no-op, storing a different one is rejected.

        Raises:
            ValueError: If the identity already has a different secret.
            CredentialStoreError: If the file write fails (the in-memory
                value is kept).
        """
        with self._write_lock:
            existing = self._secrets.get(name)
            if existing is not None:
                if existing != secret:
                    raise ValueError(f"Identity {name!r} already has a stored secret")
                return
            self._secrets[name] = secret

        self.save()

    def save(self) -> None:
        """
        Atomically rewrite the backing file with the full current mapping.

        Raises:
            CredentialStoreError: If the write fails.
        """
        with self._write_lock:
            snapshot = dict(self._secrets)
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=self._path.parent,
                    prefix=f".{self._path.name}.",
                    suffix=".tmp",
                )
                try:
                    with os.fdopen(fd, "wb") as f:
                        f.write(orjson.dumps(snapshot, option=orjson.OPT_INDENT_2))
                    os.replace(tmp_name, self._path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as e:
                self.save_failures += 1
                raise CredentialStoreError(
                    f"Cannot write credentials to {self._path}: {e}"
                ) from e
            self.saves += 1
