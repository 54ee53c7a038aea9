"""
Object store abstraction.

Job state, cost ledger lines, generated images, and sheet row documents all
live in an object store keyed by slash-separated paths. The local backend
maps keys onto a directory tree so several processes on one host share it.
"""

import hashlib
import hmac
import json
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

from ai_batch_guard.core.errors import StoreUnavailableError


class ObjectStore(ABC):
    """Minimal object store operations used by the ledgers."""

    @abstractmethod
    def put_json(self, key: str, data: Dict[str, Any]) -> None:
        """Write a JSON document, replacing any existing object."""

    @abstractmethod
    def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        """Read a JSON document, or None if the key is absent."""

    @abstractmethod
    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        """Write a binary object."""

    @abstractmethod
    def append_line(self, key: str, line: str) -> None:
        """Append one newline-terminated line to a text object."""

    @abstractmethod
    def read_lines(self, key: str) -> List[str]:
        """Read all lines of a text object; empty if absent."""

    @abstractmethod
    def signed_url(self, key: str, expires_in: float) -> str:
        """Issue a time-limited URL for reading an object."""


def _validate_key(key: str) -> str:
    parts = key.split("/")
    if not key or key.startswith("/") or any(part in ("", ".", "..") for part in parts):
        raise ValueError(f"Invalid object key: {key!r}")
    return key


class LocalObjectStore(ObjectStore):
    """Object store backed by a local directory.

    JSON documents are replaced atomically (write to a temp file, then
    rename), so readers never observe a partially written state file.
    """

    def __init__(
        self,
        root: str,
        base_url: Optional[str] = None,
        signing_key: str = "local-signing-key",
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root)
        self.base_url = (base_url or self.root.resolve().as_uri()).rstrip("/")
        self._signing_key = signing_key.encode("utf-8")
        self.clock = clock
        self._append_lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.root / _validate_key(key)

    def put_json(self, key: str, data: Dict[str, Any]) -> None:
        self._write_atomic(key, json.dumps(data, indent=2, sort_keys=True).encode("utf-8"))

    def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise StoreUnavailableError(f"Cannot read {key}: {e}") from e

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        self._write_atomic(key, data)

    def append_line(self, key: str, line: str) -> None:
        path = self._path(key)
        if not line.endswith("\n"):
            line += "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with self._append_lock, open(path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            raise StoreUnavailableError(f"Cannot append to {key}: {e}") from e

    def read_lines(self, key: str) -> List[str]:
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return [line.rstrip("\n") for line in f if line.strip()]
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreUnavailableError(f"Cannot read {key}: {e}") from e

    def signed_url(self, key: str, expires_in: float) -> str:
        """Issue an HMAC-signed URL for ``key`` valid for ``expires_in`` seconds."""
        _validate_key(key)
        expires = int(self.clock() + expires_in)
        signature = self._sign(key, expires)
        return f"{self.base_url}/{key}?{urlencode({'expires': expires, 'signature': signature})}"

    def verify_url(self, key: str, expires: int, signature: str) -> bool:
        """Check a signature issued by ``signed_url`` and that it has not expired."""
        if expires <= self.clock():
            return False
        return hmac.compare_digest(self._sign(key, expires), signature)

    def _sign(self, key: str, expires: int) -> str:
        message = f"{key}\n{expires}".encode("utf-8")
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def _write_atomic(self, key: str, payload: bytes) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StoreUnavailableError(f"Cannot write {key}: {e}") from e


def key_from_locator(locator: str) -> str:
    """Turn a canonical locator (``gs://bucket/path`` or ``path``) into an object key."""
    if locator.startswith("gs://"):
        _, _, key = locator[len("gs://"):].partition("/")
        return _validate_key(key)
    return _validate_key(locator.lstrip("/"))
