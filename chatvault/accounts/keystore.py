"""Secure credential keystore used to hold the vault password hash."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Dict, Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from core.logging_utils import get_accounts_logger

logger = get_accounts_logger()

PASSWORD_HASH_KEY = "passwordHash"


class BaseKeystore:
    """Opaque string store addressed by key."""

    def get(self, key: str) -> Optional[str]:  # pragma: no cover - abstract
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def delete(self, key: str) -> None:  # pragma: no cover - abstract
        raise NotImplementedError


class MemoryKeystore(BaseKeystore):
    """Process-local keystore for tests and throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class FileKeystore(BaseKeystore):
    """JSON file readable only by its owner."""

    def __init__(self, path):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _write(self, values: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(values, handle)
        os.chmod(self.path, 0o600)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        values = self._read()
        values[key] = value
        self._write(values)

    def delete(self, key: str) -> None:
        values = self._read()
        if key in values:
            del values[key]
            self._write(values)
            logger.info("Keystore entry removed", extra_data={"key": key})

    def __repr__(self) -> str:
        return f"FileKeystore(path={str(self.path)!r})"


_keystore_instance: Optional[BaseKeystore] = None
_keystore_lock = threading.Lock()


def _build_keystore() -> BaseKeystore:
    backend = getattr(settings, "CHATVAULT_KEYSTORE_BACKEND", "file")
    if backend == "memory":
        logger.warning("Using in-memory keystore; the password hash will not survive a restart")
        return MemoryKeystore()
    if backend == "file":
        path = getattr(settings, "CHATVAULT_KEYSTORE_PATH", None)
        if not path:
            raise ImproperlyConfigured("CHATVAULT_KEYSTORE_PATH must be configured for the file keystore")
        return FileKeystore(path)
    raise ImproperlyConfigured(f"Unknown CHATVAULT_KEYSTORE_BACKEND: {backend}")


def get_keystore() -> BaseKeystore:
    """Return a singleton keystore instance."""

    global _keystore_instance
    if _keystore_instance is not None:
        return _keystore_instance

    with _keystore_lock:
        if _keystore_instance is None:
            _keystore_instance = _build_keystore()
    return _keystore_instance
