"""Filesystem abstraction for the app document directory."""

from __future__ import annotations

import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Optional, Union

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from core.logging_utils import get_core_logger

logger = get_core_logger()

PathLike = Union[str, Path]


class BaseFileStore:
    """Interface for byte stores addressed by document-relative paths."""

    def exists(self, path: PathLike) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError

    def read(self, path: PathLike) -> bytes:  # pragma: no cover - abstract
        raise NotImplementedError

    def write(self, path: PathLike, data: bytes) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def delete(self, path: PathLike) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def copy(self, source: PathLike, destination: PathLike) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def read_text(self, path: PathLike) -> str:
        return self.read(path).decode("utf-8")

    def write_text(self, path: PathLike, text: str) -> None:
        self.write(path, text.encode("utf-8"))


class LocalFileStore(BaseFileStore):
    """File store rooted at a local directory."""

    def __init__(self, root: PathLike):
        self.root = Path(root)

    def resolve(self, path: PathLike) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.root / candidate

    def exists(self, path: PathLike) -> bool:
        return self.resolve(path).exists()

    def read(self, path: PathLike) -> bytes:
        return self.resolve(path).read_bytes()

    def write(self, path: PathLike, data: bytes) -> None:
        """Write atomically: the previous file stays intact until the new one is complete."""

        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as stream:
                stream.write(data)
                stream.flush()
                os.fsync(stream.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def delete(self, path: PathLike) -> None:
        target = self.resolve(path)
        if target.exists():
            target.unlink()
            logger.info("Deleted file", extra_data={"path": str(target.name)})

    def copy(self, source: PathLike, destination: PathLike) -> None:
        src = self.resolve(source)
        dst = self.resolve(destination)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)

    def __repr__(self) -> str:
        return f"LocalFileStore(root={str(self.root)!r})"


_store_instance: Optional[BaseFileStore] = None
_store_lock = threading.Lock()


def _build_file_store() -> BaseFileStore:
    document_dir = getattr(settings, "CHATVAULT_DOCUMENT_DIR", None)
    if not document_dir:
        raise ImproperlyConfigured("CHATVAULT_DOCUMENT_DIR must be configured")
    return LocalFileStore(document_dir)


def get_file_store() -> BaseFileStore:
    """Return a singleton file store for the app document directory."""

    global _store_instance
    if _store_instance is not None:
        return _store_instance

    with _store_lock:
        if _store_instance is None:
            _store_instance = _build_file_store()
    return _store_instance
