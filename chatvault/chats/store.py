"""
ChatStore: the UI-facing facade over a storage backend.

The store keeps two copies of the dataset. ``dataset`` is the working copy the
UI reads and the in-memory mirrors mutate; ``_persisted`` is what the backend
is known to hold. Write-through operations compare against ``_persisted`` so a
change applied in memory first is still written when it is committed.
"""

from __future__ import annotations

import re
import threading
from typing import Iterable, List, Mapping, Optional, Union

from asgiref.sync import sync_to_async
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from chats.backends import FLAT_FILE_NAME, BaseStore, FlatFileStore, RelationalStore
from chats.dataset import (
    DEFAULT_TITLE,
    ChatThreadRecord,
    Dataset,
    MessageRecord,
    ModelDescriptor,
    SettingsRecord,
    new_thread_id,
    now_millis,
)
from core.files import BaseFileStore, get_file_store
from core.logging_utils import get_chats_logger
from vault.exceptions import NotFoundError

logger = get_chats_logger()

TITLE_MAX_LENGTH = 50
TITLE_MIN_LENGTH = 10
_HEADING_PREFIX = re.compile(r"^[#\s]+")

MessageLike = Union[MessageRecord, Mapping]

_UNSET = object()


def extract_title(text: str) -> str:
    """First line of ``text`` without leading markdown heading marks, capped at 50 chars."""

    first_line = (text or "").split("\n", 1)[0]
    title = _HEADING_PREFIX.sub("", first_line)
    if len(title) > TITLE_MAX_LENGTH:
        return title[:TITLE_MAX_LENGTH] + "..."
    return title


def infer_title(messages: Iterable[MessageRecord]) -> str:
    """Derive a thread title from the first user and assistant messages."""

    messages = list(messages)
    first_user = next((m.text for m in messages if m.is_user), "")
    title = extract_title(first_user)
    if len(title) < TITLE_MIN_LENGTH:
        first_reply = next((m.text for m in messages if not m.is_user), "")
        reply_title = extract_title(first_reply)
        if len(reply_title) > len(title):
            title = reply_title
    return title


def next_active_thread_id(dataset: Dataset, removed_id: str) -> Optional[str]:
    """Active thread after ``removed_id`` is deleted: most recently updated survivor."""

    current = dataset.active_thread_id
    if current is not None and current != removed_id:
        return current
    remaining = [thread for thread in dataset.threads.values() if thread.id != removed_id]
    if not remaining:
        return None
    return max(remaining, key=lambda thread: thread.updated_at).id


def _apply_title(thread: ChatThreadRecord) -> None:
    if thread.title == DEFAULT_TITLE and len(thread.messages) >= 2:
        title = infer_title(thread.messages)
        if title:
            thread.title = title


def _apply_messages(thread: ChatThreadRecord, records: List[MessageRecord]) -> None:
    thread.messages = records
    thread.updated_at = now_millis()
    _apply_title(thread)


def _set_active(dataset: Dataset, thread_id: Optional[str]) -> None:
    for thread in dataset.threads.values():
        thread.is_active = thread.id == thread_id


class ChatStore:
    """Chat threads, api keys and settings behind one backend."""

    def __init__(self, backend: BaseStore):
        self.backend = backend
        self.dataset = Dataset()
        self._persisted = Dataset()
        self.loaded = False

    async def _call(self, method, *args):
        return await sync_to_async(method)(*args)

    def _require_thread(self, thread_id: str) -> ChatThreadRecord:
        thread = self.dataset.threads.get(thread_id)
        if thread is None:
            raise NotFoundError(f"Thread not found: {thread_id}")
        return thread

    def _commit(self, dataset: Dataset) -> None:
        self._persisted = dataset.copy()
        self.dataset = dataset

    # -- load / save ----------------------------------------------------------

    def _load_sync(self, password: str) -> Dataset:
        self.backend.initialize()
        return self.backend.fetch_all(password)

    async def load(self, password: str) -> Dataset:
        dataset = await self._call(self._load_sync, password)
        self._commit(dataset)
        self.loaded = True
        logger.info(
            "Chat data loaded",
            extra_data={"backend": self.backend.name, "threads": len(dataset.threads)},
        )
        return self.dataset

    async def save(self, dataset: Dataset, password: str) -> None:
        """Replace everything the backend holds with ``dataset``."""

        dataset = dataset.copy()
        await self._call(self.backend.persist_dataset, dataset, password)
        self._commit(dataset)
        logger.info("Chat data saved", extra_data={"backend": self.backend.name})

    async def clear(self) -> None:
        await self._call(self.backend.clear)
        self.reset()

    def reset(self) -> None:
        """Forget the in-memory dataset without touching the backend."""
        self.dataset = Dataset()
        self._persisted = Dataset()
        self.loaded = False

    # -- threads ------------------------------------------------------------------

    async def create_thread(self, password: str, model: Union[ModelDescriptor, Mapping]) -> str:
        created = now_millis()
        thread = ChatThreadRecord(
            id=new_thread_id(self.dataset.threads),
            title=DEFAULT_TITLE,
            created_at=created,
            updated_at=created,
            model=ModelDescriptor.coerce(model),
        )
        await self._call(self.backend.persist_thread, thread, password)
        self.dataset.add_thread(thread.copy())
        self._persisted.add_thread(thread.copy())
        await self.set_active_thread(thread.id, password)
        logger.thread_activity("created", thread.id, details=thread.model.id)
        return thread.id

    async def update_thread_messages(self, thread_id: str, messages: List[MessageLike], password: str) -> bool:
        """
        Persist the full message list of a thread.

        Returns False without writing when the list equals what the backend
        already holds. Otherwise ``updated_at`` advances and, for a thread still
        titled "New Chat" with at least two messages, a title is inferred.
        """
        working = self._require_thread(thread_id)
        records = [MessageRecord.coerce(message) for message in messages]

        persisted = self._persisted.threads.get(thread_id)
        if persisted is not None and persisted.messages == records:
            working.messages = list(records)
            logger.debug("No changes in messages, skipping update", thread_id=thread_id)
            return False

        thread = working.copy()
        _apply_messages(thread, records)

        await self._call(self.backend.persist_thread, thread, password)
        self.dataset.threads[thread_id] = thread
        self._persisted.threads[thread_id] = thread.copy()
        return True

    async def set_active_thread(self, thread_id: Optional[str], password: str) -> None:
        if thread_id is not None:
            self._require_thread(thread_id)
        await self._call(self.backend.persist_active, thread_id, password)
        _set_active(self.dataset, thread_id)
        _set_active(self._persisted, thread_id)

    async def delete_thread(self, thread_id: str, password: str) -> Optional[str]:
        """Delete a thread and its messages; return the id of the new active thread."""

        self._require_thread(thread_id)
        next_active = next_active_thread_id(self.dataset, thread_id)
        await self._call(self.backend.remove_thread, thread_id, next_active, password)
        for dataset in (self.dataset, self._persisted):
            dataset.threads.pop(thread_id, None)
            _set_active(dataset, next_active)
        logger.thread_activity("deleted", thread_id)
        return next_active

    # -- in-memory mirrors ----------------------------------------------------

    def update_thread_messages_in_memory(self, thread_id: str, messages: List[MessageLike]) -> None:
        thread = self._require_thread(thread_id)
        _apply_messages(thread, [MessageRecord.coerce(message) for message in messages])

    def delete_thread_in_memory(self, thread_id: str) -> Optional[str]:
        self._require_thread(thread_id)
        next_active = next_active_thread_id(self.dataset, thread_id)
        del self.dataset.threads[thread_id]
        _set_active(self.dataset, next_active)
        return next_active

    def set_active_thread_in_memory(self, thread_id: Optional[str]) -> None:
        if thread_id is not None:
            self._require_thread(thread_id)
        _set_active(self.dataset, thread_id)

    async def flush(self, password: str) -> int:
        """Write every in-memory change the backend does not hold yet. Returns the number of writes."""

        writes = 0
        active_id = self.dataset.active_thread_id

        for thread_id in [tid for tid in self._persisted.threads if tid not in self.dataset.threads]:
            await self._call(self.backend.remove_thread, thread_id, active_id, password)
            del self._persisted.threads[thread_id]
            _set_active(self._persisted, active_id)
            writes += 1

        for thread in self.dataset.threads.values():
            persisted = self._persisted.threads.get(thread.id)
            if persisted is not None and persisted.messages == thread.messages and persisted.title == thread.title:
                continue
            _apply_title(thread)
            await self._call(self.backend.persist_thread, thread.copy(), password)
            stored = thread.copy()
            stored.is_active = persisted.is_active if persisted is not None else False
            self._persisted.threads[thread.id] = stored
            writes += 1

        if self._persisted.active_thread_id != active_id:
            await self._call(self.backend.persist_active, active_id, password)
            _set_active(self._persisted, active_id)
            writes += 1

        if writes:
            logger.info("Flushed in-memory changes", extra_data={"writes": writes})
        return writes

    # -- api keys / settings --------------------------------------------------

    async def set_api_key(self, service_name: str, key: str, password: str) -> None:
        await self._call(self.backend.persist_api_key, service_name, key, password)
        self.dataset.api_keys[service_name] = key
        self._persisted.api_keys[service_name] = key
        logger.info("API key updated", extra_data={"service_name": service_name})

    def get_api_key(self, service_name: str) -> Optional[str]:
        return self.dataset.api_keys.get(service_name) or None

    async def update_settings(self, password: str, custom_prompt=_UNSET, model_ids=None) -> SettingsRecord:
        settings_record = SettingsRecord(
            custom_prompt=self.dataset.settings.custom_prompt if custom_prompt is _UNSET else custom_prompt
        )
        ids = list(self.dataset.model_ids if model_ids is None else model_ids)
        await self._call(self.backend.persist_settings, settings_record, ids, password)
        for dataset in (self.dataset, self._persisted):
            dataset.settings = SettingsRecord(custom_prompt=settings_record.custom_prompt)
            dataset.model_ids = list(ids)
        return settings_record

    # -- queries ------------------------------------------------------------------

    def get_thread(self, thread_id: str) -> Optional[ChatThreadRecord]:
        return self.dataset.threads.get(thread_id)

    @property
    def active_thread(self) -> Optional[ChatThreadRecord]:
        return self.dataset.active_thread

    def threads_by_recency(self) -> List[ChatThreadRecord]:
        return sorted(self.dataset.threads.values(), key=lambda thread: thread.updated_at, reverse=True)

    def __repr__(self) -> str:
        return f"ChatStore(backend={self.backend!r}, threads={len(self.dataset.threads)})"


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------

BACKEND_FLATFILE = "flatfile"
BACKEND_RELATIONAL = "relational"
BACKEND_AUTO = "auto"


def select_backend(name: str, files: BaseFileStore) -> BaseStore:
    """
    Build the backend named ``name``.

    ``auto`` picks relational once a migration left ``data.json.bak`` behind,
    flat file while only ``data.json`` exists, and relational for a fresh install.
    """
    name = (name or BACKEND_AUTO).lower()
    if name == BACKEND_AUTO:
        if files.exists(f"{FLAT_FILE_NAME}.bak"):
            name = BACKEND_RELATIONAL
        elif files.exists(FLAT_FILE_NAME):
            name = BACKEND_FLATFILE
        else:
            name = BACKEND_RELATIONAL

    if name == BACKEND_FLATFILE:
        return FlatFileStore(files)
    if name == BACKEND_RELATIONAL:
        return RelationalStore()
    raise ImproperlyConfigured(f"Unknown CHATVAULT_STORAGE_BACKEND: {name}")


_store_instance: Optional[ChatStore] = None
_store_lock = threading.Lock()


def get_chat_store() -> ChatStore:
    """Return the process-wide chat store; the backend is chosen once."""

    global _store_instance
    if _store_instance is not None:
        return _store_instance

    with _store_lock:
        if _store_instance is None:
            backend = select_backend(
                getattr(settings, "CHATVAULT_STORAGE_BACKEND", BACKEND_AUTO),
                get_file_store(),
            )
            logger.info("Chat store backend selected", extra_data={"backend": backend.name})
            _store_instance = ChatStore(backend)
    return _store_instance
