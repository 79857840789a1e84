"""
Storage backends for chat data.

Both backends implement :class:`BaseStore` and are selected once at startup:

- :class:`FlatFileStore` keeps the whole dataset in one encoded JSON document.
- :class:`RelationalStore` keeps one row per entity in the Django database and
  encodes only sensitive columns (api keys, message text) field by field.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

from django.core.management import call_command
from django.db import connection, transaction

from chats.dataset import (
    ChatThreadRecord,
    Dataset,
    MessageRecord,
    ModelDescriptor,
    SettingsRecord,
)
from chats.models import ApiKey, ChatThread, Message, Settings
from core.files import BaseFileStore
from core.logging_utils import get_chats_logger
from vault.crypto_utils import (
    DELIMITER,
    decode_document,
    decrypt_field,
    encode_document,
    encrypt_field,
    is_encrypted,
)
from vault.exceptions import CryptoError, FormatError, NotFoundError

logger = get_chats_logger()

FLAT_FILE_NAME = "data.json"


class BaseStore:
    """Interface shared by the storage backends."""

    name = "base"

    def initialize(self) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def exists(self) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError

    def fetch_all(self, password: str) -> Dataset:  # pragma: no cover - abstract
        raise NotImplementedError

    def fetch_one(self, thread_id: str, password: str) -> ChatThreadRecord:  # pragma: no cover - abstract
        raise NotImplementedError

    def persist_dataset(self, dataset: Dataset, password: str) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def persist_thread(self, thread: ChatThreadRecord, password: str) -> None:  # pragma: no cover - abstract
        """Upsert thread metadata and replace its message list."""
        raise NotImplementedError

    def persist_active(self, thread_id: Optional[str], password: str) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def remove_thread(
        self, thread_id: str, active_thread_id: Optional[str], password: str
    ) -> None:  # pragma: no cover - abstract
        """Delete a thread with its messages and record the new active thread."""
        raise NotImplementedError

    def persist_api_key(self, service_name: str, key: str, password: str) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def persist_settings(
        self, settings: SettingsRecord, model_ids: List[str], password: str
    ) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def clear(self) -> None:  # pragma: no cover - abstract
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Flat file backend
# ---------------------------------------------------------------------------


class FlatFileStore(BaseStore):
    """Whole dataset as a single encoded JSON document."""

    name = "flatfile"

    def __init__(self, files: BaseFileStore, path: str = FLAT_FILE_NAME):
        self.files = files
        self.path = path

    @property
    def backup_path(self) -> str:
        return f"{self.path}.bak"

    def initialize(self) -> None:
        """Nothing to prepare; the document is created on first read."""

    def exists(self) -> bool:
        return self.files.exists(self.path)

    def read_document(self, password: str, *, heal: bool = True) -> Dict:
        """
        Read and decode the document.

        A missing file is created empty and a plaintext legacy document is
        re-encoded in place, unless ``heal`` is False.
        """
        if not self.files.exists(self.path):
            if not heal:
                raise NotFoundError(f"{self.path} does not exist")
            logger.info("Flat file missing, initializing empty document")
            self.write_document({}, password)
            return {}

        content = self.files.read_text(self.path)

        if DELIMITER not in content:
            try:
                document = json.loads(content)
            except ValueError as exc:
                raise FormatError("Flat file is neither encrypted nor valid JSON") from exc
            if not isinstance(document, dict):
                raise FormatError("Flat file document must be a JSON object")
            if heal:
                logger.encryption_event("Re-encrypted legacy plaintext flat file")
                self.write_document(document, password)
            return document

        document = decode_document(content.strip(), password)
        if not isinstance(document, dict):
            raise FormatError("Flat file document must be a JSON object")
        return document

    def write_document(self, document: Dict, password: str) -> None:
        # Encode before touching the file so a failure keeps the previous copy.
        blob = encode_document(document, password)
        self.files.write_text(self.path, blob)
        logger.debug("Flat file encrypted and written", extra_data={"bytes": len(blob)})

    def fetch_all(self, password: str) -> Dataset:
        return Dataset.from_document(self.read_document(password))

    def fetch_one(self, thread_id: str, password: str) -> ChatThreadRecord:
        dataset = self.fetch_all(password)
        try:
            return dataset.threads[thread_id]
        except KeyError:
            raise NotFoundError(f"Thread not found: {thread_id}") from None

    def persist_dataset(self, dataset: Dataset, password: str) -> None:
        self.write_document(dataset.to_document(), password)

    def _mutate(self, password: str, mutation) -> None:
        dataset = self.fetch_all(password)
        mutation(dataset)
        self.persist_dataset(dataset, password)

    def persist_thread(self, thread: ChatThreadRecord, password: str) -> None:
        def apply(dataset: Dataset) -> None:
            stored = thread.copy()
            previous = dataset.threads.get(thread.id)
            stored.is_active = previous.is_active if previous else False
            dataset.threads[thread.id] = stored

        self._mutate(password, apply)

    def persist_active(self, thread_id: Optional[str], password: str) -> None:
        def apply(dataset: Dataset) -> None:
            if thread_id is not None and thread_id not in dataset.threads:
                raise NotFoundError(f"Thread not found: {thread_id}")
            for thread in dataset.threads.values():
                thread.is_active = thread.id == thread_id

        self._mutate(password, apply)

    def remove_thread(self, thread_id: str, active_thread_id: Optional[str], password: str) -> None:
        def apply(dataset: Dataset) -> None:
            if dataset.threads.pop(thread_id, None) is None:
                raise NotFoundError(f"Thread not found: {thread_id}")
            for thread in dataset.threads.values():
                thread.is_active = thread.id == active_thread_id

        self._mutate(password, apply)

    def persist_api_key(self, service_name: str, key: str, password: str) -> None:
        def apply(dataset: Dataset) -> None:
            dataset.api_keys[service_name] = key

        self._mutate(password, apply)

    def persist_settings(self, settings: SettingsRecord, model_ids: List[str], password: str) -> None:
        def apply(dataset: Dataset) -> None:
            dataset.settings = SettingsRecord(custom_prompt=settings.custom_prompt)
            dataset.model_ids = list(model_ids)

        self._mutate(password, apply)

    def clear(self) -> None:
        self.files.delete(self.path)

    def __repr__(self) -> str:
        return f"FlatFileStore(path={self.path!r}, files={self.files!r})"


# ---------------------------------------------------------------------------
# Relational backend
# ---------------------------------------------------------------------------


class RelationalStore(BaseStore):
    """One row per entity; api keys and message text are field-encrypted."""

    name = "relational"

    def _database_path(self) -> Optional[Path]:
        name = str(connection.settings_dict.get("NAME") or "")
        if not name or name == ":memory:" or name.startswith("file:"):
            return None
        return Path(name)

    def _has_schema(self) -> bool:
        return ChatThread._meta.db_table in connection.introspection.table_names()

    def initialize(self) -> None:
        """Create the database directory and schema if absent."""

        db_path = self._database_path()
        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        if not self._has_schema():
            logger.info("Creating relational schema")
            call_command("migrate", "chats", interactive=False, verbosity=0)

    def exists(self) -> bool:
        db_path = self._database_path()
        if db_path is not None and not db_path.exists():
            return False
        return self._has_schema()

    # -- reads ---------------------------------------------------------------

    # Legacy plaintext rows found while reading are collected as
    # (row, field, plaintext) and re-encoded only after every encrypted row
    # decoded, so a wrong password never rebinds them.

    def _read_message_text(self, message: Message, password: str, legacy: list) -> str:
        if is_encrypted(message.text):
            return decrypt_field(message.text, password)
        if message.text:
            legacy.append((message, "text", message.text))
        return message.text or ""

    def _read_api_key(self, row: ApiKey, password: str, legacy: list) -> str:
        if is_encrypted(row.encrypted_key):
            return decrypt_field(row.encrypted_key, password)
        if row.encrypted_key:
            legacy.append((row, "encrypted_key", row.encrypted_key))
        return row.encrypted_key or ""

    def _heal_legacy_rows(self, legacy: list, password: str) -> None:
        if not legacy:
            return
        try:
            with transaction.atomic():
                for row, field, plaintext in legacy:
                    setattr(row, field, encrypt_field(plaintext, password))
                    row.save(update_fields=[field])
        except Exception:
            logger.encryption_event("Re-encrypting legacy plaintext rows", success=False)
            raise
        logger.encryption_event(f"Re-encrypted {len(legacy)} legacy plaintext rows")

    def _to_record(self, row: ChatThread, password: str, legacy: list) -> ChatThreadRecord:
        return ChatThreadRecord(
            id=row.id,
            title=row.title,
            created_at=row.created_at,
            updated_at=row.updated_at,
            model=ModelDescriptor(
                id=row.model_id,
                display_name=row.model_display_name,
                provider=row.model_provider,
            ),
            messages=[
                MessageRecord(
                    is_user=message.is_user,
                    text=self._read_message_text(message, password, legacy),
                    timestamp=message.timestamp,
                )
                for message in row.messages.all()
            ],
            is_active=row.is_active,
        )

    def fetch_all(self, password: str) -> Dataset:
        dataset = Dataset()
        legacy = []
        for row in ChatThread.objects.prefetch_related("messages"):
            dataset.add_thread(self._to_record(row, password, legacy))

        for api_key in ApiKey.objects.order_by("id"):
            dataset.api_keys[api_key.service_name] = self._read_api_key(api_key, password, legacy)

        settings_row = Settings.objects.filter(pk=1).first()
        if settings_row is not None:
            dataset.settings = SettingsRecord(custom_prompt=settings_row.custom_prompt)
            dataset.model_ids = json.loads(settings_row.serialized_models or "[]")

        self._heal_legacy_rows(legacy, password)
        return dataset

    def fetch_one(self, thread_id: str, password: str) -> ChatThreadRecord:
        try:
            row = ChatThread.objects.prefetch_related("messages").get(pk=thread_id)
        except ChatThread.DoesNotExist:
            raise NotFoundError(f"Thread not found: {thread_id}") from None
        legacy = []
        record = self._to_record(row, password, legacy)
        self._heal_legacy_rows(legacy, password)
        return record

    def get_api_key(self, service_name: str, password: str) -> Optional[str]:
        row = ApiKey.objects.filter(service_name=service_name).first()
        if row is None:
            return None
        legacy = []
        try:
            value = self._read_api_key(row, password, legacy)
        except CryptoError:
            logger.warning("Could not decrypt api key", extra_data={"service_name": service_name})
            return None
        self._heal_legacy_rows(legacy, password)
        return value

    # -- writes --------------------------------------------------------------

    def _write_thread_row(self, thread: ChatThreadRecord) -> ChatThread:
        row, _ = ChatThread.objects.update_or_create(
            pk=thread.id,
            defaults={
                "title": thread.title,
                "model_id": thread.model.id,
                "model_display_name": thread.model.display_name,
                "model_provider": thread.model.provider,
                "created_at": thread.created_at,
                "updated_at": thread.updated_at,
            },
        )
        return row

    def _encode_messages(self, messages: List[MessageRecord], password: str) -> List[Message]:
        return [
            Message(
                is_user=message.is_user,
                text=encrypt_field(message.text, password),
                timestamp=message.timestamp,
            )
            for message in messages
        ]

    def _replace_messages(self, row: ChatThread, encoded: List[Message]) -> None:
        Message.objects.filter(thread=row).delete()
        for message in encoded:
            message.thread = row
        Message.objects.bulk_create(encoded)

    def persist_thread(self, thread: ChatThreadRecord, password: str) -> None:
        # Encode before opening the transaction; a codec failure writes nothing.
        # Delete and reinsert share one transaction, so the old list survives a failed insert.
        encoded = self._encode_messages(thread.messages, password)
        with transaction.atomic():
            row = self._write_thread_row(thread)
            self._replace_messages(row, encoded)
        logger.thread_activity("persisted", thread.id, details=f"{len(thread.messages)} messages")

    def persist_active(self, thread_id: Optional[str], password: str) -> None:
        with transaction.atomic():
            if thread_id is not None and not ChatThread.objects.filter(pk=thread_id).exists():
                raise NotFoundError(f"Thread not found: {thread_id}")
            # Clear the previous holder before setting the new one.
            ChatThread.objects.filter(is_active=True).exclude(pk=thread_id).update(is_active=False)
            if thread_id is not None:
                ChatThread.objects.filter(pk=thread_id).update(is_active=True)

    def remove_thread(self, thread_id: str, active_thread_id: Optional[str], password: str) -> None:
        with transaction.atomic():
            deleted, _ = ChatThread.objects.filter(pk=thread_id).delete()
            if not deleted:
                raise NotFoundError(f"Thread not found: {thread_id}")
            self.persist_active(active_thread_id, password)

    def persist_api_key(self, service_name: str, key: str, password: str) -> None:
        ApiKey.objects.update_or_create(
            service_name=service_name,
            defaults={"encrypted_key": encrypt_field(key, password)},
        )

    def persist_settings(self, settings: SettingsRecord, model_ids: List[str], password: str) -> None:
        settings_row = Settings.load()
        settings_row.custom_prompt = settings.custom_prompt
        settings_row.serialized_models = json.dumps(list(model_ids))
        settings_row.save()

    def persist_dataset(self, dataset: Dataset, password: str) -> None:
        with transaction.atomic():
            self.clear()
            for thread in dataset.threads.values():
                row = self._write_thread_row(thread)
                self._replace_messages(row, self._encode_messages(thread.messages, password))
            self.persist_active(dataset.active_thread_id, password)
            for service_name, key in dataset.api_keys.items():
                self.persist_api_key(service_name, key, password)
            self.persist_settings(dataset.settings, dataset.model_ids, password)

    def clear(self) -> None:
        # Children first to respect foreign keys
        Message.objects.all().delete()
        ChatThread.objects.all().delete()
        ApiKey.objects.all().delete()
        Settings.objects.all().delete()

    def __repr__(self) -> str:
        return f"RelationalStore(database={connection.settings_dict.get('NAME')!r})"
