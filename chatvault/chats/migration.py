"""One-way migration from the flat file document to the relational store."""

from __future__ import annotations

from dataclasses import dataclass

from asgiref.sync import sync_to_async

from chats.backends import FlatFileStore, RelationalStore
from chats.dataset import Dataset
from core.files import BaseFileStore
from core.logging_utils import get_chats_logger
from vault.exceptions import MigrationError

logger = get_chats_logger()


@dataclass
class MigrationPlan:
    """What a migration would copy; produced without writing anything."""

    threads: int
    messages: int
    api_keys: int
    model_ids: int
    has_custom_prompt: bool


class MigrationService:
    """
    Copy every entity from a :class:`FlatFileStore` into a :class:`RelationalStore`.

    The flat file is only read and then copied to ``data.json.bak``. Relational
    rows written before a failure are kept; there is no enclosing transaction.
    """

    def __init__(self, flat_store: FlatFileStore, relational_store: RelationalStore, files: BaseFileStore):
        self.flat_store = flat_store
        self.relational_store = relational_store
        self.files = files

    def read_source(self, password: str) -> Dataset:
        # Wrong password or a missing file propagate with their own types.
        return Dataset.from_document(self.flat_store.read_document(password, heal=False))

    def plan(self, password: str) -> MigrationPlan:
        dataset = self.read_source(password)
        return MigrationPlan(
            threads=len(dataset.threads),
            messages=sum(len(thread.messages) for thread in dataset.threads.values()),
            api_keys=sum(1 for key in dataset.api_keys.values() if key),
            model_ids=len(dataset.model_ids),
            has_custom_prompt=dataset.settings.custom_prompt is not None,
        )

    def migrate(self, password: str) -> bool:
        dataset = self.read_source(password)
        logger.info(
            "Starting migration to relational store",
            extra_data={"threads": len(dataset.threads), "api_keys": len(dataset.api_keys)},
        )

        step = "initialize"
        try:
            self.relational_store.initialize()

            step = "threads"
            for thread in dataset.threads.values():
                self.relational_store.persist_thread(thread, password)
            self.relational_store.persist_active(dataset.active_thread_id, password)

            step = "api_keys"
            for service_name, key in dataset.api_keys.items():
                if key:
                    self.relational_store.persist_api_key(service_name, key, password)

            step = "settings"
            self.relational_store.persist_settings(dataset.settings, dataset.model_ids, password)

            step = "backup"
            self.files.copy(self.flat_store.path, self.flat_store.backup_path)
        except Exception as exc:
            logger.critical("Migration failed", extra_data={"step": step, "error": type(exc).__name__})
            raise MigrationError(f"Migration failed during {step}: {exc}") from exc

        logger.info("Migration completed", extra_data={"backup": self.flat_store.backup_path})
        return True

    async def amigrate(self, password: str) -> bool:
        return await sync_to_async(self.migrate)(password)
