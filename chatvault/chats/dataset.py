"""In-memory chat dataset shared by both storage backends.

Threads are kept in an insertion-ordered mapping keyed by id; each thread owns
its list of message values. Messages carry no reference back to their thread.
"""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

DEFAULT_TITLE = "New Chat"


def now_millis() -> int:
    return int(time.time() * 1000)


def new_thread_id(existing: Iterable[str] = ()) -> str:
    """Return a time-ordered thread id that does not collide with ``existing``."""

    taken = set(existing)
    candidate = now_millis()
    while str(candidate) in taken:
        candidate += 1
    return str(candidate)


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    display_name: str
    provider: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "displayName": self.display_name, "provider": self.provider}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ModelDescriptor":
        data = data or {}
        return cls(
            id=str(data.get("id", "")),
            display_name=str(data.get("displayName", data.get("display_name", ""))),
            provider=str(data.get("provider", "")),
        )

    @classmethod
    def coerce(cls, value: Union["ModelDescriptor", Mapping[str, Any]]) -> "ModelDescriptor":
        if isinstance(value, cls):
            return value
        return cls.from_dict(value)


@dataclass(frozen=True)
class MessageRecord:
    is_user: bool
    text: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"isUser": self.is_user, "text": self.text, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MessageRecord":
        return cls(
            is_user=bool(data.get("isUser", data.get("is_user", False))),
            text=str(data.get("text", "")),
            timestamp=int(data.get("timestamp") or 0),
        )

    @classmethod
    def coerce(cls, value: Union["MessageRecord", Mapping[str, Any]]) -> "MessageRecord":
        if isinstance(value, cls):
            return value
        return cls.from_dict(value)


@dataclass
class ChatThreadRecord:
    id: str
    title: str
    created_at: int
    updated_at: int
    model: ModelDescriptor
    messages: List[MessageRecord] = field(default_factory=list)
    is_active: bool = False

    def copy(self) -> "ChatThreadRecord":
        return replace(self, messages=list(self.messages))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "model": self.model.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], active_thread_id: Optional[str] = None) -> "ChatThreadRecord":
        thread_id = str(data["id"])
        created_at = int(data.get("createdAt") or 0)
        return cls(
            id=thread_id,
            title=str(data.get("title") or DEFAULT_TITLE),
            created_at=created_at,
            updated_at=int(data.get("updatedAt") or created_at),
            model=ModelDescriptor.from_dict(data.get("model")),
            messages=[MessageRecord.from_dict(item) for item in data.get("messages") or []],
            is_active=thread_id == active_thread_id,
        )


@dataclass
class SettingsRecord:
    custom_prompt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.custom_prompt is None:
            return {}
        return {"customPrompt": self.custom_prompt}


@dataclass
class Dataset:
    api_keys: Dict[str, str] = field(default_factory=dict)
    threads: Dict[str, ChatThreadRecord] = field(default_factory=dict)
    model_ids: List[str] = field(default_factory=list)
    settings: SettingsRecord = field(default_factory=SettingsRecord)

    @property
    def active_thread_id(self) -> Optional[str]:
        for thread in self.threads.values():
            if thread.is_active:
                return thread.id
        return None

    @property
    def active_thread(self) -> Optional[ChatThreadRecord]:
        active_id = self.active_thread_id
        return self.threads.get(active_id) if active_id else None

    def add_thread(self, thread: ChatThreadRecord) -> None:
        self.threads[thread.id] = thread

    def copy(self) -> "Dataset":
        return Dataset(
            api_keys=dict(self.api_keys),
            threads={thread_id: thread.copy() for thread_id, thread in self.threads.items()},
            model_ids=list(self.model_ids),
            settings=copy.copy(self.settings),
        )

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "apiKeys": dict(self.api_keys),
            "chatThreads": [thread.to_dict() for thread in self.threads.values()],
            "openRouterModels": list(self.model_ids),
        }
        active_id = self.active_thread_id
        if active_id is not None:
            document["activeThreadId"] = active_id
        settings = self.settings.to_dict()
        if settings:
            document["settings"] = settings
        return document

    @classmethod
    def from_document(cls, document: Optional[Mapping[str, Any]]) -> "Dataset":
        """Build a dataset from the flat JSON document, upgrading older shapes."""

        document = document or {}
        active_id = document.get("activeThreadId")
        threads: Dict[str, ChatThreadRecord] = {}
        for item in document.get("chatThreads") or []:
            thread = ChatThreadRecord.from_dict(item, active_thread_id=active_id)
            threads[thread.id] = thread

        settings = document.get("settings") or {}
        return cls(
            api_keys={str(k): str(v) for k, v in (document.get("apiKeys") or {}).items() if v is not None},
            threads=threads,
            model_ids=[str(model_id) for model_id in document.get("openRouterModels") or []],
            settings=SettingsRecord(custom_prompt=settings.get("customPrompt")),
        )
