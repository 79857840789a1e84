"""
Streaming assistant turns.

A :class:`StreamingSession` drives one provider for one chat thread. Each call
to :meth:`StreamingSession.send` is a turn that moves through
``IDLE -> AWAITING_FIRST_TOKEN -> STREAMING`` and ends ``COMPLETED``,
``CANCELLED`` or ``FAILED``. The turn is consumed as an async iterator of
:class:`StreamEvent`: zero or more ``snapshot`` events carrying the cumulative
reply so far, then exactly one terminal event.

Cancellation is cooperative. :meth:`StreamingSession.cancel` raises a flag that
is checked when the next snapshot arrives; the provider request itself may keep
running in its worker thread until it finishes on its own.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional

import requests
from django.conf import settings

from accounts.auth import VaultSession
from assistant.context import DEFAULT_WINDOW_SIZE, ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER, ChatContextWindow
from assistant.providers import BaseProvider
from chats.dataset import MessageRecord, now_millis
from chats.store import ChatStore
from core.logging_utils import get_assistant_logger

logger = get_assistant_logger()

API_KEY_MISSING = "API key not set. Please add your API key in Settings."
NO_MODEL_SELECTED = "No model selected. Please select a model first."
REQUEST_IN_PROGRESS = "A request is already in progress. Please wait for the current response to finish."
NETWORK_ERROR = "Network error. Please check your internet connection."
GENERIC_ERROR = "I'm sorry, I encountered an error processing your request. Please try again."
STOPPED_SUFFIX = " [Generation stopped]"

_DONE = object()


class TurnState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_FIRST_TOKEN = "awaiting_first_token"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class EventKind(str, enum.Enum):
    SNAPSHOT = "snapshot"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamEvent:
    kind: EventKind
    text: str

    @property
    def terminal(self) -> bool:
        return self.kind is not EventKind.SNAPSHOT


class StreamingSession:
    """One provider, one context window, at most one turn in flight."""

    def __init__(
        self,
        provider: BaseProvider,
        *,
        window_size: Optional[int] = None,
        system_prompt: Optional[str] = None,
        store: Optional[ChatStore] = None,
        thread_id: Optional[str] = None,
        session: Optional[VaultSession] = None,
    ):
        self.provider = provider
        self.context = ChatContextWindow(
            window_size or getattr(settings, "CHATVAULT_HISTORY_WINDOW", DEFAULT_WINDOW_SIZE)
        )
        self.system_prompt = system_prompt or None
        self.store = store
        self.thread_id = thread_id
        self.session = session
        self.state = TurnState.IDLE
        self._cancel_requested = False
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def set_system_prompt(self, prompt: Optional[str]) -> None:
        """Change the system prompt; a different prompt starts a fresh context."""
        prompt = prompt or None
        if prompt == self.system_prompt:
            return
        self.system_prompt = prompt
        self.context.clear()

    def reset(self) -> None:
        self.context.clear()
        self.state = TurnState.IDLE

    def cancel(self) -> None:
        """
        Request that the running turn stop.

        The flag is checked when the next snapshot (or the end of the provider
        call) arrives, so a provider that stalls without emitting keeps the turn
        open until it produces something. The provider request itself is not
        aborted.
        """
        if self._in_flight:
            self._cancel_requested = True
            logger.info("Cancellation requested", thread_id=self.thread_id)

    def _build_messages(self, text: str) -> List[Dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": ROLE_SYSTEM, "content": self.system_prompt})
        messages.extend(self.context.history())
        messages.append({"role": ROLE_USER, "content": text})
        return messages

    def _finish(self, state: TurnState, kind: EventKind, text: str) -> StreamEvent:
        self.state = state
        return StreamEvent(kind, text)

    async def _commit(self, user_text: str, assistant_text: str) -> None:
        if self.store is None or self.thread_id is None or self.session is None:
            return
        thread = self.store.get_thread(self.thread_id)
        existing = list(thread.messages) if thread is not None else []
        sent_at = now_millis()
        messages = existing + [
            MessageRecord(is_user=True, text=user_text, timestamp=sent_at),
            MessageRecord(is_user=False, text=assistant_text, timestamp=now_millis()),
        ]
        await self.store.update_thread_messages(self.thread_id, messages, self.session.require_password())

    async def send(self, text: str) -> AsyncIterator[StreamEvent]:
        """Run one turn; yields snapshots and then a single terminal event."""

        if self._in_flight:
            logger.warning("Rejected send while a request is in progress", thread_id=self.thread_id)
            yield StreamEvent(EventKind.FAILED, REQUEST_IN_PROGRESS)
            return

        if not self.provider.is_configured():
            terminal = self._finish(TurnState.COMPLETED, EventKind.COMPLETED, API_KEY_MISSING)
            await self._commit(text, terminal.text)
            yield terminal
            return

        if not self.provider.model:
            terminal = self._finish(TurnState.COMPLETED, EventKind.COMPLETED, NO_MODEL_SELECTED)
            await self._commit(text, terminal.text)
            yield terminal
            return

        self._in_flight = True
        self._cancel_requested = False
        self.state = TurnState.AWAITING_FIRST_TOKEN

        messages = self._build_messages(text)
        self.context.add(ROLE_USER, text)

        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.ensure_future(self.provider.send(messages, on_snapshot=queue.put_nowait))
        task.add_done_callback(lambda _: queue.put_nowait(_DONE))

        last_snapshot = ""
        terminal = None
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if self._cancel_requested:
                    break
                last_snapshot = item
                self.state = TurnState.STREAMING
                yield StreamEvent(EventKind.SNAPSHOT, item)

            if self._cancel_requested:
                stopped = last_snapshot + STOPPED_SUFFIX
                self.context.add(ROLE_ASSISTANT, stopped)
                terminal = self._finish(TurnState.CANCELLED, EventKind.CANCELLED, stopped)
                logger.info("Generation stopped", thread_id=self.thread_id)
            else:
                try:
                    final_text = task.result()
                except (requests.ConnectionError, requests.Timeout) as exc:
                    logger.error("Provider network error", thread_id=self.thread_id, extra_data={"error": type(exc).__name__})
                    terminal = self._finish(TurnState.FAILED, EventKind.FAILED, NETWORK_ERROR)
                except Exception as exc:
                    logger.error("Provider error", thread_id=self.thread_id, extra_data={"error": type(exc).__name__})
                    terminal = self._finish(TurnState.FAILED, EventKind.FAILED, GENERIC_ERROR)
                else:
                    if final_text != last_snapshot:
                        # Non-streaming providers deliver the reply only as the result.
                        self.state = TurnState.STREAMING
                        yield StreamEvent(EventKind.SNAPSHOT, final_text)
                    self.context.add(ROLE_ASSISTANT, final_text)
                    terminal = self._finish(TurnState.COMPLETED, EventKind.COMPLETED, final_text)
        finally:
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                task.exception()
            self._in_flight = False

        await self._commit(text, terminal.text)
        yield terminal

    async def respond(self, text: str, on_snapshot: Optional[Callable[[str], None]] = None) -> StreamEvent:
        """Drain :meth:`send`, forwarding snapshots, and return the terminal event."""

        terminal = None
        async for event in self.send(text):
            if event.terminal:
                terminal = event
            elif on_snapshot is not None:
                on_snapshot(event.text)
        return terminal
