"""
Language model providers.

Both providers talk HTTP through ``requests`` and run the blocking call in a
worker thread. Snapshots are handed back to the event loop with
``call_soon_threadsafe`` so callers always receive them on the loop thread.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests
from asgiref.sync import sync_to_async
from django.conf import settings

from chats.dataset import ModelDescriptor
from core.logging_utils import get_assistant_logger
from vault.exceptions import ProviderError

logger = get_assistant_logger()

SnapshotCallback = Callable[[str], None]

OPENROUTER_SERVICE = "openRouter"
GEMINI_SERVICE = "gemini"

DEFAULT_OPENROUTER_URL = "https://openrouter.ai/api/v1"
DEFAULT_GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT = 60

STREAM_DONE = object()


def _snapshot_emitter(on_snapshot: Optional[SnapshotCallback]) -> SnapshotCallback:
    """Wrap ``on_snapshot`` so it can be called from a worker thread."""

    if on_snapshot is None:
        return lambda text: None
    loop = asyncio.get_running_loop()
    return lambda text: loop.call_soon_threadsafe(on_snapshot, text)


class BaseProvider:
    """Interface for chat completion providers."""

    name = "base"

    def __init__(self, api_key: Optional[str], model: str, *, base_url: str, timeout: float = DEFAULT_TIMEOUT):
        self.api_key = api_key or ""
        self.model = model or ""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, messages: List[Dict[str, str]], on_snapshot: Optional[SnapshotCallback] = None) -> str:
        """Send ``messages`` and return the final text; cumulative snapshots go to ``on_snapshot``."""

        emit = _snapshot_emitter(on_snapshot)
        return await sync_to_async(self.complete, thread_sensitive=False)(messages, emit)

    def complete(self, messages: List[Dict[str, str]], emit: SnapshotCallback) -> str:  # pragma: no cover - abstract
        raise NotImplementedError

    def list_models(self) -> List[Dict[str, Any]]:  # pragma: no cover - abstract
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r}, configured={self.is_configured()})"


class OpenRouterProvider(BaseProvider):
    """OpenAI-compatible chat completions over server-sent events."""

    name = "openrouter"

    def __init__(self, api_key: Optional[str], model: str, *, base_url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(
            api_key,
            model,
            base_url=base_url or getattr(settings, "CHATVAULT_OPENROUTER_URL", DEFAULT_OPENROUTER_URL),
            timeout=timeout or getattr(settings, "CHATVAULT_PROVIDER_TIMEOUT", DEFAULT_TIMEOUT),
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": getattr(settings, "CHATVAULT_APP_TITLE", "ChatVault"),
        }

    @staticmethod
    def parse_event(line: str) -> Optional[str]:
        """
        Return the content delta carried by one SSE line.

        Comments, blank lines and unparseable JSON yield None. The ``[DONE]``
        marker yields :data:`STREAM_DONE`.
        """
        if not line or line.startswith(":") or not line.startswith("data:"):
            return None
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return STREAM_DONE
        try:
            payload = json.loads(data)
        except ValueError:
            return None
        if "error" in payload:
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderError(f"OpenRouter stream error: {message}")
        choices = payload.get("choices") or [{}]
        return (choices[0].get("delta") or {}).get("content") or None

    def complete(self, messages: List[Dict[str, str]], emit: SnapshotCallback) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "temperature": 0.7,
            "max_tokens": 4000,
        }
        full_text = ""
        with requests.post(
            f"{self.base_url}/chat/completions",
            headers=self._headers(),
            json=payload,
            timeout=self.timeout,
            stream=True,
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines(decode_unicode=True):
                delta = self.parse_event(line)
                if delta is STREAM_DONE:
                    break
                if delta:
                    full_text += delta
                    emit(full_text)
        logger.debug("OpenRouter stream finished", extra_data={"model": self.model, "chars": len(full_text)})
        return full_text

    def list_models(self) -> List[Dict[str, Any]]:
        if not self.api_key:
            raise ProviderError("API key not set", recoverable=True)
        try:
            response = requests.get(f"{self.base_url}/models", headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
            return response.json().get("data") or []
        except (requests.RequestException, ValueError) as exc:
            logger.error("Error fetching OpenRouter models", extra_data={"error": type(exc).__name__})
            raise ProviderError(f"Failed to fetch models: {exc}") from exc


class GeminiProvider(BaseProvider):
    """Single-shot ``generateContent``; the whole reply arrives at once."""

    name = "gemini"

    def __init__(self, api_key: Optional[str], model: str, *, base_url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(
            api_key,
            model,
            base_url=base_url or getattr(settings, "CHATVAULT_GEMINI_URL", DEFAULT_GEMINI_URL),
            timeout=timeout or getattr(settings, "CHATVAULT_PROVIDER_TIMEOUT", DEFAULT_TIMEOUT),
        )

    @staticmethod
    def build_payload(messages: List[Dict[str, str]]) -> Dict[str, Any]:
        contents = []
        system_parts = []
        for message in messages:
            if message["role"] == "system":
                system_parts.append({"text": message["content"]})
                continue
            role = "model" if message["role"] == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": message["content"]}]})

        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": 0.7,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": 1000,
                "candidateCount": 1,
            },
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        return payload

    def complete(self, messages: List[Dict[str, str]], emit: SnapshotCallback) -> str:
        response = requests.post(
            f"{self.base_url}/models/{self.model}:generateContent",
            params={"key": self.api_key},
            json=self.build_payload(messages),
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError("Gemini returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    def list_models(self) -> List[Dict[str, Any]]:
        if not self.api_key:
            raise ProviderError("API key not set", recoverable=True)
        try:
            response = requests.get(f"{self.base_url}/models", params={"key": self.api_key}, timeout=self.timeout)
            response.raise_for_status()
            return response.json().get("models") or []
        except (requests.RequestException, ValueError) as exc:
            logger.error("Error fetching Gemini models", extra_data={"error": type(exc).__name__})
            raise ProviderError(f"Failed to fetch models: {exc}") from exc


def get_provider(model: ModelDescriptor, api_keys: Mapping[str, str]) -> BaseProvider:
    """Pick the provider serving ``model`` and hand it the matching api key."""

    provider = (model.provider or "").lower()
    if provider == OpenRouterProvider.name:
        return OpenRouterProvider(api_keys.get(OPENROUTER_SERVICE), model.id)
    if provider == GeminiProvider.name:
        return GeminiProvider(api_keys.get(GEMINI_SERVICE), model.id)
    raise ProviderError(f"Unknown provider: {model.provider}")
