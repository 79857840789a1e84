from collections import deque
from typing import Dict, List

DEFAULT_WINDOW_SIZE = 10

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"


class ChatContextWindow:
    """Sliding window of the most recent (role, content) turns sent as context."""

    def __init__(self, size: int = DEFAULT_WINDOW_SIZE):
        if size < 1:
            raise ValueError("Context window size must be positive")
        self.size = size
        self._turns = deque(maxlen=size)

    def add(self, role: str, content: str) -> None:
        self._turns.append({"role": role, "content": content})

    def history(self) -> List[Dict[str, str]]:
        return [dict(turn) for turn in self._turns]

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)
