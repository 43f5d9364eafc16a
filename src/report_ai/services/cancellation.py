from __future__ import annotations

import asyncio
from typing import Dict, Optional


class CancellationToken:
    """Generation-stamped token for one logical request.

    A result may only be applied while the token is still valid. Cancelling
    also aborts the attached task when one is attached.
    """

    def __init__(self, key: str, generation: int) -> None:
        self.key = key
        self.generation = generation
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def attach(self, task: asyncio.Task) -> None:
        self._task = task
        if self._cancelled:
            task.cancel()

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"CancellationToken({self.key!r}, gen={self.generation}, {state})"


class TokenSource:
    """Issues tokens per key; issuing a new one supersedes the previous."""

    def __init__(self) -> None:
        self._generations: Dict[str, int] = {}
        self._current: Dict[str, CancellationToken] = {}

    def issue(self, key: str) -> CancellationToken:
        self.cancel(key)
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        token = CancellationToken(key, generation)
        self._current[key] = token
        return token

    def current(self, key: str) -> Optional[CancellationToken]:
        return self._current.get(key)

    def is_current(self, token: CancellationToken) -> bool:
        return not token.cancelled and self._current.get(token.key) is token

    def retire(self, token: CancellationToken) -> None:
        """Forget a finished token without cancelling it."""
        if self._current.get(token.key) is token:
            del self._current[token.key]

    def cancel(self, key: str) -> bool:
        token = self._current.pop(key, None)
        if token is None:
            return False
        token.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._current):
            self.cancel(key)
