"""Linked abort signals for cooperative cancellation of a build tree.

A build owns one root :class:`AbortSignal`. Composite nodes that need their
own cancellation scope (fail-fast parallels) derive a child signal; triggering
a signal triggers every signal derived from it, never its parent.
"""

from __future__ import annotations

import asyncio


class AbortSignal:
    """One-shot abort flag that can be awaited and linked to child scopes."""

    def __init__(self, parent: AbortSignal | None = None):
        self._event = asyncio.Event()
        self._children: list[AbortSignal] = []
        self.reason: str | None = None
        if parent is not None:
            parent._children.append(self)
            if parent.is_set:
                self.trigger(parent.reason)

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def child(self) -> AbortSignal:
        """Derive a signal that fires with this one but can also fire alone."""
        return AbortSignal(parent=self)

    def trigger(self, reason: str | None = None) -> None:
        """Fire this signal and all signals derived from it. Idempotent."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.trigger(reason)

    async def wait(self) -> None:
        await self._event.wait()
