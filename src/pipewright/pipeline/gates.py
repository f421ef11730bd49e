"""Human approval gates — single-resolution waits raced against a deadline.

A :class:`GateWaiter` blocks only the branch that contains its gate. It moves
once from ``awaiting-input`` to one of ``approved``, ``timed-out`` or
``aborted``; whichever resolution arrives first wins and every later attempt
is ignored (``approve``/``abort`` return False).

The :class:`GateController` indexes the waiting gates of the current build by
stage path so that the HTTP API and the CLI can resolve them.

Key exports:
    GateWaiter — one gate's future, deadline and audit metadata
    GateController — path → waiter index with approve/abort entry points
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from pipewright.pipeline.errors import GateAuthorizationError
from pipewright.pipeline.models import GateRecord, GateState
from pipewright.pipeline.signals import AbortSignal

logger = logging.getLogger("pipewright.pipeline.gates")


# ── Gate Waiter ──────────────────────────────────────────────────────────────


class GateWaiter:
    """A gate awaiting a human decision.

    Must be created inside a running event loop.
    """

    def __init__(
        self,
        path: str,
        message: str,
        *,
        timeout: float | None = None,
        submitters: tuple[str, ...] | list[str] = (),
        submitter_parameter: str | None = None,
    ):
        self.path = path
        self.message = message
        self.timeout = timeout
        self.submitters = tuple(submitters)
        self.submitter_parameter = submitter_parameter
        self.created_at = datetime.now(timezone.utc)

        self.state = GateState.AWAITING_INPUT
        self.approver: str | None = None
        self.resolved_at: datetime | None = None
        self._future: asyncio.Future[GateState] = asyncio.get_running_loop().create_future()

    @property
    def is_resolved(self) -> bool:
        return self._future.done()

    def approve(self, approver: str) -> bool:
        """Approve the gate. Returns False if it was already resolved.

        Raises:
            ValueError: If ``approver`` is empty.
            GateAuthorizationError: If ``approver`` is not an allowed submitter.
        """
        approver = (approver or "").strip()
        if not approver:
            raise ValueError("Approver identity must not be empty")
        if self.submitters and approver not in self.submitters:
            msg = f"'{approver}' is not allowed to approve gate '{self.path}'"
            raise GateAuthorizationError(msg)
        return self._resolve(GateState.APPROVED, approver)

    def abort(self, approver: str | None = None) -> bool:
        """Reject the gate. Returns False if it was already resolved."""
        return self._resolve(GateState.ABORTED, approver)

    async def wait(self, abort: AbortSignal | None = None) -> GateState:
        """Block until approved, aborted, or the timeout elapses.

        A timeout never resolves the gate before ``timeout`` seconds have
        passed on the loop clock.
        """
        loop = asyncio.get_running_loop()
        deadline = None if self.timeout is None else loop.time() + self.timeout
        abort_wait = asyncio.ensure_future(abort.wait()) if abort is not None else None
        try:
            while not self._future.done():
                if abort_wait is not None and abort_wait.done():
                    self._resolve(GateState.ABORTED, None)
                    break
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    self._resolve(GateState.TIMED_OUT, None)
                    break
                waiters: set[asyncio.Future] = {self._future}
                if abort_wait is not None:
                    waiters.add(abort_wait)
                # The loop may wake slightly early; re-check the deadline on each pass
                await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if abort_wait is not None:
                abort_wait.cancel()
        return self.state

    def to_record(self) -> GateRecord:
        return GateRecord(
            message=self.message,
            state=self.state,
            approver=self.approver,
            submitter_parameter=self.submitter_parameter,
            resolved_at=self.resolved_at,
        )

    def _resolve(self, state: GateState, approver: str | None) -> bool:
        if self._future.done():
            logger.info(
                "Ignoring %s for gate '%s': already %s",
                state.value,
                self.path,
                self.state.value,
            )
            return False
        self.state = state
        self.approver = approver
        self.resolved_at = datetime.now(timezone.utc)
        self._future.set_result(state)
        logger.info(
            "Gate '%s' resolved: %s%s",
            self.path,
            state.value,
            f" by {approver}" if approver else "",
        )
        return True


# ── Gate Controller ──────────────────────────────────────────────────────────


class GateController:
    """Index of the current build's gates, keyed by stage path.

    ``on_open`` is called with each new waiter before the executor starts
    waiting on it (the CLI uses it to auto-approve with ``--approve-as``).
    """

    def __init__(self, on_open: Callable[[GateWaiter], None] | None = None):
        self._gates: dict[str, GateWaiter] = {}
        self.on_open = on_open

    def open(
        self,
        path: str,
        message: str,
        *,
        timeout: float | None = None,
        submitters: tuple[str, ...] = (),
        submitter_parameter: str | None = None,
    ) -> GateWaiter:
        waiter = GateWaiter(
            path,
            message,
            timeout=timeout,
            submitters=submitters,
            submitter_parameter=submitter_parameter,
        )
        self._gates[path] = waiter
        logger.info(
            "Gate '%s' awaiting input: %s (timeout=%s)",
            path,
            message,
            f"{timeout}s" if timeout is not None else "none",
        )
        if self.on_open is not None:
            self.on_open(waiter)
        return waiter

    def get(self, path: str) -> GateWaiter:
        """Raises KeyError for an unknown path."""
        try:
            return self._gates[path]
        except KeyError:
            raise KeyError(f"No gate at '{path}'") from None

    def pending(self) -> list[GateWaiter]:
        return [g for g in self._gates.values() if not g.is_resolved]

    def approve(self, path: str, approver: str) -> bool:
        return self.get(path).approve(approver)

    def abort(self, path: str, approver: str | None = None) -> bool:
        return self.get(path).abort(approver)

    def clear(self) -> None:
        """Forget all gates (called when a new build starts)."""
        self._gates.clear()
