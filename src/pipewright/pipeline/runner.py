"""Command runner — executes one external tool invocation per call.

Commands run through the shell in their own session so that a timeout or
build abort can signal the whole process group (the tool and anything it
spawned). Output is captured in full unless ``max_output_bytes`` is set.

Key exports:
    CommandRunner — async ``execute()`` returning a CommandResult
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Iterable, Mapping

from pipewright.pipeline.context import mask_secrets
from pipewright.pipeline.models import CommandResult, FailurePolicy
from pipewright.pipeline.signals import AbortSignal

logger = logging.getLogger("pipewright.pipeline.runner")


class CommandRunner:
    """Runs shell commands with timeouts, abort handling and output capture."""

    def __init__(
        self,
        *,
        max_output_bytes: int | None = None,
        kill_grace: float = 5.0,
    ):
        self.max_output_bytes = max_output_bytes
        self.kill_grace = kill_grace

    async def execute(
        self,
        command: str,
        workdir: str | os.PathLike[str] | None = None,
        failure_policy: FailurePolicy = FailurePolicy.STRICT,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        abort: AbortSignal | None = None,
        secrets: Iterable[str] = (),
    ) -> CommandResult:
        """Run ``command`` and capture its outcome.

        Never raises for tool failures: a command that cannot start, exits
        non-zero, times out or is aborted is reported through the result.
        ``env`` is the complete process environment (None inherits ours).
        """
        secret_values = [s for s in secrets if s]
        shown = mask_secrets(command, secret_values)
        if abort is not None and abort.is_set:
            return CommandResult(command=shown, aborted=True, failure_policy=failure_policy)

        start = time.monotonic()
        logger.debug("Starting command: %s (cwd=%s)", shown, workdir or ".")
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=str(workdir) if workdir is not None else None,
                env=dict(env) if env is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.warning("Command failed to start: %s (%s)", shown, exc)
            return CommandResult(
                command=shown,
                exit_code=None,
                error=mask_secrets(str(exc), secret_values),
                duration_seconds=time.monotonic() - start,
                failure_policy=failure_policy,
            )

        communicate = asyncio.ensure_future(proc.communicate())
        abort_wait = asyncio.ensure_future(abort.wait()) if abort is not None else None
        waiters: set[asyncio.Future] = {communicate}
        if abort_wait is not None:
            waiters.add(abort_wait)

        timed_out = False
        aborted = False
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if communicate not in done:
                if abort_wait is not None and abort_wait in done:
                    aborted = True
                    logger.info("Aborting command (pid %d): %s", proc.pid, shown)
                else:
                    timed_out = True
                    logger.warning("Command timed out after %ss: %s", timeout, shown)
                await self._terminate(proc)
        except asyncio.CancelledError:
            _signal_group(proc, signal.SIGKILL)
            communicate.cancel()
            raise
        finally:
            if abort_wait is not None:
                abort_wait.cancel()

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                communicate, timeout=self.kill_grace if (timed_out or aborted) else None
            )
        except asyncio.TimeoutError:
            # A detached grandchild is still holding the pipes open
            stdout_bytes, stderr_bytes = b"", b""

        result = CommandResult(
            command=shown,
            exit_code=proc.returncode,
            stdout=mask_secrets(self._decode(stdout_bytes), secret_values),
            stderr=mask_secrets(self._decode(stderr_bytes), secret_values),
            duration_seconds=time.monotonic() - start,
            timed_out=timed_out,
            aborted=aborted,
            failure_policy=failure_policy,
        )
        logger.info(
            "Command finished: exit=%s duration=%.2fs policy=%s: %s",
            result.exit_code,
            result.duration_seconds,
            failure_policy.value,
            shown,
        )
        return result

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning("Process group %d ignored SIGTERM, sending SIGKILL", proc.pid)
            _signal_group(proc, signal.SIGKILL)
            await proc.wait()

    def _decode(self, data: bytes | None) -> str:
        data = data or b""
        limit = self.max_output_bytes
        if limit is not None and len(data) > limit:
            dropped = len(data) - limit
            text = data[:limit].decode(errors="replace")
            return f"{text}\n…[truncated {dropped} bytes]"
        return data.decode(errors="replace")


def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    if proc.returncode is not None:
        return
    try:
        # start_new_session makes the child its own process group leader
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.send_signal(sig)
