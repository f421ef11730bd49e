"""Post-action dispatcher — outcome-scoped hooks run after a node is final.

Hooks never change the status of the node they belong to. A failing hook is
logged and captured as an unsuccessful :class:`HookResult`.

Key exports:
    PostActionDispatcher — runs archive / notify / run hooks
    HookScope — where and for which build a batch of hooks runs
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from pipewright.pipeline.artifacts import ArtifactRegistry
from pipewright.pipeline.context import EnvironmentContext
from pipewright.pipeline.errors import CommandFailure, HookFailure
from pipewright.pipeline.graph import ArchiveHook, CommandHook, HookAction, NotifyHook, PostHooks
from pipewright.pipeline.models import FailurePolicy, HookOutcome, HookResult, NodeStatus
from pipewright.pipeline.runner import CommandRunner

logger = logging.getLogger("pipewright.pipeline.hooks")


@dataclass
class HookScope:
    """The node a batch of hooks belongs to."""

    build_id: int
    stage_id: str  # Stage path, or "pipeline" for build-level hooks
    context: EnvironmentContext = field(default_factory=EnvironmentContext)
    workdir: Path = field(default_factory=Path.cwd)
    inherit_env: bool = True


def outcome_classes(status: NodeStatus) -> list[HookOutcome]:
    """Which hook lists run for a terminal status, in order."""
    classes = [HookOutcome.ALWAYS]
    if status == NodeStatus.SUCCEEDED:
        classes.append(HookOutcome.SUCCESS)
    elif status in (NodeStatus.FAILED, NodeStatus.ABORTED):
        classes.append(HookOutcome.FAILURE)
    return classes


class PostActionDispatcher:
    """Runs a node's post hooks against the build's artifact registry."""

    def __init__(
        self,
        artifacts: ArtifactRegistry,
        runner: CommandRunner,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.artifacts = artifacts
        self.runner = runner
        self._http = http_client

    async def dispatch(
        self,
        hooks: PostHooks,
        status: NodeStatus,
        scope: HookScope,
        *,
        results: list[HookResult] | None = None,
    ) -> list[HookResult]:
        """Run the hooks for ``status`` and return their results.

        When ``results`` is given each result is appended to it as soon as
        its hook finishes. A hook cut short by cancellation is recorded as
        unsuccessful before the cancellation propagates.
        """
        if results is None:
            results = []
        if not hooks:
            return results
        for outcome in outcome_classes(status):
            for hook in hooks.for_outcome(outcome):
                try:
                    result = await self._run_hook(hook, outcome, status, scope)
                except asyncio.CancelledError:
                    results.append(
                        HookResult(kind=hook.kind, outcome=outcome, success=False, error="Cancelled")
                    )
                    raise
                results.append(result)
        return results

    async def _run_hook(
        self,
        hook: HookAction,
        outcome: HookOutcome,
        status: NodeStatus,
        scope: HookScope,
    ) -> HookResult:
        try:
            detail = await self._execute(hook, status, scope)
        except Exception as exc:
            failure = HookFailure(f"{hook.kind} hook failed for '{scope.stage_id}': {exc}")
            failure.__cause__ = exc
            logger.warning("%s (build #%d)", failure, scope.build_id)
            return HookResult(
                kind=hook.kind,
                outcome=outcome,
                success=False,
                error=str(exc),
                detail={"error_type": type(exc).__name__},
            )
        return HookResult(kind=hook.kind, outcome=outcome, success=True, detail=detail)

    async def _execute(
        self, hook: HookAction, status: NodeStatus, scope: HookScope
    ) -> dict[str, Any]:
        match hook:
            case ArchiveHook():
                source = scope.context.resolve(hook.source) if hook.source else None
                archived = await self.artifacts.archive(
                    scope.stage_id,
                    scope.context.resolve(hook.pattern),
                    source=Path(scope.workdir, source) if source else scope.workdir,
                    allow_empty=hook.allow_empty,
                )
                return {"archived": [a.name for a in archived]}

            case NotifyHook():
                message = scope.context.resolve(hook.message)
                logger.info("[notify] %s (stage '%s', %s)", message, scope.stage_id, status.value)
                if not hook.url:
                    return {"message": message}
                response = await self._post(
                    scope.context.resolve(hook.url),
                    {
                        "build_id": scope.build_id,
                        "stage": scope.stage_id,
                        "status": status.value,
                        "message": message,
                    },
                    headers={k: scope.context.resolve(v) for k, v in hook.headers},
                )
                return {"message": message, "status_code": response.status_code}

            case CommandHook():
                result = await self.runner.execute(
                    scope.context.resolve(hook.run),
                    scope.workdir,
                    FailurePolicy.STRICT,
                    env=scope.context.process_env(inherit=scope.inherit_env),
                    secrets=scope.context.secret_values(),
                )
                if not result.succeeded:
                    raise CommandFailure(result.command, result)
                return {"exit_code": result.exit_code}

        raise TypeError(f"Unknown hook type: {type(hook).__name__}")

    async def _post(
        self, url: str, payload: dict[str, Any], *, headers: dict[str, str]
    ) -> httpx.Response:
        if self._http is not None:
            response = await self._http.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        return response
