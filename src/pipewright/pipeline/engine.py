"""Pipeline executor — walks the stage graph for one build at a time.

The executor owns the single-build lock and the gate controller. Everything
else a build needs travels explicitly in a :class:`BuildScope`: the record
being written, the build's abort signal, its artifact registry and its
post-action dispatcher.

Key exports:
    PipelineExecutor — launch()/run() a stage tree, launch_pipeline()/
        run_pipeline() a validated definition
    BuildScope — per-build state passed down the tree
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Mapping

import httpx

from pipewright.pipeline.artifacts import ArtifactRegistry
from pipewright.pipeline.context import (
    CredentialProvider,
    EnvCredentialProvider,
    EnvironmentContext,
    resolve_credentials,
)
from pipewright.pipeline.errors import BuildBusyError, CommandFailure, GateTimeout, PipelineTimeout
from pipewright.pipeline.gates import GateController
from pipewright.pipeline.graph import (
    ROOT_ID,
    CommandAction,
    GateAction,
    LeafNode,
    ParallelNode,
    SequenceNode,
    StageNode,
    build_graph,
    new_run_tree,
)
from pipewright.pipeline.hooks import HookScope, PostActionDispatcher
from pipewright.pipeline.models import (
    BuildRecord,
    BuildStatus,
    FailurePolicy,
    GateState,
    NodeRun,
    NodeStatus,
    PipelineDefinition,
)
from pipewright.pipeline.registry import BuildRegistry
from pipewright.pipeline.runner import CommandRunner
from pipewright.pipeline.signals import AbortSignal

if TYPE_CHECKING:
    from pipewright.config import EngineSettings

logger = logging.getLogger("pipewright.pipeline.engine")


@dataclass
class BuildScope:
    """Per-build state shared by every node of one build."""

    record: BuildRecord
    abort: AbortSignal
    artifacts: ArtifactRegistry
    dispatcher: PostActionDispatcher
    workspace: Path

    @property
    def build_id(self) -> int:
        return self.record.build_id


# ── Pipeline Executor ────────────────────────────────────────────────────────


class PipelineExecutor:
    """Runs builds of a stage graph, one at a time.

    Usage:
        executor = PipelineExecutor(registry, settings=settings)
        record = await executor.run_pipeline(definition)

    ``registry`` may be None, in which case builds are numbered in memory
    and nothing is persisted.
    """

    def __init__(
        self,
        registry: BuildRegistry | None = None,
        *,
        settings: EngineSettings | None = None,
        runner: CommandRunner | None = None,
        gates: GateController | None = None,
        credentials: CredentialProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        if settings is None:
            from pipewright.config import EngineSettings

            settings = EngineSettings()
        self.settings = settings
        self._registry = registry
        self.runner = runner or CommandRunner(
            max_output_bytes=settings.max_output_bytes,
            kill_grace=settings.kill_grace,
        )
        self.gates = gates or GateController()
        self._credentials = credentials or EnvCredentialProvider()
        self._http_client = http_client

        self._lock = asyncio.Lock()
        self._current: BuildRecord | None = None
        self._task: asyncio.Task[BuildRecord] | None = None
        self._abort: AbortSignal | None = None
        self._local_build_id = 0

    @property
    def current_build(self) -> BuildRecord | None:
        """The record of the build in progress (live, not yet persisted)."""
        return self._current

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # ── Build Lifecycle ──────────────────────────────────────────────────────

    async def launch_pipeline(
        self,
        definition: PipelineDefinition,
        *,
        params: Mapping[str, str] | None = None,
    ) -> tuple[BuildRecord, asyncio.Task[BuildRecord]]:
        """Validate, resolve credentials and start a build of ``definition``.

        Raises:
            ConfigurationError: On graph errors or unresolved credentials.
            BuildBusyError: If a build is running and concurrent builds are disabled.
        """
        root = build_graph(definition)
        secrets = resolve_credentials(definition.credentials, self._credentials)
        context = EnvironmentContext(
            {**definition.environment, **(params or {})},
            secrets=secrets,
        )
        options = definition.options
        return await self.launch(
            root,
            context,
            build_timeout=options.build_timeout_seconds(),
            pipeline_name=definition.name,
            discard_count=options.discard_count,
            disable_concurrent_builds=options.disable_concurrent_builds,
        )

    async def run_pipeline(
        self,
        definition: PipelineDefinition,
        *,
        params: Mapping[str, str] | None = None,
    ) -> BuildRecord:
        _, task = await self.launch_pipeline(definition, params=params)
        return await task

    async def launch(
        self,
        root: SequenceNode,
        context: EnvironmentContext,
        *,
        build_timeout: float | None = None,
        pipeline_name: str = "pipeline",
        discard_count: int | None = None,
        disable_concurrent_builds: bool = True,
    ) -> tuple[BuildRecord, asyncio.Task[BuildRecord]]:
        """Start a build in the background and return its record immediately.

        With ``disable_concurrent_builds`` a second launch while a build is
        running raises BuildBusyError; otherwise it waits for the lock.
        """
        if disable_concurrent_builds and self._lock.locked():
            running = self._current.build_id if self._current else "?"
            msg = f"Build #{running} is already running and concurrent builds are disabled"
            raise BuildBusyError(msg)

        await self._lock.acquire()
        try:
            record = BuildRecord(
                pipeline_name=pipeline_name,
                status=BuildStatus.RUNNING,
                started_at=datetime.now(timezone.utc),
                root=new_run_tree(root),
            )
            if self._registry is not None:
                await self._registry.create_build(record, discard_count)
            else:
                self._local_build_id += 1
                record.build_id = self._local_build_id

            artifacts = ArtifactRegistry(self.settings.workspace)
            scope = BuildScope(
                record=record,
                abort=AbortSignal(),
                artifacts=artifacts,
                dispatcher=PostActionDispatcher(
                    artifacts, self.runner, http_client=self._http_client
                ),
                workspace=self.settings.workspace,
            )
            context = context.child(
                {
                    "BUILD_ID": str(record.build_id),
                    "PIPELINE_NAME": pipeline_name,
                    "WORKSPACE": str(self.settings.workspace),
                },
                literal=True,
            )
            self.gates.clear()
            self._current = record
            task = asyncio.create_task(
                self._run_build(root, context, build_timeout, scope),
                name=f"pipewright-build-{record.build_id}",
            )
            task.add_done_callback(_log_build_crash)
            self._task = task
            self._abort = scope.abort
        except BaseException:
            self._current = None
            self._lock.release()
            raise

        logger.info(
            "Build #%d of '%s' started (timeout=%s)",
            record.build_id,
            pipeline_name,
            f"{build_timeout}s" if build_timeout is not None else "none",
        )
        return record, task

    async def run(
        self,
        root: SequenceNode,
        context: EnvironmentContext,
        build_timeout: float | None = None,
        **options,
    ) -> BuildRecord:
        """Run a build to completion. See :meth:`launch`."""
        _, task = await self.launch(root, context, build_timeout=build_timeout, **options)
        return await task

    async def _run_build(
        self,
        root: SequenceNode,
        context: EnvironmentContext,
        build_timeout: float | None,
        scope: BuildScope,
    ) -> BuildRecord:
        try:
            return await self._execute_build(root, context, build_timeout, scope)
        except asyncio.CancelledError:
            logger.error("Build #%d cancelled before it finished", scope.build_id)
            scope.record.error_message = scope.record.error_message or "Build cancelled"
            self._sweep(scope.record)
            scope.record.status = BuildStatus.ABORTED
            await self._finish_record(scope)
            raise
        finally:
            self._current = None
            self._task = None
            self._abort = None
            self._lock.release()

    async def shutdown(self) -> None:
        """Abort the running build, if any, and wait for it to unwind.

        The build gets ``abort_grace`` to stop its commands and once more for
        its pipeline hooks. After that its task is cancelled. The record is
        persisted in both cases, so the registry can be closed afterwards.
        """
        task, abort = self._task, self._abort
        if task is None or task.done():
            return
        if self._current is not None and self._current.error_message is None:
            self._current.error_message = "Build aborted: engine shutdown"
        running = self._current.build_id if self._current else "?"
        logger.warning("Shutting down; aborting build #%s", running)
        if abort is not None:
            abort.trigger("engine shutdown")

        done, _ = await asyncio.wait({task}, timeout=2 * self.settings.abort_grace)
        if not done:
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _execute_build(
        self,
        root: SequenceNode,
        context: EnvironmentContext,
        build_timeout: float | None,
        scope: BuildScope,
    ) -> BuildRecord:
        record = scope.record
        assert record.root is not None

        tree = asyncio.ensure_future(
            self._run_node(root, record.root, context, scope, scope.abort)
        )
        try:
            done, _ = await asyncio.wait({tree}, timeout=build_timeout)
            if not done:
                timeout = PipelineTimeout(f"Build timed out after {build_timeout}s")
                record.timed_out = True
                record.error_message = str(timeout)
                logger.warning(
                    "Build #%d timed out after %ss; aborting", record.build_id, build_timeout
                )
                scope.abort.trigger("build timeout")

                done, _ = await asyncio.wait({tree}, timeout=self.settings.abort_grace)
                if not done:
                    logger.error(
                        "Build #%d did not unwind within %ss; cancelling",
                        record.build_id,
                        self.settings.abort_grace,
                    )
                    tree.cancel()
                    await asyncio.gather(tree, return_exceptions=True)
            elif tree.exception() is not None:
                exc = tree.exception()
                logger.error("Build #%d crashed: %s", record.build_id, exc, exc_info=exc)
                record.error_message = f"{type(exc).__name__}: {exc}"
        except asyncio.CancelledError:
            tree.cancel()
            await asyncio.gather(tree, return_exceptions=True)
            raise

        self._sweep(record)
        if record.timed_out:
            status = BuildStatus.ABORTED
        else:
            status = _build_status(record.root.effective_status)
        record.status = status

        hooks = scope.dispatcher.dispatch(
            root.post,
            NodeStatus(status.value),
            HookScope(
                build_id=record.build_id,
                stage_id=ROOT_ID,
                context=context,
                workdir=scope.workspace,
                inherit_env=self.settings.inherit_env,
            ),
            results=record.hooks,
        )
        if scope.abort.is_set:
            # An aborted build still holds the lock while its hooks run
            try:
                await asyncio.wait_for(hooks, timeout=self.settings.abort_grace)
            except asyncio.TimeoutError:
                logger.error(
                    "Build #%d pipeline hooks did not finish within %ss; cancelled",
                    record.build_id,
                    self.settings.abort_grace,
                )
        else:
            await hooks

        await self._finish_record(scope)
        logger.info(
            "Build #%d finished: %s (%.1fs)",
            record.build_id,
            status.value,
            record.duration_seconds or 0.0,
        )
        return record

    def _sweep(self, record: BuildRecord) -> None:
        """Abort waiting gates and mark every unfinished node Aborted."""
        for gate in self.gates.pending():
            gate.abort()
        if record.root is None:
            return
        for node in record.root.walk():
            if not node.status.is_terminal:
                node.transition(NodeStatus.ABORTED)

    async def _finish_record(self, scope: BuildScope) -> None:
        record = scope.record
        record.artifacts = scope.artifacts.artifacts
        record.completed_at = datetime.now(timezone.utc)
        if self._registry is not None:
            await self._registry.update_build(record)

    # ── Node Execution ───────────────────────────────────────────────────────

    async def _run_node(
        self,
        node: StageNode,
        run: NodeRun,
        context: EnvironmentContext,
        scope: BuildScope,
        abort: AbortSignal,
    ) -> dict[str, str]:
        """Drive one node to a terminal status. Returns its exported variables."""
        env = context.child(dict(node.environment))

        if abort.is_set:
            await self._abort_unstarted(node, run, env, scope)
            return {}
        if node.when is not None and not node.when.matches(env):
            logger.info("Stage '%s' skipped: condition not met (build #%d)", node.path, scope.build_id)
            _mark_pending(run, NodeStatus.SKIPPED)
            return {}

        run.transition(NodeStatus.RUNNING)
        logger.debug("Stage '%s' running (build #%d)", node.path or ROOT_ID, scope.build_id)
        exports: dict[str, str] = {}
        try:
            match node:
                case LeafNode():
                    exports = await self._run_leaf(node, run, env, scope, abort)
                case SequenceNode():
                    exports = await self._run_sequence(node, run, env, scope, abort)
                case ParallelNode():
                    exports = await self._run_parallel(node, run, env, scope, abort)
        except Exception as exc:
            logger.exception("Stage '%s' raised unexpectedly (build #%d)", node.path, scope.build_id)
            run.error_message = f"{type(exc).__name__}: {exc}"
            _mark_pending(run, NodeStatus.ABORTED, include_self=False)
            for child in run.walk():
                if child.status == NodeStatus.RUNNING:
                    child.transition(NodeStatus.FAILED)
            exports = {}

        await self._dispatch_node_hooks(node, run, env, scope)
        return exports

    async def _abort_unstarted(
        self,
        node: StageNode,
        run: NodeRun,
        env: EnvironmentContext,
        scope: BuildScope,
    ) -> None:
        """Abort a node that never started. Descendants go first, and each of
        them still runs its own hooks."""
        if run.status != NodeStatus.PENDING:
            return
        match node:
            case SequenceNode() | ParallelNode():
                for child, child_run in zip(node.nodes, run.children):
                    child_env = env.child(dict(child.environment))
                    await self._abort_unstarted(child, child_run, child_env, scope)
        run.transition(NodeStatus.ABORTED)
        await self._dispatch_node_hooks(node, run, env, scope)

    async def _dispatch_node_hooks(
        self,
        node: StageNode,
        run: NodeRun,
        env: EnvironmentContext,
        scope: BuildScope,
    ) -> None:
        # The root's hooks are the pipeline-level hooks, dispatched once per build
        if not node.path:
            return
        run.hooks = await scope.dispatcher.dispatch(
            node.post,
            run.status,
            HookScope(
                build_id=scope.build_id,
                stage_id=node.path,
                context=env,
                workdir=scope.workspace,
                inherit_env=self.settings.inherit_env,
            ),
        )

    async def _run_sequence(
        self,
        node: SequenceNode,
        run: NodeRun,
        context: EnvironmentContext,
        scope: BuildScope,
        abort: AbortSignal,
    ) -> dict[str, str]:
        exports: dict[str, str] = {}
        env = context
        halted = False
        for child, child_run in zip(node.nodes, run.children):
            if halted and not abort.is_set:
                _mark_pending(child_run, NodeStatus.SKIPPED)
                continue
            child_exports = await self._run_node(child, child_run, env, scope, abort)
            if child_exports:
                exports.update(child_exports)
                env = env.child(child_exports, literal=True)
            if child_run.effective_status in (NodeStatus.FAILED, NodeStatus.ABORTED):
                halted = True
        run.transition(_composite_status(run.children))
        return exports

    async def _run_parallel(
        self,
        node: ParallelNode,
        run: NodeRun,
        context: EnvironmentContext,
        scope: BuildScope,
        abort: AbortSignal,
    ) -> dict[str, str]:
        branch_abort = abort.child() if node.fail_fast else abort

        async def _branch(child: StageNode, child_run: NodeRun) -> dict[str, str]:
            exports = await self._run_node(child, child_run, context, scope, branch_abort)
            if (
                node.fail_fast
                and child_run.effective_status == NodeStatus.FAILED
                and not branch_abort.is_set
            ):
                logger.warning(
                    "Stage '%s' failed; aborting sibling branches of '%s' (build #%d)",
                    child.path,
                    node.path,
                    scope.build_id,
                )
                branch_abort.trigger(f"fail-fast: {child.path}")
            return exports

        results = await asyncio.gather(
            *(_branch(child, child_run) for child, child_run in zip(node.nodes, run.children))
        )
        # Merged in declaration order so later branches win on name clashes
        merged: dict[str, str] = {}
        for exports in results:
            merged.update(exports)
        run.transition(_composite_status(run.children))
        return merged

    async def _run_leaf(
        self,
        node: LeafNode,
        run: NodeRun,
        env: EnvironmentContext,
        scope: BuildScope,
        abort: AbortSignal,
    ) -> dict[str, str]:
        match node.action:
            case CommandAction() as action:
                return await self._run_command(node, action, run, env, scope, abort)
            case GateAction() as action:
                return await self._run_gate(node, action, run, env, scope, abort)
        raise TypeError(f"Leaf '{node.path}' has no action")

    async def _run_command(
        self,
        node: LeafNode,
        action: CommandAction,
        run: NodeRun,
        env: EnvironmentContext,
        scope: BuildScope,
        abort: AbortSignal,
    ) -> dict[str, str]:
        workdir = scope.workspace
        if action.workdir:
            workdir = Path(scope.workspace, env.resolve(action.workdir))

        result = await self.runner.execute(
            env.resolve(action.run),
            workdir,
            action.failure_policy,
            env=env.process_env(inherit=self.settings.inherit_env),
            timeout=action.timeout,
            abort=abort,
            secrets=env.secret_values(),
        )
        run.command = result

        if result.aborted:
            run.error_message = "Command aborted"
            run.transition(NodeStatus.ABORTED)
            return {}
        if result.succeeded:
            run.transition(NodeStatus.SUCCEEDED)
            logger.info("Stage '%s' succeeded (build #%d)", node.path, scope.build_id)
            if action.export:
                run.exports = {action.export: result.stdout.strip()}
            return dict(run.exports)

        failure = CommandFailure(result.command, result)
        run.error_message = str(failure)
        if result.propagated_success:
            run.transition(NodeStatus.FAILED, propagated=NodeStatus.SUCCEEDED)
            logger.warning(
                "Stage '%s' failed under %s policy; continuing (build #%d): %s",
                node.path,
                FailurePolicy.BEST_EFFORT.value,
                scope.build_id,
                failure,
            )
        else:
            run.transition(NodeStatus.FAILED)
            logger.warning("Stage '%s' failed (build #%d): %s", node.path, scope.build_id, failure)
        return {}

    async def _run_gate(
        self,
        node: LeafNode,
        action: GateAction,
        run: NodeRun,
        env: EnvironmentContext,
        scope: BuildScope,
        abort: AbortSignal,
    ) -> dict[str, str]:
        waiter = self.gates.open(
            node.path,
            env.resolve(action.message),
            timeout=action.timeout,
            submitters=action.submitters,
            submitter_parameter=action.submitter_parameter,
        )
        run.gate = waiter.to_record()
        state = await waiter.wait(abort)
        run.gate = waiter.to_record()

        match state:
            case GateState.APPROVED:
                run.transition(NodeStatus.SUCCEEDED)
                if action.submitter_parameter and waiter.approver:
                    run.exports = {action.submitter_parameter: waiter.approver}
                return dict(run.exports)
            case GateState.TIMED_OUT:
                run.error_message = str(GateTimeout(f"No decision within {action.timeout}s"))
                run.transition(NodeStatus.FAILED)
                logger.warning("Gate '%s' timed out (build #%d)", node.path, scope.build_id)
            case _:
                by = f" by {waiter.approver}" if waiter.approver else ""
                run.error_message = f"Gate aborted{by}"
                run.transition(NodeStatus.ABORTED)
        return {}


# ── Helpers ──────────────────────────────────────────────────────────────────


def _composite_status(children: list[NodeRun]) -> NodeStatus:
    """Failed beats Aborted beats Succeeded. Skipped children count as success."""
    statuses = {child.effective_status for child in children}
    if NodeStatus.FAILED in statuses:
        return NodeStatus.FAILED
    if NodeStatus.ABORTED in statuses:
        return NodeStatus.ABORTED
    return NodeStatus.SUCCEEDED


def _mark_pending(run: NodeRun, status: NodeStatus, *, include_self: bool = True) -> None:
    """Move every still-pending node of a subtree to ``status`` without running it."""
    for node in run.walk():
        if node is run and not include_self:
            continue
        if node.status == NodeStatus.PENDING:
            node.transition(status)


def _build_status(root_status: NodeStatus) -> BuildStatus:
    match root_status:
        case NodeStatus.FAILED:
            return BuildStatus.FAILED
        case NodeStatus.ABORTED:
            return BuildStatus.ABORTED
        case _:
            return BuildStatus.SUCCEEDED


def _log_build_crash(task: asyncio.Task) -> None:
    """Collect the exception of a build task nobody awaits."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Build task %s failed: %s", task.get_name(), exc, exc_info=exc)
