"""Stage graph — the immutable node tree the executor walks.

The graph is built once from a validated :class:`PipelineDefinition` and is
never re-parsed during execution. It is always a tree: duplicate sibling ids
and cyclic template references are rejected before any stage runs.

Key exports:
    LeafNode, SequenceNode, ParallelNode — the closed set of node variants
    CommandAction, GateAction — leaf actions
    ArchiveHook, NotifyHook, CommandHook, PostHooks — post-action hooks
    build_graph() — definition → root SequenceNode
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, Union

from pipewright.pipeline.errors import ConfigurationError
from pipewright.pipeline.models import (
    FailurePolicy,
    HookDefinition,
    HookOutcome,
    NodeKind,
    NodeRun,
    PipelineDefinition,
    PostDefinition,
    StageDefinition,
    WhenCondition,
    _parse_duration_seconds,
)

logger = logging.getLogger("pipewright.pipeline.graph")

ROOT_ID = "pipeline"


# ── Actions ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CommandAction:
    """Run one external command under a failure policy."""

    run: str
    workdir: str | None = None
    failure_policy: FailurePolicy = FailurePolicy.STRICT
    timeout: float | None = None
    export: str | None = None


@dataclass(frozen=True)
class GateAction:
    """Wait for a human decision, optionally bounded by a timeout."""

    message: str
    timeout: float | None = None
    submitter_parameter: str | None = None
    submitters: tuple[str, ...] = ()


# ── Post Hooks ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ArchiveHook:
    pattern: str
    allow_empty: bool = False
    source: str | None = None

    kind = "archive"


@dataclass(frozen=True)
class NotifyHook:
    message: str
    url: str | None = None
    headers: tuple[tuple[str, str], ...] = ()

    kind = "notify"


@dataclass(frozen=True)
class CommandHook:
    run: str

    kind = "run"


HookAction = Union[ArchiveHook, NotifyHook, CommandHook]


@dataclass(frozen=True)
class PostHooks:
    """Hooks keyed by outcome class, each in registration order."""

    always: tuple[HookAction, ...] = ()
    success: tuple[HookAction, ...] = ()
    failure: tuple[HookAction, ...] = ()

    def for_outcome(self, outcome: HookOutcome) -> tuple[HookAction, ...]:
        return getattr(self, outcome.value)

    def __bool__(self) -> bool:
        return bool(self.always or self.success or self.failure)


# ── Nodes ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _NodeBase:
    id: str
    path: str
    environment: tuple[tuple[str, str], ...] = ()
    when: WhenCondition | None = None
    post: PostHooks = field(default_factory=PostHooks)

    def walk(self) -> Iterator[StageNode]:
        yield self  # type: ignore[misc]
        for child in self.children:
            yield from child.walk()

    @property
    def children(self) -> tuple[StageNode, ...]:
        return ()


@dataclass(frozen=True)
class LeafNode(_NodeBase):
    action: CommandAction | GateAction | None = None

    kind = NodeKind.LEAF


@dataclass(frozen=True)
class SequenceNode(_NodeBase):
    nodes: tuple[StageNode, ...] = ()

    kind = NodeKind.SEQUENCE

    @property
    def children(self) -> tuple[StageNode, ...]:
        return self.nodes


@dataclass(frozen=True)
class ParallelNode(_NodeBase):
    nodes: tuple[StageNode, ...] = ()
    fail_fast: bool = False

    kind = NodeKind.PARALLEL

    @property
    def children(self) -> tuple[StageNode, ...]:
        return self.nodes


StageNode = Union[LeafNode, SequenceNode, ParallelNode]


def new_run_tree(node: StageNode) -> NodeRun:
    """Create the all-pending NodeRun tree mirroring a graph."""
    return NodeRun(
        id=node.id,
        path=node.path,
        kind=node.kind,
        children=[new_run_tree(child) for child in node.children],
    )


# ── Builder ──────────────────────────────────────────────────────────────────


def build_graph(definition: PipelineDefinition) -> SequenceNode:
    """Build the immutable stage tree for a pipeline definition.

    The root is a SequenceNode over the top-level stages, carrying the
    pipeline-level post hooks.

    Raises:
        ConfigurationError: On duplicate sibling ids, template cycles or
            unknown template references.
    """
    builder = _GraphBuilder(definition.templates)
    children = builder.build_children(definition.stages, parent_path="", parent_id=ROOT_ID)
    root = SequenceNode(
        id=ROOT_ID,
        path="",
        nodes=children,
        post=_build_post(definition.post),
    )
    logger.debug(
        "Built stage graph for '%s': %d nodes",
        definition.name,
        sum(1 for _ in root.walk()) - 1,
    )
    return root


class _GraphBuilder:
    def __init__(self, templates: dict[str, StageDefinition]):
        self._templates = templates
        self._expanding: list[str] = []  # Template expansion stack

    def build_children(
        self,
        stages: list[StageDefinition],
        *,
        parent_path: str,
        parent_id: str,
    ) -> tuple[StageNode, ...]:
        seen: set[str] = set()
        dupes: set[str] = set()
        for stage in stages:
            if stage.id in seen:
                dupes.add(stage.id)
            seen.add(stage.id)
        if dupes:
            msg = f"Duplicate stage IDs under '{parent_id}': {sorted(dupes)}"
            raise ConfigurationError(msg)
        return tuple(self.build(stage, parent_path=parent_path) for stage in stages)

    def build(self, stage: StageDefinition, *, parent_path: str) -> StageNode:
        if stage.use is not None:
            return self._expand_template(stage, parent_path=parent_path)

        path = f"{parent_path}/{stage.id}" if parent_path else stage.id
        common = dict(
            id=stage.id,
            path=path,
            environment=tuple(stage.environment.items()),
            when=stage.when,
            post=_build_post(stage.post),
        )

        if stage.run is not None:
            timeout = stage.parse_timeout_seconds()
            return LeafNode(
                **common,
                action=CommandAction(
                    run=stage.run,
                    workdir=stage.workdir,
                    failure_policy=stage.failure_policy,
                    timeout=timeout,
                    export=stage.export,
                ),
            )

        if stage.gate is not None:
            gate = stage.gate
            return LeafNode(
                **common,
                action=GateAction(
                    message=gate.message,
                    timeout=_parse_duration_seconds(gate.timeout) if gate.timeout is not None else None,
                    submitter_parameter=gate.submitter_parameter,
                    submitters=tuple(gate.submitters),
                ),
            )

        if stage.stages is not None:
            return SequenceNode(
                **common,
                nodes=self.build_children(stage.stages, parent_path=path, parent_id=stage.id),
            )

        if stage.parallel is not None:
            return ParallelNode(
                **common,
                nodes=self.build_children(stage.parallel, parent_path=path, parent_id=stage.id),
                fail_fast=stage.fail_fast,
            )

        msg = f"Stage '{stage.id}' has no action"
        raise ConfigurationError(msg)

    def _expand_template(self, stage: StageDefinition, *, parent_path: str) -> StageNode:
        name = stage.use
        template = self._templates.get(name)  # type: ignore[arg-type]
        if template is None:
            msg = f"Stage '{stage.id}' references unknown template '{name}'"
            raise ConfigurationError(msg)
        if name in self._expanding:
            chain = " → ".join([*self._expanding, name])  # type: ignore[list-item]
            msg = f"Cycle detected in template references: {chain}"
            raise ConfigurationError(msg)

        # The using stage supplies id, when and extra environment/post hooks
        merged = template.model_copy(
            update={
                "id": stage.id,
                "environment": {**template.environment, **stage.environment},
                "when": stage.when or template.when,
                "post": PostDefinition(
                    always=template.post.always + stage.post.always,
                    success=template.post.success + stage.post.success,
                    failure=template.post.failure + stage.post.failure,
                ),
            }
        )
        self._expanding.append(name)  # type: ignore[arg-type]
        try:
            return self.build(merged, parent_path=parent_path)
        finally:
            self._expanding.pop()


def _build_post(post: PostDefinition) -> PostHooks:
    return PostHooks(
        always=tuple(_build_hook(h) for h in post.always),
        success=tuple(_build_hook(h) for h in post.success),
        failure=tuple(_build_hook(h) for h in post.failure),
    )


def _build_hook(hook: HookDefinition) -> HookAction:
    if hook.archive is not None:
        return ArchiveHook(
            pattern=hook.archive.pattern,
            allow_empty=hook.archive.allow_empty,
            source=hook.archive.source,
        )
    if hook.notify is not None:
        return NotifyHook(
            message=hook.notify.message,
            url=hook.notify.url,
            headers=tuple(hook.notify.headers.items()),
        )
    return CommandHook(run=hook.run or "")
