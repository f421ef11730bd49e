"""Pipeline Pydantic models — definitions and runtime state.

Key exports:
    Definition models: PipelineDefinition, PipelineOptions, StageDefinition,
        GateDefinition, WhenCondition, PostDefinition, HookDefinition,
        ArchiveDefinition, NotifyDefinition
    Runtime state models: NodeRun, CommandResult, GateRecord, HookResult,
        Artifact, BuildRecord
    Enums: NodeKind, NodeStatus, FailurePolicy, GateState, HookOutcome, BuildStatus
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator, model_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class NodeKind(str, Enum):
    """The closed set of stage graph node variants."""

    LEAF = "leaf"
    SEQUENCE = "sequence"
    PARALLEL = "parallel"


class NodeStatus(str, Enum):
    """Stage node lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (NodeStatus.PENDING, NodeStatus.RUNNING)


class FailurePolicy(str, Enum):
    """How a non-zero command exit propagates to the enclosing stage."""

    STRICT = "strict"
    BEST_EFFORT = "best-effort"


class GateState(str, Enum):
    """Gate resolution states."""

    AWAITING_INPUT = "awaiting-input"
    APPROVED = "approved"
    TIMED_OUT = "timed-out"
    ABORTED = "aborted"


class HookOutcome(str, Enum):
    """Outcome classes that post-hooks are registered under."""

    ALWAYS = "always"
    SUCCESS = "success"
    FAILURE = "failure"


class BuildStatus(str, Enum):
    """Overall build status reported to the caller."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


# Allowed NodeStatus transitions (monotonic: pending → running → terminal)
_TRANSITIONS: dict[NodeStatus, set[NodeStatus]] = {
    NodeStatus.PENDING: {NodeStatus.RUNNING, NodeStatus.SKIPPED, NodeStatus.ABORTED},
    NodeStatus.RUNNING: {NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.ABORTED},
}


# ── Stage ID validation ──────────────────────────────────────────────────────

STAGE_ID_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")


def _stringify_mapping(value: Any) -> Any:
    """YAML scalars (ints, bools) → strings, so ``PORT: 8080`` is accepted."""
    if isinstance(value, dict):
        out: dict[str, str] = {}
        for k, v in value.items():
            if isinstance(v, bool):
                out[str(k)] = "true" if v else "false"
            elif v is None:
                out[str(k)] = ""
            else:
                out[str(k)] = str(v)
        return out
    return value


def _validate_duration(value: str | float | None) -> str | float | None:
    if value is None:
        return None
    _parse_duration_seconds(value)
    return value


# ── Hook Definitions ─────────────────────────────────────────────────────────


class ArchiveDefinition(BaseModel):
    """``archive:`` hook — record files matching a glob as build artifacts."""

    pattern: str
    allow_empty: bool = False
    source: str | None = None  # Directory the pattern is relative to (default: workspace)


class NotifyDefinition(BaseModel):
    """``notify:`` hook — log a message and optionally POST it to a URL."""

    message: str
    url: str | None = None
    headers: dict[str, str] = {}


class HookDefinition(BaseModel):
    """A single post-action hook. Exactly one of the fields must be set."""

    archive: ArchiveDefinition | None = None
    notify: NotifyDefinition | None = None
    run: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if isinstance(data.get("archive"), str):
                data["archive"] = {"pattern": data["archive"]}
            if isinstance(data.get("notify"), str):
                data["notify"] = {"message": data["notify"]}
        return data

    @model_validator(mode="after")
    def validate_hook(self) -> HookDefinition:
        kinds = [k for k in ("archive", "notify", "run") if getattr(self, k) is not None]
        if len(kinds) != 1:
            msg = f"A post hook must define exactly one of archive/notify/run, got {kinds or 'none'}"
            raise ValueError(msg)
        return self


class PostDefinition(BaseModel):
    """Outcome-scoped hook lists (``post:`` block)."""

    always: list[HookDefinition] = []
    success: list[HookDefinition] = []
    failure: list[HookDefinition] = []


# ── Stage Definitions ────────────────────────────────────────────────────────


class GateDefinition(BaseModel):
    """Human approval gate config."""

    message: str = "Proceed?"
    timeout: str | float | None = None  # None = wait until approved or build timeout
    submitter_parameter: str | None = None  # Variable that receives the approver identity
    submitters: list[str] = []  # Allowed approvers (empty = anyone)

    _check_timeout = field_validator("timeout")(_validate_duration)

    @field_validator("submitters", mode="before")
    @classmethod
    def _split_submitters(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v


class WhenCondition(BaseModel):
    """Conditional execution — all listed checks must hold."""

    env: dict[str, str] = {}  # NAME must equal value
    not_env: dict[str, str] = {}  # NAME must not equal value

    _coerce_env = field_validator("env", "not_env", mode="before")(_stringify_mapping)

    def matches(self, environment: Mapping[str, str]) -> bool:
        for name, expected in self.env.items():
            if environment.get(name) != expected:
                return False
        for name, rejected in self.not_env.items():
            if environment.get(name) == rejected:
                return False
        return True


class StageDefinition(BaseModel):
    """A single stage in a pipeline definition.

    Exactly one of ``run``, ``gate``, ``stages``, ``parallel`` or ``use``
    defines what the stage does.
    """

    id: str

    # Leaf: command
    run: str | None = None
    failure_policy: FailurePolicy = FailurePolicy.STRICT
    workdir: str | None = None
    timeout: str | float | None = None
    export: str | None = None

    # Leaf: gate
    gate: GateDefinition | None = None

    # Composite
    stages: list[StageDefinition] | None = None
    parallel: list[StageDefinition] | None = None
    fail_fast: bool = False

    # Template reference
    use: str | None = None

    # All stage types
    environment: dict[str, str] = {}
    when: WhenCondition | None = None
    post: PostDefinition = Field(default_factory=PostDefinition)

    _coerce_env = field_validator("environment", mode="before")(_stringify_mapping)
    _check_timeout = field_validator("timeout")(_validate_duration)

    @model_validator(mode="after")
    def validate_stage(self) -> StageDefinition:
        if not STAGE_ID_PATTERN.match(self.id):
            msg = f"Stage ID '{self.id}' must match pattern {STAGE_ID_PATTERN.pattern}"
            raise ValueError(msg)

        bodies = [
            name
            for name in ("run", "gate", "stages", "parallel", "use")
            if getattr(self, name) is not None
        ]
        if len(bodies) != 1:
            msg = (
                f"Stage '{self.id}': exactly one of run/gate/stages/parallel/use "
                f"is required, got {bodies or 'none'}"
            )
            raise ValueError(msg)

        match bodies[0]:
            case "stages" | "parallel":
                if not getattr(self, bodies[0]):
                    msg = f"Stage '{self.id}': '{bodies[0]}' must not be empty"
                    raise ValueError(msg)
            case "gate":
                if self.export:
                    msg = f"Stage '{self.id}': gates export via 'submitter_parameter', not 'export'"
                    raise ValueError(msg)
        if self.export and not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", self.export):
            msg = f"Stage '{self.id}': invalid export variable name '{self.export}'"
            raise ValueError(msg)
        return self

    def parse_timeout_seconds(self) -> float | None:
        if self.timeout is None:
            return None
        return _parse_duration_seconds(self.timeout)


class PipelineOptions(BaseModel):
    """Global pipeline options."""

    build_timeout: str | float | None = None
    discard_count: int | None = Field(None, ge=1)
    disable_concurrent_builds: bool = True

    _check_timeout = field_validator("build_timeout")(_validate_duration)

    def build_timeout_seconds(self) -> float | None:
        if self.build_timeout is None:
            return None
        return _parse_duration_seconds(self.build_timeout)


class PipelineDefinition(BaseModel):
    """Complete pipeline definition parsed from YAML."""

    name: str = "pipeline"
    description: str = ""
    options: PipelineOptions = Field(default_factory=PipelineOptions)
    environment: dict[str, str] = {}
    credentials: dict[str, str] = {}  # Binding name → credential id
    templates: dict[str, StageDefinition] = {}
    stages: list[StageDefinition] = Field(min_length=1)
    post: PostDefinition = Field(default_factory=PostDefinition)

    _coerce_env = field_validator("environment", mode="before")(_stringify_mapping)

    @model_validator(mode="before")
    @classmethod
    def _default_template_ids(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("templates"), dict):
            data = dict(data)
            templates: dict[str, Any] = {}
            for name, body in data["templates"].items():
                if isinstance(body, dict):
                    body = {"id": name, **body}
                templates[name] = body
            data["templates"] = templates
        return data


# ── Runtime State Models ─────────────────────────────────────────────────────


class CommandResult(BaseModel):
    """Captured outcome of one external command invocation."""

    command: str
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    error: str | None = None
    timed_out: bool = False
    aborted: bool = False
    failure_policy: FailurePolicy = FailurePolicy.STRICT

    @property
    def succeeded(self) -> bool:
        """True if the command itself exited 0 (ignores failure policy)."""
        return self.exit_code == 0 and not self.timed_out and not self.aborted

    @property
    def propagated_success(self) -> bool:
        """True if the parent should treat this invocation as a success."""
        if self.aborted:
            return False
        if self.failure_policy == FailurePolicy.BEST_EFFORT:
            return True
        return self.succeeded


class GateRecord(BaseModel):
    """Audit metadata for a resolved gate."""

    message: str = ""
    state: GateState = GateState.AWAITING_INPUT
    approver: str | None = None
    submitter_parameter: str | None = None
    resolved_at: datetime | None = None


class HookResult(BaseModel):
    """Result of a single post-action hook."""

    kind: str
    outcome: HookOutcome
    success: bool
    error: str | None = None
    detail: dict[str, Any] = {}


class Artifact(BaseModel):
    """A file archived by a stage's post-hook (recorded by reference)."""

    name: str  # Path relative to the archive source directory
    path: str  # Absolute path
    size: int = 0
    stage_id: str
    pattern: str
    archived_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NodeRun(BaseModel):
    """Runtime state of one stage graph node. Mutated only by the executor."""

    id: str
    path: str
    kind: NodeKind
    status: NodeStatus = NodeStatus.PENDING
    # Status used by the parent for propagation (differs for best-effort leaves)
    propagated: NodeStatus | None = None

    children: list[NodeRun] = []

    command: CommandResult | None = None
    gate: GateRecord | None = None
    hooks: list[HookResult] = []
    exports: dict[str, str] = {}

    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def effective_status(self) -> NodeStatus:
        """The status seen by the parent."""
        return self.propagated or self.status

    def transition(self, status: NodeStatus, *, propagated: NodeStatus | None = None) -> None:
        """Move to a new status, enforcing pending → running → terminal."""
        allowed = _TRANSITIONS.get(self.status, set())
        if status not in allowed:
            msg = f"Illegal status transition for '{self.path}': {self.status.value} → {status.value}"
            raise RuntimeError(msg)
        now = datetime.now(timezone.utc)
        if status == NodeStatus.RUNNING:
            self.started_at = now
        else:
            self.completed_at = now
        self.status = status
        if status.is_terminal:
            self.propagated = propagated or status

    def walk(self):
        """Yield this node and all descendants, depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def find(self, path: str) -> NodeRun | None:
        for node in self.walk():
            if node.path == path:
                return node
        return None


class BuildRecord(BaseModel):
    """Durable summary of one pipeline execution."""

    build_id: int = 0
    pipeline_name: str = ""
    status: BuildStatus = BuildStatus.RUNNING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    timed_out: bool = False

    root: NodeRun | None = None
    artifacts: dict[str, list[Artifact]] = {}  # Stage path → archived files
    hooks: list[HookResult] = []  # Pipeline-level hook results

    error_message: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def is_finished(self) -> bool:
        return self.status != BuildStatus.RUNNING

    def all_artifacts(self) -> list[Artifact]:
        return [a for group in self.artifacts.values() for a in group]

    def stage(self, path: str) -> NodeRun | None:
        """Look up a node run by its slash-joined path."""
        if self.root is None:
            return None
        return self.root.find(path)

    def stage_summary(self) -> list[dict[str, Any]]:
        """Flat per-stage breakdown for report rendering."""
        if self.root is None:
            return []
        rows: list[dict[str, Any]] = []
        for node in self.root.walk():
            if node is self.root:
                continue
            rows.append(
                {
                    "path": node.path,
                    "kind": node.kind.value,
                    "status": node.status.value,
                    "propagated": node.effective_status.value,
                    "exit_code": node.command.exit_code if node.command else None,
                    "approver": node.gate.approver if node.gate else None,
                    "duration_seconds": node.duration_seconds,
                    "artifacts": len(self.artifacts.get(node.path, [])),
                }
            )
        return rows


# ── Helpers ──────────────────────────────────────────────────────────────────


def _parse_duration_seconds(duration: str | int | float) -> float:
    """Parse a duration like '30s', '5m', '2h', '1d' (or bare seconds) to seconds.

    Raises ValueError on invalid format.
    """
    if isinstance(duration, (int, float)):
        if duration < 0:
            msg = f"Duration must be non-negative, got {duration}"
            raise ValueError(msg)
        return float(duration)
    match = re.match(r"^(\d+(?:\.\d+)?)\s*(s|m|h|d)?$", duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number><s|m|h|d>"
        raise ValueError(msg)
    value = float(match.group(1))
    unit = match.group(2) or "s"
    multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    return value * multipliers[unit]
