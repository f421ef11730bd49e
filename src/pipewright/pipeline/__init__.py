"""Pipeline engine — stage graph, executor, gates, hooks and build records.

Key exports:
    PipelineExecutor — runs one build at a time under a single-build lock
    BuildRegistry — SQLite persistence with a discard policy
    GateController, GateWaiter — human approval gates
    CommandRunner — external command execution
    PostActionDispatcher — outcome-scoped post hooks
    build_graph — definition → immutable stage tree
    PipelineDefinition — pipeline config model
    BuildRecord, NodeRun — runtime state models
"""

from pipewright.pipeline.artifacts import ArtifactRegistry
from pipewright.pipeline.context import (
    CredentialProvider,
    EnvCredentialProvider,
    EnvironmentContext,
    mask_secrets,
    resolve_credentials,
)
from pipewright.pipeline.engine import BuildScope, PipelineExecutor
from pipewright.pipeline.errors import (
    ArtifactMissingError,
    BuildBusyError,
    CommandFailure,
    ConfigurationError,
    GateAuthorizationError,
    GateTimeout,
    HookFailure,
    PipelineError,
    PipelineTimeout,
)
from pipewright.pipeline.gates import GateController, GateWaiter
from pipewright.pipeline.graph import (
    ArchiveHook,
    CommandAction,
    CommandHook,
    GateAction,
    LeafNode,
    NotifyHook,
    ParallelNode,
    PostHooks,
    SequenceNode,
    StageNode,
    build_graph,
    new_run_tree,
)
from pipewright.pipeline.hooks import HookScope, PostActionDispatcher
from pipewright.pipeline.models import (
    Artifact,
    BuildRecord,
    BuildStatus,
    CommandResult,
    FailurePolicy,
    GateDefinition,
    GateRecord,
    GateState,
    HookDefinition,
    HookOutcome,
    HookResult,
    NodeKind,
    NodeRun,
    NodeStatus,
    PipelineDefinition,
    PipelineOptions,
    PostDefinition,
    StageDefinition,
    WhenCondition,
)
from pipewright.pipeline.registry import BuildRegistry
from pipewright.pipeline.runner import CommandRunner
from pipewright.pipeline.signals import AbortSignal

__all__ = [
    # Engine
    "PipelineExecutor",
    "BuildScope",
    "AbortSignal",
    # Registry
    "BuildRegistry",
    "ArtifactRegistry",
    # Gates
    "GateController",
    "GateWaiter",
    # Commands and hooks
    "CommandRunner",
    "PostActionDispatcher",
    "HookScope",
    # Context
    "EnvironmentContext",
    "CredentialProvider",
    "EnvCredentialProvider",
    "mask_secrets",
    "resolve_credentials",
    # Graph
    "build_graph",
    "new_run_tree",
    "StageNode",
    "LeafNode",
    "SequenceNode",
    "ParallelNode",
    "CommandAction",
    "GateAction",
    "ArchiveHook",
    "NotifyHook",
    "CommandHook",
    "PostHooks",
    # Definition models
    "PipelineDefinition",
    "PipelineOptions",
    "StageDefinition",
    "GateDefinition",
    "WhenCondition",
    "PostDefinition",
    "HookDefinition",
    # Runtime state models
    "BuildRecord",
    "NodeRun",
    "CommandResult",
    "GateRecord",
    "HookResult",
    "Artifact",
    # Enums
    "BuildStatus",
    "NodeStatus",
    "NodeKind",
    "FailurePolicy",
    "GateState",
    "HookOutcome",
    # Errors
    "PipelineError",
    "ConfigurationError",
    "BuildBusyError",
    "CommandFailure",
    "GateTimeout",
    "GateAuthorizationError",
    "PipelineTimeout",
    "ArtifactMissingError",
    "HookFailure",
]
