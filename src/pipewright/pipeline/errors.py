"""Pipeline error taxonomy.

Every error the engine raises on purpose derives from :class:`PipelineError`.
Configuration errors are fatal and surface before execution; the rest are
caught at stage or hook boundaries and recorded on the build.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pipewright.pipeline.models import CommandResult


class PipelineError(Exception):
    """Base class for all pipewright pipeline errors."""


class ConfigurationError(PipelineError):
    """Malformed pipeline definition (duplicate ids, cycles, unknown refs)."""


class BuildBusyError(PipelineError):
    """A build is already running and concurrent builds are disabled."""


class CommandFailure(PipelineError):
    """An external command exited non-zero, timed out, or failed to start."""

    def __init__(self, command: str, result: CommandResult):
        self.command = command
        self.result = result
        if result.exit_code is None:
            detail = result.error or "did not start"
        else:
            detail = f"exit code {result.exit_code}"
        super().__init__(f"Command failed ({detail}): {command}")


class GateTimeout(PipelineError):
    """A gate received no decision before its timeout elapsed."""


class GateAuthorizationError(PipelineError):
    """The submitted approver is not in the gate's submitter allow-list."""


class PipelineTimeout(PipelineError):
    """The build-wide wall-clock timeout elapsed."""


class ArtifactMissingError(PipelineError):
    """An archive pattern matched no files and empty results are not allowed."""


class HookFailure(PipelineError):
    """A post-action hook raised. Logged and recorded, never propagated."""
