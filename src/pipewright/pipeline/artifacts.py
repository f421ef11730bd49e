"""Artifact registry — records archived files by reference for one build."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from pipewright.pipeline.errors import ArtifactMissingError
from pipewright.pipeline.models import Artifact

logger = logging.getLogger("pipewright.pipeline.artifacts")


class ArtifactRegistry:
    """Per-build collection of archived files, grouped by stage.

    Files are not copied; each Artifact points at the file in place.
    Parallel branches may archive concurrently.
    """

    def __init__(self, workspace: Path):
        self._workspace = workspace
        self._lock = asyncio.Lock()
        self._artifacts: dict[str, list[Artifact]] = {}

    @property
    def artifacts(self) -> dict[str, list[Artifact]]:
        return {stage: list(items) for stage, items in self._artifacts.items()}

    async def archive(
        self,
        stage_id: str,
        pattern: str,
        source: str | Path | None = None,
        allow_empty: bool = False,
    ) -> list[Artifact]:
        """Record every file matching ``pattern`` under ``source``.

        ``source`` defaults to the workspace; a relative source is taken
        relative to the workspace. ``**`` matches recursively.

        Raises:
            ArtifactMissingError: If nothing matches and ``allow_empty`` is False.
        """
        base = self._workspace if source is None else Path(source)
        if not base.is_absolute():
            base = self._workspace / base

        # Globbing and stat calls run in a worker thread
        archived = await asyncio.to_thread(_scan, base, pattern, stage_id)

        if not archived:
            if not allow_empty:
                msg = f"No artifacts matched '{pattern}' under {base} (stage '{stage_id}')"
                raise ArtifactMissingError(msg)
            logger.info("No artifacts matched '%s' for stage '%s' (allowed)", pattern, stage_id)
            return []

        async with self._lock:
            self._artifacts.setdefault(stage_id, []).extend(archived)
        logger.info("Archived %d artifact(s) for stage '%s' (%s)", len(archived), stage_id, pattern)
        return archived


def _scan(base: Path, pattern: str, stage_id: str) -> list[Artifact]:
    if not base.is_dir():
        return []
    glob_pattern = f"{pattern}/*" if pattern.endswith("**") else pattern
    matches = sorted({p for p in base.glob(glob_pattern) if p.is_file()})
    return [
        Artifact(
            name=p.relative_to(base).as_posix(),
            path=str(p.resolve()),
            size=p.stat().st_size,
            stage_id=stage_id,
            pattern=pattern,
        )
        for p in matches
    ]
