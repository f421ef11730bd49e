"""Configuration loading for pipewright.

Reads a pipeline definition YAML file into Pydantic models and builds the
engine settings from ``PIPEWRIGHT_*`` environment variables.

Example pipeline file::

    name: shop-api
    options:
      build_timeout: 1h
      discard_count: 5
    environment:
      IMAGE: ghcr.io/acme/shop-api
    credentials:
      SONAR_TOKEN: SONAR_TOKEN_SECRET
    stages:
      - id: build
        run: mvn -B package
      - id: scans
        parallel:
          - id: secrets
            run: gitleaks detect --report-path reports/gitleaks.json
            failure_policy: best-effort
          - id: deps
            run: mvn org.owasp:dependency-check-maven:check
      - id: approve
        gate:
          message: Deploy to production?
          timeout: 30m
          submitter_parameter: APPROVER
      - id: deploy
        run: docker compose up -d
    post:
      always:
        - archive: {pattern: "reports/**", allow_empty: true}
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError

from pipewright.pipeline.errors import ConfigurationError
from pipewright.pipeline.models import PipelineDefinition

logger = logging.getLogger(__name__)

_ENV_PREFIX = "PIPEWRIGHT_"


# ── Engine Settings ──────────────────────────────────────────────────────────


class EngineSettings(BaseModel):
    """Process-level engine settings (not part of a pipeline definition)."""

    data_dir: Path = Path(".pipewright")
    workspace: Path = Field(default_factory=Path.cwd)
    max_output_bytes: int | None = Field(None, ge=1)  # None = capture everything
    kill_grace: float = 5.0  # seconds between SIGTERM and SIGKILL
    abort_grace: float = 10.0  # seconds to let the tree unwind after a build timeout
    inherit_env: bool = True

    @property
    def db_path(self) -> Path:
        return self.data_dir / "builds.db"


# ── Loaders ──────────────────────────────────────────────────────────────────


def parse_pipeline(raw: dict[str, Any]) -> PipelineDefinition:
    """Validate a raw mapping as a pipeline definition.

    Raises:
        ConfigurationError: If validation fails.
    """
    try:
        return PipelineDefinition(**raw)
    except ValidationError as exc:
        msg = f"Invalid pipeline definition:\n{exc}"
        raise ConfigurationError(msg) from exc


def load_pipeline(path: Path) -> PipelineDefinition:
    """Load a pipeline definition from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ConfigurationError: If the YAML is malformed or validation fails.
    """
    if not path.exists():
        raise FileNotFoundError(f"Pipeline definition not found: {path}")

    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        msg = f"Failed to parse {path}: {exc}"
        raise ConfigurationError(msg) from exc

    if not isinstance(raw, dict):
        msg = f"Pipeline definition must be a mapping, got {type(raw).__name__}"
        raise ConfigurationError(msg)

    definition = parse_pipeline(raw)
    logger.info(
        "Loaded pipeline '%s' (%d top-level stages) from %s",
        definition.name,
        len(definition.stages),
        path,
    )
    return definition


def load_settings(environ: Mapping[str, str] | None = None, **overrides: Any) -> EngineSettings:
    """Build EngineSettings from ``PIPEWRIGHT_*`` variables plus explicit overrides.

    Explicit keyword overrides (e.g. from CLI flags) win over the environment.
    """
    env = environ if environ is not None else os.environ
    values: dict[str, Any] = {}

    data_dir = env.get(f"{_ENV_PREFIX}DATA_DIR", "").strip()
    if data_dir:
        values["data_dir"] = Path(data_dir)

    workspace = env.get(f"{_ENV_PREFIX}WORKSPACE", "").strip()
    if workspace:
        values["workspace"] = Path(workspace)

    for key, name in (
        ("max_output_bytes", "MAX_OUTPUT_BYTES"),
        ("kill_grace", "KILL_GRACE"),
        ("abort_grace", "ABORT_GRACE"),
    ):
        raw = env.get(f"{_ENV_PREFIX}{name}", "").strip()
        if raw:
            values[key] = raw

    inherit = env.get(f"{_ENV_PREFIX}INHERIT_ENV")
    if inherit is not None:
        values["inherit_env"] = inherit.lower() in ("1", "true", "yes")

    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return EngineSettings(**values)
    except ValidationError as exc:
        msg = f"Invalid engine settings:\n{exc}"
        raise ConfigurationError(msg) from exc
