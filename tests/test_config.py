"""Tests for pipeline definition and engine settings loading."""

from pathlib import Path

import pytest
import yaml

from pipewright.config import EngineSettings, load_pipeline, load_settings, parse_pipeline
from pipewright.pipeline.errors import ConfigurationError
from pipewright.pipeline.models import FailurePolicy


@pytest.fixture
def pipeline_file(tmp_path: Path) -> Path:
    """Write a representative pipeline definition."""
    definition = {
        "name": "shop-api",
        "options": {"build_timeout": "1h", "discard_count": 5},
        "environment": {"IMAGE": "ghcr.io/acme/shop-api", "PORT": 8080},
        "credentials": {"SONAR_TOKEN": "SONAR_TOKEN_SECRET"},
        "stages": [
            {"id": "build", "run": "mvn -B package"},
            {
                "id": "scans",
                "parallel": [
                    {"id": "secrets", "run": "gitleaks detect", "failure_policy": "best-effort"},
                    {"id": "deps", "run": "mvn dependency-check:check"},
                ],
            },
            {
                "id": "approve",
                "gate": {"message": "Deploy?", "timeout": "30m", "submitter_parameter": "APPROVER"},
            },
            {"id": "deploy", "run": "docker compose up -d"},
        ],
        "post": {"always": [{"archive": {"pattern": "reports/**", "allow_empty": True}}]},
    }
    path = tmp_path / "pipeline.yaml"
    path.write_text(yaml.dump(definition))
    return path


class TestLoadPipeline:
    def test_loads_definition(self, pipeline_file):
        definition = load_pipeline(pipeline_file)

        assert definition.name == "shop-api"
        assert definition.options.build_timeout_seconds() == 3600
        assert definition.options.discard_count == 5
        assert definition.environment["PORT"] == "8080"
        assert definition.credentials == {"SONAR_TOKEN": "SONAR_TOKEN_SECRET"}
        assert [s.id for s in definition.stages] == ["build", "scans", "approve", "deploy"]
        assert definition.stages[1].parallel[0].failure_policy == FailurePolicy.BEST_EFFORT
        assert definition.stages[2].gate.submitter_parameter == "APPROVER"
        assert definition.post.always[0].archive.allow_empty is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_pipeline(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("stages: [unclosed")
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            load_pipeline(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            load_pipeline(path)

    def test_invalid_definition_wrapped(self):
        with pytest.raises(ConfigurationError, match="Invalid pipeline definition"):
            parse_pipeline({"stages": [{"id": "x"}]})


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings({})
        assert settings.data_dir == Path(".pipewright")
        assert settings.max_output_bytes is None
        assert settings.kill_grace == 5.0
        assert settings.inherit_env is True
        assert settings.db_path == Path(".pipewright") / "builds.db"

    def test_from_environment(self, tmp_path):
        settings = load_settings(
            {
                "PIPEWRIGHT_DATA_DIR": str(tmp_path / "data"),
                "PIPEWRIGHT_WORKSPACE": str(tmp_path),
                "PIPEWRIGHT_MAX_OUTPUT_BYTES": "1024",
                "PIPEWRIGHT_KILL_GRACE": "0.5",
                "PIPEWRIGHT_INHERIT_ENV": "false",
            }
        )
        assert settings.data_dir == tmp_path / "data"
        assert settings.workspace == tmp_path
        assert settings.max_output_bytes == 1024
        assert settings.kill_grace == 0.5
        assert settings.inherit_env is False

    def test_overrides_win(self, tmp_path):
        settings = load_settings({"PIPEWRIGHT_DATA_DIR": "/env"}, data_dir=tmp_path, kill_grace=None)
        assert settings.data_dir == tmp_path
        assert settings.kill_grace == EngineSettings().kill_grace

    def test_invalid_value(self):
        with pytest.raises(ConfigurationError, match="Invalid engine settings"):
            load_settings({"PIPEWRIGHT_MAX_OUTPUT_BYTES": "0"})
