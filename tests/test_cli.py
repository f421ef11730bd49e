"""Tests for the pipewright command-line interface."""

from __future__ import annotations

import pytest

from pipewright.__main__ import main

PIPELINE = """\
name: shop-api
stages:
  - id: build
    run: echo building ${TARGET:-dev}
  - id: scans
    parallel:
      - id: lint
        run: exit 1
        failure_policy: best-effort
      - id: unit
        run: "true"
"""

GATED = """\
name: release
stages:
  - id: approve
    gate:
      submitters: [alice]
      submitter_parameter: APPROVER
      timeout: 0.3
  - id: deploy
    run: echo deployed by $APPROVER
"""


@pytest.fixture(autouse=True)
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("PIPEWRIGHT_DATA_DIR", "PIPEWRIGHT_WORKSPACE", "PIPEWRIGHT_MAX_OUTPUT_BYTES"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def _write(tmp_path, body: str, name: str = "pipeline.yaml") -> str:
    path = tmp_path / name
    path.write_text(body)
    return str(path)


def _exit_code(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


class TestValidate:
    def test_valid(self, tmp_path, capsys):
        assert _exit_code(["validate", _write(tmp_path, PIPELINE)]) == 0
        assert "Pipeline 'shop-api' is valid (4 stages)" in capsys.readouterr().out

    def test_duplicate_ids(self, tmp_path, capsys):
        body = "stages:\n  - id: a\n    run: x\n  - id: a\n    run: y\n"
        assert _exit_code(["validate", _write(tmp_path, body)]) == 1
        assert "Duplicate stage IDs" in capsys.readouterr().err

    def test_schema_error(self, tmp_path, capsys):
        assert _exit_code(["validate", _write(tmp_path, "stages: []\n")]) == 1
        assert "Invalid pipeline definition" in capsys.readouterr().err

    def test_missing_file(self, tmp_path, capsys):
        assert _exit_code(["validate", str(tmp_path / "nope.yaml")]) == 1
        assert "not found" in capsys.readouterr().err


class TestRun:
    def test_successful_build(self, tmp_path, capsys):
        code = _exit_code(["run", _write(tmp_path, PIPELINE), "--data-dir", str(tmp_path / "data")])
        out = capsys.readouterr().out

        assert code == 0
        assert "Build #1 (shop-api): SUCCEEDED" in out
        assert "failed (propagated succeeded)" in out
        assert (tmp_path / "data" / "builds.db").exists()

    def test_failed_build(self, tmp_path, capsys):
        body = "name: broken\nstages:\n  - id: build\n    run: exit 4\n"
        assert _exit_code(["run", _write(tmp_path, body)]) == 1
        out = capsys.readouterr().out
        assert "FAILED" in out
        assert "exit=4" in out

    def test_params(self, tmp_path, capsys):
        data = str(tmp_path / "data")
        assert _exit_code(["run", _write(tmp_path, PIPELINE), "--param", "TARGET=prod", "--data-dir", data]) == 0
        capsys.readouterr()

        assert _exit_code(["builds", "show", "1", "--output", "--data-dir", data]) == 0
        assert "building prod" in capsys.readouterr().out

    def test_bad_param(self, tmp_path):
        assert _exit_code(["run", _write(tmp_path, PIPELINE), "--param", "NOEQUALS"]) == 2

    def test_gate_auto_approved(self, tmp_path, capsys):
        assert _exit_code(["run", _write(tmp_path, GATED), "--approve-as", "alice"]) == 0
        assert "approver=alice" in capsys.readouterr().out

    def test_gate_times_out_without_approver(self, tmp_path, capsys):
        assert _exit_code(["run", _write(tmp_path, GATED)]) == 1
        assert "Build #1 (release): FAILED" in capsys.readouterr().out

    def test_unauthorized_approver_aborts(self, tmp_path, capsys):
        assert _exit_code(["run", _write(tmp_path, GATED), "--approve-as", "mallory"]) == 2
        assert "ABORTED" in capsys.readouterr().out

    def test_unresolved_credentials(self, tmp_path, capsys):
        body = "credentials:\n  T: PIPEWRIGHT_TEST_NO_SUCH_SECRET\nstages:\n  - id: a\n    run: 'true'\n"
        assert _exit_code(["run", _write(tmp_path, body)]) == 1
        assert "Unresolved credentials" in capsys.readouterr().err


class TestBuilds:
    def test_list_empty(self, tmp_path, capsys):
        assert _exit_code(["builds", "list", "--data-dir", str(tmp_path / "empty")]) == 0
        assert "No builds recorded yet." in capsys.readouterr().out

    def test_list_and_show(self, tmp_path, capsys):
        path = _write(tmp_path, PIPELINE)
        for _ in range(2):
            _exit_code(["run", path])
        capsys.readouterr()

        assert _exit_code(["builds", "list"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("BUILD")
        assert lines[1].startswith("#2")
        assert lines[2].startswith("#1")

        assert _exit_code(["builds", "show", "1"]) == 0
        assert "Build #1 (shop-api): SUCCEEDED" in capsys.readouterr().out

    def test_show_unknown(self, capsys):
        assert _exit_code(["builds", "show", "99"]) == 1
        assert "build #99 not found" in capsys.readouterr().err


class TestUsage:
    def test_no_command(self):
        assert _exit_code([]) == 1

    def test_builds_without_subcommand(self):
        assert _exit_code(["builds"]) == 1

    def test_serve_missing_file(self, tmp_path, capsys):
        assert _exit_code(["serve", str(tmp_path / "nope.yaml")]) == 1
        assert "not found" in capsys.readouterr().err
