"""Tests for stage graph construction and template expansion."""

from __future__ import annotations

import pytest

from pipewright.pipeline.errors import ConfigurationError
from pipewright.pipeline.graph import (
    ROOT_ID,
    ArchiveHook,
    CommandAction,
    CommandHook,
    GateAction,
    LeafNode,
    NotifyHook,
    ParallelNode,
    SequenceNode,
    build_graph,
    new_run_tree,
)
from pipewright.pipeline.models import (
    FailurePolicy,
    HookOutcome,
    NodeKind,
    NodeStatus,
    PipelineDefinition,
)


def _graph(stages: list[dict], **overrides) -> SequenceNode:
    return build_graph(PipelineDefinition(stages=stages, **overrides))


class TestBuildGraph:
    def test_sequence_parallel_and_leaves(self):
        root = _graph(
            [
                {"id": "build", "run": "make", "workdir": "app", "export": "VERSION"},
                {
                    "id": "scans",
                    "fail_fast": True,
                    "parallel": [
                        {"id": "a", "run": "scan-a", "failure_policy": "best-effort", "timeout": "2m"},
                        {"id": "b", "run": "scan-b"},
                    ],
                },
                {"id": "approve", "gate": {"message": "Ship?", "timeout": 30, "submitters": ["alice"]}},
            ]
        )

        assert root.id == ROOT_ID
        assert root.path == ""
        build, scans, approve = root.nodes

        assert isinstance(build, LeafNode)
        assert build.action == CommandAction(
            run="make", workdir="app", failure_policy=FailurePolicy.STRICT, export="VERSION"
        )

        assert isinstance(scans, ParallelNode)
        assert scans.kind == NodeKind.PARALLEL
        assert scans.fail_fast is True
        assert [c.path for c in scans.children] == ["scans/a", "scans/b"]
        assert scans.nodes[0].action.failure_policy == FailurePolicy.BEST_EFFORT
        assert scans.nodes[0].action.timeout == 120

        assert isinstance(approve.action, GateAction)
        assert approve.action.timeout == 30
        assert approve.action.submitters == ("alice",)

    def test_walk_is_depth_first(self):
        root = _graph(
            [
                {"id": "ci", "stages": [{"id": "unit", "run": "pytest"}, {"id": "lint", "run": "ruff"}]},
                {"id": "deploy", "run": "deploy.sh"},
            ]
        )
        assert [n.path for n in root.walk()] == ["", "ci", "ci/unit", "ci/lint", "deploy"]

    def test_duplicate_sibling_ids_rejected(self):
        with pytest.raises(ConfigurationError, match="Duplicate stage IDs"):
            _graph([{"id": "build", "run": "a"}, {"id": "build", "run": "b"}])

    def test_same_id_under_different_parents_allowed(self):
        root = _graph(
            [
                {"id": "x", "stages": [{"id": "test", "run": "a"}]},
                {"id": "y", "stages": [{"id": "test", "run": "b"}]},
            ]
        )
        assert [n.path for n in root.walk() if n.id == "test"] == ["x/test", "y/test"]

    def test_environment_and_when_carried(self):
        root = _graph(
            [
                {
                    "id": "deploy",
                    "run": "deploy.sh",
                    "environment": {"TARGET": "prod"},
                    "when": {"env": {"BRANCH": "main"}},
                }
            ]
        )
        deploy = root.nodes[0]
        assert deploy.environment == (("TARGET", "prod"),)
        assert deploy.when is not None
        assert deploy.when.env == {"BRANCH": "main"}

    def test_post_hooks(self):
        root = _graph(
            [
                {
                    "id": "test",
                    "run": "pytest",
                    "post": {
                        "always": [{"archive": {"pattern": "reports/*.xml", "allow_empty": True}}],
                        "failure": [{"notify": {"message": "tests failed", "url": "http://hooks/x"}}],
                        "success": [{"run": "publish.sh"}],
                    },
                }
            ],
            post={"always": [{"notify": "done"}]},
        )
        post = root.nodes[0].post
        assert post.for_outcome(HookOutcome.ALWAYS) == (ArchiveHook(pattern="reports/*.xml", allow_empty=True),)
        assert post.failure == (NotifyHook(message="tests failed", url="http://hooks/x"),)
        assert post.success == (CommandHook(run="publish.sh"),)
        assert root.post.always == (NotifyHook(message="done"),)
        assert bool(post)


class TestTemplates:
    def test_use_expands_template(self):
        root = _graph(
            [{"id": "trivy", "use": "scanner", "environment": {"TARGET": "image"}}],
            templates={
                "scanner": {
                    "run": "trivy ${TARGET}",
                    "failure_policy": "best-effort",
                    "environment": {"TARGET": "fs", "FORMAT": "json"},
                }
            },
        )
        leaf = root.nodes[0]
        assert leaf.id == "trivy"
        assert leaf.path == "trivy"
        assert leaf.action.run == "trivy ${TARGET}"
        assert leaf.action.failure_policy == FailurePolicy.BEST_EFFORT
        assert dict(leaf.environment) == {"TARGET": "image", "FORMAT": "json"}

    def test_template_can_reference_template(self):
        root = _graph(
            [{"id": "scan", "use": "outer"}],
            templates={
                "outer": {"stages": [{"id": "inner", "use": "leaf"}]},
                "leaf": {"run": "echo hi"},
            },
        )
        assert [n.path for n in root.walk()] == ["", "scan", "scan/inner"]

    def test_unknown_template(self):
        with pytest.raises(ConfigurationError, match="unknown template 'missing'"):
            _graph([{"id": "x", "use": "missing"}])

    def test_cycle_detected(self):
        with pytest.raises(ConfigurationError, match="Cycle detected"):
            _graph(
                [{"id": "x", "use": "a"}],
                templates={
                    "a": {"stages": [{"id": "step", "use": "b"}]},
                    "b": {"stages": [{"id": "step", "use": "a"}]},
                },
            )

    def test_self_reference_detected(self):
        with pytest.raises(ConfigurationError, match="Cycle detected"):
            _graph([{"id": "x", "use": "loop"}], templates={"loop": {"use": "loop"}})


class TestRunTree:
    def test_mirrors_graph(self):
        root = _graph(
            [
                {"id": "build", "run": "make"},
                {"id": "scans", "parallel": [{"id": "a", "run": "a"}, {"id": "b", "run": "b"}]},
            ]
        )
        run = new_run_tree(root)
        assert [n.path for n in run.walk()] == [n.path for n in root.walk()]
        assert all(n.status == NodeStatus.PENDING for n in run.walk())
        assert run.find("scans").kind == NodeKind.PARALLEL
