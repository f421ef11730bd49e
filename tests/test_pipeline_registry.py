"""Tests for the SQLite build registry."""

from datetime import datetime, timezone

import aiosqlite
import pytest_asyncio

from pipewright.pipeline.models import (
    Artifact,
    BuildRecord,
    BuildStatus,
    CommandResult,
    HookOutcome,
    HookResult,
    NodeKind,
    NodeRun,
    NodeStatus,
)
from pipewright.pipeline.registry import BuildRegistry


@pytest_asyncio.fixture
async def registry(tmp_path):
    """Create a fresh registry for each test."""
    conn = await aiosqlite.connect(str(tmp_path / "builds.db"))
    reg = BuildRegistry(conn)
    await reg.initialize()
    yield reg
    await conn.close()


def _make_build(pipeline_name: str = "shop-api", **kwargs) -> BuildRecord:
    return BuildRecord(
        pipeline_name=pipeline_name,
        started_at=datetime.now(timezone.utc),
        **kwargs,
    )


def _artifact(stage_id: str, name: str) -> Artifact:
    return Artifact(name=name, path=f"/ws/{name}", size=3, stage_id=stage_id, pattern="*")


def _tree() -> NodeRun:
    return NodeRun(
        id="pipeline",
        path="",
        kind=NodeKind.SEQUENCE,
        status=NodeStatus.SUCCEEDED,
        children=[
            NodeRun(
                id="build",
                path="build",
                kind=NodeKind.LEAF,
                status=NodeStatus.SUCCEEDED,
                command=CommandResult(command="make", exit_code=0, stdout="ok\n"),
            )
        ],
    )


class TestCRUD:
    async def test_create_assigns_ids(self, registry: BuildRegistry):
        first = _make_build()
        second = _make_build()
        await registry.create_build(first)
        await registry.create_build(second)

        assert first.build_id == 1
        assert second.build_id == 2

    async def test_create_and_get(self, registry: BuildRegistry):
        record = _make_build()
        await registry.create_build(record)

        fetched = await registry.get_build(record.build_id)
        assert fetched is not None
        assert fetched.pipeline_name == "shop-api"
        assert fetched.status == BuildStatus.RUNNING
        assert fetched.started_at == record.started_at
        assert fetched.completed_at is None

    async def test_get_nonexistent(self, registry: BuildRegistry):
        assert await registry.get_build(99) is None

    async def test_update_persists_tree_hooks_and_artifacts(self, registry: BuildRegistry):
        record = _make_build()
        await registry.create_build(record)

        record.status = BuildStatus.SUCCEEDED
        record.completed_at = datetime.now(timezone.utc)
        record.root = _tree()
        record.hooks = [HookResult(kind="notify", outcome=HookOutcome.ALWAYS, success=True)]
        record.artifacts = {"build": [_artifact("build", "app.whl")]}
        await registry.update_build(record)

        fetched = await registry.get_build(record.build_id)
        assert fetched.status == BuildStatus.SUCCEEDED
        assert fetched.is_finished
        assert fetched.stage("build").command.stdout == "ok\n"
        assert fetched.hooks[0].kind == "notify"
        assert [a.name for a in fetched.artifacts["build"]] == ["app.whl"]

    async def test_update_replaces_artifacts(self, registry: BuildRegistry):
        record = _make_build()
        await registry.create_build(record)

        record.artifacts = {"build": [_artifact("build", "a"), _artifact("build", "b")]}
        await registry.update_build(record)
        record.artifacts = {"build": [_artifact("build", "c")]}
        await registry.update_build(record)

        artifacts = await registry.get_artifacts(record.build_id)
        assert [a.name for a in artifacts] == ["c"]

    async def test_delete(self, registry: BuildRegistry):
        record = _make_build(artifacts={"x": [_artifact("x", "f")]})
        await registry.create_build(record)
        await registry.update_build(record)

        await registry.delete_build(record.build_id)

        assert await registry.get_build(record.build_id) is None
        assert await registry.get_artifacts(record.build_id) == []


class TestListing:
    async def test_newest_first_without_tree(self, registry: BuildRegistry):
        for _ in range(3):
            record = _make_build(root=_tree())
            await registry.create_build(record)

        builds = await registry.list_builds()
        assert [b.build_id for b in builds] == [3, 2, 1]
        assert all(b.root is None for b in builds)

    async def test_filter_and_limit(self, registry: BuildRegistry):
        for status in (BuildStatus.SUCCEEDED, BuildStatus.FAILED, BuildStatus.SUCCEEDED):
            await registry.create_build(_make_build(status=status))

        succeeded = await registry.list_builds(status=BuildStatus.SUCCEEDED)
        assert [b.build_id for b in succeeded] == [3, 1]

        latest = await registry.list_builds(limit=1)
        assert [b.build_id for b in latest] == [3]


class TestRetention:
    async def test_discard_evicts_oldest_with_artifacts(self, registry: BuildRegistry):
        for _ in range(5):
            record = _make_build()
            await registry.create_build(record, discard_count=5)
            record.artifacts = {"build": [_artifact("build", f"out-{record.build_id}")]}
            await registry.update_build(record)

        sixth = _make_build()
        evicted = await registry.create_build(sixth, discard_count=5)

        assert evicted == [1]
        assert sixth.build_id == 6
        assert [b.build_id for b in await registry.list_builds()] == [6, 5, 4, 3, 2]
        assert await registry.get_build(1) is None
        assert await registry.get_artifacts(1) == []
        assert len(await registry.get_artifacts(2)) == 1

    async def test_ids_never_reused_after_eviction(self, registry: BuildRegistry):
        for _ in range(4):
            await registry.create_build(_make_build(), discard_count=1)

        builds = await registry.list_builds()
        assert [b.build_id for b in builds] == [4]

    async def test_no_discard_count_keeps_everything(self, registry: BuildRegistry):
        for _ in range(7):
            assert await registry.create_build(_make_build()) == []
        assert len(await registry.list_builds()) == 7

    async def test_discard_counts_each_pipeline_separately(self, registry: BuildRegistry):
        await registry.create_build(_make_build("docs"), discard_count=2)
        for _ in range(3):
            await registry.create_build(_make_build("shop-api"), discard_count=2)

        builds = await registry.list_builds()
        assert [(b.build_id, b.pipeline_name) for b in builds] == [
            (4, "shop-api"),
            (3, "shop-api"),
            (1, "docs"),
        ]
