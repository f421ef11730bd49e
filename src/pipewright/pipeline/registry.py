"""Build registry — SQLite persistence for build records and their artifacts.

Key exports:
    BuildRegistry — create/update/query builds, allocate build ids, apply
        the discard (retention) policy.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import aiosqlite

from pipewright.pipeline.models import Artifact, BuildRecord, BuildStatus, HookResult, NodeRun

logger = logging.getLogger("pipewright.pipeline.registry")


class BuildRegistry:
    """SQLite-backed store of finished and running builds.

    Takes an already-open aiosqlite connection. Call ``initialize()`` to
    create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all build tables if they don't exist."""
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Build registry tables initialized")

    # ── Build CRUD ───────────────────────────────────────────────────────────

    async def create_build(
        self, record: BuildRecord, discard_count: int | None = None
    ) -> list[int]:
        """Allocate the next build id, insert the record, apply retention.

        Sets ``record.build_id``. Ids are never reused, even after eviction.
        Returns the ids of the builds evicted to respect ``discard_count``.
        Retention counts only builds of the same pipeline.
        """
        await self._db.execute("UPDATE build_counter SET last_id = last_id + 1 WHERE id = 1")
        cursor = await self._db.execute("SELECT last_id FROM build_counter WHERE id = 1")
        row = await cursor.fetchone()
        record.build_id = row["last_id"]

        await self._db.execute(
            """
            INSERT INTO builds (
                build_id, pipeline_name, status, timed_out,
                root, hooks, error_message,
                started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.build_id,
                record.pipeline_name,
                record.status.value,
                1 if record.timed_out else 0,
                _root_to_json(record.root),
                json.dumps([h.model_dump(mode="json") for h in record.hooks]),
                record.error_message,
                _dt_to_str(record.started_at),
                _dt_to_str(record.completed_at),
            ),
        )
        evicted = await self._discard_old_builds(record.pipeline_name, discard_count)
        await self._db.commit()
        logger.info("Created build #%d for pipeline '%s'", record.build_id, record.pipeline_name)
        return evicted

    async def update_build(self, record: BuildRecord) -> None:
        """Persist a build's mutable fields and replace its artifact rows."""
        await self._db.execute(
            """
            UPDATE builds SET
                status = ?, timed_out = ?,
                root = ?, hooks = ?, error_message = ?,
                started_at = ?, completed_at = ?
            WHERE build_id = ?
            """,
            (
                record.status.value,
                1 if record.timed_out else 0,
                _root_to_json(record.root),
                json.dumps([h.model_dump(mode="json") for h in record.hooks]),
                record.error_message,
                _dt_to_str(record.started_at),
                _dt_to_str(record.completed_at),
                record.build_id,
            ),
        )
        await self._db.execute("DELETE FROM artifacts WHERE build_id = ?", (record.build_id,))
        await self._db.executemany(
            """
            INSERT INTO artifacts (
                build_id, stage_id, name, path, size, pattern, archived_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    record.build_id,
                    a.stage_id,
                    a.name,
                    a.path,
                    a.size,
                    a.pattern,
                    _dt_to_str(a.archived_at),
                )
                for a in record.all_artifacts()
            ],
        )
        await self._db.commit()

    async def get_build(self, build_id: int) -> BuildRecord | None:
        """Fetch a build (with its artifacts) by id."""
        cursor = await self._db.execute("SELECT * FROM builds WHERE build_id = ?", (build_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        record = _row_to_build(row)
        for artifact in await self.get_artifacts(build_id):
            record.artifacts.setdefault(artifact.stage_id, []).append(artifact)
        return record

    async def list_builds(
        self, *, status: BuildStatus | None = None, limit: int | None = None
    ) -> list[BuildRecord]:
        """List builds newest first, without their node trees."""
        query = (
            "SELECT build_id, pipeline_name, status, timed_out, error_message, "
            "started_at, completed_at FROM builds"
        )
        params: list[object] = []
        if status:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY build_id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor = await self._db.execute(query, params)
        rows = await cursor.fetchall()
        return [_row_to_build(r) for r in rows]

    async def get_artifacts(self, build_id: int) -> list[Artifact]:
        cursor = await self._db.execute(
            "SELECT * FROM artifacts WHERE build_id = ? ORDER BY id", (build_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_artifact(r) for r in rows]

    async def delete_build(self, build_id: int) -> None:
        """Delete a build and its artifact records."""
        await self._db.execute("DELETE FROM artifacts WHERE build_id = ?", (build_id,))
        await self._db.execute("DELETE FROM builds WHERE build_id = ?", (build_id,))
        await self._db.commit()

    # ── Retention ────────────────────────────────────────────────────────────

    async def _discard_old_builds(
        self, pipeline_name: str, discard_count: int | None
    ) -> list[int]:
        """Evict the oldest builds of one pipeline beyond ``discard_count``."""
        if discard_count is None:
            return []
        cursor = await self._db.execute(
            """
            SELECT build_id FROM builds WHERE pipeline_name = ?
            ORDER BY build_id DESC LIMIT -1 OFFSET ?
            """,
            (pipeline_name, discard_count),
        )
        evicted = sorted(r["build_id"] for r in await cursor.fetchall())
        for build_id in evicted:
            await self._db.execute("DELETE FROM artifacts WHERE build_id = ?", (build_id,))
            await self._db.execute("DELETE FROM builds WHERE build_id = ?", (build_id,))
        if evicted:
            logger.info(
                "Discarded %d old build(s) of '%s': %s", len(evicted), pipeline_name, evicted
            )
        return evicted


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS build_counter (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_id INTEGER NOT NULL DEFAULT 0
);
INSERT OR IGNORE INTO build_counter (id, last_id) VALUES (1, 0);

CREATE TABLE IF NOT EXISTS builds (
    build_id INTEGER PRIMARY KEY,
    pipeline_name TEXT NOT NULL,
    status TEXT DEFAULT 'running',
    timed_out INTEGER DEFAULT 0,

    root TEXT,
    hooks TEXT DEFAULT '[]',
    error_message TEXT,

    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS artifacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    build_id INTEGER NOT NULL REFERENCES builds(build_id),
    stage_id TEXT NOT NULL,
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    size INTEGER DEFAULT 0,
    pattern TEXT NOT NULL,
    archived_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_artifacts_build ON artifacts(build_id);
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _root_to_json(root: NodeRun | None) -> str | None:
    if root is None:
        return None
    return root.model_dump_json()


def _row_to_build(row: aiosqlite.Row) -> BuildRecord:
    """Convert a database row to a BuildRecord (artifacts not included)."""
    keys = row.keys()
    root = row["root"] if "root" in keys else None
    hooks = row["hooks"] if "hooks" in keys else None
    return BuildRecord(
        build_id=row["build_id"],
        pipeline_name=row["pipeline_name"],
        status=BuildStatus(row["status"]),
        timed_out=bool(row["timed_out"]),
        root=NodeRun.model_validate_json(root) if root else None,
        hooks=[HookResult(**h) for h in json.loads(hooks)] if hooks else [],
        error_message=row["error_message"],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_artifact(row: aiosqlite.Row) -> Artifact:
    return Artifact(
        name=row["name"],
        path=row["path"],
        size=row["size"] or 0,
        stage_id=row["stage_id"],
        pattern=row["pattern"],
        archived_at=_str_to_dt(row["archived_at"]) or datetime.now(timezone.utc),
    )
