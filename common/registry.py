"""
Durable job/tile registry on SQLite.

Every conditional write is a single `UPDATE ... WHERE` or runs inside a
`BEGIN IMMEDIATE` transaction, so claims, leases and status changes behave as
compare-and-set operations across processes sharing the database file.
"""
import json
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import structlog
from pydantic import BaseModel

from common.errors import IllegalTransition, TransientIOError, ValidationError
from common.job_schema import (
    ACTIVE_JOB_STATUSES,
    FAILED_TILE_STATUSES,
    Job,
    JobStatus,
    Tile,
    TileStatus,
    check_job_transition,
    check_tile_transition,
)
from common.retry import retry

log = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    source_url TEXT NOT NULL,
    status TEXT NOT NULL,
    canvas_width INTEGER NOT NULL,
    canvas_height INTEGER NOT NULL,
    scale_factor REAL NOT NULL,
    tile_size INTEGER,
    tile_overlap INTEGER NOT NULL DEFAULT 0,
    engine TEXT NOT NULL,
    total_tiles INTEGER NOT NULL DEFAULT 0,
    final_image_url TEXT,
    checkpoint_path TEXT,
    comp_next_index INTEGER NOT NULL DEFAULT 0,
    lease_owner TEXT,
    lease_expires_at REAL,
    error_message TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS jobs_status_created ON jobs (status, created_at);

CREATE TABLE IF NOT EXISTS tiles (
    id TEXT PRIMARY KEY,
    parent_job_id TEXT NOT NULL REFERENCES jobs (id),
    tile_index INTEGER NOT NULL DEFAULT 0,
    x INTEGER,
    y INTEGER,
    status TEXT NOT NULL,
    source_path TEXT,
    result_url TEXT,
    error_message TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS tiles_parent_status ON tiles (parent_job_id, status);
CREATE INDEX IF NOT EXISTS tiles_status_updated ON tiles (status, updated_at);

CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    payload TEXT NOT NULL,
    run_after REAL NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS tasks_run_after ON tasks (run_after);
"""

JOB_COLUMNS = tuple(Job.model_fields)
TILE_COLUMNS = tuple(Tile.model_fields)
IMMUTABLE_JOB_FIELDS = frozenset({"id", "canvas_width", "canvas_height", "created_at"})


class TaskMessage(BaseModel):
    id: int
    name: str
    payload: Dict[str, Any]
    run_after: float


def _value(v):
    return v.value if hasattr(v, "value") else v


def _placeholders(items: Sequence) -> str:
    return ",".join("?" for _ in items)


class Registry:
    def __init__(self, path: Union[str, Path], clock: Callable[[], float] = time.time,
                 busy_timeout: float = 5.0):
        self.path = str(path)
        self.clock = clock
        self.busy_timeout = busy_timeout
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def now(self) -> float:
        return float(self.clock())

    # ------------------------------------------------------------------
    # connection plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, conn):
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _run(self, label: str, fn: Callable[[sqlite3.Connection], Any]):
        def attempt():
            try:
                with self._connect() as conn:
                    return fn(conn)
            except sqlite3.OperationalError as exc:
                raise TransientIOError(f"registry {label}: {exc}") from exc
        return retry(attempt, label=f"registry.{label}")

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------

    def create_job(self, job: Job) -> Job:
        now = self.now()
        job = job.model_copy(update={"created_at": job.created_at or now, "updated_at": now})
        row = {k: _value(v) for k, v in job.model_dump().items()}

        def op(conn):
            conn.execute(
                f"INSERT INTO jobs ({','.join(row)}) VALUES ({_placeholders(row)})",
                list(row.values()),
            )
        self._run("create_job", op)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        def op(conn):
            return conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        row = self._run("get_job", op)
        return Job(**dict(row)) if row else None

    def list_jobs(self, statuses: Iterable[JobStatus], updated_before: Optional[float] = None,
                  limit: Optional[int] = None) -> List[Job]:
        statuses = [_value(s) for s in statuses]
        sql = f"SELECT * FROM jobs WHERE status IN ({_placeholders(statuses)})"
        params: List[Any] = list(statuses)
        if updated_before is not None:
            sql += " AND updated_at < ?"
            params.append(updated_before)
        sql += " ORDER BY created_at ASC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        def op(conn):
            return conn.execute(sql, params).fetchall()
        return [Job(**dict(r)) for r in self._run("list_jobs", op)]

    def count_jobs(self, statuses: Iterable[JobStatus]) -> int:
        statuses = [_value(s) for s in statuses]

        def op(conn):
            return conn.execute(
                f"SELECT COUNT(*) FROM jobs WHERE status IN ({_placeholders(statuses)})", statuses
            ).fetchone()[0]
        return self._run("count_jobs", op)

    def claim_job(self, job_id: str, statuses: Iterable[JobStatus], owner: str,
                  lease_seconds: float) -> bool:
        """
        Take the job lease for `owner` if the job is in one of `statuses` and no
        live lease belongs to someone else. The same owner may re-claim to renew.
        """
        statuses = [_value(s) for s in statuses]

        def op(conn):
            now = self.now()
            cur = conn.execute(
                f"""UPDATE jobs SET lease_owner = ?, lease_expires_at = ?, updated_at = ?
                    WHERE id = ? AND status IN ({_placeholders(statuses)})
                      AND (lease_owner IS NULL OR lease_owner = ?
                           OR lease_expires_at IS NULL OR lease_expires_at <= ?)""",
                [owner, now + lease_seconds, now, job_id, *statuses, owner, now],
            )
            return cur.rowcount == 1
        return self._run("claim_job", op)

    def handoff_lease(self, job_id: str, from_owner: str, to_owner: str, lease_seconds: float,
                      next_index: Optional[int] = None) -> bool:
        """
        Pass a compositing lease from a checkpointed run to its continuation.
        Only one delivery of a continue message can win, and only while the
        checkpoint pointer is still at `next_index`.
        """
        def op(conn):
            now = self.now()
            sql = """UPDATE jobs SET lease_owner = ?, lease_expires_at = ?, updated_at = ?
                     WHERE id = ? AND status = ? AND lease_owner = ?"""
            params: List[Any] = [to_owner, now + lease_seconds, now, job_id,
                                 JobStatus.COMPOSITING.value, from_owner]
            if next_index is not None:
                sql += " AND comp_next_index = ?"
                params.append(next_index)
            return conn.execute(sql, params).rowcount == 1
        return self._run("handoff_lease", op)

    def update_job(self, job_id: str, fields: Dict[str, Any],
                   expect: Optional[Dict[str, Any]] = None) -> bool:
        """
        Write `fields` if the row still matches `expect` (column -> value, or for
        `comp_next_index_max` an upper bound). Status changes are checked against
        the transition table. Returns False when the row no longer matches.
        """
        bad = IMMUTABLE_JOB_FIELDS.intersection(fields)
        if bad:
            raise ValidationError(f"job fields cannot change after creation: {sorted(bad)}")
        unknown = set(fields) - set(JOB_COLUMNS)
        if unknown:
            raise ValueError(f"unknown job fields: {sorted(unknown)}")
        expect = dict(expect or {})
        max_index = expect.pop("comp_next_index_max", None)

        def op(conn):
            with self._transaction(conn):
                row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
                if row is None:
                    return False
                if "status" in fields and _value(fields["status"]) != row["status"]:
                    check_job_transition(JobStatus(row["status"]), JobStatus(_value(fields["status"])))
                where = ["id = ?", "status = ?"]
                params: List[Any] = [job_id, row["status"]]
                if max_index is not None:
                    where.append("comp_next_index <= ?")
                    params.append(max_index)
                for column, value in expect.items():
                    if value is None:
                        where.append(f"{column} IS NULL")
                    else:
                        where.append(f"{column} = ?")
                        params.append(_value(value))
                values = {k: _value(v) for k, v in fields.items()}
                values["updated_at"] = self.now()
                cur = conn.execute(
                    f"UPDATE jobs SET {', '.join(f'{k} = ?' for k in values)} WHERE {' AND '.join(where)}",
                    [*values.values(), *params],
                )
                return cur.rowcount == 1
        return self._run("update_job", op)

    def fail_job(self, job_id: str, message: str, owner: Optional[str] = None) -> bool:
        """Mark a job failed. With `owner`, only while that owner still holds the lease."""
        job = self.get_job(job_id)
        if job is None or job.status in (JobStatus.COMPLETE, JobStatus.FAILED):
            return False
        try:
            return self.update_job(job_id, {
                "status": JobStatus.FAILED,
                "error_message": message,
                "lease_owner": None,
                "lease_expires_at": None,
            }, expect={"lease_owner": owner} if owner else None)
        except IllegalTransition:
            # reached a terminal status in the meantime
            return False

    def transition_jobs(self, from_statuses: Iterable[JobStatus], to_status: JobStatus,
                        updated_before: Optional[float] = None,
                        job_ids: Optional[Sequence[str]] = None,
                        error_message: Optional[str] = None) -> List[str]:
        """Bulk status change; returns the ids that moved."""
        from_statuses = [JobStatus(s) for s in from_statuses]
        for status in from_statuses:
            check_job_transition(status, to_status)
        statuses = [s.value for s in from_statuses]

        def op(conn):
            with self._transaction(conn):
                sql = f"SELECT id FROM jobs WHERE status IN ({_placeholders(statuses)})"
                params: List[Any] = list(statuses)
                if updated_before is not None:
                    sql += " AND updated_at < ?"
                    params.append(updated_before)
                if job_ids is not None:
                    sql += f" AND id IN ({_placeholders(job_ids)})"
                    params.extend(job_ids)
                ids = [r["id"] for r in conn.execute(sql, params).fetchall()]
                if not ids:
                    return []
                sets = "status = ?, updated_at = ?"
                values: List[Any] = [_value(to_status), self.now()]
                if error_message is not None:
                    sets += ", error_message = ?"
                    values.append(error_message)
                if to_status in (JobStatus.FAILED, JobStatus.COMPLETE):
                    sets += ", lease_owner = NULL, lease_expires_at = NULL"
                conn.execute(f"UPDATE jobs SET {sets} WHERE id IN ({_placeholders(ids)})", values + ids)
                return ids
        if job_ids is not None and not job_ids:
            return []
        return self._run("transition_jobs", op)

    def claim_pending_jobs(self, limit: int) -> List[Job]:
        """Move the `limit` oldest pending jobs to tiling, atomically."""
        if limit <= 0:
            return []

        def op(conn):
            with self._transaction(conn):
                rows = conn.execute(
                    "SELECT id FROM jobs WHERE status = ? ORDER BY created_at ASC, id ASC LIMIT ?",
                    (JobStatus.PENDING.value, limit),
                ).fetchall()
                ids = [r["id"] for r in rows]
                if ids:
                    conn.execute(
                        f"UPDATE jobs SET status = ?, updated_at = ? WHERE id IN ({_placeholders(ids)}) AND status = ?",
                        [JobStatus.TILING.value, self.now(), *ids, JobStatus.PENDING.value],
                    )
                return ids
        ids = self._run("claim_pending_jobs", op)
        return [job for job in (self.get_job(i) for i in ids) if job is not None]

    def try_set_compositing(self, job_id: str) -> bool:
        """Single winner when several watchdog passes race to start compositing."""
        sources = [JobStatus.GENERATING.value, JobStatus.QUEUED_FOR_GENERATION.value]

        def op(conn):
            cur = conn.execute(
                f"""UPDATE jobs SET status = ?, comp_next_index = 0, checkpoint_path = NULL,
                        lease_owner = NULL, lease_expires_at = NULL, updated_at = ?
                    WHERE id = ? AND status IN ({_placeholders(sources)})""",
                [JobStatus.COMPOSITING.value, self.now(), job_id, *sources],
            )
            return cur.rowcount == 1
        return self._run("try_set_compositing", op)

    # ------------------------------------------------------------------
    # tiles
    # ------------------------------------------------------------------

    def create_tiles(self, tiles: Iterable[Tile]) -> List[Tile]:
        now = self.now()
        tiles = [t.model_copy(update={"created_at": t.created_at or now, "updated_at": now}) for t in tiles]
        rows = [{k: _value(v) for k, v in t.model_dump().items()} for t in tiles]
        if not rows:
            return []

        def op(conn):
            with self._transaction(conn):
                conn.executemany(
                    f"INSERT INTO tiles ({','.join(TILE_COLUMNS)}) VALUES ({_placeholders(TILE_COLUMNS)})",
                    [[r[c] for c in TILE_COLUMNS] for r in rows],
                )
        self._run("create_tiles", op)
        return tiles

    def get_tile(self, tile_id: str) -> Optional[Tile]:
        def op(conn):
            return conn.execute("SELECT * FROM tiles WHERE id = ?", (tile_id,)).fetchone()
        row = self._run("get_tile", op)
        return Tile(**dict(row)) if row else None

    def get_tiles(self, job_id: str, status: Optional[TileStatus] = None) -> List[Tile]:
        sql = "SELECT * FROM tiles WHERE parent_job_id = ?"
        params: List[Any] = [job_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(_value(status))
        sql += " ORDER BY tile_index ASC, id ASC"

        def op(conn):
            return conn.execute(sql, params).fetchall()
        return [Tile(**dict(r)) for r in self._run("get_tiles", op)]

    def list_tiles(self, statuses: Iterable[TileStatus], updated_before: Optional[float] = None,
                   limit: Optional[int] = None, with_source: bool = False) -> List[Tile]:
        statuses = [_value(s) for s in statuses]
        sql = f"SELECT * FROM tiles WHERE status IN ({_placeholders(statuses)})"
        params: List[Any] = list(statuses)
        if updated_before is not None:
            sql += " AND updated_at < ?"
            params.append(updated_before)
        if with_source:
            sql += " AND source_path IS NOT NULL"
        sql += " ORDER BY updated_at ASC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        def op(conn):
            return conn.execute(sql, params).fetchall()
        return [Tile(**dict(r)) for r in self._run("list_tiles", op)]

    def update_tile(self, tile_id: str, fields: Dict[str, Any],
                    expect_status: Optional[TileStatus] = None) -> bool:
        unknown = set(fields) - set(TILE_COLUMNS)
        if unknown:
            raise ValueError(f"unknown tile fields: {sorted(unknown)}")

        def op(conn):
            with self._transaction(conn):
                row = conn.execute("SELECT status FROM tiles WHERE id = ?", (tile_id,)).fetchone()
                if row is None:
                    return False
                if expect_status is not None and row["status"] != _value(expect_status):
                    return False
                if "status" in fields and _value(fields["status"]) != row["status"]:
                    check_tile_transition(TileStatus(row["status"]), TileStatus(_value(fields["status"])))
                values = {k: _value(v) for k, v in fields.items()}
                values["updated_at"] = self.now()
                cur = conn.execute(
                    f"UPDATE tiles SET {', '.join(f'{k} = ?' for k in values)} WHERE id = ? AND status = ?",
                    [*values.values(), tile_id, row["status"]],
                )
                return cur.rowcount == 1
        return self._run("update_tile", op)

    def transition_tiles(self, from_status: TileStatus, to_status: TileStatus,
                         updated_before: Optional[float] = None,
                         error_message: Optional[str] = None) -> int:
        check_tile_transition(from_status, to_status)

        def op(conn):
            sql = "UPDATE tiles SET status = ?, updated_at = ?"
            params: List[Any] = [_value(to_status), self.now()]
            if error_message is not None:
                sql += ", error_message = ?"
                params.append(error_message)
            sql += " WHERE status = ?"
            params.append(_value(from_status))
            if updated_before is not None:
                sql += " AND updated_at < ?"
                params.append(updated_before)
            return conn.execute(sql, params).rowcount
        return self._run("transition_tiles", op)

    def count_tiles_by_status(self, job_id: str) -> Dict[TileStatus, int]:
        def op(conn):
            return conn.execute(
                "SELECT status, COUNT(*) AS n FROM tiles WHERE parent_job_id = ? GROUP BY status",
                (job_id,),
            ).fetchall()
        return {TileStatus(r["status"]): r["n"] for r in self._run("count_tiles_by_status", op)}

    def jobs_with_failed_tiles(self, older_than: float) -> List[str]:
        """Active jobs owning a failed tile whose last update is before `older_than`."""
        failed = [s.value for s in FAILED_TILE_STATUSES]
        active = [s.value for s in ACTIVE_JOB_STATUSES]

        def op(conn):
            return conn.execute(
                f"""SELECT DISTINCT j.id FROM jobs j JOIN tiles t ON t.parent_job_id = j.id
                    WHERE t.status IN ({_placeholders(failed)}) AND t.updated_at < ?
                      AND j.status IN ({_placeholders(active)})
                    ORDER BY j.id""",
                [*failed, older_than, *active],
            ).fetchall()
        return [r["id"] for r in self._run("jobs_with_failed_tiles", op)]

    # ------------------------------------------------------------------
    # advisory lock, config, task queue
    # ------------------------------------------------------------------

    def try_acquire_lock(self, name: str, owner: str, ttl_seconds: float) -> bool:
        def op(conn):
            now = self.now()
            cur = conn.execute(
                """INSERT INTO locks (name, owner, expires_at) VALUES (?, ?, ?)
                   ON CONFLICT (name) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at
                   WHERE locks.expires_at <= ? OR locks.owner = excluded.owner""",
                (name, owner, now + ttl_seconds, now),
            )
            return cur.rowcount == 1
        return self._run("try_acquire_lock", op)

    def release_lock(self, name: str, owner: str) -> None:
        def op(conn):
            conn.execute("DELETE FROM locks WHERE name = ? AND owner = ?", (name, owner))
        self._run("release_lock", op)

    def get_config(self, key: str, default: Any = None) -> Any:
        def op(conn):
            return conn.execute("SELECT value FROM config WHERE key = ?", (key,)).fetchone()
        row = self._run("get_config", op)
        return json.loads(row["value"]) if row else default

    def set_config(self, key: str, value: Any) -> None:
        def op(conn):
            conn.execute(
                "INSERT INTO config (key, value) VALUES (?, ?) "
                "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
                (key, json.dumps(value)),
            )
        self._run("set_config", op)

    def enqueue_task(self, name: str, payload: Dict[str, Any], delay_seconds: float = 0.0) -> int:
        def op(conn):
            now = self.now()
            cur = conn.execute(
                "INSERT INTO tasks (name, payload, run_after, created_at) VALUES (?, ?, ?, ?)",
                (name, json.dumps(payload), now + max(0.0, delay_seconds), now),
            )
            return cur.lastrowid
        return self._run("enqueue_task", op)

    def claim_due_tasks(self, limit: int = 50) -> List[TaskMessage]:
        """Pop due messages; each message is handed to exactly one caller."""
        def op(conn):
            with self._transaction(conn):
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE run_after <= ? ORDER BY run_after ASC, id ASC LIMIT ?",
                    (self.now(), limit),
                ).fetchall()
                ids = [r["id"] for r in rows]
                if ids:
                    conn.execute(f"DELETE FROM tasks WHERE id IN ({_placeholders(ids)})", ids)
                return rows
        return [
            TaskMessage(id=r["id"], name=r["name"], payload=json.loads(r["payload"]), run_after=r["run_after"])
            for r in self._run("claim_due_tasks", op)
        ]

    def pending_tasks(self) -> List[TaskMessage]:
        def op(conn):
            return conn.execute("SELECT * FROM tasks ORDER BY run_after ASC, id ASC").fetchall()
        return [
            TaskMessage(id=r["id"], name=r["name"], payload=json.loads(r["payload"]), run_after=r["run_after"])
            for r in self._run("pending_tasks", op)
        ]
