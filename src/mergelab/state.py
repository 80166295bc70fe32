from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
import json
from pathlib import Path
import sqlite3
import threading
from typing import cast

from mergelab.models import (
    BranchHead,
    Head,
    HeadMetadataRecord,
    MergeRequestHead,
    Revision,
    TagHead,
)


class StatePersistenceError(RuntimeError):
    """Local state could not be read or written."""


@dataclass(frozen=True)
class DiscoveryPassRecord:
    source_id: str
    mode: str
    status: str
    error: str | None
    emitted_count: int
    started_at: str
    finished_at: str | None


@dataclass(frozen=True)
class DiscoveredHeadRecord:
    source_id: str
    job_id: str
    head: Head
    revision: Revision
    observed_at: str


class StateStore:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path)
        except sqlite3.Error as exc:
            raise StatePersistenceError(f"cannot open state DB {self._db_path}: {exc}") from exc
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StatePersistenceError(f"state DB operation failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_head_metadata (
                    job_id TEXT PRIMARY KEY,
                    head_name TEXT NOT NULL,
                    project_id INTEGER NOT NULL,
                    branch_name TEXT NOT NULL,
                    commit_hash TEXT NOT NULL,
                    web_url TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS build_head_metadata (
                    job_id TEXT NOT NULL,
                    build_number INTEGER NOT NULL,
                    head_name TEXT NOT NULL,
                    project_id INTEGER NOT NULL,
                    branch_name TEXT NOT NULL,
                    commit_hash TEXT NOT NULL,
                    web_url TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (job_id, build_number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS discovery_passes (
                    source_id TEXT PRIMARY KEY,
                    mode TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error TEXT NULL,
                    emitted_count INTEGER NOT NULL DEFAULT 0,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS discovered_heads (
                    source_id TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    head_json TEXT NOT NULL,
                    commit_hash TEXT NOT NULL,
                    target_hash TEXT NULL,
                    observed_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (source_id, job_id)
                )
                """
            )

    def get_job_metadata(self, job_id: str) -> HeadMetadataRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT head_name, project_id, branch_name, commit_hash, web_url
                FROM job_head_metadata
                WHERE job_id = ?
                """,
                (job_id,),
            ).fetchone()
        return _metadata_from_row(row) if row is not None else None

    def get_build_metadata(self, job_id: str, build_number: int) -> HeadMetadataRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT head_name, project_id, branch_name, commit_hash, web_url
                FROM build_head_metadata
                WHERE job_id = ? AND build_number = ?
                """,
                (job_id, build_number),
            ).fetchone()
        return _metadata_from_row(row) if row is not None else None

    def resolve_or_create_job_metadata(
        self, job_id: str, record: HeadMetadataRecord
    ) -> HeadMetadataRecord:
        """Persist ``record`` unless the job already has one, and return the stored record."""
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO job_head_metadata(
                    job_id, head_name, project_id, branch_name, commit_hash, web_url
                )
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO NOTHING
                """,
                (
                    job_id,
                    record.head_name,
                    record.project_id,
                    record.branch_name,
                    record.commit_hash,
                    record.web_url,
                ),
            )
            row = conn.execute(
                """
                SELECT head_name, project_id, branch_name, commit_hash, web_url
                FROM job_head_metadata
                WHERE job_id = ?
                """,
                (job_id,),
            ).fetchone()
        if row is None:
            raise StatePersistenceError(f"job metadata for {job_id!r} missing after insert")
        return _metadata_from_row(row)

    def save_job_metadata(self, job_id: str, record: HeadMetadataRecord) -> None:
        """Replace the job's record with one taken from the head it is bound to now."""
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO job_head_metadata(
                    job_id, head_name, project_id, branch_name, commit_hash, web_url
                )
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                    head_name = excluded.head_name,
                    project_id = excluded.project_id,
                    branch_name = excluded.branch_name,
                    commit_hash = excluded.commit_hash,
                    web_url = excluded.web_url
                """,
                (
                    job_id,
                    record.head_name,
                    record.project_id,
                    record.branch_name,
                    record.commit_hash,
                    record.web_url,
                ),
            )

    def attach_build_metadata(
        self, job_id: str, build_number: int, record: HeadMetadataRecord
    ) -> HeadMetadataRecord:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO build_head_metadata(
                    job_id, build_number, head_name, project_id, branch_name, commit_hash, web_url
                )
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id, build_number) DO NOTHING
                """,
                (
                    job_id,
                    build_number,
                    record.head_name,
                    record.project_id,
                    record.branch_name,
                    record.commit_hash,
                    record.web_url,
                ),
            )
            row = conn.execute(
                """
                SELECT head_name, project_id, branch_name, commit_hash, web_url
                FROM build_head_metadata
                WHERE job_id = ? AND build_number = ?
                """,
                (job_id, build_number),
            ).fetchone()
        if row is None:
            raise StatePersistenceError(
                f"build metadata for {job_id!r} #{build_number} missing after insert"
            )
        return _metadata_from_row(row)

    def list_job_metadata(self) -> tuple[tuple[str, HeadMetadataRecord], ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT job_id, head_name, project_id, branch_name, commit_hash, web_url
                FROM job_head_metadata
                ORDER BY job_id ASC
                """
            ).fetchall()
        return tuple((str(row[0]), _metadata_from_row(row[1:])) for row in rows)

    def record_pass_started(self, source_id: str, *, mode: str, started_at: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO discovery_passes(
                    source_id, mode, status, error, emitted_count, started_at, finished_at
                )
                VALUES(?, ?, 'running', NULL, 0, ?, NULL)
                ON CONFLICT(source_id) DO UPDATE SET
                    mode=excluded.mode,
                    status='running',
                    started_at=excluded.started_at,
                    finished_at=NULL
                """,
                (source_id, mode, started_at),
            )

    def record_pass_finished(
        self,
        source_id: str,
        *,
        status: str,
        error: str | None,
        emitted_count: int,
        finished_at: str,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE discovery_passes
                SET status = ?, error = ?, emitted_count = ?, finished_at = ?
                WHERE source_id = ?
                """,
                (status, error, emitted_count, finished_at, source_id),
            )

    def list_discovery_passes(self) -> tuple[DiscoveryPassRecord, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT source_id, mode, status, error, emitted_count, started_at, finished_at
                FROM discovery_passes
                ORDER BY source_id ASC
                """
            ).fetchall()
        return tuple(
            DiscoveryPassRecord(
                source_id=str(row[0]),
                mode=str(row[1]),
                status=str(row[2]),
                error=row[3] if isinstance(row[3], str) else None,
                emitted_count=int(row[4]),
                started_at=str(row[5]),
                finished_at=row[6] if isinstance(row[6], str) else None,
            )
            for row in rows
        )

    def replace_discovered_heads(
        self,
        source_id: str,
        observed: tuple[tuple[str, Revision], ...],
    ) -> None:
        """Swap the source's head set for a full pass result in a single transaction."""
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM discovered_heads WHERE source_id = ?", (source_id,))
            for job_id, revision in observed:
                _upsert_discovered_head(conn, source_id, job_id, revision)

    def upsert_discovered_heads(
        self,
        source_id: str,
        observed: tuple[tuple[str, Revision], ...],
    ) -> None:
        with self._lock, self._connect() as conn:
            for job_id, revision in observed:
                _upsert_discovered_head(conn, source_id, job_id, revision)

    def get_discovered_head(self, job_id: str) -> DiscoveredHeadRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT source_id, job_id, head_json, commit_hash, target_hash, observed_at
                FROM discovered_heads
                WHERE job_id = ?
                """,
                (job_id,),
            ).fetchone()
        return _discovered_head_from_row(row) if row is not None else None

    def list_discovered_heads(self, source_id: str | None = None) -> tuple[DiscoveredHeadRecord, ...]:
        with self._lock, self._connect() as conn:
            if source_id is None:
                rows = conn.execute(
                    """
                    SELECT source_id, job_id, head_json, commit_hash, target_hash, observed_at
                    FROM discovered_heads
                    ORDER BY source_id ASC, job_id ASC
                    """
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT source_id, job_id, head_json, commit_hash, target_hash, observed_at
                    FROM discovered_heads
                    WHERE source_id = ?
                    ORDER BY job_id ASC
                    """,
                    (source_id,),
                ).fetchall()
        return tuple(_discovered_head_from_row(row) for row in rows)


def _upsert_discovered_head(
    conn: sqlite3.Connection, source_id: str, job_id: str, revision: Revision
) -> None:
    conn.execute(
        """
        INSERT INTO discovered_heads(source_id, job_id, head_json, commit_hash, target_hash)
        VALUES(?, ?, ?, ?, ?)
        ON CONFLICT(source_id, job_id) DO UPDATE SET
            head_json=excluded.head_json,
            commit_hash=excluded.commit_hash,
            target_hash=excluded.target_hash,
            observed_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
        """,
        (
            source_id,
            job_id,
            json.dumps(asdict(revision.head), sort_keys=True),
            revision.hash,
            revision.target_hash,
        ),
    )


def _metadata_from_row(row: tuple[object, ...]) -> HeadMetadataRecord:
    head_name, project_id, branch_name, commit_hash, web_url = row
    return HeadMetadataRecord(
        head_name=str(head_name),
        project_id=int(cast(int, project_id)),
        branch_name=str(branch_name),
        commit_hash=str(commit_hash),
        web_url=str(web_url),
    )


def _discovered_head_from_row(row: tuple[object, ...]) -> DiscoveredHeadRecord:
    source_id, job_id, head_json, commit_hash, target_hash, observed_at = row
    head = _head_from_json(str(head_json))
    return DiscoveredHeadRecord(
        source_id=str(source_id),
        job_id=str(job_id),
        head=head,
        revision=Revision(
            head=head,
            hash=str(commit_hash),
            target_hash=target_hash if isinstance(target_hash, str) else None,
        ),
        observed_at=str(observed_at),
    )


def _head_from_json(raw: str) -> Head:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise StatePersistenceError("stored head is not a JSON object")
    kind = data.get("kind")
    if kind == "branch":
        return BranchHead(
            name=str(data["name"]),
            project_id=int(data["project_id"]),
            has_open_merge_request=bool(data.get("has_open_merge_request", False)),
        )
    if kind == "tag":
        return TagHead(name=str(data["name"]), project_id=int(data["project_id"]))
    if kind == "merge_request":
        state = data.get("state")
        if state not in {"merged", "unmerged"}:
            raise StatePersistenceError(f"stored merge request head has invalid state {state!r}")
        return MergeRequestHead(
            iid=int(data["iid"]),
            project_id=int(data["project_id"]),
            source_project_id=int(data["source_project_id"]),
            source_branch=str(data["source_branch"]),
            target_branch=str(data["target_branch"]),
            state="merged" if state == "merged" else "unmerged",
            work_in_progress=bool(data["work_in_progress"]),
            mergeable=bool(data["mergeable"]),
        )
    raise StatePersistenceError(f"stored head has unknown kind {kind!r}")
