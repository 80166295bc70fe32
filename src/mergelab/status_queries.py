from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
import sqlite3


@dataclass(frozen=True)
class PassStatusRow:
    source_id: str
    mode: str
    status: str
    error: str | None
    emitted_count: int
    started_at: str
    finished_at: str | None


@dataclass(frozen=True)
class HeadStatusRow:
    source_id: str
    job_id: str
    kind: str
    commit_hash: str
    observed_at: str
    metadata_commit_hash: str | None

    @property
    def drifted(self) -> bool:
        """True when the job's stored metadata points at a different commit than the live head."""
        return self.metadata_commit_hash is not None and self.metadata_commit_hash != self.commit_hash


@dataclass(frozen=True)
class StatusOverview:
    sources: int
    failing_sources: int
    heads: int
    drifted_heads: int


def load_pass_status(db_path: Path) -> tuple[PassStatusRow, ...]:
    with _connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT source_id, mode, status, error, emitted_count, started_at, finished_at
            FROM discovery_passes
            ORDER BY source_id ASC
            """
        ).fetchall()
    return tuple(
        PassStatusRow(
            source_id=_as_str(row[0], "source_id"),
            mode=_as_str(row[1], "mode"),
            status=_as_str(row[2], "status"),
            error=_as_optional_str(row[3]),
            emitted_count=_as_int(row[4], "emitted_count"),
            started_at=_as_str(row[5], "started_at"),
            finished_at=_as_optional_str(row[6]),
        )
        for row in rows
    )


def load_head_status(
    db_path: Path, source_filter: str | None = None, limit: int | None = 200
) -> tuple[HeadStatusRow, ...]:
    clause = "WHERE d.source_id = ?" if source_filter is not None else ""
    params: tuple[object, ...] = (source_filter,) if source_filter is not None else ()
    limit_clause = f"LIMIT {int(limit)}" if limit is not None else ""
    with _connect(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT
                d.source_id,
                d.job_id,
                json_extract(d.head_json, '$.kind'),
                d.commit_hash,
                d.observed_at,
                m.commit_hash
            FROM discovered_heads AS d
            LEFT JOIN job_head_metadata AS m ON m.job_id = d.job_id
            {clause}
            ORDER BY d.source_id ASC, d.job_id ASC
            {limit_clause}
            """,
            params,
        ).fetchall()
    return tuple(
        HeadStatusRow(
            source_id=_as_str(row[0], "source_id"),
            job_id=_as_str(row[1], "job_id"),
            kind=_as_str(row[2], "kind"),
            commit_hash=_as_str(row[3], "commit_hash"),
            observed_at=_as_str(row[4], "observed_at"),
            metadata_commit_hash=_as_optional_str(row[5]),
        )
        for row in rows
    )


def summarize(
    passes: tuple[PassStatusRow, ...], heads: tuple[HeadStatusRow, ...]
) -> StatusOverview:
    return StatusOverview(
        sources=len(passes),
        failing_sources=sum(1 for row in passes if row.status == "failed"),
        heads=len(heads),
        drifted_heads=sum(1 for row in heads if row.drifted),
    )


@contextmanager
def _connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL;")
    try:
        yield conn
    finally:
        conn.close()


def _as_str(value: object, field: str) -> str:
    if isinstance(value, str):
        return value
    raise RuntimeError(f"Expected {field} to be a string, got {type(value).__name__}")


def _as_optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _as_int(value: object, field: str) -> int:
    if isinstance(value, int):
        return value
    if value is None:
        return 0
    raise RuntimeError(f"Expected {field} to be an integer, got {type(value).__name__}")
