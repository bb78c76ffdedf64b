"""SQLite helpers for the background job table.

Nothing about videos is stored here; Jellyfin and the NFO files are the
record. The database only tracks long-running upload jobs so clients can
poll their progress.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path


SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL,
    percent INTEGER NOT NULL DEFAULT 0,
    phase TEXT DEFAULT '',
    detail TEXT DEFAULT '',
    payload_json TEXT DEFAULT '',
    result_json TEXT DEFAULT '',
    error_label TEXT DEFAULT '',
    error_text TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    started_at TEXT DEFAULT '',
    finished_at TEXT DEFAULT ''
);
"""

FINISHED_STATUSES = {"success", "failed", "stale"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Create a SQLite connection with WAL + busy timeout applied."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the schema if it doesn't exist and mark interrupted jobs."""

    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()
    mark_stale_jobs_on_startup(db_path)


def create_job(db_path: Path, job_type: str, payload: dict | None = None) -> int:
    """Create a new queued job and return its ID."""

    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """
            INSERT INTO jobs (job_type, status, percent, phase, detail, payload_json, created_at)
            VALUES (?, 'queued', 0, '', '', ?, ?)
            """,
            (job_type, json.dumps(payload or {}), _now()),
        )
        conn.commit()
        return int(cursor.lastrowid)
    finally:
        conn.close()


def update_job(
    db_path: Path,
    job_id: int,
    percent: int | None = None,
    phase: str | None = None,
    detail: str | None = None,
    status: str | None = None,
    result: dict | None = None,
    error_label: str | None = None,
    error: str | None = None,
) -> None:
    """Update fields on a job, retrying briefly while the database is locked."""

    fields: list[str] = []
    values: list[object] = []
    if percent is not None:
        fields.append("percent = ?")
        values.append(max(0, min(100, int(percent))))
    if phase is not None:
        fields.append("phase = ?")
        values.append(phase)
    if detail is not None:
        fields.append("detail = ?")
        values.append(detail)
    if status is not None:
        fields.append("status = ?")
        values.append(status)
        if status == "running":
            fields.append(
                "started_at = CASE WHEN started_at = '' THEN ? ELSE started_at END"
            )
            values.append(_now())
        if status in FINISHED_STATUSES:
            fields.append(
                "finished_at = CASE WHEN finished_at = '' THEN ? ELSE finished_at END"
            )
            values.append(_now())
    if result is not None:
        fields.append("result_json = ?")
        values.append(json.dumps(result))
    if error_label is not None:
        fields.append("error_label = ?")
        values.append(error_label)
    if error is not None:
        fields.append("error_text = ?")
        values.append(error)
    if not fields:
        return
    values.append(job_id)
    statement = f"UPDATE jobs SET {', '.join(fields)} WHERE id = ?"

    conn = get_connection(db_path)
    try:
        max_retries = 50
        for attempt in range(max_retries):
            try:
                conn.execute(statement, values)
                conn.commit()
                break
            except sqlite3.OperationalError as exc:
                if "database is locked" not in str(exc).lower():
                    raise
                if attempt == max_retries - 1:
                    raise RuntimeError(
                        "Database is locked after retries while updating job progress."
                    ) from exc
                time.sleep(0.1)
    finally:
        conn.close()


def get_job(db_path: Path, job_id: int) -> dict | None:
    """Return a job row as a dictionary."""

    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def mark_stale_jobs_on_startup(db_path: Path) -> int:
    """Mark queued or running jobs as stale when the server restarts."""

    conn = get_connection(db_path)
    try:
        now = _now()
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'stale',
                error_text = CASE
                    WHEN error_text = '' THEN 'Job marked stale after server restart.'
                    ELSE error_text
                END,
                finished_at = CASE WHEN finished_at = '' THEN ? ELSE finished_at END
            WHERE status IN ('queued', 'running')
            """,
            (now,),
        )
        conn.commit()
        if cursor.rowcount:
            logging.info(
                "Marked unfinished jobs as stale on startup",
                extra={"event": "jobs_marked_stale", "context": {"count": cursor.rowcount}},
            )
        return cursor.rowcount
    finally:
        conn.close()


def list_active_payloads(db_path: Path) -> list[dict]:
    """Return the payloads of queued or running jobs."""

    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT payload_json FROM jobs WHERE status IN ('queued', 'running')"
        ).fetchall()
    finally:
        conn.close()
    payloads = []
    for row in rows:
        try:
            payloads.append(json.loads(row["payload_json"] or "{}"))
        except json.JSONDecodeError:
            continue
    return payloads


def serialize_job(job: dict) -> dict:
    """Convert a job row into the API shape."""

    result: dict = {}
    if job.get("result_json"):
        try:
            result = json.loads(job["result_json"])
        except json.JSONDecodeError:
            result = {}
    payload = {
        "id": job["id"],
        "jobType": job["job_type"],
        "status": job["status"],
        "percent": job["percent"],
        "phase": job["phase"] or "",
        "detail": job["detail"] or "",
        "result": result,
        "createdAt": job["created_at"],
        "startedAt": job["started_at"] or None,
        "finishedAt": job["finished_at"] or None,
    }
    if job["status"] in {"failed", "stale"}:
        payload["error"] = job.get("error_label") or "Job failed"
        payload["details"] = job.get("error_text") or ""
    return payload
