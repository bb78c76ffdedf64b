"""Background job runner."""

from __future__ import annotations

import logging
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable

from familyvideo.db import update_job
from familyvideo.errors import classify_exception

logger = logging.getLogger(__name__)

# DVD extraction is CPU heavy; one job at a time.
_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="familyvideo-job")
_side_effects = ThreadPoolExecutor(max_workers=2, thread_name_prefix="familyvideo-bg")

ProgressCallback = Callable[[int, str, str], None]


def job_progress(db_path: Path, job_id: int) -> ProgressCallback:
    """Return a callback that writes progress for a running job."""

    def _progress(percent: int, phase: str, detail: str = "") -> None:
        update_job(db_path, job_id, percent=percent, phase=phase, detail=detail)

    return _progress


def run_job(db_path: Path, job_id: int, job_callable: Callable[[ProgressCallback], Any]) -> None:
    """Run a job callable inline, recording its outcome on the job row."""

    update_job(db_path, job_id, status="running")
    try:
        result = job_callable(job_progress(db_path, job_id))
    except Exception as exc:  # noqa: BLE001
        _, label, details = classify_exception(exc)
        logger.exception(
            "Job failed",
            extra={
                "event": "job_failed",
                "context": {"job_id": job_id, "error": label, "details": details},
            },
        )
        update_job(
            db_path,
            job_id,
            status="failed",
            phase="error",
            error_label=label,
            error=f"{details}\n{traceback.format_exc(limit=5)}",
        )
        return
    update_job(
        db_path,
        job_id,
        status="success",
        percent=100,
        result=result if isinstance(result, dict) else {},
    )
    logger.info(
        "Job completed",
        extra={"event": "job_completed", "context": {"job_id": job_id}},
    )


def enqueue_job(
    db_path: Path, job_id: int, job_callable: Callable[[ProgressCallback], Any]
) -> Future:
    """Enqueue a job to run in the background."""

    logger.info(
        "Job queued",
        extra={"event": "job_queued", "context": {"job_id": job_id}},
    )
    return _executor.submit(run_job, db_path, job_id, job_callable)


def fire_and_forget(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
    """Run a best-effort side effect without waiting; failures are only logged."""

    def _run() -> None:
        try:
            func(*args, **kwargs)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Background task failed",
                exc_info=True,
                extra={
                    "event": "background_task_failed",
                    "context": {"task": getattr(func, "__qualname__", repr(func))},
                },
            )

    return _side_effects.submit(_run)
