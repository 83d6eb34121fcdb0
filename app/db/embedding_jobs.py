"""Embedding job queue database operations.

The ``embedding_jobs`` table is the durable queue. ``job_id`` is the
primary key, so enqueueing the same entity twice collapses into one job.
"""

from datetime import datetime, timedelta, timezone  # noqa: UP035
from typing import Any

from app.core.logging import get_logger
from app.core.schemas_embeddings import EntityKind, JobStatus, make_job_id, require_queue_kind
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)  # noqa: UP017


def build_job_row(
    kind: EntityKind,
    entity_id: int,
    text: str | None = None,
    max_attempts: int = 3,
) -> dict[str, Any]:
    """Build an embedding_jobs row for an entity of a queued kind."""
    kind = require_queue_kind(kind)
    payload: dict[str, Any] = {"entity_id": entity_id}
    if text:
        payload["text"] = text

    return {
        "job_id": make_job_id(kind, entity_id),
        "kind": kind.value,
        "payload": payload,
        "status": JobStatus.QUEUED.value,
        "attempts": 0,
        "max_attempts": max_attempts,
        "available_at": _utc_now().isoformat(),
    }


def enqueue_jobs(rows: list[dict[str, Any]]) -> int:
    """
    Insert embedding jobs, ignoring ones whose job_id already exists.

    Args:
        rows: Rows built with build_job_row

    Returns:
        Number of rows submitted

    Raises:
        Exception: If database operation fails
    """
    if not rows:
        return 0

    supabase = get_supabase()

    try:
        supabase.table("embedding_jobs").upsert(
            rows,
            on_conflict="job_id",
            ignore_duplicates=True,
        ).execute()

        logger.debug(f"Enqueued {len(rows)} embedding jobs")
        return len(rows)

    except Exception as e:
        logger.error(f"Failed to enqueue embedding jobs: {e}")
        raise


def claim_jobs(kind: EntityKind, limit: int, lock_seconds: int) -> list[dict[str, Any]]:
    """
    Atomically claim due jobs of one kind.

    Jobs whose lock expired (worker crashed mid-flight) are claimed again,
    which is what gives at-least-once delivery.

    Returns:
        Claimed job rows with attempts already incremented
    """
    if limit <= 0:
        return []

    supabase = get_supabase()

    try:
        response = supabase.rpc(
            "claim_embedding_jobs",
            {
                "p_kind": EntityKind(kind).value,
                "p_limit": limit,
                "p_lock_seconds": lock_seconds,
            },
        ).execute()
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to claim {kind} embedding jobs: {e}")
        raise


def complete_job(job_id: str) -> None:
    """Delete a finished job."""
    supabase = get_supabase()

    try:
        supabase.table("embedding_jobs").delete().eq("job_id", job_id).execute()
        logger.debug(f"Completed embedding job {job_id}", extra={"job_id": job_id})

    except Exception as e:
        logger.error(f"Failed to complete job: {e}", extra={"job_id": job_id})
        raise


def reschedule_job(job_id: str, error_message: str, delay_seconds: float) -> None:
    """Put a job back in the queue, visible again after delay_seconds."""
    supabase = get_supabase()

    try:
        supabase.table("embedding_jobs").update(
            {
                "status": JobStatus.QUEUED.value,
                "last_error": error_message,
                "available_at": (_utc_now() + timedelta(seconds=delay_seconds)).isoformat(),
                "locked_until": None,
            }
        ).eq("job_id", job_id).execute()

        logger.info(
            f"Rescheduled embedding job {job_id} in {delay_seconds:.0f}s: {error_message}",
            extra={"job_id": job_id},
        )

    except Exception as e:
        logger.error(f"Failed to reschedule job: {e}", extra={"job_id": job_id})
        raise


def fail_job(job_id: str, error_message: str) -> None:
    """Mark a job as terminally failed; it is kept for operator inspection."""
    supabase = get_supabase()

    try:
        supabase.table("embedding_jobs").update(
            {
                "status": JobStatus.FAILED.value,
                "last_error": error_message,
                "locked_until": None,
            }
        ).eq("job_id", job_id).execute()

        logger.warning(f"Failed embedding job {job_id}: {error_message}", extra={"job_id": job_id})

    except Exception as e:
        logger.error(f"Failed to update job as failed: {e}", extra={"job_id": job_id})
        raise


def list_failed_jobs(
    kind: EntityKind | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """List terminally failed jobs, most recently updated first."""
    supabase = get_supabase()

    try:
        query = (
            supabase.table("embedding_jobs")
            .select("*")
            .eq("status", JobStatus.FAILED.value)
            .order("updated_at", desc=True)
        )
        if kind:
            query = query.eq("kind", EntityKind(kind).value)

        response = query.range(offset, offset + limit - 1).execute()
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to list failed jobs: {e}")
        raise


def requeue_failed_jobs(kind: EntityKind | None = None) -> int:
    """Reset failed jobs to queued with a fresh attempt budget."""
    query = (
        get_supabase()
        .table("embedding_jobs")
        .update(
            {
                "status": JobStatus.QUEUED.value,
                "attempts": 0,
                "available_at": _utc_now().isoformat(),
            }
        )
        .eq("status", JobStatus.FAILED.value)
    )
    if kind:
        query = query.eq("kind", EntityKind(kind).value)

    response = query.execute()
    count = len(response.data or [])
    logger.info(f"Requeued {count} failed embedding jobs")
    return count
