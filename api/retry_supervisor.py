"""
Retry supervisor: decides whether a failed job goes back to the queue.

A failure counts against the job's budget (retry_count + 1). While the count
stays below max_retries the job is requeued as pending; the failure that
reaches max_retries finalizes it as failed. Pool exhaustion never comes
through here.
"""

import logging
from typing import Optional

from api.database import _now, force_fail_job, get_db, get_job, update_service_request_for_job
from api.logging_config import log_job_event
from core.exceptions import InvalidTransition, NotFoundError, RetryExhausted
from core.models import JobStatus

logger = logging.getLogger(__name__)


async def on_failure(
    job_id: str,
    reason: str,
    claim_token: Optional[str] = None,
    permanent: bool = False,
) -> str:
    """
    Record a failed attempt and requeue or finalize the job.

    With ``claim_token`` the call only applies while that claim still holds
    the job; otherwise it is ignored (the job was cancelled or recovered).

    Returns the job's status afterwards.

    Raises:
        NotFoundError: unknown job
        RetryExhausted: the job already failed with no retries left
        InvalidTransition: the job already completed
    """
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            cursor = await db.execute("SELECT * FROM rpa_jobs WHERE id = ?", (job_id,))
            job = await cursor.fetchone()
            if not job:
                raise NotFoundError("Job not found", {"job_id": job_id})

            status = job["status"]
            retry_count = int(job["retry_count"] or 0)
            max_retries = int(job["max_retries"] or 0)

            if claim_token is not None and (
                status != JobStatus.PROCESSING.value or job["claim_token"] != claim_token
            ):
                await db.rollback()
                logger.info(f"Ignoring failure report for job {job_id}: no longer held by this claim ({status})")
                return status

            if status == JobStatus.COMPLETED.value:
                raise InvalidTransition(status, JobStatus.FAILED.value)
            if status == JobStatus.FAILED.value and retry_count >= max_retries:
                raise RetryExhausted(job_id, retry_count, max_retries)

            now = _now()
            attempts = retry_count + 1
            if not permanent and attempts < max_retries:
                new_status = JobStatus.PENDING.value
                await db.execute(
                    """UPDATE rpa_jobs
                       SET status = 'pending', retry_count = ?, claim_token = NULL,
                           started_at = NULL, completed_at = NULL, error_message = NULL, updated_at = ?
                       WHERE id = ?""",
                    (attempts, now, job_id),
                )
            else:
                new_status = JobStatus.FAILED.value
                final_count = retry_count if permanent else min(attempts, max_retries)
                await db.execute(
                    """UPDATE rpa_jobs
                       SET status = 'failed', retry_count = ?, claim_token = NULL,
                           error_message = ?, completed_at = ?, updated_at = ?
                       WHERE id = ?""",
                    (final_count, reason, now, now, job_id),
                )
        except Exception:
            await db.rollback()
            raise
        await db.commit()

    service_type = job["service_type"]
    if new_status == JobStatus.PENDING.value:
        log_job_event(job_id, f"requeued (attempt {attempts}/{max_retries})", service_type, reason)
    else:
        log_job_event(job_id, "failed permanently" if permanent else "failed", service_type, reason)
        await update_service_request_for_job(job_id, JobStatus.FAILED.value, error_message=reason)
    return new_status


async def manual_retry(job_id: str) -> str:
    """
    Admin retry of a failed job. Counts against the same budget as automatic
    retries, so a job with no retries left raises RetryExhausted.
    """
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            cursor = await db.execute("SELECT * FROM rpa_jobs WHERE id = ?", (job_id,))
            job = await cursor.fetchone()
            if not job:
                raise NotFoundError("Job not found", {"job_id": job_id})

            retry_count = int(job["retry_count"] or 0)
            max_retries = int(job["max_retries"] or 0)
            if job["status"] != JobStatus.FAILED.value:
                raise InvalidTransition(job["status"], JobStatus.PENDING.value)
            if retry_count >= max_retries:
                raise RetryExhausted(job_id, retry_count, max_retries)

            await db.execute(
                """UPDATE rpa_jobs
                   SET status = 'pending', retry_count = ?, claim_token = NULL,
                       started_at = NULL, completed_at = NULL, error_message = NULL, updated_at = ?
                   WHERE id = ? AND status = 'failed'""",
                (retry_count + 1, _now(), job_id),
            )
        except Exception:
            await db.rollback()
            raise
        await db.commit()

    log_job_event(job_id, f"manually requeued (attempt {retry_count + 1}/{max_retries})", job["service_type"])
    await update_service_request_for_job(job_id, JobStatus.PENDING.value)
    return JobStatus.PENDING.value


async def force_fail(job_id: str, reason: str = "Cancelled by administrator") -> str:
    """Cancel a pending or in-flight job. A running attempt's late result is discarded."""
    if not await force_fail_job(job_id, reason):
        job = await get_job(job_id)
        if not job:
            raise NotFoundError("Job not found", {"job_id": job_id})
        raise InvalidTransition(job["status"], JobStatus.FAILED.value)

    log_job_event(job_id, "force-failed", error=reason)
    await update_service_request_for_job(job_id, JobStatus.FAILED.value, error_message=reason)
    return JobStatus.FAILED.value
