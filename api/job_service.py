"""
Queue submitter: the only way work enters rpa_jobs.

Domain submitters (BVN, identity, education, attestation) record their
service_requests row and enqueue the automation job with the priority their
service carries.
"""

import math
import logging
from typing import Any, Dict, Optional

from api import database
from api.config import config
from api.logging_config import log_job_event
from api.retry_supervisor import manual_retry
from core.exceptions import NotFoundError, ValidationError
from core.models import REQUIRED_PAYLOAD_FIELDS, EXAM_TYPES, JobStatus, ServiceType

logger = logging.getLogger(__name__)

# Service group priorities (higher dispatches first)
BVN_PRIORITY = 5
IDENTITY_PRIORITY = 5
EDUCATION_PRIORITY = 3
ATTESTATION_PRIORITY = 3

BVN_SERVICES = (
    ServiceType.BVN_RETRIEVAL.value,
    ServiceType.BVN_DIGITAL_CARD.value,
    ServiceType.BVN_MODIFY.value,
)
IDENTITY_SERVICES = (
    ServiceType.NIN_LOOKUP.value,
    ServiceType.NIN_PHONE.value,
    ServiceType.LOST_NIN.value,
)
EDUCATION_SERVICES = {
    "jamb": ServiceType.JAMB_SCORE.value,
    "waec": ServiceType.WAEC_RESULT.value,
    "neco": ServiceType.NECO_RESULT.value,
    "nabteb": ServiceType.NABTEB_RESULT.value,
    "nbais": ServiceType.NBAIS_RESULT.value,
}


def default_priority(service_type: str) -> int:
    """Priority a service carries when submitted directly to the queue."""
    if service_type in BVN_SERVICES:
        return BVN_PRIORITY
    if service_type in IDENTITY_SERVICES:
        return IDENTITY_PRIORITY
    if service_type in EDUCATION_SERVICES.values():
        return EDUCATION_PRIORITY
    if service_type == ServiceType.BIRTH_ATTESTATION.value:
        return ATTESTATION_PRIORITY
    return 0


def estimate_wait_seconds(queue_position: int, concurrency: Optional[int] = None, avg_job_seconds: Optional[int] = None) -> int:
    """ceil(position / concurrency) batches of the average job time."""
    concurrency = max(1, concurrency or config.WORKER_CONCURRENCY)
    avg = config.AVG_JOB_SECONDS if avg_job_seconds is None else avg_job_seconds
    return math.ceil(max(0, queue_position) / concurrency) * avg


def validate_submission(service_type: str, payload: Any) -> Dict[str, Any]:
    try:
        ServiceType(service_type)
    except ValueError:
        raise ValidationError(f"Unknown service type: {service_type}", {"service_type": service_type})
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be an object", {"service_type": service_type})

    missing = [
        key for key in REQUIRED_PAYLOAD_FIELDS.get(service_type, ())
        if payload.get(key) in (None, "")
    ]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            {"service_type": service_type, "missing": missing},
        )
    return payload


async def enqueue(
    requester_id: str,
    service_type: str,
    payload: Dict[str, Any],
    priority: int = 0,
    max_retries: Optional[int] = None,
    job_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Validate and persist a pending job. Nothing is written if validation fails."""
    if not requester_id:
        raise ValidationError("requester_id is required")
    validate_submission(service_type, payload)

    job_id, queue_position = await database.insert_job(
        requester_id,
        service_type,
        payload,
        priority=int(priority),
        max_retries=config.DEFAULT_MAX_RETRIES if max_retries is None else int(max_retries),
        job_id=job_id,
    )
    log_job_event(job_id, f"enqueued (priority {priority}, position {queue_position})", service_type)
    return {
        "job_id": job_id,
        "status": JobStatus.PENDING.value,
        "queue_position": queue_position,
        "estimated_wait_time": estimate_wait_seconds(queue_position),
    }


def _job_view(job: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "job_id": job["id"],
        "service_type": job["service_type"],
        "status": job["status"],
        "priority": job["priority"],
        "retry_count": job["retry_count"],
        "max_retries": job["max_retries"],
        "result": job.get("result"),
        "error_message": job.get("error_message"),
        "started_at": job.get("started_at"),
        "completed_at": job.get("completed_at"),
        "created_at": job.get("created_at"),
    }


async def get_status(job_id: str, requester_id: str) -> Dict[str, Any]:
    """Job view for its owner. Someone else's job is reported as not found."""
    job = await database.get_job_for_user(job_id, requester_id)
    if not job:
        raise NotFoundError("Job not found", {"job_id": job_id})

    view = _job_view(job)
    if job["status"] == JobStatus.PENDING.value:
        position = await database.count_pending_ahead(job_id)
        if position is not None:
            view["live_position"] = position
            view["estimated_wait_time"] = estimate_wait_seconds(position)
    return view


async def get_job_admin(job_id: str) -> Dict[str, Any]:
    job = await database.get_job(job_id)
    if not job:
        raise NotFoundError("Job not found", {"job_id": job_id})
    view = _job_view(job)
    view["user_id"] = job["user_id"]
    view["payload"] = job["payload"]
    return view


async def list_jobs(
    *,
    requester_id: Optional[str] = None,
    status: Optional[str] = None,
    service_type: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    admin_view: bool = False,
) -> Dict[str, Any]:
    """Paginated listing. The admin view includes each job's owner."""
    if status:
        try:
            JobStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status: {status}", {"status": status})
    page = max(1, int(page))
    limit = min(100, max(1, int(limit)))

    items, total = await database.list_jobs(
        user_id=requester_id,
        status=status,
        service_type=service_type,
        limit=limit,
        offset=(page - 1) * limit,
    )
    views = []
    for job in items:
        view = _job_view(job)
        if admin_view:
            view["user_id"] = job["user_id"]
        views.append(view)
    return {
        "items": views,
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
    }


async def counts() -> Dict[str, int]:
    return await database.count_jobs_by_status()


async def retry(job_id: str) -> Dict[str, Any]:
    await manual_retry(job_id)
    return await get_job_admin(job_id)


# ============== Domain submitters ==============

async def _submit(
    requester_id: str,
    service_type: str,
    payload: Dict[str, Any],
    priority: int,
    reference: Optional[str] = None,
) -> Dict[str, Any]:
    validate_submission(service_type, payload)
    # Domain record exists before the job is claimable
    job_id = database.new_job_id()
    request_id = await database.create_service_request(
        requester_id, service_type, payload, job_id=job_id, reference=reference
    )
    queued = await enqueue(requester_id, service_type, payload, priority, job_id=job_id)
    return {**queued, "request_id": request_id}


async def submit_bvn(requester_id: str, service_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if service_type not in BVN_SERVICES:
        raise ValidationError(f"Not a BVN service: {service_type}", {"service_type": service_type})
    return await _submit(requester_id, service_type, payload, BVN_PRIORITY, reference=payload.get("bvn"))


async def submit_identity(requester_id: str, service_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if service_type not in IDENTITY_SERVICES:
        raise ValidationError(f"Not an identity service: {service_type}", {"service_type": service_type})
    return await _submit(requester_id, service_type, payload, IDENTITY_PRIORITY, reference=payload.get("nin"))


async def submit_education(requester_id: str, exam: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """exam is 'jamb' or one of the scratch-card boards."""
    exam = (exam or "").lower()
    service_type = EDUCATION_SERVICES.get(exam)
    if service_type is None:
        raise ValidationError(
            f"Unsupported exam: {exam}",
            {"exam": exam, "supported": ["jamb", *EXAM_TYPES]},
        )
    return await _submit(
        requester_id, service_type, payload, EDUCATION_PRIORITY,
        reference=payload.get("registration_number"),
    )


async def submit_birth_attestation(requester_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return await _submit(
        requester_id, ServiceType.BIRTH_ATTESTATION.value, payload, ATTESTATION_PRIORITY,
        reference=payload.get("full_name"),
    )


async def get_service_request(job_id: str, requester_id: str) -> Dict[str, Any]:
    request = await database.get_service_request_by_job(job_id)
    if not request or request["user_id"] != requester_id:
        raise NotFoundError("Service request not found", {"job_id": job_id})
    return request
