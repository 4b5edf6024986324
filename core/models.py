#!/usr/bin/env python3
"""
Shared data models for the verification job pipeline.

Rows come out of aiosqlite as dicts; the dataclasses here give the queue worker,
the retry supervisor and the allocator one typed view of them.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# ============== Enums ==============

class ServiceType(str, Enum):
    """Automation services that go through the job queue."""
    # BVN
    BVN_RETRIEVAL = "bvn_retrieval"
    BVN_DIGITAL_CARD = "bvn_digital_card"
    BVN_MODIFY = "bvn_modify"

    # Identity
    NIN_LOOKUP = "nin_lookup"
    NIN_PHONE = "nin_phone"
    LOST_NIN = "lost_nin"

    # Education
    JAMB_SCORE = "jamb_score"
    WAEC_RESULT = "waec_result"
    NECO_RESULT = "neco_result"
    NABTEB_RESULT = "nabteb_result"
    NBAIS_RESULT = "nbais_result"

    # Attestation
    BIRTH_ATTESTATION = "birth_attestation"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ScrapeOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"                        # transient, goes through the retry supervisor
    PERMANENT_FAILURE = "permanent_failure"  # retrying cannot help (no portal, bad service)


class AllocationOutcome(str, Enum):
    ALLOCATED = "allocated"
    OUT_OF_STOCK = "out_of_stock"


class PinOrderStatus(str, Enum):
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"


class A2CStatus(str, Enum):
    PENDING = "pending"
    AIRTIME_SENT = "airtime_sent"
    AIRTIME_RECEIVED = "airtime_received"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Operator-side transitions; pending -> airtime_sent is the user's confirmation step.
A2C_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    A2CStatus.PENDING.value: (A2CStatus.AIRTIME_SENT.value, A2CStatus.CANCELLED.value),
    A2CStatus.AIRTIME_SENT.value: (
        A2CStatus.AIRTIME_RECEIVED.value,
        A2CStatus.COMPLETED.value,
        A2CStatus.REJECTED.value,
    ),
    A2CStatus.AIRTIME_RECEIVED.value: (
        A2CStatus.PROCESSING.value,
        A2CStatus.COMPLETED.value,
        A2CStatus.REJECTED.value,
    ),
    A2CStatus.PROCESSING.value: (A2CStatus.COMPLETED.value, A2CStatus.REJECTED.value),
}

EXAM_TYPES = ("waec", "neco", "nabteb", "nbais")
NETWORKS = ("mtn", "airtel", "glo", "9mobile")

# Payload keys each service needs before it may be enqueued.
REQUIRED_PAYLOAD_FIELDS: Dict[str, Tuple[str, ...]] = {
    ServiceType.BVN_RETRIEVAL.value: ("phone",),
    ServiceType.BVN_DIGITAL_CARD.value: ("bvn",),
    ServiceType.BVN_MODIFY.value: ("bvn",),
    ServiceType.NIN_LOOKUP.value: ("nin",),
    ServiceType.NIN_PHONE.value: ("phone",),
    ServiceType.LOST_NIN.value: ("phone",),
    ServiceType.JAMB_SCORE.value: ("registration_number",),
    ServiceType.WAEC_RESULT.value: ("registration_number", "exam_year"),
    ServiceType.NECO_RESULT.value: ("registration_number", "exam_year"),
    ServiceType.NABTEB_RESULT.value: ("registration_number", "exam_year"),
    ServiceType.NBAIS_RESULT.value: ("registration_number", "exam_year"),
    ServiceType.BIRTH_ATTESTATION.value: ("full_name", "date_of_birth"),
}


# ============== Jobs ==============

@dataclass
class Job:
    """One row of rpa_jobs."""
    id: str
    user_id: str
    service_type: str
    payload: Dict[str, Any]
    priority: int = 0
    status: str = JobStatus.PENDING.value
    retry_count: int = 0
    max_retries: int = 3
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    claim_token: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            service_type=str(row["service_type"]),
            payload=json.loads(row.get("payload_json") or "{}"),
            priority=int(row.get("priority") or 0),
            status=str(row["status"]),
            retry_count=int(row.get("retry_count") or 0),
            max_retries=int(row.get("max_retries") or 0),
            result=json.loads(row["result_json"]) if row.get("result_json") else None,
            error_message=row.get("error_message"),
            claim_token=row.get("claim_token"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            created_at=row.get("created_at"),
        )

    @property
    def retries_remaining(self) -> int:
        return max(0, self.max_retries - self.retry_count)


@dataclass
class ScrapeResult:
    """What a provider strategy hands back to the queue worker."""
    outcome: ScrapeOutcome
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    finished_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def success(cls, data: Dict[str, Any]) -> "ScrapeResult":
        return cls(outcome=ScrapeOutcome.COMPLETED, data=data)

    @classmethod
    def failure(cls, error: str, permanent: bool = False, data: Optional[Dict[str, Any]] = None) -> "ScrapeResult":
        outcome = ScrapeOutcome.PERMANENT_FAILURE if permanent else ScrapeOutcome.FAILED
        return cls(outcome=outcome, data=data or {}, error=error)

    @property
    def ok(self) -> bool:
        return self.outcome == ScrapeOutcome.COMPLETED


# ============== Inventory ==============

@dataclass
class AllocationResult:
    """Outcome of one allocate() call. resource_ref is the PIN code or receiving number."""
    outcome: AllocationOutcome
    category: str
    resource_id: Optional[str] = None
    resource_ref: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allocated(cls, category: str, resource_id: str, resource_ref: str, **details) -> "AllocationResult":
        return cls(
            outcome=AllocationOutcome.ALLOCATED,
            category=category,
            resource_id=resource_id,
            resource_ref=resource_ref,
            details=details,
        )

    @classmethod
    def out_of_stock(cls, category: str, **details) -> "AllocationResult":
        return cls(outcome=AllocationOutcome.OUT_OF_STOCK, category=category, details=details)

    @property
    def ok(self) -> bool:
        return self.outcome == AllocationOutcome.ALLOCATED


@dataclass
class PurchaseResult:
    """Outcome of a paid PIN purchase, after any compensating refund."""
    order_id: str
    status: str
    pin_code: Optional[str] = None
    serial_number: Optional[str] = None
    failure_reason: Optional[str] = None
    refunded: bool = False

    @property
    def ok(self) -> bool:
        return self.status == PinOrderStatus.COMPLETED.value
