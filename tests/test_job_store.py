"""
Job store and submitter tests.
Covers enqueue validation, queue position, dispatch order and claim atomicity.
"""

import asyncio

import pytest

from api import database, job_service
from core.exceptions import NotFoundError, ValidationError
from core.models import JobStatus


class TestEnqueue:
    """Submitting jobs."""

    @pytest.mark.asyncio
    async def test_enqueue_returns_pending_with_position(self, db, jamb_payload, monkeypatch):
        monkeypatch.setattr(job_service.config, "WORKER_CONCURRENCY", 2)
        monkeypatch.setattr(job_service.config, "AVG_JOB_SECONDS", 30)

        first = await job_service.enqueue("user_1", "jamb_score", jamb_payload)
        second = await job_service.enqueue("user_1", "jamb_score", jamb_payload)
        third = await job_service.enqueue("user_2", "jamb_score", jamb_payload)

        assert first["status"] == "pending"
        assert first["job_id"].startswith("job_")
        assert [first["queue_position"], second["queue_position"], third["queue_position"]] == [1, 2, 3]
        # ceil(3 / 2) batches of 30s
        assert third["estimated_wait_time"] == 60

    @pytest.mark.asyncio
    async def test_unknown_service_writes_nothing(self, db):
        with pytest.raises(ValidationError):
            await job_service.enqueue("user_1", "passport_renewal", {"x": 1})
        assert (await database.count_jobs_by_status())["pending"] == 0

    @pytest.mark.asyncio
    async def test_missing_payload_fields_rejected(self, db):
        with pytest.raises(ValidationError) as exc_info:
            await job_service.enqueue("user_1", "waec_result", {"registration_number": "4250101001"})
        assert exc_info.value.details["missing"] == ["exam_year"]
        assert (await database.count_jobs_by_status())["pending"] == 0

    @pytest.mark.asyncio
    async def test_requester_required(self, db, jamb_payload):
        with pytest.raises(ValidationError):
            await job_service.enqueue("", "jamb_score", jamb_payload)

    def test_estimate_wait_seconds(self):
        assert job_service.estimate_wait_seconds(0, concurrency=5, avg_job_seconds=30) == 0
        assert job_service.estimate_wait_seconds(1, concurrency=5, avg_job_seconds=30) == 30
        assert job_service.estimate_wait_seconds(5, concurrency=5, avg_job_seconds=30) == 30
        assert job_service.estimate_wait_seconds(6, concurrency=5, avg_job_seconds=30) == 60


class TestStatusQueries:
    """Owners see their jobs; everyone else gets NotFound."""

    @pytest.mark.asyncio
    async def test_status_for_owner(self, db, jamb_payload):
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)
        status = await job_service.get_status(queued["job_id"], "user_1")

        assert status["status"] == "pending"
        assert status["retry_count"] == 0
        assert status["live_position"] == 1

    @pytest.mark.asyncio
    async def test_other_users_job_is_not_found(self, db, jamb_payload):
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)
        with pytest.raises(NotFoundError):
            await job_service.get_status(queued["job_id"], "user_2")

    @pytest.mark.asyncio
    async def test_live_position_follows_priority(self, db, jamb_payload):
        low = await job_service.enqueue("user_1", "jamb_score", jamb_payload, priority=0)
        high = await job_service.enqueue("user_1", "jamb_score", jamb_payload, priority=5)

        assert (await job_service.get_status(high["job_id"], "user_1"))["live_position"] == 1
        assert (await job_service.get_status(low["job_id"], "user_1"))["live_position"] == 2

    @pytest.mark.asyncio
    async def test_list_jobs_paginates_newest_first(self, db, jamb_payload):
        ids = [(await job_service.enqueue("user_1", "jamb_score", jamb_payload))["job_id"] for _ in range(5)]
        await job_service.enqueue("user_2", "jamb_score", jamb_payload)

        page = await job_service.list_jobs(requester_id="user_1", page=1, limit=2)
        assert page["total"] == 5
        assert page["pages"] == 3
        assert [item["job_id"] for item in page["items"]] == [ids[4], ids[3]]
        assert "user_id" not in page["items"][0]

        admin = await job_service.list_jobs(page=1, limit=10, admin_view=True)
        assert admin["total"] == 6
        assert {item["user_id"] for item in admin["items"]} == {"user_1", "user_2"}

    @pytest.mark.asyncio
    async def test_list_jobs_rejects_unknown_status(self, db):
        with pytest.raises(ValidationError):
            await job_service.list_jobs(status="stuck")


class TestDispatchOrder:
    """Higher priority first, then submission order."""

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, db, jamb_payload):
        a = await job_service.enqueue("u", "jamb_score", jamb_payload, priority=0)
        b = await job_service.enqueue("u", "jamb_score", jamb_payload, priority=5)
        c = await job_service.enqueue("u", "jamb_score", jamb_payload, priority=0)
        d = await job_service.enqueue("u", "jamb_score", jamb_payload, priority=5)

        order = []
        while True:
            row = await database.fetch_next_pending_job()
            if not row:
                break
            assert await database.claim_job(row["id"], "token")
            order.append(row["id"])

        assert order == [b["job_id"], d["job_id"], a["job_id"], c["job_id"]]


class TestClaims:
    """Conditional status updates."""

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, db, jamb_payload):
        queued = await job_service.enqueue("u", "jamb_score", jamb_payload)

        results = await asyncio.gather(*[
            database.claim_job(queued["job_id"], f"token_{i}") for i in range(10)
        ])

        assert results.count(True) == 1
        job = await database.get_job(queued["job_id"])
        assert job["status"] == JobStatus.PROCESSING.value
        assert job["started_at"] is not None

    @pytest.mark.asyncio
    async def test_release_claim_returns_job_without_retry(self, db, jamb_payload):
        queued = await job_service.enqueue("u", "jamb_score", jamb_payload)
        await database.claim_job(queued["job_id"], "token")

        assert await database.release_claim(queued["job_id"], "other") is False
        assert await database.release_claim(queued["job_id"], "token") is True

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "pending"
        assert job["retry_count"] == 0
        assert job["claim_token"] is None

    @pytest.mark.asyncio
    async def test_complete_requires_matching_claim(self, db, jamb_payload):
        queued = await job_service.enqueue("u", "jamb_score", jamb_payload)
        await database.claim_job(queued["job_id"], "token")

        assert await database.complete_job(queued["job_id"], "stale", {"x": 1}) is False
        assert await database.complete_job(queued["job_id"], "token", {"score": 254}) is True

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "completed"
        assert job["result"] == {"score": 254}
        assert job["completed_at"] is not None

    @pytest.mark.asyncio
    async def test_recover_stale_jobs(self, db, jamb_payload):
        queued = await job_service.enqueue("u", "jamb_score", jamb_payload)
        await database.claim_job(queued["job_id"], "token")

        assert await database.recover_stale_jobs() == 1
        job = await database.get_job(queued["job_id"])
        assert job["status"] == "pending"
        assert job["claim_token"] is None


class TestDomainSubmitters:
    """Service requests created alongside their jobs."""

    @pytest.mark.asyncio
    async def test_bvn_submission_records_request(self, db):
        queued = await job_service.submit_bvn("user_1", "bvn_retrieval", {"phone": "08031234567"})

        job = await database.get_job(queued["job_id"])
        assert job["priority"] == job_service.BVN_PRIORITY
        request = await job_service.get_service_request(queued["job_id"], "user_1")
        assert request["id"] == queued["request_id"]
        assert request["status"] == "pending"
        assert request["query"] == {"phone": "08031234567"}

    @pytest.mark.asyncio
    async def test_wrong_group_rejected(self, db):
        with pytest.raises(ValidationError):
            await job_service.submit_bvn("user_1", "nin_lookup", {"nin": "12345678901"})
        with pytest.raises(ValidationError):
            await job_service.submit_identity("user_1", "bvn_modify", {"bvn": "22212345678"})

    @pytest.mark.asyncio
    async def test_education_maps_exam_to_service(self, db, waec_payload):
        queued = await job_service.submit_education("user_1", "WAEC", waec_payload)

        job = await database.get_job(queued["job_id"])
        assert job["service_type"] == "waec_result"
        assert job["priority"] == job_service.EDUCATION_PRIORITY

        with pytest.raises(ValidationError):
            await job_service.submit_education("user_1", "gce", waec_payload)

    @pytest.mark.asyncio
    async def test_invalid_submission_creates_no_request(self, db):
        with pytest.raises(ValidationError):
            await job_service.submit_birth_attestation("user_1", {"full_name": "Ada Obi"})
        assert (await database.count_jobs_by_status())["pending"] == 0

    @pytest.mark.asyncio
    async def test_request_hidden_from_other_users(self, db):
        queued = await job_service.submit_identity("user_1", "nin_lookup", {"nin": "12345678901"})
        with pytest.raises(NotFoundError):
            await job_service.get_service_request(queued["job_id"], "user_2")

    def test_default_priority_per_service_group(self):
        assert job_service.default_priority("bvn_modify") == job_service.BVN_PRIORITY
        assert job_service.default_priority("nin_phone") == job_service.IDENTITY_PRIORITY
        assert job_service.default_priority("jamb_score") == job_service.EDUCATION_PRIORITY
        assert job_service.default_priority("birth_attestation") == job_service.ATTESTATION_PRIORITY
        assert job_service.default_priority("unknown") == 0
