#!/usr/bin/env python3
"""
Persistent Queue Worker

Dispatch loop for rpa_jobs:
- Picks the next pending job (priority desc, submission order) and claims it
  with a conditional update; losing a claim race is not an error
- Leases a browser session from the pool; an exhausted pool hands the job
  back to pending without spending a retry
- Runs the provider strategy under a hard per-job timeout
- Writes results back only while its claim still holds the job, and routes
  every failure through the retry supervisor

This worker is designed to run inside the FastAPI lifespan task.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from adapters import get_strategy
from api.config import config as app_config
from api.database import (
    claim_job,
    complete_job,
    fetch_next_pending_job,
    release_claim,
    update_service_request_for_job,
)
from api.logging_config import log_job_event, logger
from api.retry_supervisor import on_failure
from core.exceptions import AutomationFailure, JobTimeout, PoolExhausted
from core.models import Job, JobStatus, ScrapeOutcome


@dataclass
class WorkerConfig:
    concurrency: int = app_config.WORKER_CONCURRENCY
    poll_interval_seconds: float = app_config.POLL_INTERVAL_SECONDS
    pool_backoff_seconds: float = app_config.POOL_BACKOFF_SECONDS
    job_timeout_seconds: float = app_config.JOB_TIMEOUT_SECONDS
    acquire_timeout_seconds: float = app_config.POOL_ACQUIRE_TIMEOUT_SECONDS
    error_backoff_seconds: float = 2.0


@dataclass
class QueueWorker:
    pool: Any
    config: WorkerConfig = field(default_factory=WorkerConfig)
    strategy_for: Callable[[str], Any] = get_strategy
    worker_id: str = field(default_factory=lambda: f"worker_{uuid.uuid4().hex[:10]}")
    _tasks: List[asyncio.Task] = field(default_factory=list)
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    _in_flight: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    stats: Dict[str, int] = field(default_factory=lambda: {
        "claimed": 0,
        "completed": 0,
        "failed_attempts": 0,
        "deferred": 0,
        "discarded_results": 0,
        "claim_conflicts": 0,
    })

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self.run_loop(slot), name=f"queue-worker:{self.worker_id}:{slot}")
            for slot in range(max(1, self.config.concurrency))
        ]
        logger.info(f"QueueWorker started: {self.worker_id} ({len(self._tasks)} dispatchers)")

    async def stop(self):
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"QueueWorker stopped: {self.worker_id}")

    async def run_loop(self, slot: int = 0):
        while not self._stop_event.is_set():
            try:
                dispatched = await self.run_once()
                if not dispatched:
                    await asyncio.sleep(self.config.poll_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"QueueWorker loop error ({self.worker_id}:{slot}): {e}")
                await asyncio.sleep(self.config.error_backoff_seconds)

    async def run_once(self) -> bool:
        """
        One dispatch cycle. Returns False when there was nothing to do, so the
        loop sleeps before polling again.
        """
        row = await fetch_next_pending_job()
        if not row:
            return False

        token = uuid.uuid4().hex
        if not await claim_job(row["id"], token):
            self.stats["claim_conflicts"] += 1
            return True

        job = Job.from_row(row)
        self.stats["claimed"] += 1
        log_job_event(job.id, "claimed", job.service_type)

        strategy = self.strategy_for(job.service_type)
        if strategy is None:
            await on_failure(
                job.id, f"No automation available for service {job.service_type}", claim_token=token, permanent=True
            )
            return True

        try:
            pooled = await self.pool.acquire(timeout=self.config.acquire_timeout_seconds)
        except PoolExhausted as e:
            self.stats["deferred"] += 1
            await release_claim(job.id, token)
            logger.info(f"Job {job.id} deferred: {e.message}")
            await asyncio.sleep(self.config.pool_backoff_seconds)
            return True
        except AutomationFailure as e:
            self.stats["failed_attempts"] += 1
            await on_failure(job.id, str(e.message), claim_token=token)
            return True

        await self._execute(job, token, strategy, pooled)
        return True

    async def _execute(self, job: Job, token: str, strategy: Any, pooled: Any):
        self._in_flight[job.id] = {
            "service_type": job.service_type,
            "session_id": pooled.session_id,
            "started": time.monotonic(),
        }
        discard = True
        try:
            try:
                result = await asyncio.wait_for(
                    strategy.run(pooled.page, job), timeout=self.config.job_timeout_seconds
                )
            except asyncio.TimeoutError:
                error = JobTimeout(f"Job exceeded {self.config.job_timeout_seconds:g}s timeout")
                await self._record_failure(job, token, error.message)
                return
            except AutomationFailure as e:
                await self._record_failure(job, token, e.message)
                return
            except asyncio.CancelledError:
                await asyncio.shield(release_claim(job.id, token))
                raise
            except Exception as e:
                await self._record_failure(job, token, f"Unexpected automation error: {e}")
                return

            if result.ok:
                discard = False
                await self._record_success(job, token, result.data)
            else:
                await self._record_failure(
                    job, token, result.error or "Automation failed",
                    permanent=result.outcome == ScrapeOutcome.PERMANENT_FAILURE,
                )
        finally:
            self._in_flight.pop(job.id, None)
            await self.pool.release(pooled, discard=discard)

    async def _record_success(self, job: Job, token: str, data: Dict[str, Any]):
        if not await complete_job(job.id, token, data):
            # Cancelled or recovered while we were running
            self.stats["discarded_results"] += 1
            log_job_event(job.id, "result discarded (no longer held by this worker)", job.service_type)
            return
        self.stats["completed"] += 1
        await update_service_request_for_job(job.id, JobStatus.COMPLETED.value, result=data)
        log_job_event(job.id, "completed", job.service_type)

    async def _record_failure(self, job: Job, token: str, reason: str, permanent: bool = False):
        self.stats["failed_attempts"] += 1
        log_job_event(job.id, "attempt failed", job.service_type, reason)
        await on_failure(job.id, reason, claim_token=token, permanent=permanent)

    def status_snapshot(self) -> Dict[str, Any]:
        now = time.monotonic()
        return {
            "worker_id": self.worker_id,
            "running": self.running,
            "dispatchers": len(self._tasks),
            "in_flight": [
                {
                    "job_id": job_id,
                    "service_type": info["service_type"],
                    "session_id": info["session_id"],
                    "elapsed_seconds": round(now - info["started"], 1),
                }
                for job_id, info in self._in_flight.items()
            ],
            "stats": dict(self.stats),
            "pool": self.pool.stats(),
        }
