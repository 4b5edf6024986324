"""
Pytest fixtures and configuration for the verification pipeline test suite.
"""

import asyncio
import itertools
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.browser import BrowserSession, SessionFactory
from core.models import ScrapeResult


# === Database ===

@pytest.fixture
async def db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    import adapters
    from api import database, provider_config

    monkeypatch.setattr(database, "DB_PATH", tmp_path / "test.db")
    monkeypatch.setattr(provider_config, "_store", None)
    monkeypatch.setattr(adapters, "_registry", None)
    await database.init_database()
    yield database.DB_PATH


# === Browser Fakes ===

class FakePage:
    """Stands in for a Playwright page in pool and worker tests."""

    _ids = itertools.count(1)

    def __init__(self):
        self.id = next(self._ids)
        self.closed = False
        self.fail_reset = False
        self.visited: List[str] = []

    async def goto(self, url: str, **kwargs):
        if self.fail_reset:
            raise RuntimeError("page crashed")
        self.visited.append(url)

    def is_closed(self) -> bool:
        return self.closed

    async def evaluate(self, expression: str):
        if self.closed:
            raise RuntimeError("Target closed")
        return 2


class FakeSessionFactory(SessionFactory):
    def __init__(self, fail_create: bool = False):
        self.fail_create = fail_create
        self.created: List[BrowserSession] = []
        self.closed: List[str] = []
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def create_session(self) -> BrowserSession:
        if self.fail_create:
            raise RuntimeError("browser launch failed")
        session = BrowserSession(session_id=f"fake_{len(self.created) + 1}", page=FakePage())
        self.created.append(session)
        return session

    async def close_session(self, session: BrowserSession):
        session.page.closed = True
        self.closed.append(session.session_id)


@pytest.fixture
def session_factory():
    return FakeSessionFactory()


@pytest.fixture
def pool(session_factory):
    from core.browser_pool import BrowserSessionPool
    return BrowserSessionPool(
        session_factory,
        max_sessions=2,
        max_uses_per_session=3,
        max_session_age_seconds=300,
        max_idle_seconds=120,
        acquire_timeout=0.2,
    )


class FakeStrategy:
    """Scripted provider strategy: returns or raises the queued outcomes in order."""

    def __init__(self, *outcomes: Any, delay: float = 0.0):
        self.outcomes = list(outcomes) or [ScrapeResult.success({"verification_status": "verified"})]
        self.delay = delay
        self.calls: List[str] = []
        self.concurrent = 0
        self.max_concurrent = 0

    async def run(self, page, job) -> ScrapeResult:
        self.calls.append(job.id)
        self.concurrent += 1
        self.max_concurrent = max(self.max_concurrent, self.concurrent)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.concurrent -= 1


@pytest.fixture
def worker_config():
    from api.queue_worker import WorkerConfig
    return WorkerConfig(
        concurrency=2,
        poll_interval_seconds=0.01,
        pool_backoff_seconds=0.01,
        job_timeout_seconds=1.0,
        acquire_timeout_seconds=0.2,
        error_backoff_seconds=0.01,
    )


@pytest.fixture
def make_strategy():
    return FakeStrategy


@pytest.fixture
def make_worker(pool, worker_config):
    """Build a QueueWorker around the test pool with scripted strategies."""
    from api.queue_worker import QueueWorker

    def build(strategy: Optional[FakeStrategy] = None, strategies: Optional[Dict[str, Any]] = None, **overrides):
        def strategy_for(service_type: str):
            if strategies is not None:
                return strategies.get(service_type)
            return strategy

        return QueueWorker(
            pool=overrides.pop("pool", pool),
            config=overrides.pop("config", worker_config),
            strategy_for=strategy_for,
        )

    return build


# === Sample Payloads ===

@pytest.fixture
def jamb_payload():
    return {"registration_number": "12345678AB", "exam_year": "2024"}


@pytest.fixture
def waec_payload():
    return {"registration_number": "4250101001", "exam_year": "2023", "card_serial": "WRN123", "card_pin": "1234567890"}
