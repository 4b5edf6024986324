"""
Core components for the verification job pipeline.

Modules:
- browser: Playwright / BrowserBase session factories
- browser_pool: Bounded pool of reusable browser sessions
- cache: TTL cache with explicit invalidation
- exceptions: Pipeline error taxonomy
- models: Job, scrape and allocation result types
"""

from .browser import BrowserSession, BrowserbaseFactory, LocalBrowserFactory, SessionFactory, create_session_factory
from .browser_pool import BrowserSessionPool, PooledSession
from .cache import TTLCache
from .exceptions import (
    AutomationFailure,
    InsufficientFunds,
    InvalidTransition,
    JobTimeout,
    NotFoundError,
    OutOfStockError,
    PipelineError,
    PoolExhausted,
    RetryExhausted,
    ValidationError,
)
from .models import AllocationResult, Job, JobStatus, PurchaseResult, ScrapeResult, ServiceType

__all__ = [
    "BrowserSession",
    "SessionFactory",
    "LocalBrowserFactory",
    "BrowserbaseFactory",
    "create_session_factory",
    "BrowserSessionPool",
    "PooledSession",
    "TTLCache",
    "PipelineError",
    "ValidationError",
    "NotFoundError",
    "OutOfStockError",
    "InsufficientFunds",
    "InvalidTransition",
    "RetryExhausted",
    "PoolExhausted",
    "AutomationFailure",
    "JobTimeout",
    "Job",
    "JobStatus",
    "ServiceType",
    "ScrapeResult",
    "AllocationResult",
    "PurchaseResult",
]
