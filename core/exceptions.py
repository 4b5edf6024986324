"""
Exception taxonomy for the verification job pipeline.

Hierarchy:
    PipelineError (base)
    ├── ValidationError     - request rejected before anything is enqueued
    ├── NotFoundError       - job/order/resource absent or owned by someone else
    ├── OutOfStockError     - no eligible inventory row (terminal, user visible)
    ├── InsufficientFunds   - wallet balance too low for a debit
    ├── InvalidTransition   - order status change not allowed from current status
    ├── RetryExhausted      - job already failed with no retries left
    ├── PoolExhausted       - no browser session within the acquire timeout (deferred)
    └── AutomationFailure   - transient scraping error (auto-retried)
        └── JobTimeout      - per-job wall clock expired

AutomationFailure and PoolExhausted are absorbed by the queue worker and the
retry supervisor; the API layer only ever surfaces the others.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(PipelineError):
    pass


class NotFoundError(PipelineError):
    pass


class OutOfStockError(PipelineError):
    """No inventory row qualifies for the requested category/amount."""

    def __init__(self, category: str, amount: Optional[float] = None, refunded: bool = False):
        message = f"No {category} inventory available"
        if amount is not None:
            message += f" for amount {amount:g}"
        super().__init__(message, {"category": category, "amount": amount, "refunded": refunded})
        self.category = category
        self.amount = amount
        self.refunded = refunded


class InsufficientFunds(PipelineError):
    pass


class InvalidTransition(PipelineError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition from {current} to {target}")
        self.current = current
        self.target = target


class RetryExhausted(PipelineError):
    def __init__(self, job_id: str, retry_count: int, max_retries: int):
        super().__init__(
            f"Job {job_id} has exhausted its retries ({retry_count}/{max_retries})",
            {"job_id": job_id, "retry_count": retry_count, "max_retries": max_retries},
        )
        self.job_id = job_id


class PoolExhausted(PipelineError):
    pass


class AutomationFailure(PipelineError):
    """Transient failure while driving a provider portal."""


class JobTimeout(AutomationFailure):
    pass
