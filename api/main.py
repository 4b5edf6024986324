"""
Verification Pipeline API - FastAPI Backend
Accepts verification and vending requests, exposes job status, and hosts the
queue worker that drives the provider portals.

Requester identity arrives in the X-User-Id header from the upstream auth
layer; admin routes require X-Admin-Token.
"""

import hmac
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api import inventory, job_service, wallet
from api.config import config
from api.database import init_database, recover_stale_jobs
from api.logging_config import log_request, logger
from api.provider_config import get_provider_config_store
from api.queue_worker import QueueWorker, WorkerConfig
from api.retry_supervisor import force_fail
from adapters import PROVIDER_FOR_SERVICE
from core.browser import create_session_factory
from core.browser_pool import BrowserSessionPool
from core.exceptions import (
    AutomationFailure,
    InsufficientFunds,
    InvalidTransition,
    NotFoundError,
    OutOfStockError,
    PipelineError,
    PoolExhausted,
    RetryExhausted,
    ValidationError,
)
from core.models import NETWORKS


# === Lifespan Management ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting Verification Pipeline API...")
    await init_database()
    logger.info("Database initialized")

    recovered = await recover_stale_jobs()
    if recovered:
        logger.warning(f"Returned {recovered} interrupted jobs to the queue")

    missing = config.validate()
    if missing:
        logger.warning(f"Missing configuration: {', '.join(missing)}")

    app.state.pool = None
    app.state.queue_worker = None
    if config.QUEUE_WORKER_ENABLED:
        try:
            pool = BrowserSessionPool(
                create_session_factory(config),
                max_sessions=config.POOL_MAX_SESSIONS,
                max_uses_per_session=config.POOL_MAX_USES_PER_SESSION,
                max_session_age_seconds=config.POOL_MAX_SESSION_AGE_SECONDS,
                max_idle_seconds=config.POOL_MAX_IDLE_SECONDS,
                acquire_timeout=config.POOL_ACQUIRE_TIMEOUT_SECONDS,
            )
            await pool.start()
            worker = QueueWorker(pool=pool, config=WorkerConfig())
            worker.start()
            app.state.pool = pool
            app.state.queue_worker = worker
            logger.info("Queue worker enabled")
        except Exception as e:
            logger.warning(f"Queue worker failed to start: {e}")
    else:
        logger.info("Queue worker disabled")

    yield
    # Shutdown
    logger.info("Shutting down Verification Pipeline API...")
    if app.state.queue_worker is not None:
        await app.state.queue_worker.stop()
    if app.state.pool is not None:
        await app.state.pool.close()
        logger.info("Browser sessions closed")


# Initialize FastAPI app
app = FastAPI(
    title="Verification Pipeline API",
    description="Asynchronous verification jobs and inventory-backed vending",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if config.DEBUG else None,
    redoc_url="/redoc" if config.DEBUG else None,
)

# CORS configuration - restricted to specific origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "X-User-Id", "X-Admin-Token"],
)


# === Request Logging Middleware ===

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start_time = datetime.now()
    response = await call_next(request)
    duration = (datetime.now() - start_time).total_seconds() * 1000
    log_request(request.method, request.url.path, request.headers.get("x-user-id"), response.status_code, duration)
    return response


# === Error Mapping ===

ERROR_STATUS = (
    (ValidationError, 400),
    (InsufficientFunds, 400),
    (NotFoundError, 404),
    (OutOfStockError, 409),
    (InvalidTransition, 409),
    (RetryExhausted, 409),
    (PoolExhausted, 503),
    (AutomationFailure, 503),
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": exc.message, "details": exc.details},
    )


# === Identity ===

async def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


async def require_admin(
    x_admin_token: Optional[str] = Header(default=None),
    x_admin_id: Optional[str] = Header(default=None),
) -> str:
    if not config.ADMIN_API_TOKEN or not hmac.compare_digest(x_admin_token or "", config.ADMIN_API_TOKEN):
        raise HTTPException(status_code=401, detail="Admin token required")
    return x_admin_id or "admin"


# === Pydantic Models with Validation ===

class JobSubmitRequest(BaseModel):
    service_type: str = Field(..., max_length=50)
    payload: Dict[str, Any] = Field(default_factory=dict)


class ServiceQueryRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


class ForceFailRequest(BaseModel):
    reason: str = Field(default="Cancelled by administrator", max_length=500)


class ProviderConfigRequest(BaseModel):
    portal_url: Optional[str] = Field(default=None, max_length=500)
    selectors: Optional[Dict[str, str]] = None
    credentials: Optional[Dict[str, str]] = None


class PinUpload(BaseModel):
    pin_code: str = Field(..., min_length=1, max_length=100)
    serial_number: Optional[str] = Field(default=None, max_length=100)


class PinUploadRequest(BaseModel):
    pins: List[PinUpload] = Field(..., min_length=1, max_length=5000)


class PinPurchaseRequest(BaseModel):
    exam_type: str = Field(..., pattern="^(waec|neco|nabteb|nbais)$")


class ReceivingNumberRequest(BaseModel):
    network: str = Field(..., pattern="^(mtn|airtel|glo|9mobile)$")
    phone_number: str = Field(..., pattern=r"^[\d\+]{10,15}$")
    daily_limit: Optional[float] = Field(default=None, gt=0)
    priority: int = Field(default=1, ge=0, le=100)
    agent_id: Optional[str] = None
    label: Optional[str] = Field(default=None, max_length=100)


class ActiveFlagRequest(BaseModel):
    active: bool


class A2CCreateRequest(BaseModel):
    network: str = Field(..., pattern="^(mtn|airtel|glo|9mobile)$")
    phone_number: str = Field(..., pattern=r"^[\d\+]{10,15}$")
    amount: float = Field(..., gt=0)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    account_number: Optional[str] = Field(default=None, pattern=r"^\d{10}$")
    account_name: Optional[str] = Field(default=None, max_length=200)


class A2CStatusRequest(BaseModel):
    status: str = Field(..., pattern="^(airtime_received|processing|completed|rejected|cancelled)$")
    note: Optional[str] = Field(default=None, max_length=500)
    rejection_reason: Optional[str] = Field(default=None, max_length=500)


class WalletCreditRequest(BaseModel):
    amount: float = Field(..., gt=0)
    reference: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)


# === API Endpoints ===

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Verification Pipeline API v1.0", "docs": "/docs" if config.DEBUG else "disabled"}


@app.get("/health")
async def health(request: Request):
    """Detailed health check."""
    worker = getattr(request.app.state, "queue_worker", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "queue_worker": bool(worker and worker.running),
        "version": "1.0.0",
    }


# === Job Endpoints ===

@app.post("/api/jobs", status_code=202)
async def submit_job(request: JobSubmitRequest, user_id: str = Depends(get_current_user)):
    return await job_service.enqueue(
        user_id, request.service_type, request.payload, job_service.default_priority(request.service_type)
    )


@app.get("/api/jobs")
async def list_my_jobs(
    status: Optional[str] = None,
    service_type: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(get_current_user),
):
    return await job_service.list_jobs(
        requester_id=user_id, status=status, service_type=service_type, page=page, limit=limit
    )


@app.get("/api/jobs/{job_id}")
async def job_status(job_id: str, user_id: str = Depends(get_current_user)):
    return await job_service.get_status(job_id, user_id)


@app.get("/api/jobs/{job_id}/request")
async def job_service_request(job_id: str, user_id: str = Depends(get_current_user)):
    return await job_service.get_service_request(job_id, user_id)


# === Domain Submission Endpoints ===

@app.post("/api/bvn/{service_type}", status_code=202)
async def submit_bvn(service_type: str, request: ServiceQueryRequest, user_id: str = Depends(get_current_user)):
    return await job_service.submit_bvn(user_id, service_type, request.payload)


@app.post("/api/identity/{service_type}", status_code=202)
async def submit_identity(service_type: str, request: ServiceQueryRequest, user_id: str = Depends(get_current_user)):
    return await job_service.submit_identity(user_id, service_type, request.payload)


@app.post("/api/education/{exam}", status_code=202)
async def submit_education(exam: str, request: ServiceQueryRequest, user_id: str = Depends(get_current_user)):
    return await job_service.submit_education(user_id, exam, request.payload)


@app.post("/api/attestation/birth", status_code=202)
async def submit_birth_attestation(request: ServiceQueryRequest, user_id: str = Depends(get_current_user)):
    return await job_service.submit_birth_attestation(user_id, request.payload)


# === Wallet & PIN Endpoints ===

@app.get("/api/wallet")
async def wallet_summary(user_id: str = Depends(get_current_user)):
    return {
        "balance": await wallet.get_balance(user_id),
        "transactions": await wallet.list_transactions(user_id, limit=20),
    }


@app.get("/api/pins/prices")
async def pin_prices():
    return {exam_type: await inventory.get_pin_price(exam_type) for exam_type in ("waec", "neco", "nabteb", "nbais")}


@app.post("/api/pins/purchase")
async def purchase_pin(request: PinPurchaseRequest, user_id: str = Depends(get_current_user)):
    price = await inventory.get_pin_price(request.exam_type)
    result = await inventory.purchase_pin(user_id, request.exam_type, price)
    return {
        "order_id": result.order_id,
        "status": result.status,
        "exam_type": request.exam_type,
        "amount": price,
        "pin": result.pin_code,
        "serial_number": result.serial_number,
    }


@app.get("/api/pins/orders/{order_id}")
async def pin_order(order_id: str, user_id: str = Depends(get_current_user)):
    order = await inventory.get_pin_order(order_id, user_id)
    order["history"] = await inventory.get_pin_order_history(order_id)
    return order


# === Airtime to Cash Endpoints ===

@app.get("/api/a2c/rates")
async def a2c_rates():
    return {
        "rates": {network: await inventory.get_a2c_rate(network) for network in NETWORKS},
        "min_amount": config.A2C_MIN_AMOUNT,
        "max_amount": config.A2C_MAX_AMOUNT,
    }


@app.post("/api/a2c/requests", status_code=201)
async def create_a2c_request(request: A2CCreateRequest, user_id: str = Depends(get_current_user)):
    created = await inventory.create_a2c_request(
        user_id,
        request.network,
        request.phone_number,
        request.amount,
        bank_name=request.bank_name,
        account_number=request.account_number,
        account_name=request.account_name,
    )
    return {
        **created,
        "instructions": f"Send {request.amount:g} {request.network.upper()} airtime to {created['receiving_number']}, then confirm.",
    }


@app.get("/api/a2c/requests")
async def list_my_a2c_requests(
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user),
):
    return {"items": await inventory.list_a2c_requests(user_id=user_id, status=status, limit=limit, offset=offset)}


@app.get("/api/a2c/requests/{request_id}")
async def get_a2c_request(request_id: str, user_id: str = Depends(get_current_user)):
    request = await inventory.get_a2c_request(request_id, user_id)
    request["history"] = await inventory.get_a2c_history(request_id)
    return request


@app.post("/api/a2c/requests/{request_id}/confirm-sent")
async def confirm_a2c_sent(request_id: str, user_id: str = Depends(get_current_user)):
    return await inventory.confirm_airtime_sent(request_id, user_id)


@app.post("/api/a2c/requests/{request_id}/cancel")
async def cancel_a2c(request_id: str, user_id: str = Depends(get_current_user)):
    return await inventory.cancel_a2c_request(request_id, user_id)


# === Admin: Jobs ===

@app.get("/api/admin/jobs")
async def admin_list_jobs(
    status: Optional[str] = None,
    service_type: Optional[str] = None,
    user_id: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    admin: str = Depends(require_admin),
):
    return await job_service.list_jobs(
        requester_id=user_id, status=status, service_type=service_type, page=page, limit=limit, admin_view=True
    )


@app.get("/api/admin/jobs/counts")
async def admin_job_counts(admin: str = Depends(require_admin)):
    return await job_service.counts()


@app.get("/api/admin/jobs/{job_id}")
async def admin_get_job(job_id: str, admin: str = Depends(require_admin)):
    return await job_service.get_job_admin(job_id)


@app.post("/api/admin/jobs/{job_id}/retry")
async def admin_retry_job(job_id: str, admin: str = Depends(require_admin)):
    logger.info(f"Admin {admin} retrying job {job_id}")
    return await job_service.retry(job_id)


@app.post("/api/admin/jobs/{job_id}/fail")
async def admin_fail_job(job_id: str, request: ForceFailRequest, admin: str = Depends(require_admin)):
    logger.info(f"Admin {admin} force-failing job {job_id}")
    await force_fail(job_id, request.reason)
    return await job_service.get_job_admin(job_id)


@app.get("/api/admin/worker")
async def admin_worker_status(request: Request, admin: str = Depends(require_admin)):
    worker = getattr(request.app.state, "queue_worker", None)
    if worker is None:
        return {"running": False, "counts": await job_service.counts()}
    return {**worker.status_snapshot(), "counts": await job_service.counts()}


# === Admin: Provider Configuration ===

PROVIDERS = sorted(set(PROVIDER_FOR_SERVICE.values()))


def _check_provider(provider: str) -> str:
    provider = provider.lower()
    if provider not in PROVIDERS:
        raise ValidationError(f"Unknown provider: {provider}", {"supported": PROVIDERS})
    return provider


@app.get("/api/admin/providers")
async def admin_list_providers(admin: str = Depends(require_admin)):
    store = get_provider_config_store()
    return {"providers": [(await store.get(provider)).public_view() for provider in PROVIDERS]}


@app.get("/api/admin/providers/{provider}")
async def admin_get_provider(provider: str, admin: str = Depends(require_admin)):
    return (await get_provider_config_store().get(_check_provider(provider))).public_view()


@app.put("/api/admin/providers/{provider}")
async def admin_update_provider(provider: str, request: ProviderConfigRequest, admin: str = Depends(require_admin)):
    updated = await get_provider_config_store().update(
        _check_provider(provider),
        portal_url=request.portal_url,
        selectors=request.selectors,
        credentials=request.credentials,
    )
    return updated.public_view()


# === Admin: Inventory ===

@app.post("/api/admin/pins/{exam_type}")
async def admin_upload_pins(exam_type: str, request: PinUploadRequest, admin: str = Depends(require_admin)):
    return await inventory.add_pins(exam_type, [pin.model_dump() for pin in request.pins])


@app.get("/api/admin/pins/stock")
async def admin_pin_stock(admin: str = Depends(require_admin)):
    return await inventory.pin_stock_counts()


@app.post("/api/admin/pins/orders/{order_id}/refund")
async def admin_refund_pin_order(order_id: str, admin: str = Depends(require_admin)):
    refunded = await inventory.refund_pin_order(order_id, "Refunded by administrator", "admin", admin)
    return {"order_id": order_id, "refunded": refunded}


@app.get("/api/admin/a2c/numbers")
async def admin_list_numbers(network: Optional[str] = None, admin: str = Depends(require_admin)):
    return {"items": await inventory.list_receiving_numbers(network)}


@app.post("/api/admin/a2c/numbers", status_code=201)
async def admin_add_number(request: ReceivingNumberRequest, admin: str = Depends(require_admin)):
    inventory_id = await inventory.add_receiving_number(
        request.network,
        request.phone_number,
        daily_limit=request.daily_limit,
        priority=request.priority,
        agent_id=request.agent_id,
        label=request.label,
    )
    return {"id": inventory_id}


@app.post("/api/admin/a2c/numbers/{inventory_id}/active")
async def admin_set_number_active(inventory_id: str, request: ActiveFlagRequest, admin: str = Depends(require_admin)):
    await inventory.set_number_active(inventory_id, request.active)
    return {"id": inventory_id, "is_active": request.active}


@app.post("/api/admin/a2c/reset-daily")
async def admin_reset_daily(network: Optional[str] = None, admin: str = Depends(require_admin)):
    return {"reset": await inventory.reset_daily_usage(network)}


@app.get("/api/admin/a2c/requests")
async def admin_list_a2c(
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    admin: str = Depends(require_admin),
):
    return {"items": await inventory.list_a2c_requests(status=status, limit=limit, offset=offset)}


@app.post("/api/admin/a2c/requests/{request_id}/status")
async def admin_update_a2c(request_id: str, request: A2CStatusRequest, admin: str = Depends(require_admin)):
    return await inventory.update_a2c_status(
        request_id,
        request.status,
        actor_id=admin,
        note=request.note,
        rejection_reason=request.rejection_reason,
    )


@app.get("/api/admin/a2c/requests/{request_id}/history")
async def admin_a2c_history(request_id: str, admin: str = Depends(require_admin)):
    await inventory.get_a2c_request(request_id)
    return {"items": await inventory.get_a2c_history(request_id)}


# === Admin: Wallets ===

@app.post("/api/admin/wallets/{user_id}/credit")
async def admin_credit_wallet(user_id: str, request: WalletCreditRequest, admin: str = Depends(require_admin)):
    applied = await wallet.credit(
        user_id, request.amount, f"admin:{request.reference}", "admin_credit",
        request.description or f"Credited by {admin}",
    )
    return {"user_id": user_id, "applied": applied, "balance": await wallet.get_balance(user_id)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
