"""
Database module for the verification job pipeline.
Implements SQLite persistence with async support.

The job store lives here: rpa_jobs is the only source of truth for job state,
and every state change is a conditional UPDATE keyed on the status the caller
expects, so concurrent workers never need more coordination than that.
"""

import os
import json
import uuid
import aiosqlite
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple
from pathlib import Path
from contextlib import asynccontextmanager

# Database configuration
DB_PATH = Path(os.getenv("DATABASE_PATH", Path(__file__).parent.parent / "data" / "pipeline.db"))
DB_PATH.parent.mkdir(parents=True, exist_ok=True)

# Seconds a connection waits on a locked database before giving up
DB_BUSY_TIMEOUT = float(os.getenv("DATABASE_BUSY_TIMEOUT", "30"))


def _now() -> str:
    return datetime.now().isoformat(timespec="microseconds")


async def init_database():
    """Initialize the database schema."""
    async with aiosqlite.connect(DB_PATH, timeout=DB_BUSY_TIMEOUT) as db:
        await db.execute("PRAGMA journal_mode=WAL")

        # Job queue (never deleted; audit trail)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS rpa_jobs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                service_type TEXT NOT NULL,
                payload_json TEXT,
                priority INTEGER DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                retry_count INTEGER DEFAULT 0,
                max_retries INTEGER DEFAULT 3,
                result_json TEXT,
                error_message TEXT,
                claim_token TEXT,
                started_at TEXT,
                completed_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                CHECK (retry_count <= max_retries)
            )
        """)

        # Domain records mirrored from jobs (BVN, identity, education, attestation)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS service_requests (
                id TEXT PRIMARY KEY,
                job_id TEXT,
                user_id TEXT NOT NULL,
                service_type TEXT NOT NULL,
                reference TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                query_json TEXT,
                result_json TEXT,
                error_message TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                FOREIGN KEY (job_id) REFERENCES rpa_jobs(id)
            )
        """)

        # Provider portal configuration (URLs, selectors)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS admin_settings (
                setting_key TEXT PRIMARY KEY,
                setting_value TEXT,
                updated_at TEXT
            )
        """)

        # Wallets + idempotent ledger
        await db.execute("""
            CREATE TABLE IF NOT EXISTS wallets (
                user_id TEXT PRIMARY KEY,
                balance REAL NOT NULL DEFAULT 0,
                updated_at TEXT,
                CHECK (balance >= 0)
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS wallet_transactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                amount REAL NOT NULL,
                kind TEXT NOT NULL,
                reference TEXT NOT NULL UNIQUE,
                description TEXT,
                created_at TEXT NOT NULL
            )
        """)

        # Exam PIN inventory + orders
        await db.execute("""
            CREATE TABLE IF NOT EXISTS education_pins (
                id TEXT PRIMARY KEY,
                exam_type TEXT NOT NULL,
                pin_code TEXT NOT NULL,
                serial_number TEXT,
                status TEXT NOT NULL DEFAULT 'unused',
                used_by_order_id TEXT,
                used_by_user_id TEXT,
                used_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (exam_type, pin_code)
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS education_pin_orders (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                exam_type TEXT NOT NULL,
                amount REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'paid',
                pin_id TEXT,
                delivered_pin TEXT,
                delivered_serial TEXT,
                failure_reason TEXT,
                refunded_at TEXT,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                FOREIGN KEY (pin_id) REFERENCES education_pins(id)
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS pin_order_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id TEXT NOT NULL,
                actor_type TEXT NOT NULL,
                actor_id TEXT,
                previous_status TEXT,
                new_status TEXT NOT NULL,
                note TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (order_id) REFERENCES education_pin_orders(id)
            )
        """)

        # Airtime-to-cash receiving numbers, requests and audit trail
        await db.execute("""
            CREATE TABLE IF NOT EXISTS a2c_phone_inventory (
                id TEXT PRIMARY KEY,
                agent_id TEXT,
                phone_number TEXT NOT NULL,
                network TEXT NOT NULL,
                daily_limit REAL NOT NULL DEFAULT 500000,
                used_today REAL NOT NULL DEFAULT 0,
                last_reset_date TEXT,
                priority INTEGER DEFAULT 1,
                is_active INTEGER DEFAULT 1,
                label TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS a2c_requests (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                tracking_id TEXT UNIQUE NOT NULL,
                network TEXT NOT NULL,
                phone_number TEXT NOT NULL,
                airtime_amount REAL NOT NULL,
                conversion_rate REAL NOT NULL,
                cash_amount REAL NOT NULL,
                inventory_id TEXT,
                receiving_number TEXT NOT NULL,
                bank_name TEXT,
                account_number TEXT,
                account_name TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                assigned_agent_id TEXT,
                user_confirmed_at TEXT,
                airtime_received_at TEXT,
                cash_paid_at TEXT,
                agent_notes TEXT,
                rejection_reason TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                FOREIGN KEY (inventory_id) REFERENCES a2c_phone_inventory(id)
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS a2c_status_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                request_id TEXT NOT NULL,
                actor_type TEXT NOT NULL,
                actor_id TEXT,
                previous_status TEXT,
                new_status TEXT NOT NULL,
                note TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (request_id) REFERENCES a2c_requests(id)
            )
        """)

        # Create indexes
        await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_dispatch ON rpa_jobs(status, priority DESC, created_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_user_id ON rpa_jobs(user_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_service_requests_job_id ON service_requests(job_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_pins_stock ON education_pins(exam_type, status)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_a2c_inventory_network ON a2c_phone_inventory(network, is_active)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_a2c_requests_user_id ON a2c_requests(user_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_a2c_history_request ON a2c_status_history(request_id)")

        await db.commit()

        # Lightweight migrations for additive columns.
        await _migrate_jobs(db)
        await db.commit()


async def _migrate_jobs(db: aiosqlite.Connection):
    """Add new optional columns to rpa_jobs if missing."""
    cursor = await db.execute("PRAGMA table_info(rpa_jobs)")
    rows = await cursor.fetchall()
    existing = {row[1] for row in rows}  # (cid, name, type, notnull, dflt, pk)

    migrations = [
        ("claim_token", "TEXT"),
        ("updated_at", "TEXT"),
    ]

    for col, col_type in migrations:
        if col in existing:
            continue
        await db.execute(f"ALTER TABLE rpa_jobs ADD COLUMN {col} {col_type}")


@asynccontextmanager
async def get_db():
    """Get a database connection."""
    db = await aiosqlite.connect(DB_PATH, timeout=DB_BUSY_TIMEOUT)
    db.row_factory = aiosqlite.Row
    try:
        yield db
    finally:
        await db.close()


def _job_from_row(row) -> Dict[str, Any]:
    job = dict(row)
    job["payload"] = json.loads(job.get("payload_json") or "{}")
    job["result"] = json.loads(job["result_json"]) if job.get("result_json") else None
    return job


# Job store operations

def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


async def insert_job(
    user_id: str,
    service_type: str,
    payload: Dict[str, Any],
    *,
    priority: int = 0,
    max_retries: int = 3,
    job_id: Optional[str] = None,
) -> Tuple[str, int]:
    """
    Insert a pending job.

    Returns (job_id, pending_count) where pending_count includes the new job,
    read inside the same write transaction as the insert.
    """
    job_id = job_id or new_job_id()
    now = _now()
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        cursor = await db.execute("SELECT COUNT(*) AS count FROM rpa_jobs WHERE status = 'pending'")
        row = await cursor.fetchone()
        pending = int(row["count"]) if row else 0

        await db.execute(
            """INSERT INTO rpa_jobs
               (id, user_id, service_type, payload_json, priority, status,
                retry_count, max_retries, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?)""",
            (job_id, user_id, service_type, json.dumps(payload or {}), int(priority), int(max_retries), now, now),
        )
        await db.commit()
    return job_id, pending + 1


async def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM rpa_jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return _job_from_row(row) if row else None


async def get_job_for_user(job_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    """Get a job only if it belongs to user_id."""
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM rpa_jobs WHERE id = ? AND user_id = ?", (job_id, user_id)
        )
        row = await cursor.fetchone()
        return _job_from_row(row) if row else None


async def count_pending_ahead(job_id: str) -> Optional[int]:
    """
    Priority-aware position of a pending job: how many pending jobs dispatch
    before it, plus one. None if the job is not pending.
    """
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT rowid AS seq, priority, created_at FROM rpa_jobs WHERE id = ? AND status = 'pending'",
            (job_id,),
        )
        job = await cursor.fetchone()
        if not job:
            return None
        cursor = await db.execute(
            """SELECT COUNT(*) AS count FROM rpa_jobs
               WHERE status = 'pending'
                 AND (priority > ?
                      OR (priority = ? AND created_at < ?)
                      OR (priority = ? AND created_at = ? AND rowid < ?))""",
            (
                job["priority"],
                job["priority"], job["created_at"],
                job["priority"], job["created_at"], job["seq"],
            ),
        )
        row = await cursor.fetchone()
        return int(row["count"]) + 1


async def list_jobs(
    *,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    service_type: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    """List jobs newest first. Returns (items, total matching)."""
    clauses = []
    params: List[Any] = []
    if user_id:
        clauses.append("user_id = ?")
        params.append(user_id)
    if status:
        clauses.append("status = ?")
        params.append(status)
    if service_type:
        clauses.append("service_type = ?")
        params.append(service_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    async with get_db() as db:
        cursor = await db.execute(f"SELECT COUNT(*) AS count FROM rpa_jobs {where}", params)
        total = int((await cursor.fetchone())["count"])
        cursor = await db.execute(
            f"SELECT * FROM rpa_jobs {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (*params, int(limit), int(offset)),
        )
        rows = await cursor.fetchall()
        return [_job_from_row(row) for row in rows], total


async def count_jobs_by_status() -> Dict[str, int]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT status, COUNT(*) AS count FROM rpa_jobs GROUP BY status"
        )
        rows = await cursor.fetchall()
        out = {status: 0 for status in ("pending", "processing", "completed", "failed")}
        for row in rows:
            out[str(row["status"])] = int(row["count"])
        return out


async def fetch_next_pending_job() -> Optional[Dict[str, Any]]:
    """Peek at the job that should dispatch next (priority desc, submission order)."""
    async with get_db() as db:
        cursor = await db.execute(
            """SELECT * FROM rpa_jobs
               WHERE status = 'pending'
               ORDER BY priority DESC, created_at ASC, rowid ASC
               LIMIT 1"""
        )
        row = await cursor.fetchone()
        return _job_from_row(row) if row else None


async def claim_job(job_id: str, claim_token: str) -> bool:
    """
    Atomically move a job pending -> processing.
    Returns False if another worker already claimed it.
    """
    now = _now()
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE rpa_jobs
               SET status = 'processing', claim_token = ?, started_at = ?, updated_at = ?
               WHERE id = ? AND status = 'pending'""",
            (claim_token, now, now, job_id),
        )
        await db.commit()
        return cursor.rowcount == 1


async def release_claim(job_id: str, claim_token: str) -> bool:
    """Hand a claimed job back to pending without counting a retry (pool exhausted)."""
    now = _now()
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE rpa_jobs
               SET status = 'pending', claim_token = NULL, started_at = NULL, updated_at = ?
               WHERE id = ? AND status = 'processing' AND claim_token = ?""",
            (now, job_id, claim_token),
        )
        await db.commit()
        return cursor.rowcount == 1


async def complete_job(job_id: str, claim_token: str, result: Dict[str, Any]) -> bool:
    """
    Write a successful result back. Only applies while the job is still held
    by this claim, so a job force-failed mid-flight keeps its failed status.
    """
    now = _now()
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE rpa_jobs
               SET status = 'completed', result_json = ?, error_message = NULL,
                   claim_token = NULL, completed_at = ?, updated_at = ?
               WHERE id = ? AND status = 'processing' AND claim_token = ?""",
            (json.dumps(result or {}), now, now, job_id, claim_token),
        )
        await db.commit()
        return cursor.rowcount == 1


async def force_fail_job(job_id: str, reason: str) -> bool:
    """Administrative cancellation of a pending or in-flight job."""
    now = _now()
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE rpa_jobs
               SET status = 'failed', error_message = ?, claim_token = NULL,
                   completed_at = ?, updated_at = ?
               WHERE id = ? AND status IN ('pending', 'processing')""",
            (reason, now, now, job_id),
        )
        await db.commit()
        return cursor.rowcount == 1


async def recover_stale_jobs() -> int:
    """
    Return jobs left in processing by a previous process to pending.
    Only safe at startup, before any worker of this process has claimed.
    """
    now = _now()
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE rpa_jobs
               SET status = 'pending', claim_token = NULL, started_at = NULL, updated_at = ?
               WHERE status = 'processing'""",
            (now,),
        )
        await db.commit()
        return cursor.rowcount


# Domain records

async def create_service_request(
    user_id: str,
    service_type: str,
    query_data: Dict[str, Any],
    *,
    job_id: Optional[str] = None,
    reference: Optional[str] = None,
) -> str:
    request_id = f"sr_{uuid.uuid4().hex}"
    now = _now()
    async with get_db() as db:
        await db.execute(
            """INSERT INTO service_requests
               (id, job_id, user_id, service_type, reference, status, query_json, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)""",
            (request_id, job_id, user_id, service_type, reference, json.dumps(query_data or {}), now, now),
        )
        await db.commit()
    return request_id


async def update_service_request_for_job(
    job_id: str,
    status: str,
    *,
    result: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> bool:
    """Mirror a job outcome into its domain record. False if the job has none."""
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE service_requests
               SET status = ?, result_json = ?, error_message = ?, updated_at = ?
               WHERE job_id = ?""",
            (status, json.dumps(result) if result is not None else None, error_message, _now(), job_id),
        )
        await db.commit()
        return cursor.rowcount > 0


async def get_service_request_by_job(job_id: str) -> Optional[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM service_requests WHERE job_id = ?", (job_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        item = dict(row)
        item["query"] = json.loads(item.get("query_json") or "{}")
        item["result"] = json.loads(item["result_json"]) if item.get("result_json") else None
        return item


# Settings operations (simple key/value)

async def get_setting(key: str) -> Optional[str]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT setting_value FROM admin_settings WHERE setting_key = ?", (key,)
        )
        row = await cursor.fetchone()
        return row["setting_value"] if row else None


async def set_setting(key: str, value: Optional[str]):
    async with get_db() as db:
        await db.execute(
            """INSERT OR REPLACE INTO admin_settings (setting_key, setting_value, updated_at)
               VALUES (?, ?, ?)""",
            (key, value, _now()),
        )
        await db.commit()

