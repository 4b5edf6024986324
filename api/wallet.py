"""
User wallets with an idempotent ledger.

Every balance change is a wallet_transactions row whose reference is unique,
so replaying a credit or debit with the same reference changes nothing. The
``*_in`` variants run inside a caller's open transaction; ``credit``/``debit``
open their own.
"""

import uuid
from typing import Any, Dict, List, Optional

import aiosqlite

from api.database import _now, get_db
from core.exceptions import InsufficientFunds, ValidationError


async def _balance_in(db: aiosqlite.Connection, user_id: str) -> float:
    cursor = await db.execute("SELECT balance FROM wallets WHERE user_id = ?", (user_id,))
    row = await cursor.fetchone()
    return float(row["balance"]) if row else 0.0


async def _apply_in(
    db: aiosqlite.Connection,
    user_id: str,
    amount: float,
    reference: str,
    kind: str,
    description: Optional[str],
) -> bool:
    """Record a signed ledger entry and move the balance. False if reference was already applied."""
    now = _now()
    cursor = await db.execute(
        """INSERT OR IGNORE INTO wallet_transactions
           (id, user_id, amount, kind, reference, description, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (f"txn_{uuid.uuid4().hex}", user_id, amount, kind, reference, description, now),
    )
    if cursor.rowcount == 0:
        return False

    # CHECK (balance >= 0) applies to the inserted row, so it starts at zero
    await db.execute(
        "INSERT OR IGNORE INTO wallets (user_id, balance, updated_at) VALUES (?, 0, ?)",
        (user_id, now),
    )
    await db.execute(
        "UPDATE wallets SET balance = balance + ?, updated_at = ? WHERE user_id = ?",
        (amount, now, user_id),
    )
    return True


async def credit_in(
    db: aiosqlite.Connection,
    user_id: str,
    amount: float,
    reference: str,
    kind: str = "credit",
    description: Optional[str] = None,
) -> bool:
    if amount <= 0:
        raise ValidationError("Credit amount must be positive", {"amount": amount})
    return await _apply_in(db, user_id, float(amount), reference, kind, description)


async def debit_in(
    db: aiosqlite.Connection,
    user_id: str,
    amount: float,
    reference: str,
    kind: str = "debit",
    description: Optional[str] = None,
) -> bool:
    if amount <= 0:
        raise ValidationError("Debit amount must be positive", {"amount": amount})
    cursor = await db.execute("SELECT 1 FROM wallet_transactions WHERE reference = ?", (reference,))
    if await cursor.fetchone():
        return False
    balance = await _balance_in(db, user_id)
    if balance < amount:
        raise InsufficientFunds(
            "Insufficient wallet balance",
            {"balance": balance, "required": float(amount)},
        )
    return await _apply_in(db, user_id, -float(amount), reference, kind, description)


async def credit(user_id: str, amount: float, reference: str, kind: str = "credit", description: Optional[str] = None) -> bool:
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            applied = await credit_in(db, user_id, amount, reference, kind, description)
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        return applied


async def debit(user_id: str, amount: float, reference: str, kind: str = "debit", description: Optional[str] = None) -> bool:
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            applied = await debit_in(db, user_id, amount, reference, kind, description)
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        return applied


async def get_balance(user_id: str) -> float:
    async with get_db() as db:
        return await _balance_in(db, user_id)


async def list_transactions(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM wallet_transactions WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (user_id, int(limit)),
        )
        return [dict(row) for row in await cursor.fetchall()]
