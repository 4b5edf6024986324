"""
Resource allocator for consumable inventory.

Two inventories share one allocation shape (select an eligible row, re-check,
mark, commit inside a single BEGIN IMMEDIATE transaction):

- education_pins: scratch-card PINs, handed out once each in upload order.
- a2c_phone_inventory: receiving numbers for airtime-to-cash, chosen by
  remaining daily capacity.

Nothing in here talks to the network while the write lock is held.
"""

import logging
import secrets
import uuid
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from api.config import DEFAULT_A2C_RATES, DEFAULT_PIN_PRICES, config
from api.database import _now, get_db, get_setting
from api.logging_config import log_allocation
from api.wallet import credit_in, debit_in
from core.exceptions import (
    InvalidTransition,
    NotFoundError,
    OutOfStockError,
    ValidationError,
)
from core.models import (
    A2C_TRANSITIONS,
    EXAM_TYPES,
    NETWORKS,
    A2CStatus,
    AllocationResult,
    PinOrderStatus,
    PurchaseResult,
)

logger = logging.getLogger(__name__)


def _today() -> str:
    return date.today().isoformat()


async def _add_history(
    db: aiosqlite.Connection,
    table: str,
    key_column: str,
    key: str,
    previous_status: Optional[str],
    new_status: str,
    actor_type: str,
    actor_id: Optional[str] = None,
    note: Optional[str] = None,
):
    await db.execute(
        f"""INSERT INTO {table}
            ({key_column}, actor_type, actor_id, previous_status, new_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (key, actor_type, actor_id, previous_status, new_status, note, _now()),
    )


# ============== Allocation ==============

async def _take_pin(
    db: aiosqlite.Connection,
    exam_type: str,
    order_id: Optional[str],
    user_id: Optional[str],
) -> AllocationResult:
    cursor = await db.execute(
        """SELECT id, pin_code, serial_number FROM education_pins
           WHERE exam_type = ? AND status = 'unused'
           ORDER BY created_at ASC, rowid ASC
           LIMIT 1""",
        (exam_type,),
    )
    row = await cursor.fetchone()
    if not row:
        return AllocationResult.out_of_stock(exam_type)

    cursor = await db.execute(
        """UPDATE education_pins
           SET status = 'used', used_by_order_id = ?, used_by_user_id = ?, used_at = ?
           WHERE id = ? AND status = 'unused'""",
        (order_id, user_id, _now(), row["id"]),
    )
    if cursor.rowcount != 1:
        return AllocationResult.out_of_stock(exam_type)
    return AllocationResult.allocated(
        exam_type, row["id"], row["pin_code"], serial_number=row["serial_number"]
    )


async def _reset_stale_capacity(db: aiosqlite.Connection, network: Optional[str] = None) -> int:
    """Zero used_today on rows whose last reset was before today."""
    today = _today()
    params: List[Any] = [today, _now(), today]
    sql = """UPDATE a2c_phone_inventory
             SET used_today = 0, last_reset_date = ?, updated_at = ?
             WHERE (last_reset_date IS NULL OR last_reset_date < ?)"""
    if network:
        sql += " AND network = ?"
        params.append(network)
    cursor = await db.execute(sql, params)
    return cursor.rowcount


async def _pick_receiving_number(db: aiosqlite.Connection, network: str, amount: float) -> AllocationResult:
    await _reset_stale_capacity(db, network)
    cursor = await db.execute(
        """SELECT id, phone_number, daily_limit, used_today FROM a2c_phone_inventory
           WHERE network = ? AND is_active = 1 AND (daily_limit - used_today) >= ?
           ORDER BY priority ASC, used_today ASC, rowid ASC
           LIMIT 1""",
        (network, float(amount)),
    )
    row = await cursor.fetchone()
    if not row:
        return AllocationResult.out_of_stock(network, requested_amount=float(amount))
    return AllocationResult.allocated(
        network,
        row["id"],
        row["phone_number"],
        remaining_capacity=float(row["daily_limit"]) - float(row["used_today"]),
    )


async def allocate(
    category: str,
    requested_amount: Optional[float] = None,
    *,
    order_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> AllocationResult:
    """
    Allocate one inventory row.

    ``category`` is an exam type (PIN inventory) or a network (receiving
    numbers; requested_amount required). Out of stock is a result, not an error.
    """
    category = (category or "").lower()
    if category in EXAM_TYPES:
        kind = "pin"
    elif category in NETWORKS:
        kind = "phone"
        if requested_amount is None or requested_amount <= 0:
            raise ValidationError("requested_amount is required for receiving numbers", {"category": category})
    else:
        raise ValidationError(f"Unknown inventory category: {category}", {"category": category})

    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            if kind == "pin":
                result = await _take_pin(db, category, order_id, user_id)
            else:
                result = await _pick_receiving_number(db, category, requested_amount)
        except Exception:
            await db.rollback()
            raise
        await db.commit()

    log_allocation(category, result.outcome.value, result.resource_id, order_id)
    return result


# ============== PIN purchase ==============

async def purchase_pin(user_id: str, exam_type: str, amount: float) -> PurchaseResult:
    """
    Pay for and deliver one exam PIN.

    The wallet is debited and a ``paid`` order recorded first; if no PIN is
    left the order fails and the debit is refunded before OutOfStockError is
    raised.
    """
    exam_type = (exam_type or "").lower()
    if exam_type not in EXAM_TYPES:
        raise ValidationError(f"Unsupported exam type: {exam_type}", {"exam_type": exam_type})
    if amount is None or amount <= 0:
        raise ValidationError("Amount must be positive", {"amount": amount})

    order_id = f"pin_{uuid.uuid4().hex}"
    now = _now()
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            await debit_in(
                db, user_id, amount, f"pin_purchase:{order_id}", "pin_purchase",
                f"{exam_type.upper()} result checker PIN",
            )
            await db.execute(
                """INSERT INTO education_pin_orders (id, user_id, exam_type, amount, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (order_id, user_id, exam_type, float(amount), PinOrderStatus.PAID.value, now),
            )
            await _add_history(
                db, "pin_order_history", "order_id", order_id,
                None, PinOrderStatus.PAID.value, "user", user_id,
            )
        except Exception:
            await db.rollback()
            raise
        await db.commit()

    allocation = await allocate(exam_type, order_id=order_id, user_id=user_id)

    if allocation.ok:
        await _complete_pin_order(order_id, allocation)
        return PurchaseResult(
            order_id=order_id,
            status=PinOrderStatus.COMPLETED.value,
            pin_code=allocation.resource_ref,
            serial_number=allocation.details.get("serial_number"),
        )

    await refund_pin_order(order_id, reason=f"No {exam_type.upper()} PINs in stock")
    raise OutOfStockError(exam_type, refunded=True)


async def _complete_pin_order(order_id: str, allocation: AllocationResult) -> None:
    """
    Deliver an allocated PIN to a still-paid order. If the order was refunded
    in the meantime the PIN goes back to stock and InvalidTransition is raised.
    """
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            cursor = await db.execute(
                """UPDATE education_pin_orders
                   SET status = ?, pin_id = ?, delivered_pin = ?, delivered_serial = ?, completed_at = ?
                   WHERE id = ? AND status = ?""",
                (
                    PinOrderStatus.COMPLETED.value,
                    allocation.resource_id,
                    allocation.resource_ref,
                    allocation.details.get("serial_number"),
                    _now(),
                    order_id,
                    PinOrderStatus.PAID.value,
                ),
            )
            delivered = cursor.rowcount == 1
            current = PinOrderStatus.COMPLETED.value
            if delivered:
                await _add_history(
                    db, "pin_order_history", "order_id", order_id,
                    PinOrderStatus.PAID.value, PinOrderStatus.COMPLETED.value, "system",
                )
            else:
                await db.execute(
                    """UPDATE education_pins
                       SET status = 'unused', used_by_order_id = NULL, used_by_user_id = NULL, used_at = NULL
                       WHERE id = ? AND used_by_order_id = ?""",
                    (allocation.resource_id, order_id),
                )
                cursor = await db.execute("SELECT status FROM education_pin_orders WHERE id = ?", (order_id,))
                row = await cursor.fetchone()
                current = row["status"] if row else "missing"
        except Exception:
            await db.rollback()
            raise
        await db.commit()

    if not delivered:
        logger.warning(f"PIN order {order_id} left paid before delivery ({current}); PIN returned to stock")
        raise InvalidTransition(current, PinOrderStatus.COMPLETED.value)


async def refund_pin_order(order_id: str, reason: str, actor_type: str = "system", actor_id: Optional[str] = None) -> bool:
    """
    Fail a paid order and credit the buyer back. Safe to call repeatedly: the
    credit is keyed on ``refund:<order_id>`` and only a paid order moves.
    """
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            cursor = await db.execute("SELECT * FROM education_pin_orders WHERE id = ?", (order_id,))
            order = await cursor.fetchone()
            if not order:
                raise NotFoundError("PIN order not found", {"order_id": order_id})

            if order["status"] == PinOrderStatus.COMPLETED.value:
                raise InvalidTransition(order["status"], PinOrderStatus.FAILED.value)

            refunded = await credit_in(
                db, order["user_id"], float(order["amount"]), f"refund:{order_id}", "refund",
                f"Refund for {order['exam_type'].upper()} PIN order",
            )
            if order["status"] == PinOrderStatus.PAID.value:
                await db.execute(
                    """UPDATE education_pin_orders
                       SET status = ?, failure_reason = ?, refunded_at = ?
                       WHERE id = ? AND status = ?""",
                    (PinOrderStatus.FAILED.value, reason, _now(), order_id, PinOrderStatus.PAID.value),
                )
                await _add_history(
                    db, "pin_order_history", "order_id", order_id,
                    PinOrderStatus.PAID.value, PinOrderStatus.FAILED.value, actor_type, actor_id, reason,
                )
        except Exception:
            await db.rollback()
            raise
        await db.commit()

    if refunded:
        logger.info(f"PIN order {order_id} refunded: {reason}")
    return refunded


async def get_pin_order(order_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM education_pin_orders WHERE id = ?", (order_id,))
        row = await cursor.fetchone()
    if not row or (user_id is not None and row["user_id"] != user_id):
        raise NotFoundError("PIN order not found", {"order_id": order_id})
    return dict(row)


async def get_pin_order_history(order_id: str) -> List[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM pin_order_history WHERE order_id = ? ORDER BY id ASC", (order_id,)
        )
        return [dict(row) for row in await cursor.fetchall()]


# ============== Inventory administration ==============

async def add_pins(exam_type: str, pins: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """Bulk upload; PIN codes already stocked for the exam type are skipped."""
    exam_type = (exam_type or "").lower()
    if exam_type not in EXAM_TYPES:
        raise ValidationError(f"Unsupported exam type: {exam_type}", {"exam_type": exam_type})

    added = 0
    skipped = 0
    async with get_db() as db:
        for pin in pins:
            pin_code = str(pin.get("pin_code") or "").strip()
            if not pin_code:
                skipped += 1
                continue
            cursor = await db.execute(
                """INSERT OR IGNORE INTO education_pins (id, exam_type, pin_code, serial_number, status, created_at)
                   VALUES (?, ?, ?, ?, 'unused', ?)""",
                (f"epin_{uuid.uuid4().hex}", exam_type, pin_code, pin.get("serial_number"), _now()),
            )
            if cursor.rowcount == 1:
                added += 1
            else:
                skipped += 1
        await db.commit()

    logger.info(f"Uploaded {added} {exam_type.upper()} PINs ({skipped} skipped)")
    return {"added": added, "skipped": skipped}


async def pin_stock_counts() -> Dict[str, Dict[str, int]]:
    counts = {exam_type: {"unused": 0, "used": 0} for exam_type in EXAM_TYPES}
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT exam_type, status, COUNT(*) AS count FROM education_pins GROUP BY exam_type, status"
        )
        for row in await cursor.fetchall():
            counts.setdefault(row["exam_type"], {"unused": 0, "used": 0})[row["status"]] = int(row["count"])
    return counts


async def add_receiving_number(
    network: str,
    phone_number: str,
    *,
    daily_limit: Optional[float] = None,
    priority: int = 1,
    agent_id: Optional[str] = None,
    label: Optional[str] = None,
) -> str:
    network = (network or "").lower()
    if network not in NETWORKS:
        raise ValidationError(f"Unsupported network: {network}", {"network": network})
    if not phone_number:
        raise ValidationError("phone_number is required")

    inventory_id = f"a2cn_{uuid.uuid4().hex}"
    now = _now()
    async with get_db() as db:
        await db.execute(
            """INSERT INTO a2c_phone_inventory
               (id, agent_id, phone_number, network, daily_limit, used_today, last_reset_date,
                priority, is_active, label, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, 0, ?, ?, 1, ?, ?, ?)""",
            (
                inventory_id, agent_id, phone_number, network,
                float(daily_limit if daily_limit is not None else config.A2C_DEFAULT_DAILY_LIMIT),
                _today(), int(priority), label, now, now,
            ),
        )
        await db.commit()
    return inventory_id


async def set_number_active(inventory_id: str, active: bool):
    async with get_db() as db:
        cursor = await db.execute(
            "UPDATE a2c_phone_inventory SET is_active = ?, updated_at = ? WHERE id = ?",
            (1 if active else 0, _now(), inventory_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            raise NotFoundError("Receiving number not found", {"inventory_id": inventory_id})


async def reset_daily_usage(network: Optional[str] = None) -> int:
    """Zero used_today for every receiving number (optionally one network)."""
    params: List[Any] = [_today(), _now()]
    sql = "UPDATE a2c_phone_inventory SET used_today = 0, last_reset_date = ?, updated_at = ?"
    if network:
        sql += " WHERE network = ?"
        params.append(network.lower())
    async with get_db() as db:
        cursor = await db.execute(sql, params)
        await db.commit()
        count = cursor.rowcount
    logger.info(f"Reset daily usage on {count} receiving numbers")
    return count


async def list_receiving_numbers(network: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM a2c_phone_inventory"
    params: List[Any] = []
    if network:
        sql += " WHERE network = ?"
        params.append(network.lower())
    sql += " ORDER BY network, priority ASC, used_today ASC"
    async with get_db() as db:
        cursor = await db.execute(sql, params)
        rows = [dict(row) for row in await cursor.fetchall()]

    today = _today()
    for row in rows:
        used = 0.0 if (row.get("last_reset_date") or "") < today else float(row["used_today"])
        row["remaining_capacity"] = float(row["daily_limit"]) - used
        row["status"] = "active" if row["is_active"] and row["remaining_capacity"] > 0 else "exhausted"
    return rows


# ============== Airtime to cash ==============

async def get_a2c_rate(network: str) -> float:
    stored = await get_setting(f"a2c_rate_{network}")
    if stored:
        try:
            return float(stored)
        except ValueError:
            logger.warning(f"Ignoring malformed a2c_rate_{network} setting: {stored!r}")
    return float(DEFAULT_A2C_RATES.get(network, 0))


def _tracking_id() -> str:
    return f"A2C-{datetime.now():%y%m%d}-{secrets.token_hex(4).upper()}"


async def _fetch_a2c(db: aiosqlite.Connection, request_id: str) -> Dict[str, Any]:
    cursor = await db.execute("SELECT * FROM a2c_requests WHERE id = ?", (request_id,))
    row = await cursor.fetchone()
    if not row:
        raise NotFoundError("Airtime-to-cash request not found", {"request_id": request_id})
    return dict(row)


async def create_a2c_request(
    user_id: str,
    network: str,
    phone_number: str,
    airtime_amount: float,
    *,
    bank_name: Optional[str] = None,
    account_number: Optional[str] = None,
    account_name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Open a pending request and assign the receiving number the user should
    send airtime to. Capacity is only consumed once the user confirms.
    """
    network = (network or "").lower()
    if network not in NETWORKS:
        raise ValidationError(f"Unsupported network: {network}", {"network": network})
    if not phone_number:
        raise ValidationError("phone_number is required")
    if airtime_amount is None or airtime_amount < config.A2C_MIN_AMOUNT or airtime_amount > config.A2C_MAX_AMOUNT:
        raise ValidationError(
            f"Amount must be between {config.A2C_MIN_AMOUNT:g} and {config.A2C_MAX_AMOUNT:g}",
            {"amount": airtime_amount},
        )

    rate = await get_a2c_rate(network)
    cash_amount = round(float(airtime_amount) * rate / 100, 2)
    request_id = f"a2c_{uuid.uuid4().hex}"
    now = _now()

    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            allocation = await _pick_receiving_number(db, network, airtime_amount)
            if not allocation.ok:
                await db.rollback()
                log_allocation(network, allocation.outcome.value, order_id=request_id)
                raise OutOfStockError(network, float(airtime_amount))

            await db.execute(
                """INSERT INTO a2c_requests
                   (id, user_id, tracking_id, network, phone_number, airtime_amount, conversion_rate,
                    cash_amount, inventory_id, receiving_number, bank_name, account_number, account_name,
                    status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    request_id, user_id, _tracking_id(), network, phone_number, float(airtime_amount), rate,
                    cash_amount, allocation.resource_id, allocation.resource_ref, bank_name, account_number,
                    account_name, A2CStatus.PENDING.value, now, now,
                ),
            )
            await _add_history(
                db, "a2c_status_history", "request_id", request_id,
                None, A2CStatus.PENDING.value, "user", user_id,
            )
        except OutOfStockError:
            raise
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        request = await _fetch_a2c(db, request_id)

    log_allocation(network, allocation.outcome.value, allocation.resource_id, request_id)
    return request


async def confirm_airtime_sent(request_id: str, user_id: str) -> Dict[str, Any]:
    """User says the airtime went out: pending -> airtime_sent, capacity consumed."""
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            request = await _fetch_a2c(db, request_id)
            if request["user_id"] != user_id:
                raise NotFoundError("Airtime-to-cash request not found", {"request_id": request_id})
            if request["status"] != A2CStatus.PENDING.value:
                raise InvalidTransition(request["status"], A2CStatus.AIRTIME_SENT.value)

            now = _now()
            await db.execute(
                """UPDATE a2c_requests SET status = ?, user_confirmed_at = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (A2CStatus.AIRTIME_SENT.value, now, now, request_id, A2CStatus.PENDING.value),
            )
            if request["inventory_id"]:
                await db.execute(
                    "UPDATE a2c_phone_inventory SET used_today = used_today + ?, updated_at = ? WHERE id = ?",
                    (float(request["airtime_amount"]), now, request["inventory_id"]),
                )
            await _add_history(
                db, "a2c_status_history", "request_id", request_id,
                A2CStatus.PENDING.value, A2CStatus.AIRTIME_SENT.value, "user", user_id,
                "User confirmed airtime sent",
            )
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        return await _fetch_a2c(db, request_id)


async def update_a2c_status(
    request_id: str,
    new_status: str,
    *,
    actor_id: Optional[str] = None,
    actor_type: str = "agent",
    note: Optional[str] = None,
    rejection_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Operator-side transition. ``completed`` credits the user's wallet with the
    cash amount (once, keyed on the request id).
    """
    if new_status == A2CStatus.AIRTIME_SENT.value:
        # only the requesting user confirms sending
        raise InvalidTransition(A2CStatus.PENDING.value, new_status)

    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            request = await _fetch_a2c(db, request_id)
            current = request["status"]
            if new_status not in A2C_TRANSITIONS.get(current, ()):
                raise InvalidTransition(current, new_status)

            now = _now()
            updates = {"status": new_status, "updated_at": now}
            if actor_id:
                updates["assigned_agent_id"] = actor_id
            if note:
                updates["agent_notes"] = note
            if new_status == A2CStatus.AIRTIME_RECEIVED.value:
                updates["airtime_received_at"] = now
            elif new_status == A2CStatus.COMPLETED.value:
                updates["cash_paid_at"] = now
            elif new_status == A2CStatus.REJECTED.value:
                updates["rejection_reason"] = rejection_reason or "No reason provided"

            assignments = ", ".join(f"{column} = ?" for column in updates)
            await db.execute(
                f"UPDATE a2c_requests SET {assignments} WHERE id = ? AND status = ?",
                (*updates.values(), request_id, current),
            )

            if new_status == A2CStatus.COMPLETED.value:
                await credit_in(
                    db, request["user_id"], float(request["cash_amount"]), f"a2c_credit:{request_id}", "a2c_credit",
                    f"Airtime to cash {request['tracking_id']}",
                )

            await _add_history(
                db, "a2c_status_history", "request_id", request_id,
                current, new_status, actor_type, actor_id,
                rejection_reason if new_status == A2CStatus.REJECTED.value else note,
            )
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        updated = await _fetch_a2c(db, request_id)

    logger.info(f"A2C {updated['tracking_id']}: {current} -> {new_status}")
    return updated


async def cancel_a2c_request(request_id: str, user_id: str) -> Dict[str, Any]:
    """User withdraws a request before sending airtime."""
    async with get_db() as db:
        request = await _fetch_a2c(db, request_id)
    if request["user_id"] != user_id:
        raise NotFoundError("Airtime-to-cash request not found", {"request_id": request_id})
    return await update_a2c_status(
        request_id, A2CStatus.CANCELLED.value, actor_id=user_id, actor_type="user", note="Cancelled by user"
    )


async def get_a2c_request(request_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    async with get_db() as db:
        request = await _fetch_a2c(db, request_id)
    if user_id is not None and request["user_id"] != user_id:
        raise NotFoundError("Airtime-to-cash request not found", {"request_id": request_id})
    return request


async def list_a2c_requests(
    *,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    clauses = []
    params: List[Any] = []
    if user_id:
        clauses.append("user_id = ?")
        params.append(user_id)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    async with get_db() as db:
        cursor = await db.execute(
            f"SELECT * FROM a2c_requests {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (*params, int(limit), int(offset)),
        )
        return [dict(row) for row in await cursor.fetchall()]


async def get_a2c_history(request_id: str) -> List[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM a2c_status_history WHERE request_id = ? ORDER BY id ASC", (request_id,)
        )
        return [dict(row) for row in await cursor.fetchall()]


async def get_pin_price(exam_type: str) -> float:
    exam_type = (exam_type or "").lower()
    if exam_type not in EXAM_TYPES:
        raise ValidationError(f"Unsupported exam type: {exam_type}", {"exam_type": exam_type})
    stored = await get_setting(f"pin_price_{exam_type}")
    if stored:
        try:
            return float(stored)
        except ValueError:
            logger.warning(f"Ignoring malformed pin_price_{exam_type} setting: {stored!r}")
    return float(DEFAULT_PIN_PRICES[exam_type])
