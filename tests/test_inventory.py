"""
Resource allocator tests: exam PINs, paid purchases with compensating refunds,
and airtime-to-cash receiving numbers.
"""

import asyncio
from datetime import date, timedelta

import pytest

from api import inventory, wallet
from api.database import get_db, set_setting
from core.exceptions import (
    InsufficientFunds,
    InvalidTransition,
    NotFoundError,
    OutOfStockError,
    ValidationError,
)
from core.models import PurchaseResult


async def _stock_pins(exam_type="waec", count=2):
    return await inventory.add_pins(
        exam_type, [{"pin_code": f"PIN{i:04d}", "serial_number": f"SN{i:04d}"} for i in range(count)]
    )


async def _number_row(inventory_id):
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM a2c_phone_inventory WHERE id = ?", (inventory_id,))
        return dict(await cursor.fetchone())


class TestPinAllocation:

    @pytest.mark.asyncio
    async def test_allocates_in_upload_order(self, db):
        await _stock_pins(count=2)

        first = await inventory.allocate("waec", order_id="o1", user_id="u1")
        second = await inventory.allocate("waec", order_id="o2", user_id="u2")
        third = await inventory.allocate("waec", order_id="o3", user_id="u3")

        assert (first.resource_ref, second.resource_ref) == ("PIN0000", "PIN0001")
        assert first.details["serial_number"] == "SN0000"
        assert not third.ok
        assert third.outcome.value == "out_of_stock"

    @pytest.mark.asyncio
    async def test_concurrent_allocations_never_share_a_pin(self, db):
        await _stock_pins(count=5)

        results = await asyncio.gather(*[
            inventory.allocate("waec", order_id=f"order_{i}", user_id=f"user_{i}") for i in range(12)
        ])

        allocated = [r.resource_ref for r in results if r.ok]
        assert len(allocated) == 5
        assert len(set(allocated)) == 5
        assert sum(1 for r in results if not r.ok) == 7

    @pytest.mark.asyncio
    async def test_unknown_category(self, db):
        with pytest.raises(ValidationError):
            await inventory.allocate("gce")

    @pytest.mark.asyncio
    async def test_duplicate_upload_skipped(self, db):
        assert await _stock_pins(count=3) == {"added": 3, "skipped": 0}
        assert await inventory.add_pins("waec", [{"pin_code": "PIN0001"}, {"pin_code": ""}]) == {"added": 0, "skipped": 2}

        counts = await inventory.pin_stock_counts()
        assert counts["waec"] == {"unused": 3, "used": 0}
        assert counts["neco"] == {"unused": 0, "used": 0}


class TestPinPurchase:

    @pytest.mark.asyncio
    async def test_purchase_debits_and_delivers(self, db):
        await _stock_pins(count=1)
        await wallet.credit("buyer", 5000, "topup:1")

        result = await inventory.purchase_pin("buyer", "waec", 4000)

        assert isinstance(result, PurchaseResult)
        assert result.ok
        assert result.pin_code == "PIN0000"
        assert await wallet.get_balance("buyer") == 1000

        order = await inventory.get_pin_order(result.order_id, "buyer")
        assert order["status"] == "completed"
        assert order["delivered_pin"] == "PIN0000"
        history = await inventory.get_pin_order_history(result.order_id)
        assert [h["new_status"] for h in history] == ["paid", "completed"]

    @pytest.mark.asyncio
    async def test_two_pins_three_buyers(self, db):
        await _stock_pins(count=2)
        buyers = ["buyer_a", "buyer_b", "buyer_c"]
        for buyer in buyers:
            await wallet.credit(buyer, 4000, f"topup:{buyer}")

        outcomes = await asyncio.gather(
            *[inventory.purchase_pin(buyer, "waec", 4000) for buyer in buyers],
            return_exceptions=True,
        )

        delivered = [o for o in outcomes if isinstance(o, PurchaseResult)]
        refused = [o for o in outcomes if isinstance(o, OutOfStockError)]
        assert len(delivered) == 2
        assert len(refused) == 1
        assert {o.pin_code for o in delivered} == {"PIN0000", "PIN0001"}
        assert refused[0].refunded

        balances = sorted([await wallet.get_balance(buyer) for buyer in buyers])
        assert balances == [0, 0, 4000]

        async with get_db() as conn:
            cursor = await conn.execute("SELECT id, status FROM education_pin_orders WHERE status = 'failed'")
            failed = [dict(row) for row in await cursor.fetchall()]
        assert len(failed) == 1

        # A second refund of the same order changes nothing
        assert await inventory.refund_pin_order(failed[0]["id"], "retry refund") is False
        assert sorted([await wallet.get_balance(buyer) for buyer in buyers]) == [0, 0, 4000]

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_stock(self, db):
        await _stock_pins(count=1)
        await wallet.credit("buyer", 1000, "topup:1")

        with pytest.raises(InsufficientFunds):
            await inventory.purchase_pin("buyer", "waec", 4000)

        assert await wallet.get_balance("buyer") == 1000
        assert (await inventory.pin_stock_counts())["waec"]["unused"] == 1

    @pytest.mark.asyncio
    async def test_completed_order_cannot_be_refunded(self, db):
        await _stock_pins(count=1)
        await wallet.credit("buyer", 4000, "topup:1")
        result = await inventory.purchase_pin("buyer", "waec", 4000)

        with pytest.raises(InvalidTransition):
            await inventory.refund_pin_order(result.order_id, "changed mind")
        assert await wallet.get_balance("buyer") == 0

    @pytest.mark.asyncio
    async def test_refund_before_delivery_returns_pin(self, db, monkeypatch):
        await _stock_pins(count=1)
        await wallet.credit("buyer", 4000, "topup:1")
        real_allocate = inventory.allocate

        async def allocate_then_refund(category, *args, order_id=None, **kwargs):
            result = await real_allocate(category, *args, order_id=order_id, **kwargs)
            await inventory.refund_pin_order(order_id, "stuck order", "admin", "ops_1")
            return result

        monkeypatch.setattr(inventory, "allocate", allocate_then_refund)

        with pytest.raises(InvalidTransition):
            await inventory.purchase_pin("buyer", "waec", 4000)

        assert await wallet.get_balance("buyer") == 4000
        assert (await inventory.pin_stock_counts())["waec"]["unused"] == 1
        async with get_db() as conn:
            cursor = await conn.execute("SELECT id, status, delivered_pin FROM education_pin_orders")
            orders = [dict(row) for row in await cursor.fetchall()]
        assert len(orders) == 1
        assert orders[0]["status"] == "failed"
        assert orders[0]["delivered_pin"] is None
        history = await inventory.get_pin_order_history(orders[0]["id"])
        assert [h["new_status"] for h in history] == ["paid", "failed"]

        # The returned PIN is sold normally afterwards
        monkeypatch.setattr(inventory, "allocate", real_allocate)
        await wallet.credit("buyer_2", 4000, "topup:2")
        assert (await inventory.purchase_pin("buyer_2", "waec", 4000)).pin_code == "PIN0000"

    @pytest.mark.asyncio
    async def test_order_hidden_from_other_users(self, db):
        await _stock_pins(count=1)
        await wallet.credit("buyer", 4000, "topup:1")
        result = await inventory.purchase_pin("buyer", "waec", 4000)

        with pytest.raises(NotFoundError):
            await inventory.get_pin_order(result.order_id, "someone_else")

    @pytest.mark.asyncio
    async def test_pin_price_override(self, db):
        assert await inventory.get_pin_price("neco") == 1500
        await set_setting("pin_price_neco", "1800")
        assert await inventory.get_pin_price("neco") == 1800


class TestReceivingNumbers:

    @pytest.mark.asyncio
    async def test_capacity_scenario(self, db):
        inventory_id = await inventory.add_receiving_number("mtn", "08030000001", daily_limit=1000)
        request = await inventory.create_a2c_request("user_1", "mtn", "08039999999", 900)
        await inventory.confirm_airtime_sent(request["id"], "user_1")
        assert (await _number_row(inventory_id))["used_today"] == 900

        too_big = await inventory.allocate("mtn", 150)
        assert not too_big.ok

        fits = await inventory.allocate("mtn", 50)
        assert fits.ok
        assert fits.resource_ref == "08030000001"
        assert (await _number_row(inventory_id))["used_today"] == 900

    @pytest.mark.asyncio
    async def test_prefers_priority_then_least_used(self, db):
        backup = await inventory.add_receiving_number("mtn", "08030000002", priority=2)
        primary = await inventory.add_receiving_number("mtn", "08030000001", priority=1)
        await inventory.add_receiving_number("airtel", "08020000001", priority=0)

        assert (await inventory.allocate("mtn", 500)).resource_id == primary

        await inventory.set_number_active(primary, False)
        assert (await inventory.allocate("mtn", 500)).resource_id == backup

    @pytest.mark.asyncio
    async def test_stale_usage_reset_lazily(self, db):
        inventory_id = await inventory.add_receiving_number("glo", "08050000001", daily_limit=1000)
        yesterday = (date.today() - timedelta(days=1)).isoformat()
        async with get_db() as conn:
            await conn.execute(
                "UPDATE a2c_phone_inventory SET used_today = 1000, last_reset_date = ? WHERE id = ?",
                (yesterday, inventory_id),
            )
            await conn.commit()

        assert (await inventory.allocate("glo", 500)).ok
        row = await _number_row(inventory_id)
        assert row["used_today"] == 0
        assert row["last_reset_date"] == date.today().isoformat()

    @pytest.mark.asyncio
    async def test_amount_required_for_networks(self, db):
        with pytest.raises(ValidationError):
            await inventory.allocate("mtn")

    @pytest.mark.asyncio
    async def test_listing_derives_status(self, db):
        await inventory.add_receiving_number("mtn", "08030000001", daily_limit=1000)
        request = await inventory.create_a2c_request("user_1", "mtn", "08039999999", 1000)
        await inventory.confirm_airtime_sent(request["id"], "user_1")

        [row] = await inventory.list_receiving_numbers("mtn")
        assert row["remaining_capacity"] == 0
        assert row["status"] == "exhausted"

        assert await inventory.reset_daily_usage("mtn") == 1
        [row] = await inventory.list_receiving_numbers("mtn")
        assert row["status"] == "active"


class TestAirtimeToCash:

    @pytest.mark.asyncio
    async def test_full_flow_credits_wallet_once(self, db):
        inventory_id = await inventory.add_receiving_number("mtn", "08030000001")
        request = await inventory.create_a2c_request(
            "user_1", "mtn", "08039999999", 1000,
            bank_name="GTBank", account_number="0123456789", account_name="Ada Obi",
        )
        assert request["status"] == "pending"
        assert request["receiving_number"] == "08030000001"
        assert request["cash_amount"] == 700
        assert request["tracking_id"].startswith("A2C-")

        await inventory.confirm_airtime_sent(request["id"], "user_1")
        assert (await _number_row(inventory_id))["used_today"] == 1000

        await inventory.update_a2c_status(request["id"], "airtime_received", actor_id="agent_1")
        done = await inventory.update_a2c_status(request["id"], "completed", actor_id="agent_1")
        assert done["status"] == "completed"
        assert done["cash_paid_at"] is not None
        assert await wallet.get_balance("user_1") == 700

        with pytest.raises(InvalidTransition):
            await inventory.update_a2c_status(request["id"], "completed", actor_id="agent_1")
        assert await wallet.get_balance("user_1") == 700

        history = await inventory.get_a2c_history(request["id"])
        assert [h["new_status"] for h in history] == ["pending", "airtime_sent", "airtime_received", "completed"]
        assert history[1]["actor_type"] == "user"
        assert history[3]["actor_id"] == "agent_1"

    @pytest.mark.asyncio
    async def test_rejection_records_reason(self, db):
        await inventory.add_receiving_number("airtel", "08020000001")
        request = await inventory.create_a2c_request("user_1", "airtel", "08029999999", 500)
        await inventory.confirm_airtime_sent(request["id"], "user_1")

        rejected = await inventory.update_a2c_status(
            request["id"], "rejected", actor_id="agent_1", rejection_reason="Airtime not received"
        )
        assert rejected["rejection_reason"] == "Airtime not received"
        assert await wallet.get_balance("user_1") == 0

    @pytest.mark.asyncio
    async def test_cancel_only_before_sending(self, db):
        await inventory.add_receiving_number("mtn", "08030000001")
        first = await inventory.create_a2c_request("user_1", "mtn", "08039999999", 500)
        second = await inventory.create_a2c_request("user_1", "mtn", "08039999999", 500)

        assert (await inventory.cancel_a2c_request(first["id"], "user_1"))["status"] == "cancelled"

        await inventory.confirm_airtime_sent(second["id"], "user_1")
        with pytest.raises(InvalidTransition):
            await inventory.cancel_a2c_request(second["id"], "user_1")

    @pytest.mark.asyncio
    async def test_operators_cannot_mark_sent(self, db):
        await inventory.add_receiving_number("mtn", "08030000001")
        request = await inventory.create_a2c_request("user_1", "mtn", "08039999999", 500)

        with pytest.raises(InvalidTransition):
            await inventory.update_a2c_status(request["id"], "airtime_sent")
        with pytest.raises(InvalidTransition):
            await inventory.update_a2c_status(request["id"], "completed")

    @pytest.mark.asyncio
    async def test_only_owner_confirms(self, db):
        await inventory.add_receiving_number("mtn", "08030000001")
        request = await inventory.create_a2c_request("user_1", "mtn", "08039999999", 500)

        with pytest.raises(NotFoundError):
            await inventory.confirm_airtime_sent(request["id"], "user_2")

    @pytest.mark.asyncio
    async def test_no_capacity_is_out_of_stock(self, db):
        await inventory.add_receiving_number("9mobile", "08090000001", daily_limit=200)

        with pytest.raises(OutOfStockError):
            await inventory.create_a2c_request("user_1", "9mobile", "08099999999", 500)
        assert await inventory.list_a2c_requests(user_id="user_1") == []

    @pytest.mark.asyncio
    async def test_amount_limits(self, db):
        await inventory.add_receiving_number("mtn", "08030000001")
        with pytest.raises(ValidationError):
            await inventory.create_a2c_request("user_1", "mtn", "08039999999", 50)
        with pytest.raises(ValidationError):
            await inventory.create_a2c_request("user_1", "mtn", "08039999999", 1_000_000)

    @pytest.mark.asyncio
    async def test_rate_override(self, db):
        await inventory.add_receiving_number("mtn", "08030000001")
        await set_setting("a2c_rate_mtn", "80")

        request = await inventory.create_a2c_request("user_1", "mtn", "08039999999", 1000)
        assert request["conversion_rate"] == 80
        assert request["cash_amount"] == 800
