# tests/services/test_reservation_service.py
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
import sqlalchemy as sa

from app.db.types import utc_now
from app.models.enums import MovementType
from app.models.inventory_movement import InventoryMovement
from app.models.product import Product
from app.models.stock_reservation import StockReservation
from app.services.errors import InsufficientStockError, ProductNotFoundError
from app.services.reservation_service import ReservationItem, ReservationService
from tests._helpers import product_quantity, seed_product


@pytest.mark.asyncio
async def test_reserve_release_then_reserve_again(session_factory, reservation_service):
    """
    在手 5：A 占 3 → B 占 4 失败（可售 2）→ 释放 A → B 占 4 成功。
    """
    pid = await seed_product(session_factory, quantity=5)
    svc: ReservationService = reservation_service

    async with session_factory() as s:
        await svc.reserve(s, pid, 3, order_id=101)

    async with session_factory() as s:
        with pytest.raises(InsufficientStockError) as ei:
            await svc.reserve(s, pid, 4, order_id=202)
    assert ei.value.requested == 4
    assert ei.value.available == 2

    async with session_factory() as s:
        assert await svc.release(s, order_id=101) is True

    async with session_factory() as s:
        r = await svc.reserve(s, pid, 4, order_id=202)
    assert r.quantity == 4
    assert r.order_id == 202

    # 预占从不动在手数量
    assert await product_quantity(session_factory, pid) == 5


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_reserves_never_oversell(session_factory, reservation_service):
    pid = await seed_product(session_factory, quantity=5)
    svc: ReservationService = reservation_service

    async def _one(order_id: int):
        async with session_factory() as s:
            return await svc.reserve(s, pid, 1, order_id=order_id)

    results = await asyncio.gather(*[_one(i) for i in range(1, 11)], return_exceptions=True)

    ok = [r for r in results if isinstance(r, StockReservation)]
    rejected = [r for r in results if isinstance(r, InsufficientStockError)]
    assert len(ok) == 5
    assert len(rejected) == 5

    async with session_factory() as s:
        assert await svc.get_reserved(s, pid) == 5
        assert await svc.get_available(s, pid) == 0


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_mixed_sizes_stay_within_on_hand(session_factory, reservation_service):
    pid = await seed_product(session_factory, quantity=7)
    svc: ReservationService = reservation_service
    sizes = [3, 2, 4, 1, 3, 2]

    async def _one(qty: int):
        async with session_factory() as s:
            return await svc.reserve(s, pid, qty)

    results = await asyncio.gather(*[_one(q) for q in sizes], return_exceptions=True)
    assert all(isinstance(r, (StockReservation, InsufficientStockError)) for r in results)

    granted = sum(r.quantity for r in results if isinstance(r, StockReservation))
    assert granted <= 7
    async with session_factory() as s:
        assert await svc.get_reserved(s, pid) == granted


@pytest.mark.asyncio
async def test_expired_hold_stops_counting_without_sweep(session_factory, reservation_service):
    pid = await seed_product(session_factory, quantity=5)
    svc: ReservationService = reservation_service
    t0 = utc_now()

    async with session_factory() as s:
        await svc.reserve(s, pid, 5, expiration_minutes=15, now=t0)

    async with session_factory() as s:
        assert await svc.get_available(s, pid, now=t0 + timedelta(minutes=14)) == 0
        assert await svc.get_available(s, pid, now=t0 + timedelta(minutes=15)) == 5

    # 过期行还在表里，但新的预占照样能拿满
    async with session_factory() as s:
        r = await svc.reserve(s, pid, 5, now=t0 + timedelta(minutes=16))
    assert r.quantity == 5

    async with session_factory() as s:
        total = (await s.execute(sa.select(sa.func.count(StockReservation.id)))).scalar_one()
    assert total == 2


@pytest.mark.asyncio
async def test_reserve_rejects_bad_input(session_factory, reservation_service):
    svc: ReservationService = reservation_service
    pid = await seed_product(session_factory, quantity=5)
    inactive = await seed_product(session_factory, quantity=50, is_active=False)

    async with session_factory() as s:
        with pytest.raises(ValueError):
            await svc.reserve(s, pid, 0)

    async with session_factory() as s:
        with pytest.raises(ProductNotFoundError):
            await svc.reserve(s, 999_999, 1)

    async with session_factory() as s:
        with pytest.raises(InsufficientStockError) as ei:
            await svc.reserve(s, inactive, 1)
    assert ei.value.available == 0


@pytest.mark.asyncio
async def test_bulk_reserve_is_all_or_nothing(session_factory, reservation_service):
    svc: ReservationService = reservation_service
    p1 = await seed_product(session_factory, quantity=5)
    p2 = await seed_product(session_factory, quantity=1)

    async with session_factory() as s:
        with pytest.raises(InsufficientStockError) as ei:
            await svc.bulk_reserve(s, [(p1, 2), (p2, 3)], order_id=77)
    assert ei.value.product_id == p2

    async with session_factory() as s:
        assert await svc.get_reserved(s, p1) == 0
        assert await svc.get_reserved(s, p2) == 0
        assert await svc.list_active(s, order_id=77) == []


@pytest.mark.asyncio
async def test_bulk_reserve_success_keeps_input_order(session_factory, reservation_service):
    svc: ReservationService = reservation_service
    p1 = await seed_product(session_factory, quantity=5)
    p2 = await seed_product(session_factory, quantity=5)

    async with session_factory() as s:
        result = await svc.bulk_reserve(
            s,
            [ReservationItem(p2, 2), {"product_id": p1, "quantity": 3}],
            order_id=88,
        )

    assert result.success is True
    assert result.total_reserved == 5
    assert [r.product_id for r in result.reservations] == [p2, p1]

    async with session_factory() as s:
        assert await svc.get_available(s, p1) == 2
        assert await svc.get_available(s, p2) == 3


@pytest.mark.asyncio
async def test_release_is_idempotent(session_factory, reservation_service):
    svc: ReservationService = reservation_service
    pid = await seed_product(session_factory, quantity=5)
    t0 = utc_now()

    async with session_factory() as s:
        r = await svc.reserve(s, pid, 2)
    rid = r.id

    async with session_factory() as s:
        assert await svc.release(s, reservation_id=rid) is True
    async with session_factory() as s:
        assert await svc.release(s, reservation_id=rid) is False
    async with session_factory() as s:
        assert await svc.release(s, reservation_id=123456) is False

    # 已过期的预占：release 视为 no-op
    async with session_factory() as s:
        old = await svc.reserve(s, pid, 1, expiration_minutes=1, now=t0 - timedelta(minutes=5))
    async with session_factory() as s:
        assert await svc.release(s, reservation_id=old.id) is False

    async with session_factory() as s:
        with pytest.raises(ValueError):
            await svc.release(s)
        with pytest.raises(ValueError):
            await svc.release(s, reservation_id=1, order_id=1)


@pytest.mark.asyncio
async def test_cleanup_expired_only_touches_expired_rows(session_factory, reservation_service):
    svc: ReservationService = reservation_service
    pid = await seed_product(session_factory, quantity=20)
    t0 = utc_now()

    for _ in range(3):
        async with session_factory() as s:
            await svc.reserve(s, pid, 1, expiration_minutes=1, now=t0)
    async with session_factory() as s:
        keep = await svc.reserve(s, pid, 2, expiration_minutes=60, now=t0)

    async with session_factory() as s:
        deleted = await svc.cleanup_expired(s, now=t0 + timedelta(minutes=5), batch_size=2)
    assert deleted == 3

    async with session_factory() as s:
        left = (await s.execute(sa.select(StockReservation.id))).scalars().all()
    assert left == [keep.id]

    # 再跑一次什么也不删
    async with session_factory() as s:
        assert await svc.cleanup_expired(s, now=t0 + timedelta(minutes=5)) == 0


@pytest.mark.asyncio
async def test_extend_pushes_expiry_of_active_hold(session_factory, reservation_service):
    svc: ReservationService = reservation_service
    pid = await seed_product(session_factory, quantity=5)
    t0 = utc_now()

    async with session_factory() as s:
        r = await svc.reserve(s, pid, 2, expiration_minutes=15, now=t0)

    async with session_factory() as s:
        assert await svc.extend(s, r.id, 30, now=t0 + timedelta(minutes=10)) is True

    async with session_factory() as s:
        assert await svc.get_reserved(s, pid, now=t0 + timedelta(minutes=20)) == 2
        assert await svc.get_reserved(s, pid, now=t0 + timedelta(minutes=41)) == 0

    # 过期的不复活
    async with session_factory() as s:
        assert await svc.extend(s, r.id, 30, now=t0 + timedelta(minutes=45)) is False


@pytest.mark.asyncio
async def test_release_all_for_order(session_factory, reservation_service):
    svc: ReservationService = reservation_service
    p1 = await seed_product(session_factory, quantity=5)
    p2 = await seed_product(session_factory, quantity=5)

    async with session_factory() as s:
        await svc.bulk_reserve(s, [(p1, 1), (p2, 4)], order_id=501)

    async with session_factory() as s:
        summary = await svc.release_all_for_order(s, 501)
    assert summary.released_count == 2
    assert summary.total_quantity == 5

    async with session_factory() as s:
        again = await svc.release_all_for_order(s, 501)
    assert again.released_count == 0


@pytest.mark.asyncio
async def test_convert_to_sale_decrements_on_hand_and_drops_holds(
    session_factory, reservation_service
):
    svc: ReservationService = reservation_service
    pid = await seed_product(session_factory, quantity=10)

    async with session_factory() as s:
        await svc.reserve(s, pid, 3, order_id=900)

    async with session_factory() as s:
        summary = await svc.convert_to_sale(s, 900, created_by="checkout")
    assert summary.converted_count == 1
    assert summary.total_quantity == 3

    assert await product_quantity(session_factory, pid) == 7
    async with session_factory() as s:
        assert await svc.list_active(s, order_id=900) == []
        mv = (
            await s.execute(sa.select(InventoryMovement).where(InventoryMovement.product_id == pid))
        ).scalar_one()
    assert mv.type == MovementType.SALE
    assert (mv.quantity, mv.previous_quantity, mv.new_quantity) == (3, 10, 7)
    assert mv.reference == "order:900"
    assert mv.created_by == "checkout"


@pytest.mark.asyncio
async def test_stats_counts_active_and_expiring(session_factory, reservation_service):
    svc: ReservationService = reservation_service
    p1 = await seed_product(session_factory, quantity=10)
    p2 = await seed_product(session_factory, quantity=10)
    t0 = utc_now()

    async with session_factory() as s:
        await svc.reserve(s, p1, 2, expiration_minutes=5, now=t0)
    async with session_factory() as s:
        await svc.reserve(s, p1, 1, expiration_minutes=60, now=t0)
    async with session_factory() as s:
        await svc.reserve(s, p2, 4, expiration_minutes=60, now=t0)

    async with session_factory() as s:
        st = await svc.stats(s, now=t0, expiring_within_minutes=15)

    assert st.total_active_reservations == 3
    assert st.total_reserved_quantity == 7
    assert st.expiring_soon == 1
    by_pid = {row["product_id"]: row for row in st.by_product}
    assert by_pid[p1]["reserved_quantity"] == 3
    assert by_pid[p2]["reservation_count"] == 1


@pytest.mark.asyncio
async def test_convert_to_sale_skips_expired_holds(session_factory, reservation_service):
    """
    在手 5：订单 1 的预占已过期，库存被订单 2 占满；订单 1 转销售不得再扣在手。
    """
    svc: ReservationService = reservation_service
    pid = await seed_product(session_factory, quantity=5)
    t0 = utc_now()

    async with session_factory() as s:
        await svc.reserve(s, pid, 5, order_id=1, expiration_minutes=15, now=t0 - timedelta(minutes=30))
    async with session_factory() as s:
        await svc.reserve(s, pid, 5, order_id=2, now=t0)

    async with session_factory() as s:
        summary = await svc.convert_to_sale(s, 1, now=t0)
    assert summary.converted_count == 0
    assert summary.total_quantity == 0

    assert await product_quantity(session_factory, pid) == 5
    async with session_factory() as s:
        assert await svc.get_reserved(s, pid, now=t0) == 5
        left = (
            await s.execute(
                sa.select(sa.func.count(StockReservation.id)).where(StockReservation.order_id == 1)
            )
        ).scalar_one()
    assert left == 0


@pytest.mark.asyncio
async def test_reserve_lock_leaves_product_updated_at_alone(session_factory, reservation_service):
    pid = await seed_product(session_factory, quantity=5)

    async def _updated_at():
        async with session_factory() as s:
            return (
                await s.execute(sa.select(Product.updated_at).where(Product.id == pid))
            ).scalar_one()

    before = await _updated_at()
    async with session_factory() as s:
        await reservation_service.reserve(s, pid, 2, order_id=55)
    assert await _updated_at() == before
    assert await product_quantity(session_factory, pid) == 5
