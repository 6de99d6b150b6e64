# tests/services/test_payment_reconcile_service.py
from __future__ import annotations

from datetime import timedelta
from typing import List

import pytest
import sqlalchemy as sa

from app.db.types import utc_now
from app.models.enums import OrderStatus, PaymentStatus
from app.models.order import Order
from app.services.errors import ReconciliationRunError
from app.services.notification_dispatcher import NotificationKind
from app.services.payment_reconcile_service import PaymentReconcileService
from app.services.payment_reconcile_types import ReconcileMode, ReconcileOptions, preset
from tests._helpers import (
    FakePaymentProvider,
    RecordingNotifier,
    load_order,
    paystack_tx,
    seed_order,
)

ADMIN = "admin@bareloft.test"


class _SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _service(session_factory, provider, notifier, sleep=None) -> PaymentReconcileService:
    return PaymentReconcileService(
        session_factory,
        provider,
        notifier=notifier,
        admin_email=ADMIN,
        support_email="help@bareloft.test",
        sleep=sleep or _SleepRecorder(),
    )


@pytest.mark.asyncio
async def test_pending_order_paid_at_paystack_is_completed_once(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    oid = await seed_order(session_factory, payment_reference="ref_ok", now=now)
    provider.by_reference["ref_ok"] = paystack_tx("ref_ok", "success")
    svc = _service(session_factory, provider, notifier)

    summary = await svc.run(preset("manual"), now=now)

    assert summary.total_processed == 1
    assert summary.discrepancies_found == 1
    assert summary.successful_updates == 1
    assert summary.failed_updates == 0
    assert summary.errors == []

    order = await load_order(session_factory, oid)
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.status == OrderStatus.CONFIRMED

    kinds = notifier.kinds()
    assert kinds.count(NotificationKind.PAYMENT_CONFIRMATION) == 1
    assert kinds.count(NotificationKind.ADMIN_ORDER_UPDATE) == 1
    assert kinds.count(NotificationKind.ADMIN_RECONCILIATION_REPORT) == 1
    customer = [x for x in notifier.sent if x[0] == NotificationKind.PAYMENT_CONFIRMATION][0]
    assert customer[1] == "ada@example.ng"
    assert customer[2]["payment_reference"] == "ref_ok"
    assert customer[2]["reconciliation_update"] is True

    # 第二轮：同样的外部状态，不再有任何修正和通知
    sent_before = len(notifier.sent)
    again = await svc.run(preset("manual"), now=now + timedelta(minutes=30))
    assert again.successful_updates == 0
    assert again.discrepancies_found == 0
    assert len(notifier.sent) == sent_before


@pytest.mark.asyncio
async def test_completed_order_is_never_touched(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    oid = await seed_order(
        session_factory,
        payment_status=PaymentStatus.COMPLETED,
        status=OrderStatus.CONFIRMED,
        payment_reference="ref_done",
        now=now,
    )
    provider.by_reference["ref_done"] = paystack_tx("ref_done", "pending")

    summary = await _service(session_factory, provider, notifier).run(
        preset("comprehensive"), now=now
    )

    assert summary.total_processed == 0
    assert provider.calls == []
    assert notifier.sent == []
    order = await load_order(session_factory, oid)
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.status == OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_no_evidence_means_no_action(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    oid = await seed_order(
        session_factory, payment_reference="ref_ghost", order_number="BL-GHOST-1", now=now
    )

    summary = await _service(session_factory, provider, notifier).run(preset("manual"), now=now)

    assert summary.skipped == 1
    assert summary.discrepancies_found == 0
    assert summary.successful_updates == 0
    # 三个策略依次尝试
    assert provider.calls == [
        ("verify", "ref_ghost"),
        ("search", "BL-GHOST-1"),
        ("verify", "BL-GHOST-1"),
    ]
    assert notifier.sent == []
    order = await load_order(session_factory, oid)
    assert order.payment_status == PaymentStatus.PENDING
    assert order.status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_metadata_hit_backfills_missing_reference(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    oid = await seed_order(session_factory, order_number="BL-META-1", now=now)
    provider.by_order_number["BL-META-1"] = paystack_tx(
        "ref_from_meta", "success", metadata={"order_number": "BL-META-1"}
    )

    summary = await _service(session_factory, provider, notifier).run(preset("manual"), now=now)

    assert summary.successful_updates == 1
    assert summary.discrepancies[0].strategy == "metadata_search"
    order = await load_order(session_factory, oid)
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.payment_reference == "ref_from_meta"


@pytest.mark.asyncio
async def test_provider_error_falls_through_to_next_strategy(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    oid = await seed_order(
        session_factory, payment_reference="ref_flaky", order_number="BL-FLAKY", now=now
    )
    provider.failing.add("ref_flaky")
    provider.by_order_number["BL-FLAKY"] = paystack_tx("ref_other", "failed")

    summary = await _service(session_factory, provider, notifier).run(preset("manual"), now=now)

    assert summary.successful_updates == 1
    assert summary.errors == []
    order = await load_order(session_factory, oid)
    assert order.payment_status == PaymentStatus.FAILED
    assert order.status == OrderStatus.CANCELLED
    # 已有 reference 的订单不回填
    assert order.payment_reference == "ref_flaky"

    failed = [x for x in notifier.sent if x[0] == NotificationKind.PAYMENT_FAILED]
    assert len(failed) == 1
    assert failed[0][2]["support_email"] == "help@bareloft.test"


@pytest.mark.asyncio
async def test_abandoned_payment_cancels_order(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    oid = await seed_order(
        session_factory,
        payment_status=PaymentStatus.PROCESSING,
        payment_reference="ref_ab",
        now=now,
    )
    provider.by_reference["ref_ab"] = paystack_tx("ref_ab", "abandoned")

    await _service(session_factory, provider, notifier).run(preset("regular"), now=now)

    order = await load_order(session_factory, oid)
    assert order.payment_status == PaymentStatus.CANCELLED
    assert order.status == OrderStatus.CANCELLED
    assert NotificationKind.ORDER_CANCELLED in notifier.kinds()


@pytest.mark.asyncio
async def test_ambiguous_provider_state_is_recorded_not_corrected(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    oid = await seed_order(session_factory, payment_reference="ref_mid", now=now)
    provider.by_reference["ref_mid"] = paystack_tx("ref_mid", "processing")

    summary = await _service(session_factory, provider, notifier).run(preset("manual"), now=now)

    assert summary.discrepancies_found == 1
    assert summary.failed_updates == 1
    assert summary.successful_updates == 0
    assert len(summary.errors) == 1
    assert "not definitive" in summary.errors[0]
    order = await load_order(session_factory, oid)
    assert order.payment_status == PaymentStatus.PENDING
    # 只有本轮汇总，没有客户 / 单笔管理员通知
    assert notifier.kinds() == [NotificationKind.ADMIN_RECONCILIATION_REPORT]


@pytest.mark.asyncio
async def test_recently_updated_and_old_orders_are_not_selected(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    fresh = await seed_order(
        session_factory, payment_reference="ref_fresh", updated_ago=timedelta(minutes=2), now=now
    )
    stale = await seed_order(
        session_factory, payment_reference="ref_stale", created_ago=timedelta(hours=40), now=now
    )
    # manual：4 小时窗口 + 6 小时缓冲
    in_buffer = await seed_order(
        session_factory, payment_reference="ref_buffer", created_ago=timedelta(hours=8), now=now
    )
    for ref in ("ref_fresh", "ref_stale", "ref_buffer"):
        provider.by_reference[ref] = paystack_tx(ref, "success")

    summary = await _service(session_factory, provider, notifier).run(preset("manual"), now=now)

    assert summary.total_processed == 1
    assert (await load_order(session_factory, in_buffer)).payment_status == PaymentStatus.COMPLETED
    assert (await load_order(session_factory, fresh)).payment_status == PaymentStatus.PENDING
    assert (await load_order(session_factory, stale)).payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_per_order_error_does_not_abort_run(
    session_factory, notifier: RecordingNotifier
):
    now = utc_now()

    class _ExplodingProvider(FakePaymentProvider):
        async def verify_by_reference(self, reference):
            if reference == "ref_bug":
                raise RuntimeError("unexpected payload")
            return await super().verify_by_reference(reference)

    provider = _ExplodingProvider()
    bad = await seed_order(session_factory, payment_reference="ref_bug", now=now)
    good = await seed_order(session_factory, payment_reference="ref_good", now=now)
    provider.by_reference["ref_good"] = paystack_tx("ref_good", "success")

    summary = await _service(session_factory, provider, notifier).run(preset("manual"), now=now)

    assert summary.total_processed == 2
    assert summary.failed_updates == 1
    assert summary.successful_updates == 1
    assert len(summary.errors) == 1
    assert "RuntimeError" in summary.errors[0]
    assert (await load_order(session_factory, good)).payment_status == PaymentStatus.COMPLETED
    assert (await load_order(session_factory, bad)).payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_webhook_race_means_no_update_and_no_notification(
    session_factory, notifier: RecordingNotifier
):
    now = utc_now()

    class _RacingProvider(FakePaymentProvider):
        """核实期间 webhook 抢先把订单改成 COMPLETED"""

        async def verify_by_reference(self, reference):
            async with session_factory() as s:
                async with s.begin():
                    await s.execute(
                        sa.update(Order)
                        .where(Order.payment_reference == reference)
                        .values(payment_status=PaymentStatus.COMPLETED, status=OrderStatus.CONFIRMED)
                    )
            return paystack_tx(reference, "success")

    oid = await seed_order(session_factory, payment_reference="ref_race", now=now)
    summary = await _service(session_factory, _RacingProvider(), notifier).run(
        preset("manual"), now=now
    )

    assert summary.discrepancies_found == 1
    assert summary.successful_updates == 0
    assert NotificationKind.PAYMENT_CONFIRMATION not in notifier.kinds()
    assert NotificationKind.ADMIN_ORDER_UPDATE not in notifier.kinds()
    assert (await load_order(session_factory, oid)).payment_status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_selection_failure_aborts_with_run_error(provider, notifier):
    def _broken_factory():
        raise RuntimeError("database unreachable")

    svc = _service(_broken_factory, provider, notifier)
    with pytest.raises(ReconciliationRunError) as ei:
        await svc.run(preset("manual"))
    assert ei.value.stage == "select_orders"
    assert isinstance(ei.value.cause, RuntimeError)


@pytest.mark.asyncio
async def test_batches_sleep_between_but_not_after_last(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    for i in range(5):
        await seed_order(session_factory, payment_reference=f"ref_b{i}", now=now)

    sleeper = _SleepRecorder()
    opts = ReconcileOptions(
        mode=ReconcileMode.MANUAL, time_range_hours=4, batch_size=2, batch_delay_seconds=0.5
    )
    summary = await _service(session_factory, provider, notifier, sleep=sleeper).run(opts, now=now)
    assert summary.total_processed == 5
    assert sleeper.calls == [0.5, 0.5]

    sleeper2 = _SleepRecorder()
    await _service(session_factory, provider, notifier, sleep=sleeper2).run(
        preset("emergency").with_overrides(time_range_hours=4, batch_size=2), now=now
    )
    assert sleeper2.calls == []


@pytest.mark.asyncio
async def test_notification_failure_does_not_break_correction(
    session_factory, provider: FakePaymentProvider
):
    now = utc_now()
    oid = await seed_order(session_factory, payment_reference="ref_n", now=now)
    provider.by_reference["ref_n"] = paystack_tx("ref_n", "success")

    summary = await _service(session_factory, provider, RecordingNotifier(fail=True)).run(
        preset("manual"), now=now
    )

    assert summary.successful_updates == 1
    assert summary.errors == []
    assert (await load_order(session_factory, oid)).payment_status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_admin_report_truncates_errors(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    for i in range(12):
        ref = f"ref_amb{i}"
        await seed_order(session_factory, payment_reference=ref, now=now)
        provider.by_reference[ref] = paystack_tx(ref, "processing")

    summary = await _service(session_factory, provider, notifier).run(preset("manual"), now=now)

    assert len(summary.errors) == 12
    reports = [x for x in notifier.sent if x[0] == NotificationKind.ADMIN_RECONCILIATION_REPORT]
    assert len(reports) == 1
    _, recipient, data = reports[0]
    assert recipient == ADMIN
    assert len(data["errors"]) == 10
    assert data["discrepancies_found"] == 12


def test_presets_match_schedule_table():
    assert preset("frequent").time_range_hours == 4
    assert preset("frequent").batch_size == 30
    assert preset("frequent").only_unconfirmed is True
    assert preset("regular").time_range_hours == 24
    assert preset("comprehensive").time_range_hours == 168
    assert preset("comprehensive").batch_size == 100
    assert preset("emergency").batch_delay_seconds == 0
    assert preset("emergency").mode == ReconcileMode.EMERGENCY
    with pytest.raises(ValueError):
        preset("hourly")
    with pytest.raises(ValueError):
        ReconcileOptions(batch_size=0)


@pytest.mark.asyncio
async def test_in_sync_order_counts_as_skipped(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    await seed_order(session_factory, payment_reference="ref_wait", now=now)
    provider.by_reference["ref_wait"] = paystack_tx("ref_wait", "pending")

    summary = await _service(session_factory, provider, notifier).run(preset("manual"), now=now)

    assert summary.total_processed == 1
    assert summary.discrepancies_found == 0
    assert summary.skipped == 1
    assert summary.skipped + summary.successful_updates + summary.failed_updates == 1
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_only_unconfirmed_flag_selects_same_orders(
    session_factory, provider: FakePaymentProvider, notifier: RecordingNotifier
):
    now = utc_now()
    await seed_order(session_factory, payment_reference="ref_a", now=now)
    await seed_order(
        session_factory,
        payment_status=PaymentStatus.PROCESSING,
        payment_reference="ref_b",
        now=now,
    )
    svc = _service(session_factory, provider, notifier)

    flagged = await svc.run(ReconcileOptions(time_range_hours=4, only_unconfirmed=True), now=now)
    plain = await svc.run(ReconcileOptions(time_range_hours=4, only_unconfirmed=False), now=now)

    assert flagged.total_processed == plain.total_processed == 2
