# tests/services/test_payment_status.py
from __future__ import annotations

import pytest

from app.models.enums import OrderStatus, PaymentStatus
from app.services.payment_status import (
    NON_TERMINAL,
    TERMINAL,
    can_transition,
    fulfillment_status_for,
    is_terminal,
    map_provider_status,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("success", PaymentStatus.COMPLETED),
        ("SUCCESS", PaymentStatus.COMPLETED),
        ("failed", PaymentStatus.FAILED),
        ("cancelled", PaymentStatus.CANCELLED),
        ("abandoned", PaymentStatus.CANCELLED),
        ("pending", PaymentStatus.PENDING),
        ("processing", PaymentStatus.PROCESSING),
        ("ongoing", PaymentStatus.PENDING),
        ("", PaymentStatus.PENDING),
        (None, PaymentStatus.PENDING),
    ],
)
def test_map_provider_status(raw, expected):
    assert map_provider_status(raw) == expected


def test_terminal_sets_partition_all_statuses():
    assert NON_TERMINAL | TERMINAL == set(PaymentStatus)
    assert NON_TERMINAL.isdisjoint(TERMINAL)
    assert is_terminal("completed") is True
    assert is_terminal(PaymentStatus.PROCESSING) is False


def test_only_non_terminal_to_terminal_is_allowed():
    for old in NON_TERMINAL:
        for new in TERMINAL:
            assert can_transition(old, new)

    # 终态不回退、不互转
    assert not can_transition(PaymentStatus.COMPLETED, PaymentStatus.PENDING)
    assert not can_transition(PaymentStatus.COMPLETED, PaymentStatus.FAILED)
    assert not can_transition(PaymentStatus.CANCELLED, PaymentStatus.COMPLETED)
    # 非终态之间也不由对账推动
    assert not can_transition(PaymentStatus.PENDING, PaymentStatus.PROCESSING)
    # 原地不动总是允许
    assert can_transition(PaymentStatus.COMPLETED, PaymentStatus.COMPLETED)


def test_fulfillment_status_for():
    assert fulfillment_status_for(PaymentStatus.COMPLETED) == OrderStatus.CONFIRMED
    assert fulfillment_status_for(PaymentStatus.FAILED) == OrderStatus.CANCELLED
    assert fulfillment_status_for(PaymentStatus.CANCELLED) == OrderStatus.CANCELLED
    assert fulfillment_status_for(PaymentStatus.PENDING) is None
