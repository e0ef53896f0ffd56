from __future__ import annotations

import pytest

from tubbly.ledger.balance import checked_add_u64, credit
from tubbly.ledger.constants import U64_MAX
from tubbly.runtime.errors import ArithmeticOverflow, BalanceOverflow


def test_credit_adds() -> None:
    assert credit(0, 10) == 10
    assert credit(U64_MAX - 10, 10) == U64_MAX


def test_credit_overflow_is_balance_overflow() -> None:
    with pytest.raises(BalanceOverflow) as ei:
        credit(U64_MAX - 5, 10)
    assert ei.value.code == "balance_overflow"
    assert ei.value.anchor_code == 6004


def test_checked_add_rejects_overflow_and_negatives() -> None:
    assert checked_add_u64(1, 2) == 3
    with pytest.raises(ArithmeticOverflow):
        checked_add_u64(U64_MAX, 1, what="request_counter")
    with pytest.raises(ArithmeticOverflow):
        checked_add_u64(-1, 1)
