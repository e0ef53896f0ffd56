from __future__ import annotations

from tubbly.ledger.constants import U64_MAX
from tubbly.runtime.errors import ArithmeticOverflow, BalanceOverflow


def checked_add_u64(a: int, b: int, *, what: str = "value") -> int:
    total = int(a) + int(b)
    if int(a) < 0 or int(b) < 0 or total > U64_MAX:
        raise ArithmeticOverflow("u64_overflow", {"field": what, "a": int(a), "b": int(b)})
    return total


def credit(balance: int, amount: int) -> int:
    """Return balance + amount.

    The ledger is credit-only. Raises BalanceOverflow if the sum does not fit
    in an unsigned 64-bit integer; the caller's balance is never touched.
    """
    try:
        return checked_add_u64(balance, amount, what="balance")
    except ArithmeticOverflow as e:
        raise BalanceOverflow("balance_overflow", e.details) from e


__all__ = ["checked_add_u64", "credit"]
