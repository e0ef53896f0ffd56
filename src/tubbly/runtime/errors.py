from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class ProgramError(Exception):
    """Canonical error type for instruction failures.

    Raising any ProgramError aborts the whole instruction: no account write
    commits and no event is delivered.
    """

    code: str
    reason: str
    details: Any | None = None

    # Numeric Anchor error code (6000+) for failures the on-chain program reports.
    anchor_code: Optional[int] = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "error": self.code, "reason": self.reason, "details": self.details}
        if self.anchor_code is not None:
            out["anchor_code"] = int(self.anchor_code)
        return out


class Unauthorized(ProgramError):
    def __init__(self, reason: str = "not_owner", details: Any | None = None) -> None:
        super().__init__("unauthorized", reason, details, 6000)


class AlreadyExists(ProgramError):
    def __init__(self, reason: str = "account_exists", details: Any | None = None) -> None:
        super().__init__("already_exists", reason, details, 6001)


class RequestNotActive(ProgramError):
    def __init__(self, reason: str = "request_not_active", details: Any | None = None) -> None:
        super().__init__("request_not_active", reason, details, 6002)


class InvalidOwner(ProgramError):
    def __init__(self, reason: str = "new_owner_is_zero", details: Any | None = None) -> None:
        super().__init__("invalid_owner", reason, details, 6003)


class BalanceOverflow(ProgramError):
    def __init__(self, reason: str = "balance_overflow", details: Any | None = None) -> None:
        super().__init__("balance_overflow", reason, details, 6004)


class NotFound(ProgramError):
    def __init__(self, reason: str = "account_not_found", details: Any | None = None) -> None:
        super().__init__("not_found", reason, details)


class AddressMismatch(ProgramError):
    def __init__(self, reason: str = "address_mismatch", details: Any | None = None) -> None:
        super().__init__("address_mismatch", reason, details)


class AlreadyInitialized(ProgramError):
    def __init__(self, reason: str = "program_state_exists", details: Any | None = None) -> None:
        super().__init__("already_initialized", reason, details)


class ArithmeticOverflow(ProgramError):
    def __init__(self, reason: str = "u64_overflow", details: Any | None = None) -> None:
        super().__init__("overflow", reason, details)


class InvalidAmount(ProgramError):
    def __init__(self, reason: str = "amount_must_be_positive", details: Any | None = None) -> None:
        super().__init__("invalid_amount", reason, details)


class InvalidInstruction(ProgramError):
    def __init__(self, reason: str, details: Any | None = None) -> None:
        super().__init__("invalid_instruction", reason, details)


class BadNonce(ProgramError):
    def __init__(self, reason: str = "nonce_must_be_next", details: Any | None = None) -> None:
        super().__init__("bad_nonce", reason, details)


__all__ = [
    "ProgramError",
    "Unauthorized",
    "AlreadyExists",
    "RequestNotActive",
    "InvalidOwner",
    "BalanceOverflow",
    "NotFound",
    "AddressMismatch",
    "AlreadyInitialized",
    "ArithmeticOverflow",
    "InvalidAmount",
    "InvalidInstruction",
    "BadNonce",
]
