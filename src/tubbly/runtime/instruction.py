from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

from tubbly.runtime.addressing import request_address, state_address, user_address

IX_INITIALIZE = "INITIALIZE"
IX_SUBMIT = "SUBMIT"
IX_CONFIRM = "CONFIRM"
IX_BALANCE_OF = "BALANCE_OF"
IX_GET_REQUEST = "GET_REQUEST"
IX_CHANGE_OWNERSHIP = "CHANGE_OWNERSHIP"

SUPPORTED_IX_TYPES = frozenset(
    {IX_INITIALIZE, IX_SUBMIT, IX_CONFIRM, IX_BALANCE_OF, IX_GET_REQUEST, IX_CHANGE_OWNERSHIP}
)
READ_ONLY_IX_TYPES = frozenset({IX_BALANCE_OF, IX_GET_REQUEST})


@dataclass(frozen=True)
class IxReject:
    code: str
    reason: str
    details: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class IxVerdict:
    ok: bool
    code: str
    reason: str
    details: Optional[Dict[str, Any]] = None

    def __iter__(self) -> Iterator[Any]:
        """Allow `ok, rej = admit_instruction(...)` unpacking."""
        if self.ok:
            yield True
            yield None
        else:
            yield False
            yield IxReject(self.code, self.reason, self.details)

    @staticmethod
    def admit() -> "IxVerdict":
        return IxVerdict(True, "ok", "admitted", None)

    @staticmethod
    def reject(code: str, reason: str, details: Optional[Dict[str, Any]] = None) -> "IxVerdict":
        return IxVerdict(False, code, reason, details)


def _as_nonce(v: Any) -> int:
    if v is None:
        return 0
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise ValueError(f"nonce must be a non-negative integer; got {v!r}")
    return v


@dataclass(frozen=True)
class InstructionEnvelope:
    ix_type: str
    signer: str
    payload: Dict[str, Any] = field(default_factory=dict)
    accounts: Dict[str, str] = field(default_factory=dict)
    # Per-signer sequence number, bound into the signature. 0 means unset.
    nonce: int = 0
    sig: str = ""

    @staticmethod
    def from_json(j: Any) -> "InstructionEnvelope":
        if isinstance(j, InstructionEnvelope):
            return j
        if not isinstance(j, dict):
            j = dict(j)
        return InstructionEnvelope(
            ix_type=str(j.get("ix_type", "") or "").strip().upper(),
            signer=str(j.get("signer", "") or "").strip(),
            payload=dict(j.get("payload", {}) or {}),
            accounts={str(k): str(v) for k, v in dict(j.get("accounts", {}) or {}).items()},
            nonce=_as_nonce(j.get("nonce")),
            sig=str(j.get("sig", "") or ""),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "ix_type": self.ix_type,
            "signer": self.signer,
            "payload": self.payload,
            "accounts": self.accounts,
            "nonce": self.nonce,
            "sig": self.sig,
        }

    @property
    def read_only(self) -> bool:
        return self.ix_type in READ_ONLY_IX_TYPES


def derive_accounts(
    ix_type: str,
    *,
    program_id: str,
    payload: Dict[str, Any],
    user: Optional[str] = None,
) -> Dict[str, str]:
    """Compute the account addresses an instruction must carry.

    CONFIRM needs the request's caller (`user`), which only the stored request
    knows; clients read it back before building the instruction.
    """
    t = str(ix_type).strip().upper()
    if t == IX_INITIALIZE or t == IX_CHANGE_OWNERSHIP:
        return {"state": state_address(program_id)}
    if t in (IX_SUBMIT, IX_GET_REQUEST):
        return {
            "state": state_address(program_id),
            "request": request_address(program_id, int(payload["req_id"])),
        }
    if t == IX_CONFIRM:
        if user is None:
            raise ValueError("CONFIRM needs the request caller to derive user_account")
        return {
            "state": state_address(program_id),
            "request": request_address(program_id, int(payload["req_id"])),
            "user_account": user_address(program_id, user),
        }
    if t == IX_BALANCE_OF:
        return {"user_account": user_address(program_id, str(payload["user"]))}
    raise ValueError(f"unsupported ix_type: {ix_type!r}")


def build_instruction(
    ix_type: str,
    *,
    signer: str,
    program_id: str,
    payload: Optional[Dict[str, Any]] = None,
    user: Optional[str] = None,
    nonce: int = 0,
) -> InstructionEnvelope:
    t = str(ix_type).strip().upper()
    p = dict(payload or {})
    return InstructionEnvelope(
        ix_type=t,
        signer=str(signer),
        payload=p,
        accounts=derive_accounts(t, program_id=program_id, payload=p, user=user),
        nonce=_as_nonce(nonce),
    )


__all__ = [
    "IX_INITIALIZE",
    "IX_SUBMIT",
    "IX_CONFIRM",
    "IX_BALANCE_OF",
    "IX_GET_REQUEST",
    "IX_CHANGE_OWNERSHIP",
    "SUPPORTED_IX_TYPES",
    "READ_ONLY_IX_TYPES",
    "IxReject",
    "IxVerdict",
    "InstructionEnvelope",
    "derive_accounts",
    "build_instruction",
]
