from __future__ import annotations

"""Instruction payload schemas.

Admission validates payload shape early (types, ranges, required keys, no
unknown keys) and the program re-parses the payload before applying it, so an
instruction that skips admission is held to the same shapes.
"""

from typing import Annotated, Any, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tubbly.ledger.constants import U64_MAX, U128_MAX
from tubbly.runtime.errors import InvalidInstruction
from tubbly.runtime.instruction import (
    IX_BALANCE_OF,
    IX_CHANGE_OWNERSHIP,
    IX_CONFIRM,
    IX_GET_REQUEST,
    IX_INITIALIZE,
    IX_SUBMIT,
)

Json = Dict[str, Any]

Identity = Annotated[str, Field(pattern=r"^[0-9a-fA-F]{64}$")]
U64 = Annotated[int, Field(ge=0, le=U64_MAX)]
U128 = Annotated[int, Field(ge=0, le=U128_MAX)]


class _StrictModel(BaseModel):
    """Strict model: reject unknown keys."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class _RequestIdModel(_StrictModel):
    req_id: U128

    @field_validator("req_id", mode="before")
    @classmethod
    def _no_bool(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("req_id must be an integer")
        return v


class InitializePayload(_StrictModel):
    pass


class SubmitPayload(_RequestIdModel):
    amount: U64
    # Optional claimed caller; when present it must be the signer.
    caller: Optional[Identity] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_no_bool(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("amount must be an integer")
        return v


class ConfirmPayload(_RequestIdModel):
    pass


class GetRequestPayload(_RequestIdModel):
    pass


class BalanceOfPayload(_StrictModel):
    user: Identity


class ChangeOwnershipPayload(_StrictModel):
    new_owner: Identity


Schema = Type[_StrictModel]

_SCHEMA_BY_IX_TYPE: Dict[str, Schema] = {
    IX_INITIALIZE: InitializePayload,
    IX_SUBMIT: SubmitPayload,
    IX_CONFIRM: ConfirmPayload,
    IX_GET_REQUEST: GetRequestPayload,
    IX_BALANCE_OF: BalanceOfPayload,
    IX_CHANGE_OWNERSHIP: ChangeOwnershipPayload,
}


def schema_for(ix_type: str) -> Optional[Schema]:
    return _SCHEMA_BY_IX_TYPE.get(str(ix_type or "").strip().upper())


def validate_payload(*, ix_type: str, payload: Any) -> Tuple[bool, str, str, Optional[Json]]:
    """Validate payload against its schema.

    Returns: (ok, code, reason, details)
    """
    sch = schema_for(ix_type)
    if sch is None:
        return False, "schema:unknown_ix_type", "no_schema_for_ix_type", {"ix_type": str(ix_type)}

    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return False, "schema:payload_not_object", "payload_must_be_object", None

    try:
        sch.model_validate(payload)
    except ValidationError as ve:
        return False, "schema:validation_error", "payload_schema_mismatch", {"errors": _error_list(ve)}
    return True, "", "", None


def _error_list(ve: ValidationError) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": str(e.get("msg", ""))} for e in ve.errors()]


def parse_payload(ix_type: str, payload: Any) -> _StrictModel:
    """Parse a payload into its model or raise InvalidInstruction."""
    sch = schema_for(ix_type)
    if sch is None:
        raise InvalidInstruction("unsupported_ix_type", {"ix_type": str(ix_type)})
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise InvalidInstruction("payload_must_be_object", {"ix_type": str(ix_type)})
    try:
        return sch.model_validate(payload)
    except ValidationError as ve:
        raise InvalidInstruction("payload_schema_mismatch", {"ix_type": str(ix_type), "errors": _error_list(ve)})


__all__ = [
    "InitializePayload",
    "SubmitPayload",
    "ConfirmPayload",
    "GetRequestPayload",
    "BalanceOfPayload",
    "ChangeOwnershipPayload",
    "schema_for",
    "validate_payload",
    "parse_payload",
]
