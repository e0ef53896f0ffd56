# src/tubbly/runtime/program.py
from __future__ import annotations

"""Instruction handlers.

Each handler runs inside one store transaction owned by the executor. Handlers
follow a fixed order: verify supplied addresses, run authorization gates, load
records, then write. Any ProgramError raised along the way aborts the
instruction with nothing committed, so handlers never clean up after
themselves.

Request states: Nonexistent -> Active (submit) -> Closed (confirm).
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from tubbly.ledger.accounts import ProgramState, Request, UserBalance
from tubbly.ledger.balance import checked_add_u64, credit
from tubbly.runtime.account_store import Accounts
from tubbly.runtime.addressing import expect_address, request_seeds, state_seeds, user_seeds
from tubbly.runtime.errors import (
    AddressMismatch,
    AlreadyInitialized,
    InvalidAmount,
    InvalidInstruction,
    NotFound,
    RequestNotActive,
)
from tubbly.runtime.events import Confirmation, Event, OwnershipChanged, Submission
from tubbly.runtime.gates import require_owner, require_self, require_valid_owner
from tubbly.runtime.instruction import (
    IX_BALANCE_OF,
    IX_CHANGE_OWNERSHIP,
    IX_CONFIRM,
    IX_GET_REQUEST,
    IX_INITIALIZE,
    IX_SUBMIT,
    InstructionEnvelope,
)
from tubbly.runtime.ix_schema import (
    BalanceOfPayload,
    ChangeOwnershipPayload,
    ConfirmPayload,
    GetRequestPayload,
    SubmitPayload,
    parse_payload,
)

Json = Dict[str, Any]


@dataclass
class ProgramPolicy:
    get_request_owner_only: bool = False
    allow_zero_amount: bool = False


@dataclass
class IxContext:
    program_id: str
    signer: str
    accounts: Accounts
    policy: ProgramPolicy = field(default_factory=ProgramPolicy)
    events: List[Event] = field(default_factory=list)


def _account(env: InstructionEnvelope, role: str) -> Any:
    return env.accounts.get(role)


def _state_address(ctx: IxContext, env: InstructionEnvelope) -> str:
    return expect_address(
        role="state", supplied=_account(env, "state"), seeds=state_seeds(), program_id=ctx.program_id
    )


def _request_address(ctx: IxContext, env: InstructionEnvelope, req_id: int) -> str:
    return expect_address(
        role="request", supplied=_account(env, "request"), seeds=request_seeds(req_id), program_id=ctx.program_id
    )


def _user_address(ctx: IxContext, env: InstructionEnvelope, identity: str) -> str:
    return expect_address(
        role="user_account", supplied=_account(env, "user_account"), seeds=user_seeds(identity), program_id=ctx.program_id
    )


def _load_state(ctx: IxContext, addr: str) -> ProgramState:
    st = ctx.accounts.load_optional(addr, ProgramState)
    if st is None:
        raise NotFound("program_not_initialized", {"address": addr})
    return st


# ----------------------------
# Handlers
# ----------------------------


def _apply_initialize(ctx: IxContext, env: InstructionEnvelope) -> Json:
    parse_payload(IX_INITIALIZE, env.payload)
    addr = _state_address(ctx, env)

    if ctx.accounts.exists(addr):
        raise AlreadyInitialized("program_state_exists", {"address": addr})

    st = ProgramState(owner=ctx.signer, request_counter=0)
    ctx.accounts.create(addr, st)
    return {"applied": IX_INITIALIZE, "owner": st.owner}


def _apply_submit(ctx: IxContext, env: InstructionEnvelope) -> Json:
    p = parse_payload(IX_SUBMIT, env.payload)
    assert isinstance(p, SubmitPayload)

    if p.caller is not None:
        require_self(p.caller, ctx.signer)

    if p.amount == 0 and not ctx.policy.allow_zero_amount:
        raise InvalidAmount("amount_must_be_positive", {"req_id": p.req_id})

    st_addr = _state_address(ctx, env)
    req_addr = _request_address(ctx, env, p.req_id)

    st = _load_state(ctx, st_addr)

    req = Request(req_id=p.req_id, caller=ctx.signer, amount=p.amount, active=True)
    ctx.accounts.create(req_addr, req)

    counter = checked_add_u64(st.request_counter, 1, what="request_counter")
    ctx.accounts.store(st_addr, ProgramState(owner=st.owner, request_counter=counter))

    ctx.events.append(Submission(req_id=req.req_id, caller=req.caller, amount=req.amount))
    return {"applied": IX_SUBMIT, "req_id": req.req_id, "request_counter": counter}


def _apply_confirm(ctx: IxContext, env: InstructionEnvelope) -> Json:
    p = parse_payload(IX_CONFIRM, env.payload)
    assert isinstance(p, ConfirmPayload)

    st_addr = _state_address(ctx, env)
    st = _load_state(ctx, st_addr)
    require_owner(st, ctx.signer)

    req_addr = _request_address(ctx, env, p.req_id)
    req = ctx.accounts.load(req_addr, Request)
    if req.req_id != p.req_id:
        raise AddressMismatch("request_id_mismatch", {"supplied": p.req_id, "stored": req.req_id})
    if not req.active:
        raise RequestNotActive("request_not_active", {"req_id": req.req_id})

    user_addr = _user_address(ctx, env, req.caller)
    ub = ctx.accounts.load_optional(user_addr, UserBalance)
    if ub is None:
        ub = UserBalance(owner=req.caller, balance=0)
        ctx.accounts.create(user_addr, ub)

    new_balance = credit(ub.balance, req.amount)

    ctx.accounts.store(user_addr, UserBalance(owner=ub.owner, balance=new_balance))
    ctx.accounts.store(req_addr, Request(req_id=req.req_id, caller=req.caller, amount=req.amount, active=False))

    ctx.events.append(
        Confirmation(req_id=req.req_id, caller=req.caller, amount=req.amount, new_balance=new_balance)
    )
    return {"applied": IX_CONFIRM, "req_id": req.req_id, "caller": req.caller, "new_balance": new_balance}


def _apply_balance_of(ctx: IxContext, env: InstructionEnvelope) -> Json:
    p = parse_payload(IX_BALANCE_OF, env.payload)
    assert isinstance(p, BalanceOfPayload)

    user = p.user.lower()
    addr = _user_address(ctx, env, user)
    ub = ctx.accounts.load_optional(addr, UserBalance)
    return {"user": user, "balance": 0 if ub is None else ub.balance}


def _apply_get_request(ctx: IxContext, env: InstructionEnvelope) -> Json:
    p = parse_payload(IX_GET_REQUEST, env.payload)
    assert isinstance(p, GetRequestPayload)

    if ctx.policy.get_request_owner_only:
        st = _load_state(ctx, _state_address(ctx, env))
        require_owner(st, ctx.signer)

    addr = _request_address(ctx, env, p.req_id)
    req = ctx.accounts.load(addr, Request)
    return req.to_json()


def _apply_change_ownership(ctx: IxContext, env: InstructionEnvelope) -> Json:
    p = parse_payload(IX_CHANGE_OWNERSHIP, env.payload)
    assert isinstance(p, ChangeOwnershipPayload)

    st_addr = _state_address(ctx, env)
    st = _load_state(ctx, st_addr)
    previous = require_owner(st, ctx.signer)
    new_owner = require_valid_owner(p.new_owner)

    ctx.accounts.store(st_addr, ProgramState(owner=new_owner, request_counter=st.request_counter))

    ctx.events.append(OwnershipChanged(previous_owner=previous, new_owner=new_owner))
    return {"applied": IX_CHANGE_OWNERSHIP, "previous_owner": previous, "new_owner": new_owner}


_HANDLERS: Dict[str, Callable[[IxContext, InstructionEnvelope], Json]] = {
    IX_INITIALIZE: _apply_initialize,
    IX_SUBMIT: _apply_submit,
    IX_CONFIRM: _apply_confirm,
    IX_BALANCE_OF: _apply_balance_of,
    IX_GET_REQUEST: _apply_get_request,
    IX_CHANGE_OWNERSHIP: _apply_change_ownership,
}


def apply_instruction(ctx: IxContext, env: InstructionEnvelope) -> Json:
    """Apply one instruction against ctx.accounts and return its result data.

    Events produced by the instruction are appended to ctx.events; delivering
    them is the caller's job once the writes have committed.
    """
    fn = _HANDLERS.get(env.ix_type)
    if fn is None:
        raise InvalidInstruction("unsupported_ix_type", {"ix_type": env.ix_type})
    return fn(ctx, env)


__all__ = ["ProgramPolicy", "IxContext", "apply_instruction"]
