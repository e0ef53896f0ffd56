from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tubbly.crypto.sig import normalize_key32
from tubbly.ledger.accounts import Record, Request, decode_any
from tubbly.runtime.account_store import Accounts, AccountStore, MemoryAccountStore
from tubbly.runtime.addressing import request_address
from tubbly.runtime.errors import BadNonce, InvalidInstruction, ProgramError
from tubbly.runtime.events import Event, EventSink
from tubbly.runtime.instruction import (
    IX_BALANCE_OF,
    IX_CHANGE_OWNERSHIP,
    IX_CONFIRM,
    IX_GET_REQUEST,
    IX_INITIALIZE,
    IX_SUBMIT,
    InstructionEnvelope,
    build_instruction,
)
from tubbly.runtime.ix_admission import admit_instruction
from tubbly.runtime.metrics import inc_counter
from tubbly.runtime.program import IxContext, ProgramPolicy, apply_instruction
from tubbly.runtime.program_config import ProgramConfig
from tubbly.runtime.sqlite_db import SqliteAccountStore, SqliteDB
from tubbly.runtime.structured_logging import log_event

Json = Dict[str, Any]

logger = logging.getLogger("tubbly.executor")


@dataclass
class IxResult:
    ok: bool
    ix_type: str
    data: Json = field(default_factory=dict)
    events: List[Event] = field(default_factory=list)

    def to_json(self) -> Json:
        return {
            "ok": self.ok,
            "ix_type": self.ix_type,
            "data": self.data,
            "events": [e.to_json() for e in self.events],
        }


def _signer_identity(signer: str) -> str:
    try:
        return normalize_key32(signer)
    except ValueError:
        raise InvalidInstruction("bad_signer", {"signer": str(signer)}) from None


def _default_store(cfg: ProgramConfig) -> AccountStore:
    if not str(cfg.db_path or "").strip():
        return MemoryAccountStore()
    return SqliteAccountStore(db=SqliteDB(path=cfg.db_path))


class TubblyExecutor:
    """Runs instructions against an account store.

    Each instruction executes inside a single store transaction: either every
    write it makes commits, or (on any ProgramError) none do. Events raised by
    the instruction are delivered to subscribed sinks only after the commit.
    """

    def __init__(
        self,
        *,
        config: ProgramConfig,
        store: Optional[AccountStore] = None,
        sinks: Optional[List[EventSink]] = None,
    ) -> None:
        self.config = config
        self.program_id = str(config.program_id)
        self.store: AccountStore = store if store is not None else _default_store(config)
        self._sinks: List[EventSink] = list(sinks or [])
        self._policy = ProgramPolicy(
            get_request_owner_only=bool(config.get_request_owner_only),
            allow_zero_amount=bool(config.allow_zero_amount),
        )

    def subscribe(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    # ----------------------------
    # Execution
    # ----------------------------

    def execute(self, env: Any) -> IxResult:
        """Apply one instruction atomically.

        The envelope is trusted as-is (no signature check); use
        submit_instruction() for untrusted input. Raises ProgramError.
        """
        ix = InstructionEnvelope.from_json(env)

        try:
            signer = _signer_identity(ix.signer)
            with self.store.transaction(write=not ix.read_only) as txn:
                ctx = IxContext(
                    program_id=self.program_id,
                    signer=signer,
                    accounts=Accounts(txn),
                    policy=self._policy,
                )
                data = apply_instruction(ctx, ix)
        except ProgramError as e:
            inc_counter("ix_rejected_total")
            inc_counter(f"ix_rejected_{e.code}_total")
            log_event(
                logger,
                "ix_rejected",
                level=logging.WARNING,
                ix_type=ix.ix_type,
                signer=ix.signer,
                error=e.code,
                reason=e.reason,
                details=e.details,
            )
            raise

        inc_counter("ix_applied_total")
        inc_counter(f"ix_applied_{ix.ix_type.lower()}_total")
        log_event(logger, "ix_applied", ix_type=ix.ix_type, signer=ix.signer, events=len(ctx.events))

        self._deliver(ctx.events)
        return IxResult(ok=True, ix_type=ix.ix_type, data=data, events=list(ctx.events))

    def _deliver(self, events: List[Event]) -> None:
        # Writes are already committed; a failing sink must not surface as an
        # instruction failure.
        for ev in events:
            for sink in list(self._sinks):
                try:
                    sink.emit(ev)
                except Exception as e:
                    inc_counter("event_sink_failed_total")
                    log_event(
                        logger,
                        "event_sink_failed",
                        level=logging.ERROR,
                        name=ev.NAME,
                        sink=type(sink).__name__,
                        err=repr(e),
                    )

    def _claim_nonce(self, ix: InstructionEnvelope) -> None:
        # Claimed in its own transaction: a nonce stays spent even when the
        # instruction it carried is later rejected.
        signer = _signer_identity(ix.signer)
        try:
            with self.store.transaction(write=True) as txn:
                last = txn.get_nonce(signer)
                if ix.nonce != last + 1:
                    raise BadNonce("nonce_must_be_next", {"expected": last + 1, "got": ix.nonce})
                txn.put_nonce(signer, ix.nonce)
        except ProgramError as e:
            inc_counter("ix_rejected_total")
            inc_counter(f"ix_rejected_{e.code}_total")
            log_event(
                logger,
                "ix_rejected",
                level=logging.WARNING,
                stage="nonce",
                ix_type=ix.ix_type,
                signer=ix.signer,
                error=e.code,
                reason=e.reason,
                details=e.details,
            )
            raise

    def next_nonce(self, signer: str) -> int:
        """Nonce the signer's next state-changing instruction must carry."""
        return self.store.read_nonce(_signer_identity(signer)) + 1

    def submit_instruction(self, env: Json) -> Json:
        """Admit and execute an untrusted JSON envelope; never raises ProgramError.

        State-changing instructions consume their nonce before executing when
        signatures are required or a nonce is supplied.
        """
        verdict = admit_instruction(env, config=self.config)
        if not verdict.ok:
            inc_counter("ix_rejected_total")
            inc_counter("ix_admission_rejected_total")
            log_event(
                logger,
                "ix_rejected",
                level=logging.WARNING,
                stage="admission",
                error=verdict.code,
                reason=verdict.reason,
                details=verdict.details,
            )
            return {"ok": False, "error": verdict.code, "reason": verdict.reason, "details": verdict.details}

        try:
            ix = InstructionEnvelope.from_json(env)
            if not ix.read_only and (self.config.require_signatures or ix.nonce > 0):
                self._claim_nonce(ix)
            res = self.execute(ix)
        except ProgramError as e:
            return e.to_json()
        return res.to_json()

    # ----------------------------
    # Reads
    # ----------------------------

    def read_account(self, address: str) -> Optional[Record]:
        """Decode the record at an address given as hex or base64."""
        data = self.store.read_raw(normalize_key32(address))
        if data is None:
            return None
        return decode_any(data)

    # ----------------------------
    # Convenience builders (trusted, in-process callers)
    # ----------------------------

    def _run(self, ix_type: str, *, signer: str, payload: Json, user: Optional[str] = None) -> Json:
        ix = build_instruction(ix_type, signer=signer, program_id=self.program_id, payload=payload, user=user)
        return self.execute(ix).data

    def initialize(self, caller: str) -> Json:
        return self._run(IX_INITIALIZE, signer=caller, payload={})

    def submit(self, caller: str, req_id: int, amount: int) -> Json:
        return self._run(IX_SUBMIT, signer=caller, payload={"req_id": int(req_id), "amount": int(amount)})

    def confirm(self, caller: str, req_id: int) -> Json:
        # user_account is derived from the stored request's caller.
        rec = self.read_account(request_address(self.program_id, int(req_id)))
        user = rec.caller if isinstance(rec, Request) else caller
        return self._run(IX_CONFIRM, signer=caller, payload={"req_id": int(req_id)}, user=user)

    def balance_of(self, user: str) -> int:
        out = self._run(IX_BALANCE_OF, signer=user, payload={"user": str(user).lower()})
        return int(out["balance"])

    def get_request(self, req_id: int, *, viewer: Optional[str] = None) -> Json:
        signer = viewer if viewer is not None else "00" * 32
        return self._run(IX_GET_REQUEST, signer=signer, payload={"req_id": int(req_id)})

    def change_ownership(self, caller: str, new_owner: str) -> Json:
        return self._run(IX_CHANGE_OWNERSHIP, signer=caller, payload={"new_owner": str(new_owner)})


__all__ = ["IxResult", "TubblyExecutor"]
