from __future__ import annotations

import base64
from pathlib import Path
from typing import Any

from tubbly.ledger.accounts import ProgramState
from tubbly.runtime import metrics
from tubbly.runtime.account_store import MemoryAccountStore
from tubbly.runtime.addressing import state_address
from tubbly.runtime.executor import TubblyExecutor
from tubbly.runtime.instruction import (
    IX_CHANGE_OWNERSHIP,
    IX_GET_REQUEST,
    IX_INITIALIZE,
    IX_SUBMIT,
    build_instruction,
)
from tubbly.runtime.program_config import DEV_PROGRAM_ID, ProgramConfig
from tubbly.runtime.sqlite_db import SqliteAccountStore, SqliteDB
from tubbly.testing.sigtools import identity, sign_instruction

PID = DEV_PROGRAM_ID
OWNER = identity("owner")
NEXT = identity("next-owner")
ALICE = identity("alice")


def _cfg(**kw: Any) -> ProgramConfig:
    base = dict(
        program_id=PID,
        mode="prod",
        db_path="",
        require_signatures=True,
        get_request_owner_only=False,
        allow_zero_amount=False,
        log_level="INFO",
    )
    base.update(kw)
    return ProgramConfig(**base)


def _signed(ex: TubblyExecutor, ix_type: str, label: str, payload: dict) -> dict:
    ix = build_instruction(ix_type, signer=identity(label), program_id=PID, payload=payload)
    return sign_instruction(ix, label=label, program_id=PID, nonce=ex.next_nonce(identity(label)))


def _owner(ex: TubblyExecutor) -> str:
    st = ex.read_account(state_address(PID))
    assert isinstance(st, ProgramState)
    return st.owner


def test_replayed_ownership_transfer_is_rejected() -> None:
    ex = TubblyExecutor(config=_cfg(), store=MemoryAccountStore())
    assert ex.submit_instruction(_signed(ex, IX_INITIALIZE, "owner", {}))["ok"] is True

    handover = _signed(ex, IX_CHANGE_OWNERSHIP, "owner", {"new_owner": NEXT})
    assert ex.submit_instruction(handover)["ok"] is True
    assert _owner(ex) == NEXT

    back = _signed(ex, IX_CHANGE_OWNERSHIP, "next-owner", {"new_owner": OWNER})
    assert ex.submit_instruction(back)["ok"] is True
    assert _owner(ex) == OWNER

    before = metrics.counter("ix_rejected_bad_nonce_total")
    out = ex.submit_instruction(handover)
    assert out["ok"] is False
    assert out["error"] == "bad_nonce"
    assert out["reason"] == "nonce_must_be_next"
    assert out["details"] == {"expected": 3, "got": 2}
    assert _owner(ex) == OWNER
    assert metrics.counter("ix_rejected_bad_nonce_total") == before + 1


def test_nonce_must_be_next_in_sequence() -> None:
    ex = TubblyExecutor(config=_cfg(), store=MemoryAccountStore())
    ix = build_instruction(IX_INITIALIZE, signer=OWNER, program_id=PID)

    out = ex.submit_instruction(sign_instruction(ix, label="owner", program_id=PID, nonce=2))
    assert (out["error"], out["details"]) == ("bad_nonce", {"expected": 1, "got": 2})
    assert ex.next_nonce(OWNER) == 1

    assert ex.submit_instruction(sign_instruction(ix, label="owner", program_id=PID, nonce=1))["ok"] is True
    assert ex.next_nonce(OWNER) == 2


def test_nonces_are_per_signer() -> None:
    ex = TubblyExecutor(config=_cfg(), store=MemoryAccountStore())
    ex.submit_instruction(_signed(ex, IX_INITIALIZE, "owner", {}))
    ex.submit_instruction(_signed(ex, IX_CHANGE_OWNERSHIP, "owner", {"new_owner": OWNER}))

    assert ex.next_nonce(OWNER) == 3
    assert ex.next_nonce(ALICE) == 1
    assert ex.submit_instruction(_signed(ex, IX_SUBMIT, "alice", {"req_id": 1, "amount": 5}))["ok"] is True


def test_failed_instruction_still_consumes_its_nonce() -> None:
    ex = TubblyExecutor(config=_cfg(), store=MemoryAccountStore())

    # Not initialized yet: the submit fails but its nonce is spent.
    env = _signed(ex, IX_SUBMIT, "alice", {"req_id": 1, "amount": 5})
    out = ex.submit_instruction(env)
    assert (out["ok"], out["error"]) == (False, "not_found")
    assert ex.next_nonce(ALICE) == 2

    ex.submit_instruction(_signed(ex, IX_INITIALIZE, "owner", {}))
    assert ex.submit_instruction(env)["error"] == "bad_nonce"


def test_reads_do_not_touch_nonces() -> None:
    ex = TubblyExecutor(config=_cfg(), store=MemoryAccountStore())
    ex.submit_instruction(_signed(ex, IX_INITIALIZE, "owner", {}))
    ex.submit_instruction(_signed(ex, IX_SUBMIT, "alice", {"req_id": 1, "amount": 5}))

    ix = build_instruction(IX_GET_REQUEST, signer=ALICE, program_id=PID, payload={"req_id": 1})
    read = sign_instruction(ix, label="alice", program_id=PID, nonce=0)
    for _ in range(2):
        out = ex.submit_instruction(read)
        assert out["ok"] is True, out
    assert ex.next_nonce(ALICE) == 2


def test_nonces_persist_in_sqlite(tmp_path: Path) -> None:
    db_path = str(tmp_path / "tubbly.db")

    ex1 = TubblyExecutor(config=_cfg(db_path=db_path))
    init = _signed(ex1, IX_INITIALIZE, "owner", {})
    assert ex1.submit_instruction(init)["ok"] is True

    store = SqliteAccountStore(db=SqliteDB(path=db_path))
    assert store.read_nonce(OWNER) == 1

    ex2 = TubblyExecutor(config=_cfg(db_path=db_path))
    assert ex2.next_nonce(OWNER) == 2
    assert ex2.submit_instruction(init)["error"] == "bad_nonce"


def test_read_account_accepts_any_key_encoding() -> None:
    ex = TubblyExecutor(config=_cfg(mode="dev", require_signatures=False), store=MemoryAccountStore())
    ex.initialize(OWNER)

    addr = state_address(PID)
    for form in (addr, addr.upper(), base64.b64encode(bytes.fromhex(addr)).decode("ascii")):
        st = ex.read_account(form)
        assert isinstance(st, ProgramState)
        assert st.owner == OWNER
