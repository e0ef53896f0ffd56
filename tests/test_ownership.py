from __future__ import annotations

from typing import Any

import pytest

from tubbly.ledger.constants import ZERO_IDENTITY
from tubbly.runtime.account_store import MemoryAccountStore
from tubbly.runtime.addressing import state_address
from tubbly.runtime.errors import InvalidOwner, Unauthorized
from tubbly.runtime.events import MemoryEventSink
from tubbly.runtime.executor import TubblyExecutor
from tubbly.runtime.program_config import DEV_PROGRAM_ID, ProgramConfig
from tubbly.testing.sigtools import identity

OWNER = identity("owner")
NEXT = identity("next-owner")
ALICE = identity("alice")


def _executor(sink: Any = None) -> TubblyExecutor:
    cfg = ProgramConfig(
        program_id=DEV_PROGRAM_ID,
        mode="dev",
        db_path="",
        require_signatures=False,
        get_request_owner_only=False,
        allow_zero_amount=False,
        log_level="INFO",
    )
    ex = TubblyExecutor(config=cfg, store=MemoryAccountStore(), sinks=[sink] if sink else None)
    ex.initialize(OWNER)
    return ex


def _owner(ex: TubblyExecutor) -> str:
    return ex.read_account(state_address(DEV_PROGRAM_ID)).owner


def test_non_owner_cannot_change_ownership() -> None:
    ex = _executor()
    with pytest.raises(Unauthorized):
        ex.change_ownership(ALICE, ALICE)
    assert _owner(ex) == OWNER


def test_transfer_moves_confirm_rights() -> None:
    sink = MemoryEventSink()
    ex = _executor(sink)
    ex.submit(ALICE, 1, 10)
    ex.submit(ALICE, 2, 20)

    ex.change_ownership(OWNER, NEXT)
    assert _owner(ex) == NEXT

    with pytest.raises(Unauthorized):
        ex.confirm(OWNER, 1)
    ex.confirm(NEXT, 1)
    assert ex.balance_of(ALICE) == 10

    # Old owner cannot take control back.
    with pytest.raises(Unauthorized):
        ex.change_ownership(OWNER, OWNER)

    changed = sink.named("OwnershipChanged")
    assert len(changed) == 1
    assert changed[0].to_json() == {"event": "OwnershipChanged", "previous_owner": OWNER, "new_owner": NEXT}


def test_transfer_to_self_is_allowed() -> None:
    ex = _executor()
    ex.change_ownership(OWNER, OWNER)
    assert _owner(ex) == OWNER


def test_zero_identity_is_not_a_valid_owner() -> None:
    ex = _executor()
    with pytest.raises(InvalidOwner) as ei:
        ex.change_ownership(OWNER, ZERO_IDENTITY)
    assert ei.value.anchor_code == 6003
    assert _owner(ex) == OWNER


def test_request_counter_survives_transfer() -> None:
    ex = _executor()
    ex.submit(ALICE, 1, 10)
    ex.change_ownership(OWNER, NEXT)
    assert ex.read_account(state_address(DEV_PROGRAM_ID)).request_counter == 1
