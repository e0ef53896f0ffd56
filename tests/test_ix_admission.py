# tests/test_ix_admission.py
from __future__ import annotations

import base64
from typing import Any

from tubbly.runtime.account_store import MemoryAccountStore
from tubbly.runtime.executor import TubblyExecutor
from tubbly.runtime.instruction import IX_GET_REQUEST, IX_INITIALIZE, IX_SUBMIT, build_instruction
from tubbly.runtime.ix_admission import admit_instruction
from tubbly.runtime.program_config import DEV_PROGRAM_ID, ProgramConfig
from tubbly.testing.sigtools import identity, sign_instruction

PID = DEV_PROGRAM_ID


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


def _signed(ix_type: str, label: str, payload: dict, nonce: int = 1) -> dict:
    ix = build_instruction(ix_type, signer=identity(label), program_id=PID, payload=payload)
    return sign_instruction(ix, label=label, program_id=PID, nonce=nonce)


def test_signed_instruction_is_admitted_and_applied() -> None:
    ex = TubblyExecutor(config=_cfg(), store=MemoryAccountStore())

    out = ex.submit_instruction(_signed(IX_INITIALIZE, "owner", {}))
    assert out["ok"] is True, out

    out = ex.submit_instruction(_signed(IX_SUBMIT, "alice", {"req_id": 1, "amount": 10}))
    assert out["ok"] is True, out
    assert out["events"][0]["caller"] == identity("alice")


def test_tampered_payload_fails_signature() -> None:
    env = _signed(IX_SUBMIT, "alice", {"req_id": 1, "amount": 10})
    env["payload"]["amount"] = 10_000

    verdict = admit_instruction(env, config=_cfg())
    assert verdict.ok is False
    assert verdict.code == "unauthorized"
    assert verdict.reason == "bad_signature"


def test_signature_is_bound_to_signer_and_program() -> None:
    env = _signed(IX_INITIALIZE, "owner", {})
    env["signer"] = identity("mallory")
    assert admit_instruction(env, config=_cfg()).reason == "bad_signature"

    other = "11" * 32
    env2 = _signed(IX_INITIALIZE, "owner", {})
    assert admit_instruction(env2, config=_cfg(program_id=other)).reason == "bad_signature"


def test_signature_covers_nonce() -> None:
    env = _signed(IX_SUBMIT, "alice", {"req_id": 1, "amount": 10}, nonce=3)
    assert admit_instruction(env, config=_cfg()).ok is True

    env["nonce"] = 4
    assert admit_instruction(env, config=_cfg()).reason == "bad_signature"


def test_state_changing_instructions_need_a_nonce() -> None:
    env = _signed(IX_SUBMIT, "alice", {"req_id": 1, "amount": 10}, nonce=0)
    verdict = admit_instruction(env, config=_cfg())
    assert (verdict.ok, verdict.code, verdict.reason) == (False, "invalid_instruction", "missing_nonce")

    # Reads carry no nonce.
    read = _signed(IX_GET_REQUEST, "alice", {"req_id": 1}, nonce=0)
    assert admit_instruction(read, config=_cfg()).ok is True

    # Without signature checks the nonce is optional.
    assert admit_instruction(env, config=_cfg(mode="dev", require_signatures=False)).ok is True


def test_malformed_nonce_is_rejected() -> None:
    cfg = _cfg(mode="dev", require_signatures=False)
    base = {"ix_type": "INITIALIZE", "signer": identity("owner")}

    for bad in (-1, "1", 1.5, True):
        v = admit_instruction(dict(base, nonce=bad), config=cfg)
        assert (v.ok, v.reason) == (False, "bad_nonce"), bad


def test_missing_signature() -> None:
    env = build_instruction(IX_INITIALIZE, signer=identity("owner"), program_id=PID).to_json()
    verdict = admit_instruction(env, config=_cfg())
    assert (verdict.ok, verdict.reason) == (False, "missing_signature")

    # Signatures are optional outside prod when disabled.
    assert admit_instruction(env, config=_cfg(mode="dev", require_signatures=False)).ok is True


def test_envelope_shape_rejections() -> None:
    cfg = _cfg(mode="dev", require_signatures=False)
    signer = identity("alice")

    ok, rej = admit_instruction(["not", "a", "dict"], config=cfg)
    assert ok is False and rej.reason == "envelope_must_be_object"

    assert admit_instruction({"signer": signer}, config=cfg).reason == "missing_ix_type"
    assert admit_instruction({"ix_type": "MINT", "signer": signer}, config=cfg).reason == "unsupported_ix_type"
    assert admit_instruction({"ix_type": "INITIALIZE", "signer": "bob"}, config=cfg).reason == "bad_signer"

    # Wire signers are hex only.
    b64 = base64.b64encode(bytes.fromhex(signer)).decode("ascii")
    assert admit_instruction({"ix_type": "INITIALIZE", "signer": b64}, config=cfg).reason == "bad_signer"
    assert admit_instruction({"ix_type": "INITIALIZE", "signer": signer.upper()}, config=cfg).ok is True

    v = admit_instruction({"ix_type": "INITIALIZE", "signer": signer, "accounts": {"vault": "00"}}, config=cfg)
    assert v.reason == "unknown_account_role"

    v = admit_instruction({"ix_type": "INITIALIZE", "signer": signer, "accounts": {"state": 5}}, config=cfg)
    assert v.reason == "account_must_be_string"


def test_payload_schema_rejections() -> None:
    cfg = _cfg(mode="dev", require_signatures=False)
    signer = identity("alice")

    def submit(payload: Any) -> Any:
        return admit_instruction({"ix_type": "SUBMIT", "signer": signer, "payload": payload}, config=cfg)

    assert submit({"req_id": 1, "amount": 5}).ok is True
    assert submit({"req_id": 1}).reason == "payload_schema_mismatch"
    assert submit({"req_id": 1, "amount": -1}).ok is False
    assert submit({"req_id": 1, "amount": 2**64}).ok is False
    assert submit({"req_id": 2**128, "amount": 1}).ok is False
    assert submit({"req_id": True, "amount": 1}).ok is False
    assert submit({"req_id": 1, "amount": 1, "memo": "x"}).ok is False
    assert submit("nope").reason == "payload_must_be_object"

    v = admit_instruction(
        {"ix_type": "CHANGE_OWNERSHIP", "signer": signer, "payload": {"new_owner": "abc"}}, config=cfg
    )
    assert v.ok is False
    assert v.code == "invalid_instruction"


def test_program_errors_come_back_as_json() -> None:
    ex = TubblyExecutor(config=_cfg(mode="dev", require_signatures=False), store=MemoryAccountStore())
    env = build_instruction(IX_SUBMIT, signer=identity("alice"), program_id=PID, payload={"req_id": 1, "amount": 1})

    out = ex.submit_instruction(env.to_json())
    assert out["ok"] is False
    assert out["error"] == "not_found"
    assert out["reason"] == "program_not_initialized"


def test_admission_rejection_json_shape() -> None:
    ex = TubblyExecutor(config=_cfg(), store=MemoryAccountStore())
    out = ex.submit_instruction({"ix_type": "INITIALIZE", "signer": identity("owner")})
    assert out == {"ok": False, "error": "unauthorized", "reason": "missing_signature", "details": None}
