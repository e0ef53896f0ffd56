from __future__ import annotations

import re
from typing import Any, Dict, Optional

from tubbly.runtime.instruction import READ_ONLY_IX_TYPES, SUPPORTED_IX_TYPES, IxVerdict
from tubbly.runtime.ix_schema import validate_payload
from tubbly.runtime.program_config import ProgramConfig
from tubbly.runtime.sigverify import verify_ix_signature

Json = Dict[str, Any]

_ACCOUNT_ROLES = {"state", "request", "user_account"}

# Wire signers are 32-byte public keys in hex.
_SIGNER_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def _check_accounts(accounts: Any) -> Optional[IxVerdict]:
    if accounts is None:
        return None
    if not isinstance(accounts, dict):
        return IxVerdict.reject("invalid_instruction", "accounts_must_be_object", {"type": str(type(accounts))})
    for role, addr in accounts.items():
        if role not in _ACCOUNT_ROLES:
            return IxVerdict.reject("invalid_instruction", "unknown_account_role", {"role": str(role)})
        if not isinstance(addr, str):
            return IxVerdict.reject("invalid_instruction", "account_must_be_string", {"role": role})
    return None


def _bad_nonce(nonce: Any) -> bool:
    if nonce is None:
        return False
    return isinstance(nonce, bool) or not isinstance(nonce, int) or nonce < 0


def admit_instruction(env: Any, *, config: ProgramConfig) -> IxVerdict:
    """Pre-execution validation of an instruction envelope.

    Checks run cheapest first: shape, type, signer and nonce format, accounts,
    payload schema, signature. Nothing here reads account state; nonce
    sequencing, ownership, existence and address derivation are checked
    during execution.

    With signatures required, every state-changing instruction must carry a
    nonce >= 1 so that a captured envelope cannot be applied twice.
    """
    if not isinstance(env, dict):
        return IxVerdict.reject("invalid_instruction", "envelope_must_be_object", {"type": str(type(env))})

    ix_type = str(env.get("ix_type") or "").strip().upper()
    if not ix_type:
        return IxVerdict.reject("invalid_instruction", "missing_ix_type")
    if ix_type not in SUPPORTED_IX_TYPES:
        return IxVerdict.reject("invalid_instruction", "unsupported_ix_type", {"ix_type": ix_type})

    signer = env.get("signer")
    if not isinstance(signer, str) or not _SIGNER_RE.match(signer.strip()):
        return IxVerdict.reject("invalid_instruction", "bad_signer", {"signer": str(signer)})

    nonce = env.get("nonce")
    if _bad_nonce(nonce):
        return IxVerdict.reject("invalid_instruction", "bad_nonce", {"nonce": str(nonce)})

    rej = _check_accounts(env.get("accounts"))
    if rej is not None:
        return rej

    ok, code, reason, details = validate_payload(ix_type=ix_type, payload=env.get("payload"))
    if not ok:
        d: Json = {"schema": code}
        if details:
            d.update(details)
        return IxVerdict.reject("invalid_instruction", reason, d)

    if config.require_signatures:
        if not str(env.get("sig") or "").strip():
            return IxVerdict.reject("unauthorized", "missing_signature")
        if ix_type not in READ_ONLY_IX_TYPES and not nonce:
            return IxVerdict.reject("invalid_instruction", "missing_nonce")
        if not verify_ix_signature(env, program_id=config.program_id):
            return IxVerdict.reject("unauthorized", "bad_signature")

    return IxVerdict.admit()


__all__ = ["admit_instruction"]
