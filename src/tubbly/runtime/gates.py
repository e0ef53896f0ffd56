# src/tubbly/runtime/gates.py
from __future__ import annotations

from typing import Any

from tubbly.crypto.sig import normalize_key32
from tubbly.ledger.accounts import ProgramState
from tubbly.ledger.constants import ZERO_IDENTITY
from tubbly.runtime.errors import InvalidOwner, Unauthorized


def _identity_or_none(v: Any) -> str | None:
    try:
        return normalize_key32(v)
    except ValueError:
        return None


def require_owner(state: ProgramState, claimed_identity: Any) -> str:
    """Fail with Unauthorized unless claimed_identity is the current owner.

    Every owner-gated handler calls this before touching any account.
    """
    who = _identity_or_none(claimed_identity)
    if who is None or who != state.owner:
        raise Unauthorized("not_owner", {"signer": str(claimed_identity)})
    return who


def require_self(claimed_caller: Any, caller: Any) -> str:
    """Fail with Unauthorized unless both identities are the same."""
    a = _identity_or_none(claimed_caller)
    b = _identity_or_none(caller)
    if a is None or b is None or a != b:
        raise Unauthorized("caller_mismatch", {"claimed": str(claimed_caller), "signer": str(caller)})
    return b


def require_valid_owner(new_owner: Any) -> str:
    who = _identity_or_none(new_owner)
    if who is None:
        raise InvalidOwner("new_owner_malformed", {"new_owner": str(new_owner)})
    if who == ZERO_IDENTITY:
        raise InvalidOwner("new_owner_is_zero", {"new_owner": who})
    return who


__all__ = ["require_owner", "require_self", "require_valid_owner"]
