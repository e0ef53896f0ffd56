# src/tubbly/runtime/sigverify.py

from __future__ import annotations

from typing import Any

from tubbly.crypto.sig import canonical_ix_message, normalize_key32, verify_ed25519_signature
from tubbly.runtime.instruction import InstructionEnvelope


def verify_ix_signature(env: Any, *, program_id: str) -> bool:
    """Verify an instruction envelope's signature against its signer.

    The signer identity is itself the Ed25519 public key, so no key registry
    is consulted. Missing or malformed signer/sig fails closed.

    NOTE: This function is pure (no I/O).
    """
    try:
        ix = InstructionEnvelope.from_json(env)
    except (TypeError, ValueError):
        return False

    try:
        signer = normalize_key32(ix.signer)
    except ValueError:
        return False

    if not ix.sig.strip():
        return False

    msg = canonical_ix_message(
        program_id=normalize_key32(program_id),
        ix_type=ix.ix_type,
        signer=ix.signer,
        payload=ix.payload,
        accounts=ix.accounts,
        nonce=ix.nonce,
    )
    return verify_ed25519_signature(message=msg, sig=ix.sig, pubkey=signer)
