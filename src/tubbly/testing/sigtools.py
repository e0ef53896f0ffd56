from __future__ import annotations

import hashlib
from typing import Any, Dict, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from tubbly.crypto.sig import sign_ix_envelope_dict
from tubbly.runtime.instruction import InstructionEnvelope

Json = Dict[str, Any]


def _sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def seed_hex(label: str) -> str:
    """Stable 32-byte Ed25519 seed (hex) for a label. TEST ONLY."""
    return _sha256(("tubbly-test-ed25519:" + (label or "")).encode("utf-8")).hex()


def deterministic_ed25519_keypair(*, label: str) -> Tuple[str, Ed25519PrivateKey]:
    """Deterministically derive an Ed25519 keypair from a stable label.

    TEST ONLY.

    Returns:
      (pubkey_hex, private_key)
    """
    sk = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(seed_hex(label)))
    pk_hex = sk.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()
    return pk_hex, sk


def identity(label: str) -> str:
    """Identity (public key hex) for a label."""
    return deterministic_ed25519_keypair(label=label)[0]


def sign_instruction(ix: Any, *, label: str, program_id: str, nonce: Optional[int] = None) -> Json:
    """Return the instruction as a signed JSON envelope.

    The signer field is forced to the label's identity so the signature
    verifies against it. A given nonce replaces the envelope's own.
    """
    env = InstructionEnvelope.from_json(ix).to_json()
    env["signer"] = identity(label)
    if nonce is not None:
        env["nonce"] = int(nonce)
    env.pop("sig", None)
    return sign_ix_envelope_dict(ix=env, privkey=seed_hex(label), program_id=program_id)
