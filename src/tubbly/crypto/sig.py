# src/tubbly/crypto/sig.py
from __future__ import annotations

import base64
import json
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

Json = Dict[str, Any]


def decode_bytes(s: str) -> bytes:
    s = s.strip()
    if not s:
        raise ValueError("empty string")
    # hex
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    # base64 / base64url
    try:
        padding = "=" * (-len(s) % 4)
        s2 = (s + padding).replace("-", "+").replace("_", "/")
        return base64.b64decode(s2, validate=True)
    except Exception as e:
        raise ValueError("not hex or base64") from e


def normalize_key32(v: Any) -> str:
    """Return a 32-byte key (identity, address, program id) as lowercase hex.

    Accepts hex or base64/base64url strings and raw bytes.
    """
    if isinstance(v, (bytes, bytearray)):
        b = bytes(v)
    elif isinstance(v, str):
        b = decode_bytes(v)
    else:
        raise ValueError(f"expected str or bytes, got {type(v).__name__}")
    if len(b) != 32:
        raise ValueError(f"expected 32 bytes, got {len(b)}")
    return b.hex()


def canonical_ix_message(
    *,
    program_id: str,
    ix_type: str,
    signer: str,
    payload: Json,
    accounts: Optional[Dict[str, str]] = None,
    nonce: int = 0,
) -> bytes:
    obj: Json = {
        "program_id": str(program_id),
        "ix_type": str(ix_type),
        "signer": str(signer),
        "payload": payload if isinstance(payload, dict) else {},
        "accounts": dict(accounts) if isinstance(accounts, dict) else {},
        "nonce": int(nonce),
    }
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def verify_ed25519_signature(*, message: bytes, sig: str, pubkey: str) -> bool:
    try:
        sig_b = decode_bytes(sig)
        pk_b = decode_bytes(pubkey)
        key = Ed25519PublicKey.from_public_bytes(pk_b)
        key.verify(sig_b, message)
        return True
    except (InvalidSignature, ValueError):
        return False


def _private_key(privkey: str) -> Ed25519PrivateKey:
    pk_b = decode_bytes(privkey)

    # 64-byte expanded keys carry the seed in their first half.
    if len(pk_b) == 64:
        pk_b = pk_b[:32]

    if len(pk_b) != 32:
        raise ValueError("ed25519 privkey must be 32-byte seed (or 64-byte expanded key)")

    return Ed25519PrivateKey.from_private_bytes(pk_b)


def sign_ed25519(*, message: bytes, privkey: str, encoding: str = "hex") -> str:
    """Sign a message with an Ed25519 private key.

    privkey: hex or base64/base64url string representing 32-byte seed or 64-byte private key.
    encoding: "hex" (default) or "b64".
    """
    sig_b = _private_key(privkey).sign(message)
    if encoding == "hex":
        return sig_b.hex()
    if encoding in {"b64", "base64"}:
        return base64.b64encode(sig_b).decode("ascii")
    raise ValueError("unsupported encoding")


def sign_ix_envelope_dict(*, ix: Json, privkey: str, program_id: str, encoding: str = "hex") -> Json:
    """Return a copy of ix with its 'sig' field populated.

    Expected shape (extra keys allowed):
      {
        "ix_type": str,
        "signer": str,
        "payload": dict,
        "accounts": dict
      }
    """
    ix_type = str(ix.get("ix_type") or "").strip().upper()
    signer = str(ix.get("signer") or "").strip()
    payload = ix.get("payload") if isinstance(ix.get("payload"), dict) else {}
    accounts = ix.get("accounts") if isinstance(ix.get("accounts"), dict) else {}
    nonce = int(ix.get("nonce") or 0)

    msg = canonical_ix_message(
        program_id=normalize_key32(program_id),
        ix_type=ix_type,
        signer=signer,
        payload=payload,
        accounts=accounts,
        nonce=nonce,
    )
    out = dict(ix)
    out["ix_type"] = ix_type
    out["signer"] = signer
    out["payload"] = payload
    out["accounts"] = accounts
    out["nonce"] = nonce
    out["sig"] = sign_ed25519(message=msg, privkey=privkey, encoding=encoding)
    return out
