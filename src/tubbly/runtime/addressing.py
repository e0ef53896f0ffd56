# src/tubbly/runtime/addressing.py
from __future__ import annotations

"""Program-derived addresses.

Every record the program owns lives at an address derived from static seed
tags plus entity keys. The derivation matches Solana's
create_program_address / find_program_address so addresses computed here agree
with addresses computed by any Solana client for the same program id.

Callers always supply the address they believe is correct. Handlers re-derive
it with expect_address() and fail with AddressMismatch on disagreement.
"""

import hashlib
from functools import lru_cache
from typing import List, Optional, Sequence, Tuple

from tubbly.crypto.sig import normalize_key32
from tubbly.ledger.constants import REQUEST_SEED, STATE_SEED, U128_MAX, USER_SEED
from tubbly.runtime.errors import AddressMismatch

MAX_SEEDS = 16
MAX_SEED_LEN = 32
PDA_MARKER = b"ProgramDerivedAddress"

# Edwards25519 field prime and curve constant d.
_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


class InvalidSeeds(ValueError):
    pass


def is_on_curve(point: bytes) -> bool:
    """Return True if `point` decompresses to an Ed25519 curve point.

    Mirrors CompressedEdwardsY::decompress: the sign bit is ignored and y is
    reduced mod p. The point is on the curve iff (y^2 - 1) / (d*y^2 + 1) is a
    square.
    """
    if len(point) != 32:
        return False
    y = (int.from_bytes(point, "little") & ((1 << 255) - 1)) % _P
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    if v == 0:
        return u == 0
    x2 = u * pow(v, _P - 2, _P) % _P
    if x2 == 0:
        return True
    return pow(x2, (_P - 1) // 2, _P) == 1


def _check_seeds(seeds: Sequence[bytes]) -> None:
    if len(seeds) > MAX_SEEDS:
        raise InvalidSeeds(f"too many seeds: {len(seeds)} > {MAX_SEEDS}")
    for s in seeds:
        if len(s) > MAX_SEED_LEN:
            raise InvalidSeeds(f"seed too long: {len(s)} > {MAX_SEED_LEN}")


def create_program_address(seeds: Sequence[bytes], program_id: bytes) -> bytes:
    _check_seeds(seeds)
    h = hashlib.sha256()
    for s in seeds:
        h.update(bytes(s))
    h.update(bytes(program_id))
    h.update(PDA_MARKER)
    out = h.digest()
    if is_on_curve(out):
        raise InvalidSeeds("derived address is on the ed25519 curve")
    return out


@lru_cache(maxsize=4096)
def _find_cached(seeds: Tuple[bytes, ...], program_id: bytes) -> Tuple[bytes, int]:
    for bump in range(255, -1, -1):
        try:
            return create_program_address([*seeds, bytes([bump])], program_id), bump
        except InvalidSeeds:
            continue
    raise InvalidSeeds("unable to find a viable bump seed")


def find_program_address(seeds: Sequence[bytes], program_id: bytes) -> Tuple[bytes, int]:
    """Return (address, bump) for the first bump in 255..0 yielding an off-curve address."""
    # The bump byte is one more seed.
    _check_seeds([*seeds, b"\x00"])
    return _find_cached(tuple(bytes(s) for s in seeds), bytes(program_id))


# ----------------------------
# Seeds per record kind
# ----------------------------


def state_seeds() -> List[bytes]:
    return [STATE_SEED]


def request_seeds(req_id: int) -> List[bytes]:
    rid = int(req_id)
    if rid < 0 or rid > U128_MAX:
        raise InvalidSeeds(f"request id out of u128 range: {rid}")
    return [REQUEST_SEED, rid.to_bytes(16, "little")]


def user_seeds(identity: str) -> List[bytes]:
    return [USER_SEED, bytes.fromhex(normalize_key32(identity))]


def derive(seeds: Sequence[bytes], program_id: str) -> str:
    addr, _ = find_program_address(seeds, bytes.fromhex(normalize_key32(program_id)))
    return addr.hex()


def state_address(program_id: str) -> str:
    return derive(state_seeds(), program_id)


def request_address(program_id: str, req_id: int) -> str:
    return derive(request_seeds(req_id), program_id)


def user_address(program_id: str, identity: str) -> str:
    return derive(user_seeds(identity), program_id)


def expect_address(*, role: str, supplied: Optional[str], seeds: Sequence[bytes], program_id: str) -> str:
    """Re-derive the address for `role` and compare it with the supplied one.

    Returns the derived address. Raises AddressMismatch when the caller did not
    supply an address or supplied a different one.
    """
    expected = derive(seeds, program_id)
    if supplied is None or not str(supplied).strip():
        raise AddressMismatch("account_missing", {"role": role, "expected": expected})
    try:
        got = normalize_key32(str(supplied))
    except ValueError:
        raise AddressMismatch("account_malformed", {"role": role, "supplied": str(supplied)})
    if got != expected:
        raise AddressMismatch("address_mismatch", {"role": role, "expected": expected, "supplied": got})
    return expected


__all__ = [
    "InvalidSeeds",
    "is_on_curve",
    "create_program_address",
    "find_program_address",
    "state_seeds",
    "request_seeds",
    "user_seeds",
    "derive",
    "state_address",
    "request_address",
    "user_address",
    "expect_address",
]
