from __future__ import annotations

import hashlib

U64_MAX = (1 << 64) - 1
U128_MAX = (1 << 128) - 1

IDENTITY_LEN = 32

# The "default" public key. Never a valid owner.
ZERO_IDENTITY = "00" * IDENTITY_LEN

# Address seed tags.
STATE_SEED = b"state"
REQUEST_SEED = b"request"
USER_SEED = b"user"

# Anchor account names. The discriminator of a record is derived from these,
# so they must match the names used by existing stored data.
STATE_ACCOUNT_NAME = "State"
REQUEST_ACCOUNT_NAME = "Request"
USER_ACCOUNT_NAME = "UserAccount"

DISCRIMINATOR_LEN = 8


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode("utf-8")).digest()[:DISCRIMINATOR_LEN]


def event_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"event:{name}".encode("utf-8")).digest()[:DISCRIMINATOR_LEN]
