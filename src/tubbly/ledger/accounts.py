"""tubbly.ledger.accounts

The three persisted record shapes and their byte layout.

Layout is Anchor-compatible: an 8-byte discriminator (sha256("account:<Name>")[:8])
followed by the fields in declaration order, integers little-endian, bools as
one byte. Field order and widths must not change; existing stored data depends
on them.
"""

from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Type, TypeVar

from tubbly.crypto.sig import normalize_key32
from tubbly.ledger.constants import (
    DISCRIMINATOR_LEN,
    REQUEST_ACCOUNT_NAME,
    STATE_ACCOUNT_NAME,
    U64_MAX,
    U128_MAX,
    USER_ACCOUNT_NAME,
    account_discriminator,
)
from tubbly.runtime.errors import NotFound

Json = Dict[str, Any]

R = TypeVar("R", bound="Record")


def _u64(v: int, *, field: str) -> int:
    iv = int(v)
    if isinstance(v, bool) or iv < 0 or iv > U64_MAX:
        raise ValueError(f"field '{field}' must fit in u64 (got {v!r})")
    return iv


def _u128(v: int, *, field: str) -> int:
    iv = int(v)
    if isinstance(v, bool) or iv < 0 or iv > U128_MAX:
        raise ValueError(f"field '{field}' must fit in u128 (got {v!r})")
    return iv


def _wrong_shape(kind: str, why: str) -> NotFound:
    return NotFound("wrong_account_shape", {"kind": kind, "why": why})


class Record(ABC):
    """Base class for stored records."""

    KIND: ClassVar[str] = ""
    ANCHOR_NAME: ClassVar[str] = ""
    SIZE: ClassVar[int] = 0

    @classmethod
    def discriminator(cls) -> bytes:
        return account_discriminator(cls.ANCHOR_NAME)

    @abstractmethod
    def encode(self) -> bytes:
        ...

    @classmethod
    def _body(cls: Type[R], data: bytes) -> bytes:
        if not isinstance(data, (bytes, bytearray)):
            raise _wrong_shape(cls.KIND, "not_bytes")
        if len(data) != cls.SIZE:
            raise _wrong_shape(cls.KIND, f"size {len(data)} != {cls.SIZE}")
        if bytes(data[:DISCRIMINATOR_LEN]) != cls.discriminator():
            raise _wrong_shape(cls.KIND, "discriminator")
        return bytes(data[DISCRIMINATOR_LEN:])

    @classmethod
    @abstractmethod
    def decode(cls: Type[R], data: bytes) -> R:
        ...


@dataclass(frozen=True)
class ProgramState(Record):
    owner: str
    request_counter: int = 0

    KIND: ClassVar[str] = "state"
    ANCHOR_NAME: ClassVar[str] = STATE_ACCOUNT_NAME
    SIZE: ClassVar[int] = 8 + 32 + 8

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner", normalize_key32(self.owner))
        object.__setattr__(self, "request_counter", _u64(self.request_counter, field="request_counter"))

    def encode(self) -> bytes:
        return self.discriminator() + bytes.fromhex(self.owner) + struct.pack("<Q", self.request_counter)

    @classmethod
    def decode(cls, data: bytes) -> "ProgramState":
        body = cls._body(data)
        (counter,) = struct.unpack("<Q", body[32:40])
        return cls(owner=body[:32].hex(), request_counter=counter)

    def to_json(self) -> Json:
        return {"owner": self.owner, "request_counter": self.request_counter}


@dataclass(frozen=True)
class Request(Record):
    req_id: int
    caller: str
    amount: int
    active: bool = True

    KIND: ClassVar[str] = "request"
    ANCHOR_NAME: ClassVar[str] = REQUEST_ACCOUNT_NAME
    SIZE: ClassVar[int] = 8 + 16 + 32 + 8 + 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "req_id", _u128(self.req_id, field="req_id"))
        object.__setattr__(self, "caller", normalize_key32(self.caller))
        object.__setattr__(self, "amount", _u64(self.amount, field="amount"))
        object.__setattr__(self, "active", bool(self.active))

    def encode(self) -> bytes:
        return (
            self.discriminator()
            + self.req_id.to_bytes(16, "little")
            + bytes.fromhex(self.caller)
            + struct.pack("<Q?", self.amount, self.active)
        )

    @classmethod
    def decode(cls, data: bytes) -> "Request":
        body = cls._body(data)
        flag = body[56]
        if flag not in (0, 1):
            raise _wrong_shape(cls.KIND, f"bool byte {flag}")
        (amount,) = struct.unpack("<Q", body[48:56])
        return cls(
            req_id=int.from_bytes(body[:16], "little"),
            caller=body[16:48].hex(),
            amount=amount,
            active=bool(flag),
        )

    def to_json(self) -> Json:
        return {"id": self.req_id, "caller": self.caller, "amount": self.amount, "active": self.active}


@dataclass(frozen=True)
class UserBalance(Record):
    owner: str
    balance: int = 0

    KIND: ClassVar[str] = "user"
    ANCHOR_NAME: ClassVar[str] = USER_ACCOUNT_NAME
    SIZE: ClassVar[int] = 8 + 32 + 8

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner", normalize_key32(self.owner))
        object.__setattr__(self, "balance", _u64(self.balance, field="balance"))

    def encode(self) -> bytes:
        return self.discriminator() + bytes.fromhex(self.owner) + struct.pack("<Q", self.balance)

    @classmethod
    def decode(cls, data: bytes) -> "UserBalance":
        body = cls._body(data)
        (balance,) = struct.unpack("<Q", body[32:40])
        return cls(owner=body[:32].hex(), balance=balance)

    def to_json(self) -> Json:
        return {"owner": self.owner, "balance": self.balance}


RECORD_KINDS: Dict[str, Type[Record]] = {
    ProgramState.KIND: ProgramState,
    Request.KIND: Request,
    UserBalance.KIND: UserBalance,
}


def decode_any(data: bytes) -> Record:
    """Decode a record by its discriminator."""
    if isinstance(data, (bytes, bytearray)):
        head = bytes(data[:DISCRIMINATOR_LEN])
        for cls in RECORD_KINDS.values():
            if head == cls.discriminator():
                return cls.decode(bytes(data))
    raise _wrong_shape("unknown", "discriminator")


__all__ = ["Record", "ProgramState", "Request", "UserBalance", "RECORD_KINDS", "decode_any"]
