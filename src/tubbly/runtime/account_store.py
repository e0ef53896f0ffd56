# src/tubbly/runtime/account_store.py
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import ContextManager, Dict, Iterator, Optional, Protocol, Type, TypeVar

from tubbly.ledger.accounts import Record
from tubbly.runtime.errors import AlreadyExists, NotFound

R = TypeVar("R", bound=Record)


class RawTxn(Protocol):
    """Byte-level view of the store inside one transaction.

    Besides account bytes, the store keeps the last consumed nonce per signer
    so a signed envelope can be applied at most once.
    """

    def get(self, address: str) -> Optional[bytes]: ...

    def put(self, address: str, kind: str, data: bytes) -> None: ...

    def get_nonce(self, signer: str) -> int: ...

    def put_nonce(self, signer: str, nonce: int) -> None: ...


class AccountStore(Protocol):
    def transaction(self, *, write: bool) -> ContextManager[RawTxn]: ...

    def read_raw(self, address: str) -> Optional[bytes]: ...

    def read_nonce(self, signer: str) -> int: ...


class _MemoryTxn:
    def __init__(self, base: Dict[str, bytes], nonces: Dict[str, int], *, write: bool) -> None:
        self._base = base
        self._nonces = nonces
        self._write = bool(write)
        self.staged: Dict[str, bytes] = {}
        self.staged_nonces: Dict[str, int] = {}

    def _require_write(self) -> None:
        if not self._write:
            raise RuntimeError("write attempted in read-only transaction")

    def get(self, address: str) -> Optional[bytes]:
        if address in self.staged:
            return self.staged[address]
        return self._base.get(address)

    def put(self, address: str, kind: str, data: bytes) -> None:
        self._require_write()
        self.staged[address] = bytes(data)

    def get_nonce(self, signer: str) -> int:
        if signer in self.staged_nonces:
            return self.staged_nonces[signer]
        return int(self._nonces.get(signer, 0))

    def put_nonce(self, signer: str, nonce: int) -> None:
        self._require_write()
        self.staged_nonces[signer] = int(nonce)


class MemoryAccountStore:
    """Process-local account store.

    Transactions are serialized by a lock. Writes are staged and merged into
    the backing dicts only when the transaction body returns normally.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: Dict[str, bytes] = {}
        self._nonces: Dict[str, int] = {}

    @contextmanager
    def transaction(self, *, write: bool) -> Iterator[_MemoryTxn]:
        with self._lock:
            txn = _MemoryTxn(self._accounts, self._nonces, write=write)
            yield txn
            if write:
                self._accounts.update(txn.staged)
                self._nonces.update(txn.staged_nonces)

    def read_raw(self, address: str) -> Optional[bytes]:
        with self._lock:
            return self._accounts.get(address)

    def read_nonce(self, signer: str) -> int:
        with self._lock:
            return int(self._nonces.get(signer, 0))


class Accounts:
    """Typed create/load/store over a raw transaction."""

    def __init__(self, txn: RawTxn) -> None:
        self._txn = txn

    def exists(self, address: str) -> bool:
        return self._txn.get(address) is not None

    def load_optional(self, address: str, kind: Type[R]) -> Optional[R]:
        data = self._txn.get(address)
        if data is None:
            return None
        return kind.decode(data)

    def load(self, address: str, kind: Type[R]) -> R:
        rec = self.load_optional(address, kind)
        if rec is None:
            raise NotFound("account_not_found", {"kind": kind.KIND, "address": address})
        return rec

    def create(self, address: str, record: Record) -> None:
        if self.exists(address):
            raise AlreadyExists("account_exists", {"kind": record.KIND, "address": address})
        self._txn.put(address, record.KIND, record.encode())

    def store(self, address: str, record: Record) -> None:
        if not self.exists(address):
            raise NotFound("account_not_found", {"kind": record.KIND, "address": address})
        self._txn.put(address, record.KIND, record.encode())


__all__ = ["RawTxn", "AccountStore", "MemoryAccountStore", "Accounts"]
