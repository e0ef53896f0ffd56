# src/tubbly/runtime/sqlite_db.py
from __future__ import annotations

import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


def _now_ms() -> int:
    return int(time.time() * 1000)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class SqliteDB:
    """SQLite manager for the account store.

    Design goals:
      - single durable DB file for all program accounts
      - cross-process safe (SQLite locks)
      - cross-thread safe by never sharing connections

    SQLite allows only one writer at a time. Under multi-process workloads,
    BEGIN IMMEDIATE can transiently fail with "database is locked", so
    write_tx() retries lock acquisition until a deadline.
    """

    SCHEMA_VERSION = 2

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    @staticmethod
    def _sqlite_synchronous_pragma() -> str:
        """Return a safe PRAGMA synchronous value.

        Defaults:
          - prod        -> FULL
          - dev/testnet -> NORMAL

        Override with TUBBLY_SQLITE_SYNCHRONOUS in {OFF,NORMAL,FULL,EXTRA}.
        """
        mode = (os.environ.get("TUBBLY_MODE") or "prod").strip().lower()
        default = "FULL" if mode == "prod" else "NORMAL"
        raw = (os.environ.get("TUBBLY_SQLITE_SYNCHRONOUS") or default).strip().upper()

        allowed = {"OFF", "NORMAL", "FULL", "EXTRA"}
        if raw not in allowed:
            raw = default
        return raw

    def ensure_parent_dir(self) -> None:
        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("TUBBLY_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        # WAL is required unless explicitly waived.
        allow_non_wal = (os.environ.get("TUBBLY_SQLITE_ALLOW_NON_WAL") or "").strip() in {"1", "true", "TRUE"}
        row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        mode = str(row[0]).strip().lower() if row is not None else ""
        if mode and mode != "wal" and not allow_non_wal:
            con.close()
            raise RuntimeError(f"sqlite journal_mode is '{mode}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("PRAGMA temp_store=MEMORY;")

        busy_ms = _env_int("TUBBLY_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000))
        busy_ms = max(0, int(busy_ms))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")

        return con

    def init_schema(self) -> None:
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                  address TEXT PRIMARY KEY,
                  kind TEXT NOT NULL,
                  data BLOB NOT NULL,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_accounts_kind ON accounts(kind);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS signer_nonces (
                  signer TEXT PRIMARY KEY,
                  nonce INTEGER NOT NULL,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except ValueError:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg) or ("locked" in msg and "database" in msg)

    def _backoff(self, attempt: int, base_sleep: float, max_sleep: float) -> None:
        sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
        sleep_s = sleep_s * (0.5 + random.random())  # jitter in [0.5x, 1.5x]
        time.sleep(sleep_s)

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        Policy:
          - retry BEGIN IMMEDIATE until a deadline
          - exponential backoff with jitter
          - then raise (fail closed) if we cannot acquire within deadline
          - any exception raised by the body rolls the transaction back
        """
        deadline_ms = _env_int("TUBBLY_SQLITE_WRITE_DEADLINE_MS", 30_000)
        deadline_ms = max(250, int(deadline_ms))
        deadline_ts = _now_ms() + deadline_ms

        base_sleep = float(_env_int("TUBBLY_SQLITE_WRITE_BACKOFF_BASE_MS", 5)) / 1000.0
        max_sleep = float(_env_int("TUBBLY_SQLITE_WRITE_BACKOFF_MAX_MS", 250)) / 1000.0
        base_sleep = max(0.001, base_sleep)
        max_sleep = max(base_sleep, max_sleep)

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e):
                        raise
                    if _now_ms() >= deadline_ts:
                        raise
                    self._backoff(attempt, base_sleep, max_sleep)
                    attempt += 1

            try:
                yield con

                c_attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        if not self._is_locked_error(e):
                            raise
                        if _now_ms() >= deadline_ts:
                            raise
                        self._backoff(c_attempt, base_sleep, max_sleep)
                        c_attempt += 1
            except BaseException:
                # SQLite may already have rolled back (failed COMMIT, or the
                # body ended the transaction); the body's error wins.
                try:
                    con.execute("ROLLBACK;")
                except sqlite3.Error:
                    pass
                raise


class _SqliteTxn:
    def __init__(self, con: sqlite3.Connection, *, write: bool) -> None:
        self._con = con
        self._write = bool(write)

    def get(self, address: str) -> Optional[bytes]:
        row = self._con.execute("SELECT data FROM accounts WHERE address=?;", (str(address),)).fetchone()
        if row is None:
            return None
        return bytes(row["data"])

    def put(self, address: str, kind: str, data: bytes) -> None:
        if not self._write:
            raise RuntimeError("write attempted in read-only transaction")
        self._con.execute(
            """
            INSERT INTO accounts(address, kind, data, updated_ts_ms)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
              kind=excluded.kind,
              data=excluded.data,
              updated_ts_ms=excluded.updated_ts_ms;
            """,
            (str(address), str(kind), sqlite3.Binary(bytes(data)), _now_ms()),
        )

    def get_nonce(self, signer: str) -> int:
        row = self._con.execute("SELECT nonce FROM signer_nonces WHERE signer=?;", (str(signer),)).fetchone()
        return 0 if row is None else int(row["nonce"])

    def put_nonce(self, signer: str, nonce: int) -> None:
        if not self._write:
            raise RuntimeError("write attempted in read-only transaction")
        self._con.execute(
            """
            INSERT INTO signer_nonces(signer, nonce, updated_ts_ms)
            VALUES(?, ?, ?)
            ON CONFLICT(signer) DO UPDATE SET
              nonce=excluded.nonce,
              updated_ts_ms=excluded.updated_ts_ms;
            """,
            (str(signer), int(nonce), _now_ms()),
        )


class SqliteAccountStore:
    """Account store persisted in SQLite.

    A write transaction holds the SQLite writer lock (BEGIN IMMEDIATE) for its
    whole body, so read-check-write sequences are serialized across threads and
    processes: of two racing creations at one address, the second observes the
    first.
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    @contextmanager
    def transaction(self, *, write: bool) -> Iterator[_SqliteTxn]:
        if write:
            with self._db.write_tx() as con:
                yield _SqliteTxn(con, write=True)
        else:
            with self._db.connection() as con:
                yield _SqliteTxn(con, write=False)

    def read_raw(self, address: str) -> Optional[bytes]:
        with self.transaction(write=False) as txn:
            return txn.get(address)

    def read_nonce(self, signer: str) -> int:
        with self.transaction(write=False) as txn:
            return txn.get_nonce(signer)
