# src/tubbly/runtime/program_config.py
from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from tubbly.crypto.sig import normalize_key32

Json = Dict[str, Any]

# Program id used when none is configured. Deployments that must agree with
# addresses computed elsewhere set program_id explicitly.
DEV_PROGRAM_ID = hashlib.sha256(b"tubbly:dev-program").hexdigest()


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    return str(v)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


@dataclass(frozen=True)
class ProgramConfig:
    program_id: str
    mode: str  # "dev" | "testnet" | "prod"

    # SQLite file for all accounts; "" selects the in-memory store.
    db_path: str

    require_signatures: bool
    get_request_owner_only: bool
    allow_zero_amount: bool

    log_level: str


_ALLOWED_MODES = {"dev", "testnet", "prod"}
_ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_program_config(cfg: ProgramConfig) -> None:
    """Fail-fast validation for operator config."""

    try:
        normalize_key32(cfg.program_id)
    except ValueError as e:
        raise ValueError(f"program_id must be a 32-byte hex or base64 key; got: {cfg.program_id!r}") from e

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if mode == "prod" and not cfg.require_signatures:
        raise ValueError("require_signatures cannot be disabled in prod mode")

    if str(cfg.log_level or "").strip().upper() not in _ALLOWED_LOG_LEVELS:
        raise ValueError(f"log_level must be one of {_ALLOWED_LOG_LEVELS}; got: {cfg.log_level!r}")


def default_program_config() -> ProgramConfig:
    return ProgramConfig(
        program_id=DEV_PROGRAM_ID,
        mode="prod",
        db_path="./data/tubbly.db",
        require_signatures=True,
        get_request_owner_only=False,
        allow_zero_amount=False,
        log_level="INFO",
    )


def program_config_from_json(raw: Json) -> ProgramConfig:
    if not isinstance(raw, dict):
        raise ValueError("program config must be a JSON object")

    d = default_program_config()

    cfg = ProgramConfig(
        program_id=normalize_key32(_as_str(raw.get("program_id"), d.program_id)),
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        db_path=_as_str(raw.get("db_path"), d.db_path),
        require_signatures=_as_bool(raw.get("require_signatures"), d.require_signatures),
        get_request_owner_only=_as_bool(raw.get("get_request_owner_only"), d.get_request_owner_only),
        allow_zero_amount=_as_bool(raw.get("allow_zero_amount"), d.allow_zero_amount),
        log_level=_as_str(raw.get("log_level"), d.log_level).strip().upper(),
    )

    validate_program_config(cfg)
    return cfg


def read_program_config_file(path: str) -> ProgramConfig:
    p = Path(path)
    return program_config_from_json(json.loads(p.read_text(encoding="utf-8")))


def load_program_config(*, config_path: Optional[str] = None) -> ProgramConfig:
    p = config_path or os.environ.get("TUBBLY_CONFIG_PATH")
    if p:
        return read_program_config_file(p)

    cfg = default_program_config()
    validate_program_config(cfg)
    return cfg
