# src/tubbly/runtime/executor_boot.py

from __future__ import annotations

from typing import List, Optional

from tubbly.runtime.events import EventSink, LogEventSink
from tubbly.runtime.executor import TubblyExecutor
from tubbly.runtime.program_config import ProgramConfig, load_program_config
from tubbly.runtime.structured_logging import configure_structured_logging


def build_executor(
    cfg: Optional[ProgramConfig] = None,
    *,
    config_path: Optional[str] = None,
    sinks: Optional[List[EventSink]] = None,
) -> TubblyExecutor:
    """
    Build a TubblyExecutor from an explicit config or, if omitted, from the
    config file named by config_path / TUBBLY_CONFIG_PATH (defaults otherwise).

    Logging is configured at the config's log level and, unless sinks are
    given, events are written to the log.
    """
    c = cfg or load_program_config(config_path=config_path)
    configure_structured_logging(c.log_level)
    return TubblyExecutor(config=c, sinks=list(sinks) if sinks is not None else [LogEventSink()])
