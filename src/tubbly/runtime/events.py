# src/tubbly/runtime/events.py
from __future__ import annotations

"""Program events.

Events are observational only. The executor buffers them while an instruction
runs and hands them to sinks after the instruction's writes have committed,
so a watcher never sees an event for an aborted instruction.
"""

import logging
import struct
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Dict, List, Optional, Protocol

from tubbly.ledger.constants import event_discriminator
from tubbly.runtime.structured_logging import log_event

Json = Dict[str, Any]


class Event(ABC):
    NAME: ClassVar[str] = ""

    def to_json(self) -> Json:
        out: Json = {"event": self.NAME}
        out.update(asdict(self))  # type: ignore[call-overload]
        return out

    @abstractmethod
    def encode(self) -> bytes:
        """Anchor event bytes: discriminator followed by little-endian fields."""


@dataclass(frozen=True)
class Submission(Event):
    req_id: int
    caller: str
    amount: int

    NAME: ClassVar[str] = "Submission"

    def encode(self) -> bytes:
        return (
            event_discriminator(self.NAME)
            + int(self.req_id).to_bytes(16, "little")
            + bytes.fromhex(self.caller)
            + struct.pack("<Q", int(self.amount))
        )


@dataclass(frozen=True)
class Confirmation(Event):
    req_id: int
    caller: str
    amount: int
    new_balance: int

    NAME: ClassVar[str] = "Confirmation"

    def encode(self) -> bytes:
        return (
            event_discriminator(self.NAME)
            + int(self.req_id).to_bytes(16, "little")
            + bytes.fromhex(self.caller)
            + struct.pack("<QQ", int(self.amount), int(self.new_balance))
        )


@dataclass(frozen=True)
class OwnershipChanged(Event):
    previous_owner: str
    new_owner: str

    NAME: ClassVar[str] = "OwnershipChanged"

    def encode(self) -> bytes:
        return event_discriminator(self.NAME) + bytes.fromhex(self.previous_owner) + bytes.fromhex(self.new_owner)


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class MemoryEventSink:
    """Append-only in-process event log for watchers and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[Event] = []

    def emit(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    def named(self, name: str) -> List[Event]:
        return [e for e in self.events if e.NAME == name]


class LogEventSink:
    """Writes each event as one JSONL log line."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger("tubbly.events")

    def emit(self, event: Event) -> None:
        fields = event.to_json()
        fields.pop("event", None)
        log_event(self._logger, "program_event", name=event.NAME, **fields)


__all__ = [
    "Event",
    "Submission",
    "Confirmation",
    "OwnershipChanged",
    "EventSink",
    "MemoryEventSink",
    "LogEventSink",
]
