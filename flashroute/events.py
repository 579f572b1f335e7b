"""
Structured settlement events.

Every event is kept in memory (for tests and the CLI summary), mirrored to the
module logger, and optionally appended to a JSON-lines file via orjson.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson

logger = logging.getLogger(__name__)

HOP_EXECUTED = "hop_executed"
REPAYMENT_COMPLETED = "repayment_completed"
PROFIT_SPLIT = "profit_split"
TITHE_PAID = "tithe_paid"
SETTLEMENT = "settlement"

# orjson only serializes 64-bit integers natively
_MAX_NATIVE_INT = 2 ** 63 - 1


def _jsonable(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and abs(value) > _MAX_NATIVE_INT:
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class Event:
    name: str
    fields: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)


class EventSink:
    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._events: List[Event] = []
        self._lock = threading.Lock()
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, name: str, **fields: Any) -> Event:
        event = Event(name=name, fields=fields)
        logger.info(f"[{name}] " + " ".join(f"{k}={v}" for k, v in fields.items() if k != "record"))
        with self._lock:
            self._events.append(event)
            if self.path is not None:
                line = orjson.dumps(
                    {"event": name, "timestamp": event.timestamp, **_jsonable(fields)},
                    option=orjson.OPT_APPEND_NEWLINE,
                )
                with open(self.path, "ab") as f:
                    f.write(line)
        return event

    @property
    def events(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    def named(self, name: str) -> List[Event]:
        return [event for event in self.events if event.name == name]
