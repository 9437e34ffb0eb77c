"""TelemetryRecorder - named events with properties.

Events are kept in memory, logged at debug level and, when a path is given,
appended to a JSONL file (one event per line).
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class TelemetryEvent:
    name: str
    properties: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class TelemetryRecorder:
    """
    Collects telemetry events.

    Usage:
        telemetry = TelemetryRecorder(Path("~/.tagstream/telemetry.jsonl").expanduser())
        telemetry.record("search_replace:fix", {"attemptNumber": 0, "success": True})
    """

    def __init__(self, path: Path | str | None = None):
        self.events: list[TelemetryEvent] = []
        self.path = Path(path) if path is not None else None
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def record(self, name: str, properties: dict[str, Any] | None = None) -> TelemetryEvent:
        event = TelemetryEvent(name=name, properties=dict(properties or {}))
        self.events.append(event)
        logger.debug(f"Telemetry {name}: {event.properties}")
        if self.path is not None:
            with open(self.path, "a") as f:
                f.write(json.dumps(asdict(event), default=str) + "\n")
        return event

    def named(self, name: str) -> list[TelemetryEvent]:
        return [e for e in self.events if e.name == name]


__all__ = ["TelemetryEvent", "TelemetryRecorder"]
