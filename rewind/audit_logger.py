import json
import os
from typing import Any, Dict

from rewind.event_bus import EventBus, RewindEvent


class AuditLogger:
    """
    Audit Logger that subscribes to an Event Bus and writes events
    to an append-only JSONL file.

    Checkpoint bundles are replaced by their size; the bytes themselves
    belong to whoever mirrors snapshots, not to the log.
    """
    def __init__(self, file_path: str, event_bus: EventBus):
        self.file_path = file_path
        self.event_bus = event_bus

        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)

        self._unsubscribe = self.event_bus.subscribe(self.log_event)

    def log_event(self, event: RewindEvent) -> None:
        """Append one event as a single JSON line."""
        record: Dict[str, Any] = event.model_dump(mode="json", exclude={"payload"})
        record["payload"] = _scrub(event.payload)
        with open(self.file_path, 'a', encoding='utf-8') as f:
            f.write(json.dumps(record, default=str) + '\n')

    def close(self) -> None:
        self._unsubscribe()


def _scrub(payload: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {}
    for key, value in payload.items():
        if isinstance(value, (bytes, bytearray)):
            cleaned[f"{key}_size"] = len(value)
        else:
            cleaned[key] = value
    return cleaned
