from pathlib import Path

from longrun.event_bus import EventBus, LongrunEvent
from longrun.storage import append_line


class AuditLogger:
    """
    Subscribes to an EventBus and appends every event to an append-only
    JSONL file (.longrun/logs/events.jsonl by default).
    """

    def __init__(self, file_path: Path, event_bus: EventBus):
        self.file_path = Path(file_path)
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        event_bus.subscribe(self.log_event)

    def log_event(self, event: LongrunEvent) -> None:
        append_line(self.file_path, event.model_dump_json())
