from typing import Optional


class MemoryNotificationQueue:
    """Collects enqueued notifications in `events` instead of writing the outbox."""

    def __init__(self):
        self.events: list[dict] = []

    def enqueue(self, event_type: str, payload: dict, org_id: Optional[str] = None) -> bool:
        self.events.append({"event_type": event_type, "payload": payload, "org_id": org_id})
        return True
