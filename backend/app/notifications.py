"""
Outbound notifications (receipts, invites).

The billing path never waits on delivery. Callers enqueue after their own
transaction has committed; a failed enqueue is logged and dropped, never
raised into the request that triggered it. Delivery is the notification
worker's job.
"""
import json
from typing import Callable, Optional, Protocol

from .db import get_admin_conn
from .logs import json_log


class NotificationQueue(Protocol):
    def enqueue(self, event_type: str, payload: dict, org_id: Optional[str] = None) -> bool:
        ...


class OutboxNotificationQueue:
    """Writes to `notification_outbox` on a connection of its own."""

    def __init__(self, connect: Callable = get_admin_conn):
        self._connect = connect

    def enqueue(self, event_type: str, payload: dict, org_id: Optional[str] = None) -> bool:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO notification_outbox (id, org_id, event_type, payload_json)
                        VALUES (gen_random_uuid(), %s, %s, %s::jsonb)
                        """,
                        (org_id, event_type, json.dumps(payload, default=str)),
                    )
        except Exception as ex:
            json_log("error", "notification.enqueue_failed", event_type=event_type, org_id=org_id, error=str(ex))
            return False
        return True
