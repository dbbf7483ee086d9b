#!/usr/bin/env python3
"""
Notification outbox worker.

Claims due rows from `notification_outbox` one at a time (`SKIP LOCKED`, so
several workers can run side by side), hands them to a sender and records the
outcome. A failed send is retried with exponential backoff until
`max_attempts`, then parked as `dead`. The loop itself never crashes on a bad
event.
"""
import argparse
import hashlib
import json
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import psycopg
from psycopg.rows import dict_row

from backend.app.logs import json_log

DB_URL_DEFAULT = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/pantrypal"
MAX_ATTEMPTS_DEFAULT = 5
EVENT_TYPES = {"bill.receipt", "invite.created"}


class Sender(Protocol):
    def send(self, event_type: str, payload: dict) -> None:
        ...


class LogSender:
    """Stand-in transport: records what would be delivered."""

    def send(self, event_type: str, payload: dict) -> None:
        json_log("info", "notification.sent", event_type=event_type, to=payload.get("to"))


def get_conn(db_url):
    return psycopg.connect(db_url, row_factory=dict_row)


def next_retry_at_for_attempt(attempt_count: int, event_id: Optional[str] = None) -> datetime:
    delay_seconds = min(300, 2 ** max(attempt_count - 1, 0))
    if event_id:
        # Deterministic per-event jitter to reduce synchronized retry storms.
        digest = hashlib.sha1(f"{event_id}:{attempt_count}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay_seconds // 5 or 1))
        delay_seconds = min(300, delay_seconds + (int(digest[:8], 16) % (jitter_window + 1)))
    return datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)


def _fetch_next_event(cur, max_attempts: int):
    cur.execute(
        """
        SELECT id, org_id, event_type, payload_json, attempt_count
        FROM notification_outbox
        WHERE (
              status = 'pending'
              OR (status = 'failed' AND (next_attempt_at IS NULL OR next_attempt_at <= now()))
          )
          AND attempt_count < %s
        ORDER BY
          CASE WHEN status = 'pending' THEN 0 ELSE 1 END,
          COALESCE(next_attempt_at, created_at) ASC,
          created_at ASC
        LIMIT 1
        FOR UPDATE SKIP LOCKED
        """,
        (max_attempts,),
    )
    return cur.fetchone()


def _process_one(conn, sender: Sender, max_attempts: int) -> bool:
    with conn.transaction():
        with conn.cursor() as cur:
            e = _fetch_next_event(cur, max_attempts)
            if not e:
                return False

            send_error = None
            try:
                payload = e["payload_json"]
                if isinstance(payload, str):
                    payload = json.loads(payload)
                if e["event_type"] not in EVENT_TYPES:
                    raise ValueError(f"Unsupported event type {e['event_type']}")
                sender.send(e["event_type"], payload)
            except Exception as ex:
                send_error = ex

            if send_error is None:
                cur.execute(
                    """
                    UPDATE notification_outbox
                    SET status = 'processed',
                        processed_at = now(),
                        error_message = NULL,
                        next_attempt_at = NULL
                    WHERE id = %s
                    """,
                    (e["id"],),
                )
                return True

            next_attempt = int(e.get("attempt_count") or 0) + 1
            next_status = "dead" if next_attempt >= max_attempts else "failed"
            cur.execute(
                """
                UPDATE notification_outbox
                SET status = %s,
                    attempt_count = %s,
                    error_message = %s,
                    next_attempt_at = %s
                WHERE id = %s
                """,
                (
                    next_status,
                    next_attempt,
                    str(send_error),
                    (next_retry_at_for_attempt(next_attempt, str(e["id"])) if next_status == "failed" else None),
                    e["id"],
                ),
            )
            json_log(
                "warning",
                "notification.send_failed",
                event_id=e["id"],
                event_type=e["event_type"],
                attempt=next_attempt,
                status=next_status,
                error=str(send_error),
            )
    return True


def process_events(conn, limit: int, max_attempts: int = MAX_ATTEMPTS_DEFAULT, sender: Optional[Sender] = None) -> int:
    sender = sender or LogSender()
    processed = 0
    while processed < limit:
        if not _process_one(conn, sender, max_attempts):
            break
        processed += 1
    return processed


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--max-attempts", type=int, default=MAX_ATTEMPTS_DEFAULT)
    parser.add_argument("--loop", action="store_true", help="Run continuously as a service")
    parser.add_argument("--sleep", type=float, default=1.0, help="Seconds to sleep between loops")
    args = parser.parse_args()
    while True:
        try:
            with get_conn(args.db) as conn:
                n = process_events(conn, args.limit, max_attempts=args.max_attempts)
            if n:
                json_log("info", "notification.batch", processed=n)
        except Exception as ex:
            if not args.loop:
                raise
            json_log("error", "notification.worker_error", error=str(ex))
        if not args.loop:
            break
        time.sleep(args.sleep)


if __name__ == "__main__":
    main()
