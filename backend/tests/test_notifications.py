import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from backend.app.notifications import OutboxNotificationQueue
from backend.tests.fake_queue import MemoryNotificationQueue
from backend.workers import notification_worker


def test_outbox_queue_inserts_event(db):
    queue = OutboxNotificationQueue(connect=db.connect)
    assert queue.enqueue("bill.receipt", {"to": "a@example.com", "total": 1}, org_id="org-1") is True
    [row] = db.rows("notification_outbox")
    assert row["event_type"] == "bill.receipt"
    assert json.loads(row["payload_json"])["to"] == "a@example.com"


def test_outbox_queue_swallows_and_logs_failures(capsys):
    def broken():
        raise ConnectionError("db down")

    queue = OutboxNotificationQueue(connect=broken)
    assert queue.enqueue("bill.receipt", {}) is False
    assert "notification.enqueue_failed" in capsys.readouterr().err


def test_memory_queue_records_events():
    q = MemoryNotificationQueue()
    q.enqueue("invite.created", {"to": "x@example.com"}, org_id="o")
    assert q.events == [{"event_type": "invite.created", "payload": {"to": "x@example.com"}, "org_id": "o"}]


class _OutboxCursor:
    def __init__(self, events):
        self.events = list(events)
        self.updates = []
        self.rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if text.startswith("select id, org_id, event_type, payload_json, attempt_count from notification_outbox"):
            self.rows = self.events[:1]
            self.events = self.events[1:]
            return
        if text.startswith("update notification_outbox"):
            self.updates.append((text, tuple(params)))
            self.rows = []
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self.rows[0] if self.rows else None


class _OutboxConn:
    def __init__(self, cur):
        self.cur = cur

    @contextmanager
    def transaction(self):
        yield self

    def cursor(self):
        return self.cur


class _Sender:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, event_type, payload):
        if self.fail:
            raise RuntimeError("smtp timeout")
        self.sent.append((event_type, payload))


def _event(event_type="bill.receipt", attempts=0):
    return {"id": "e-1", "org_id": "o-1", "event_type": event_type, "payload_json": '{"to": "a@example.com"}', "attempt_count": attempts}


def test_worker_marks_delivered_events_processed():
    cur = _OutboxCursor([_event()])
    sender = _Sender()
    n = notification_worker.process_events(_OutboxConn(cur), limit=10, sender=sender)
    assert n == 1
    assert sender.sent == [("bill.receipt", {"to": "a@example.com"})]
    [(text, params)] = cur.updates
    assert "status = 'processed'" in text
    assert params == ("e-1",)


def test_worker_schedules_retry_on_failure():
    cur = _OutboxCursor([_event(attempts=1)])
    notification_worker.process_events(_OutboxConn(cur), limit=10, max_attempts=5, sender=_Sender(fail=True))
    [(_text, params)] = cur.updates
    status, attempts, error, next_at, event_id = params
    assert (status, attempts, error, event_id) == ("failed", 2, "smtp timeout", "e-1")
    assert next_at > datetime.now(timezone.utc)


def test_worker_parks_event_after_max_attempts():
    cur = _OutboxCursor([_event(attempts=4)])
    notification_worker.process_events(_OutboxConn(cur), limit=10, max_attempts=5, sender=_Sender(fail=True))
    [(_text, params)] = cur.updates
    assert params[0] == "dead"
    assert params[3] is None


def test_worker_fails_unknown_event_types_without_sending():
    cur = _OutboxCursor([_event(event_type="sms.blast")])
    sender = _Sender()
    notification_worker.process_events(_OutboxConn(cur), limit=10, sender=sender)
    assert sender.sent == []
    assert cur.updates[0][1][0] == "failed"


def test_retry_backoff_is_bounded_and_deterministic():
    a = notification_worker.next_retry_at_for_attempt(3, "e-1")
    b = notification_worker.next_retry_at_for_attempt(3, "e-1")
    assert abs((a - b).total_seconds()) < 1
    late = notification_worker.next_retry_at_for_attempt(50, "e-1")
    assert late - datetime.now(timezone.utc) <= timedelta(seconds=301)
