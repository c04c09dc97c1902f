"""Tests for the durable outbox.

Verifies that:
- enqueue persists PENDING items and appends a sync log event
- pending() returns PENDING and FAILED items oldest first
- DONE items are terminal and never returned again
- mark_failed increments attempts and keeps items eligible
- unknown action kinds are rejected at enqueue time
"""

import pytest

from farmsync.cache.outbox import (
    DEFAULT_FAILURE_MESSAGE,
    ActionKind,
    Outbox,
    OutboxStatus,
)


def _enqueue(outbox: Outbox, action=ActionKind.MODULE_CREATE, record_id=None) -> int:
    payload = {"module_key": "TASKS", "table": "tasks", "data": {"title": "x"}}
    if record_id is not None:
        payload["record_id"] = record_id
    return outbox.enqueue(action, payload, user_id=3, farm_id=7)


class TestEnqueue:
    def test_enqueue_persists_pending_item(self, outbox) -> None:
        outbox_id = _enqueue(outbox)

        item = outbox.get(outbox_id)
        assert item.status == OutboxStatus.PENDING
        assert item.action_key == "MODULE_CREATE"
        assert item.attempts == 0
        assert item.user_id == 3
        assert item.farm_id == 7
        assert item.payload["data"] == {"title": "x"}
        assert item.last_error is None

    def test_enqueue_logs_event(self, outbox, local_store) -> None:
        _enqueue(outbox)
        assert local_store.stats().sync_log_count == 1

    def test_enqueue_accepts_string_action(self, outbox) -> None:
        outbox_id = outbox.enqueue("MODULE_DELETE", {"record_id": 1}, 3, 7)
        assert outbox.get(outbox_id).action_key == "MODULE_DELETE"

    def test_unknown_action_rejected(self, outbox) -> None:
        with pytest.raises(ValueError):
            outbox.enqueue("MODULE_PURGE", {}, 3, 7)

    def test_ids_increase(self, outbox) -> None:
        assert _enqueue(outbox) < _enqueue(outbox)


class TestPending:
    def test_fifo_order_by_created_at(self, outbox, clock) -> None:
        first = _enqueue(outbox)
        clock.advance(1)
        second = _enqueue(outbox, ActionKind.MODULE_UPDATE, record_id=1)
        clock.advance(1)
        third = _enqueue(outbox, ActionKind.MODULE_DELETE, record_id=1)

        assert [i.outbox_id for i in outbox.pending()] == [first, second, third]

    def test_same_timestamp_breaks_ties_by_id(self, outbox) -> None:
        ids = [_enqueue(outbox) for _ in range(3)]
        assert [i.outbox_id for i in outbox.pending()] == ids

    def test_limit(self, outbox) -> None:
        for _ in range(5):
            _enqueue(outbox)
        assert len(outbox.pending(2)) == 2

    def test_done_items_are_excluded(self, outbox) -> None:
        done = _enqueue(outbox)
        kept = _enqueue(outbox)
        outbox.mark_done(done)

        assert [i.outbox_id for i in outbox.pending()] == [kept]

    def test_failed_items_stay_eligible(self, outbox) -> None:
        failed = _enqueue(outbox)
        outbox.mark_failed(failed, "connection refused")

        items = outbox.pending()
        assert [i.outbox_id for i in items] == [failed]
        assert items[0].status == OutboxStatus.FAILED


class TestStateTransitions:
    def test_mark_failed_increments_attempts(self, outbox) -> None:
        outbox_id = _enqueue(outbox)
        outbox.mark_failed(outbox_id, "first")
        outbox.mark_failed(outbox_id, "second")

        item = outbox.get(outbox_id)
        assert item.attempts == 2
        assert item.last_error == "second"

    def test_mark_failed_default_message(self, outbox) -> None:
        outbox_id = _enqueue(outbox)
        outbox.mark_failed(outbox_id)
        assert outbox.get(outbox_id).last_error == DEFAULT_FAILURE_MESSAGE

    def test_failed_then_done_clears_error(self, outbox, clock) -> None:
        outbox_id = _enqueue(outbox)
        outbox.mark_failed(outbox_id, "offline")
        clock.advance(5)
        outbox.mark_done(outbox_id)

        item = outbox.get(outbox_id)
        assert item.status == OutboxStatus.DONE
        assert item.attempts == 2
        assert item.last_error is None
        assert item.updated_at > item.created_at

    def test_stats(self, outbox) -> None:
        a = _enqueue(outbox)
        b = _enqueue(outbox)
        _enqueue(outbox)
        outbox.mark_done(a)
        outbox.mark_failed(b, "x")

        stats = outbox.stats()
        assert stats.pending_count == 1
        assert stats.failed_count == 1
        assert stats.done_count == 1
        assert stats.total_count == 3

    def test_empty_stats(self, outbox) -> None:
        assert outbox.stats().total_count == 0

    def test_get_missing(self, outbox) -> None:
        assert outbox.get(999) is None
