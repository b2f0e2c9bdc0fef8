"""
Commerce Event Tests
Events leave the process only after commit and never fail the transaction
"""

import time

from database import SessionLocal
from services.commerce_events import (
    CommerceEvent,
    CommerceEventDispatcher,
    CommerceEventType,
    publish_after_commit,
)
from utils.atomic_transactions import atomic_transaction


def _event(event_type=CommerceEventType.CARD_REDEEMED, order_id=None):
    return CommerceEvent(event_type=event_type, user_id=1, order_id=order_id)


class TestPublishAfterCommit:

    def test_commit_dispatches(self, dispatcher, recorded_events):
        with atomic_transaction() as session:
            publish_after_commit(session, _event())
            assert dispatcher.pending_count == 0

        assert dispatcher.pending_count == 1
        dispatcher.drain()
        assert len(recorded_events) == 1

    def test_rollback_discards(self, dispatcher, recorded_events):
        try:
            with atomic_transaction() as session:
                publish_after_commit(session, _event())
                raise RuntimeError("abort")
        except RuntimeError:
            pass

        assert dispatcher.drain() == 0
        assert recorded_events == []

    def test_savepoint_release_waits_for_outer_commit(self, dispatcher):
        with SessionLocal() as session:
            with session.begin_nested():
                publish_after_commit(session, _event())
            assert dispatcher.pending_count == 0
            session.commit()

        assert dispatcher.pending_count == 1


class TestDispatcher:

    def test_failing_subscriber_reports_reason(self):
        def blocked_bot(event):
            raise IOError("blocked")

        local = CommerceEventDispatcher()
        failures = []
        local.subscribe(CommerceEventType.ORDER_DELIVERED, blocked_bot)
        local.on_delivery_failure(lambda event, reason: failures.append((event.order_id, reason)))

        local.enqueue(_event(CommerceEventType.ORDER_DELIVERED, order_id=5))
        local.drain()

        assert failures == [(5, "OSError: blocked")]

    def test_failing_hook_is_contained(self):
        local = CommerceEventDispatcher()
        local.subscribe(CommerceEventType.ORDER_DELIVERED, lambda e: 1 / 0)
        local.on_delivery_failure(lambda event, reason: 1 / 0)

        local.enqueue(_event(CommerceEventType.ORDER_DELIVERED, order_id=1))

        assert local.drain() == 1

    def test_deliver_now_reports_outcome(self):
        local = CommerceEventDispatcher()
        assert local.deliver_now(_event()) is True

        local.subscribe(CommerceEventType.CARD_REDEEMED, lambda e: 1 / 0)
        assert local.deliver_now(_event()) is False

    def test_worker_thread_delivers(self):
        local = CommerceEventDispatcher()
        seen = []
        local.subscribe(CommerceEventType.CARD_REDEEMED, seen.append)
        local.start()
        try:
            local.enqueue(_event())
            deadline = time.time() + 5
            while not seen and time.time() < deadline:
                time.sleep(0.01)
        finally:
            local.stop()

        assert len(seen) == 1
        assert not local.is_running
