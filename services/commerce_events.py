"""
Commerce Events - outbound notifications for the bot / notification layer

Services stage events on their session with ``publish_after_commit``. Nothing
leaves the process until the owning transaction commits; a rollback drops the
staged events. Committed events go onto a queue drained by a background worker
thread, so a slow or failing subscriber never blocks or fails the commerce
transaction that produced the event.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


class CommerceEventType(Enum):
    ORDER_PAID = "order_paid"
    ORDER_DELIVERED = "order_delivered"
    ORDER_NO_STOCK = "order_no_stock"
    BALANCE_CREDITED = "balance_credited"
    CARD_REDEEMED = "card_redeemed"
    ORDER_EXPIRED = "order_expired"
    DELIVERY_FAILED_PERMANENT = "delivery_failed_permanent"


# Events whose failed hand-off means the user never saw what they paid for
DELIVERY_EVENT_TYPES = frozenset({
    CommerceEventType.ORDER_DELIVERED,
    CommerceEventType.BALANCE_CREDITED,
})


@dataclass
class CommerceEvent:
    """Identifiers a collaborator needs to render a user-facing message"""
    event_type: CommerceEventType
    user_id: int
    order_id: Optional[int] = None
    amount_cents: Optional[int] = None
    balance_after: Optional[int] = None
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    code: Optional[str] = None
    card_code: Optional[str] = None
    telegram_id: Optional[int] = None
    language_code: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[CommerceEvent], Any]
FailureHook = Callable[[CommerceEvent, str], Any]

_STAGED_EVENTS_KEY = "commerce_events"
_STOP = object()


class CommerceEventDispatcher:
    """Fan-out of committed events to subscribers on a worker thread"""

    def __init__(self):
        self._subscribers: Dict[CommerceEventType, List[EventHandler]] = {}
        self._failure_hooks: List[FailureHook] = []
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def subscribe(self, event_type: CommerceEventType, handler: EventHandler) -> None:
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe_all(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def on_delivery_failure(self, hook: FailureHook) -> None:
        """Called with (event, reason) when a queued event could not be handed off"""
        with self._lock:
            if hook not in self._failure_hooks:
                self._failure_hooks.append(hook)

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    def enqueue(self, commerce_event: CommerceEvent) -> None:
        self._queue.put(commerce_event)

    def start(self) -> None:
        if self.is_running:
            return
        self._worker = threading.Thread(target=self._run, name="commerce-events", daemon=True)
        self._worker.start()
        logger.info("📣 Commerce event dispatcher started")

    def stop(self, timeout: float = 5.0) -> None:
        if not self.is_running:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None
        logger.info("📣 Commerce event dispatcher stopped")

    def drain(self) -> int:
        """Deliver everything queued on the calling thread; returns events handled"""
        handled = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return handled
            if item is _STOP:
                continue
            self._dispatch(item)
            handled += 1

    def deliver_now(self, commerce_event: CommerceEvent) -> bool:
        """Synchronous hand-off; True when every subscriber accepted the event"""
        return self._deliver(commerce_event) is None

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            self._dispatch(item)

    def _dispatch(self, commerce_event: CommerceEvent) -> None:
        reason = self._deliver(commerce_event)
        if reason is None:
            return
        with self._lock:
            hooks = list(self._failure_hooks)
        for hook in hooks:
            try:
                hook(commerce_event, reason)
            except Exception as e:
                logger.error(f"❌ EVENT_FAILURE_HOOK: {commerce_event.event_type.value} order {commerce_event.order_id}: {e}")

    def _deliver(self, commerce_event: CommerceEvent) -> Optional[str]:
        with self._lock:
            handlers = list(self._subscribers.get(commerce_event.event_type, []))
        for handler in handlers:
            try:
                handler(commerce_event)
            except Exception as e:
                logger.error(
                    f"❌ EVENT_DELIVERY_FAILED: {commerce_event.event_type.value} "
                    f"order {commerce_event.order_id} user {commerce_event.user_id}: {e}"
                )
                return f"{type(e).__name__}: {e}"
        return None


# Global instance
event_dispatcher = CommerceEventDispatcher()


def publish_after_commit(session: Session, commerce_event: CommerceEvent) -> None:
    """Stage an event; it is dispatched only if the session's transaction commits"""
    session.info.setdefault(_STAGED_EVENTS_KEY, []).append(commerce_event)


@event.listens_for(Session, "after_commit")
def _dispatch_staged_events(session):
    # Savepoint release: wait for the outermost commit
    if session.in_nested_transaction():
        return
    staged = session.info.pop(_STAGED_EVENTS_KEY, None)
    for commerce_event in staged or ():
        event_dispatcher.enqueue(commerce_event)


@event.listens_for(Session, "after_rollback")
def _discard_staged_events(session):
    if session.in_nested_transaction():
        return
    staged = session.info.pop(_STAGED_EVENTS_KEY, None)
    if staged:
        logger.debug(f"Discarded {len(staged)} staged commerce events after rollback")
