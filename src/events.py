"""
events.py

Domain events and the in-process event bus.

Overview
--------
Use cases publish an event after their write has committed.  Subscribers
(currently only the email notification service) run on a small worker pool
so a slow or failing consumer can never delay or fail the operation that
produced the event.

Delivery is at-most-once and fire-and-forget: there is no durable queue and
no retry.  A handler that raises is logged and the remaining handlers still
run.

Events
------
- ApplicationCreatedEvent          "application:created"
- ApplicationStatusChangedEvent    "application:status_changed"
- ApplicationResubmittedEvent      "application:resubmitted"
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, ClassVar, Dict, List, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DomainEvent:
    event_type: ClassVar[str] = ""


@dataclass(frozen=True)
class ApplicationCreatedEvent(DomainEvent):
    event_type: ClassVar[str] = "application:created"

    application_id: str
    student_id: str
    student_name: str
    student_email: str
    supervisor_id: str
    supervisor_name: str
    project_title: str
    has_partner: bool = False
    partner_id: Optional[str] = None


@dataclass(frozen=True)
class ApplicationStatusChangedEvent(DomainEvent):
    """
    Published after an application's status was written.

    `triggered_by_user_id` is the caller who changed the status; the
    notification consumer never emails that user.
    """
    event_type: ClassVar[str] = "application:status_changed"

    application_id: str
    student_id: str
    student_name: str
    student_email: str
    supervisor_id: str
    supervisor_name: str
    project_title: str
    previous_status: str
    new_status: str
    triggered_by_user_id: str
    feedback: Optional[str] = None
    has_partner: bool = False
    partner_id: Optional[str] = None
    partner_name: Optional[str] = None
    partner_email: Optional[str] = None


@dataclass(frozen=True)
class ApplicationResubmittedEvent(DomainEvent):
    event_type: ClassVar[str] = "application:resubmitted"

    application_id: str
    student_id: str
    student_name: str
    supervisor_id: str
    supervisor_name: str
    supervisor_email: str
    project_title: str
    triggered_by_user_id: str


Handler = Callable[[DomainEvent], None]


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------

class EventBus:
    """
    Typed publish/subscribe channel.

    With `synchronous=True` handlers run inline on the publishing thread;
    tests use this to observe side effects deterministically.
    """

    def __init__(self, max_workers: int = 4, synchronous: bool = False):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        if not synchronous:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="event-bus"
            )

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers[event_type].append(handler)
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def handler_count(self, event_type: Optional[str] = None) -> int:
        with self._lock:
            if event_type is not None:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values())

    def publish(self, event: DomainEvent) -> None:
        """Dispatch to every subscriber.  Never raises."""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))
        if not handlers:
            logger.debug("No subscribers for %s", event.event_type)
            return
        for handler in handlers:
            if self._executor is None:
                self._dispatch(handler, event)
                continue
            try:
                self._executor.submit(self._dispatch, handler, event)
            except RuntimeError:
                logger.warning("Event bus is closed; dropped %s", event.event_type)
                return

    @staticmethod
    def _dispatch(handler: Handler, event: DomainEvent) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception(
                "Handler %s failed for %s",
                getattr(handler, "__qualname__", repr(handler)),
                event.event_type,
            )

    def close(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
