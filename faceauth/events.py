"""
Session events and the bus that delivers them.

The orchestrator never calls back into UI code directly; it publishes typed,
immutable events and whoever cares subscribes, either to one event type or
to everything.

Usage:
    from faceauth.events import EventBus, RegistrationProgress

    bus = EventBus()
    unsubscribe = bus.subscribe(lambda e: print(f"{e.current}/{e.total}"), RegistrationProgress)
    ...
    unsubscribe()
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple, Type

from faceauth.errors import FailureReason, RejectionReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionEvent:
    """Base class for everything published on the bus."""


@dataclass(frozen=True)
class StateChanged(SessionEvent):
    previous: Any
    current: Any


@dataclass(frozen=True)
class GuidanceIssued(SessionEvent):
    guidance: Any  # faceauth.face_tracker.Guidance


@dataclass(frozen=True)
class QualityFeedbackIssued(SessionEvent):
    feedback: Any  # faceauth.quality_gate.QualityFeedback
    quality: Any


@dataclass(frozen=True)
class FrameRejected(SessionEvent):
    reason: RejectionReason
    detail: str = ""


@dataclass(frozen=True)
class RegistrationProgress(SessionEvent):
    current: int
    total: int

    @property
    def fraction(self) -> float:
        return self.current / self.total if self.total else 0.0


@dataclass(frozen=True)
class ModeSwitched(SessionEvent):
    previous: Any  # SessionMode
    current: Any
    identity_name: str


@dataclass(frozen=True)
class SessionCompleted(SessionEvent):
    result: Any  # SessionResult


@dataclass(frozen=True)
class SessionFailed(SessionEvent):
    reason: FailureReason
    detail: str = ""


Handler = Callable[[SessionEvent], None]


class EventBus:
    """
    Synchronous publish/subscribe.

    Handlers run on the publishing thread (the orchestrator's event loop)
    and must return quickly. A handler that raises is logged and skipped.
    """

    def __init__(self):
        self._subscribers: List[Tuple[Handler, Optional[Type[SessionEvent]]]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler, event_type: Optional[Type[SessionEvent]] = None) -> Callable[[], None]:
        """
        Register a handler.

        Args:
            handler: Called with every matching event.
            event_type: Only deliver instances of this class (None = all).

        Returns:
            A callable that removes the subscription.
        """
        entry = (handler, event_type)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: SessionEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for handler, event_type in subscribers:
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler failed for {type(event).__name__}")
