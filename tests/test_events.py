"""
Tests for the session event bus.

Run with: pytest tests/test_events.py -v
"""

import logging

import pytest

from faceauth.errors import FailureReason, RejectionReason
from faceauth.events import (
    EventBus,
    FrameRejected,
    RegistrationProgress,
    SessionEvent,
    SessionFailed,
)


@pytest.fixture
def bus():
    return EventBus()


class TestEventBus:
    """Tests for EventBus."""

    def test_subscribe_all(self, bus):
        """Test that an untyped subscriber sees every event."""
        received = []
        bus.subscribe(received.append)

        bus.publish(FrameRejected(RejectionReason.NO_FACE))
        bus.publish(RegistrationProgress(1, 5))

        assert [type(e) for e in received] == [FrameRejected, RegistrationProgress]

    def test_subscribe_by_type(self, bus):
        """Test that a typed subscriber only sees its event type."""
        progress = []
        bus.subscribe(progress.append, RegistrationProgress)

        bus.publish(FrameRejected(RejectionReason.LOW_QUALITY))
        bus.publish(RegistrationProgress(2, 5))

        assert progress == [RegistrationProgress(2, 5)]

    def test_unsubscribe(self, bus):
        """Test that unsubscribing stops delivery and is idempotent."""
        received = []
        unsubscribe = bus.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        bus.publish(SessionFailed(FailureReason.TIMEOUT))

        assert received == []

    def test_failing_handler_is_isolated(self, bus, caplog):
        """Test that one raising handler does not stop the others."""
        received = []

        def broken(event: SessionEvent) -> None:
            raise RuntimeError("handler bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        with caplog.at_level(logging.ERROR):
            bus.publish(RegistrationProgress(3, 5))

        assert received == [RegistrationProgress(3, 5)]
        assert "RegistrationProgress" in caplog.text


class TestEvents:
    """Tests for the event payloads."""

    def test_progress_fraction(self):
        """Test the progress fraction, including a zero total."""
        assert RegistrationProgress(2, 5).fraction == pytest.approx(0.4)
        assert RegistrationProgress(0, 0).fraction == 0.0

    def test_events_are_immutable(self):
        """Test that published events cannot be modified by subscribers."""
        event = FrameRejected(RejectionReason.LIVENESS, "score 0.2")
        with pytest.raises(AttributeError):
            event.reason = RejectionReason.NO_FACE
