"""
Session state, modes and results.

SessionState is a closed union of frozen dataclasses. Equality is structural
and derived by dataclasses; Failed compares by reason only, so any two
timeouts are equal regardless of their detail message.

    NotConfigured -> Configuring -> Ready -> Scanning <-> Processing
        -> Completed(result) | Failed(reason) | Cancelled

UserRegistration replaces Scanning while enrollment samples are being
collected.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

import numpy as np

from faceauth.errors import FailureReason, RejectionReason


class SessionMode(str, Enum):
    AUTHENTICATE = "authenticate"
    ENROLL = "enroll"
    AUTO = "auto"


@dataclass(frozen=True)
class SessionResult:
    """
    Authoritative outcome of a completed session.

    Attributes:
        identity_id: Recognized or newly enrolled identity.
        display_name: Its display name.
        confidence: Match confidence (1.0 for enrollment).
        method: SessionMode that produced the result.
        processing_time: Seconds from start() to completion.
    """

    identity_id: str
    display_name: str
    confidence: float
    method: SessionMode
    processing_time: float


@dataclass(frozen=True)
class NotConfigured:
    pass


@dataclass(frozen=True)
class Configuring:
    pass


@dataclass(frozen=True)
class Ready:
    pass


@dataclass(frozen=True)
class Scanning:
    pass


@dataclass(frozen=True)
class Processing:
    pass


@dataclass(frozen=True)
class UserRegistration:
    pass


@dataclass(frozen=True)
class Completed:
    result: SessionResult


@dataclass(frozen=True)
class Failed:
    reason: FailureReason
    detail: str = field(default="", compare=False)


@dataclass(frozen=True)
class Cancelled:
    pass


SessionState = Union[
    NotConfigured,
    Configuring,
    Ready,
    Scanning,
    Processing,
    UserRegistration,
    Completed,
    Failed,
    Cancelled,
]


def is_terminal(state: SessionState) -> bool:
    return isinstance(state, (Completed, Failed, Cancelled))


def is_active(state: SessionState) -> bool:
    """True while a session is consuming frames."""
    return isinstance(state, (Scanning, Processing, UserRegistration))


class RegistrationAccumulator:
    """
    Descriptors collected for one enrollment.

    Args:
        identity_id: Id the identity will be stored under.
        display_name: Its display name.
        required: Number of samples needed.
    """

    def __init__(self, identity_id: str, display_name: str, required: int):
        if required < 1:
            raise ValueError(f"required must be >= 1, got {required}")
        self.identity_id = identity_id
        self.display_name = display_name
        self.required = required
        self.descriptors: List[np.ndarray] = []

    def add(self, descriptor) -> None:
        if self.is_complete:
            return
        self.descriptors.append(np.asarray(descriptor, dtype=np.float32).copy())

    @property
    def count(self) -> int:
        return len(self.descriptors)

    @property
    def fraction(self) -> float:
        return self.count / self.required

    @property
    def is_complete(self) -> bool:
        return self.count >= self.required


@dataclass(frozen=True)
class FrameOutcome:
    """
    What one processed frame did to the session.

    Attributes:
        accepted: The frame produced a descriptor that was used.
        rejection: Why the frame was not used, if it was not.
        state: Session state after the frame.
        stale: The session moved on while the frame was in flight, so the
               result was discarded.
        detail: Human-readable detail for logs.
    """

    accepted: bool
    state: SessionState
    rejection: Optional[RejectionReason] = None
    stale: bool = False
    detail: str = ""

    @classmethod
    def rejected(cls, reason: RejectionReason, state: SessionState, detail: str = "") -> "FrameOutcome":
        return cls(accepted=False, state=state, rejection=reason, detail=detail)

    @classmethod
    def ignored(cls, state: SessionState, detail: str = "") -> "FrameOutcome":
        return cls(accepted=False, state=state, stale=True, detail=detail)
