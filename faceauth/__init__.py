"""
Face Authentication Session Orchestrator

This package drives multi-user (1:N) face authentication over a live frame
stream: quality gating, face tracking, liveness fusion, adaptive-threshold
identification and enrollment, behind an asyncio session state machine.

Main components:
    - config: config.yaml loading and logging setup
    - profiles: Named, validated tuning profiles
    - quality_gate: Frame quality scoring and frame throttling
    - face_tracker: Face association across frames and user guidance
    - liveness: Weighted fusion of anti-spoofing signals
    - matching: Distance metrics and the 1:N identity matcher
    - crypto / identity_store: Encrypted descriptor persistence
    - interfaces: Camera, detector and extractor contracts (+ stubs)
    - orchestrator: The session state machine

Usage:
    from faceauth import OrchestratorBuilder, SessionMode
    from faceauth.config import setup_logging
"""

from faceauth.config import get_config, get_section, setup_logging

from faceauth.errors import (
    FaceAuthError,
    ConfigurationError,
    CaptureError,
    CapturePermissionError,
    MalformedFrameError,
    ExtractionError,
    StorageError,
    NoIdentitiesEnrolledError,
    DataError,
    DimensionMismatchError,
    EmptyDescriptorError,
    DecryptionError,
    SessionStateError,
    FailureReason,
    RejectionReason,
)

from faceauth.frame import Frame, FaceRegion, FaceLandmarks, Extraction

from faceauth.profiles import SessionProfile, get_profile, load_profile, available_profiles

from faceauth.quality_gate import FrameQualityGate, FrameQuality, FrameThrottle

from faceauth.face_tracker import FaceTracker, TrackedFace, Guidance, GuidanceKind

from faceauth.liveness import LivenessFusion, LivenessResult, LivenessSignals

from faceauth.matching import IdentityMatcher, MatcherOptions, DistanceMetric

from faceauth.crypto import AESGCMDescriptorCipher, EncryptedDescriptor, get_cipher

from faceauth.identity_store import (
    IdentityRecord,
    InMemoryIdentityStore,
    SQLiteIdentityStore,
    get_identity_store,
    generate_identity_id,
)

from faceauth.events import EventBus

from faceauth.session import SessionMode, SessionResult

from faceauth.orchestrator import OrchestratorBuilder, SessionOrchestrator

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "setup_logging",
    "SessionProfile",
    "get_profile",
    "load_profile",
    "available_profiles",
    # Errors
    "FaceAuthError",
    "ConfigurationError",
    "CaptureError",
    "CapturePermissionError",
    "MalformedFrameError",
    "ExtractionError",
    "StorageError",
    "NoIdentitiesEnrolledError",
    "DataError",
    "DimensionMismatchError",
    "EmptyDescriptorError",
    "DecryptionError",
    "SessionStateError",
    "FailureReason",
    "RejectionReason",
    # Frames
    "Frame",
    "FaceRegion",
    "FaceLandmarks",
    "Extraction",
    # Pipeline stages
    "FrameQualityGate",
    "FrameQuality",
    "FrameThrottle",
    "FaceTracker",
    "TrackedFace",
    "Guidance",
    "GuidanceKind",
    "LivenessFusion",
    "LivenessResult",
    "LivenessSignals",
    "IdentityMatcher",
    "MatcherOptions",
    "DistanceMetric",
    # Persistence
    "AESGCMDescriptorCipher",
    "EncryptedDescriptor",
    "get_cipher",
    "IdentityRecord",
    "InMemoryIdentityStore",
    "SQLiteIdentityStore",
    "get_identity_store",
    "generate_identity_id",
    # Session
    "EventBus",
    "SessionMode",
    "SessionResult",
    "OrchestratorBuilder",
    "SessionOrchestrator",
]
