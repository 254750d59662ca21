"""
Named session profiles.

A profile bundles the option structs of every pipeline stage plus the
session-level timeouts, authentication policy and enrollment sample count.
Profiles are static, validated pydantic models; config.yaml only picks one by
name and may override individual fields.

Profiles:
    default      balanced everything, liveness required
    speed        process every frame, fast matcher, short timeouts
    quality      strict matcher and tracker, 8 enrollment samples
    battery      small buffer, every 5th frame, relaxed timeouts
    strict       strict thresholds everywhere, short timeouts
    development  simulator liveness (not required), multiple faces allowed

Usage:
    from faceauth.profiles import get_profile, load_profile

    profile = get_profile("quality")
    profile = load_profile()  # from config.yaml session.profile / session.overrides
"""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from faceauth.errors import ConfigurationError
from faceauth.face_tracker import TrackerOptions
from faceauth.liveness import LivenessOptions
from faceauth.matching.identity_matcher import MatcherOptions
from faceauth.quality_gate import ProcessorOptions, QualityGateOptions

logger = logging.getLogger(__name__)


DEFAULT_PROFILE = "default"


class TimeoutOptions(BaseModel):
    """Session and per-operation time limits, in seconds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    authentication: float = Field(30.0, gt=0.0, description="Authenticate-mode session timeout")
    registration: float = Field(60.0, gt=0.0, description="Enroll-mode session timeout")
    auto: float = Field(45.0, gt=0.0, description="Auto-mode session timeout")
    processing: float = Field(0.5, gt=0.0, description="Per-call limit for detector/extractor")
    storage: float = Field(5.0, gt=0.0, description="Per-call limit for identity store access")

    @classmethod
    def balanced(cls) -> "TimeoutOptions":
        return cls()

    @classmethod
    def relaxed(cls) -> "TimeoutOptions":
        return cls(authentication=45.0, registration=90.0, auto=70.0, processing=1.0, storage=10.0)

    @classmethod
    def strict(cls) -> "TimeoutOptions":
        return cls(authentication=15.0, registration=30.0, auto=25.0, processing=0.2, storage=2.0)


class AuthenticationOptions(BaseModel):
    """Per-frame admission policy while a session runs."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    allow_multiple_faces: bool = Field(False, description="Accept frames with more than one face")
    required_stability: int = Field(5, ge=1, le=30, description="Stable frames expected before matching")
    max_collaborator_failures: int = Field(3, ge=1, le=10, description="Consecutive failures before giving up")
    require_stable_face: bool = Field(False, description="Reject frames whose face is not yet stable")

    @classmethod
    def balanced(cls) -> "AuthenticationOptions":
        return cls()

    @classmethod
    def strict(cls) -> "AuthenticationOptions":
        return cls(required_stability=10, max_collaborator_failures=2, require_stable_face=True)

    @classmethod
    def development(cls) -> "AuthenticationOptions":
        return cls(allow_multiple_faces=True, required_stability=3, max_collaborator_failures=5)


class RegistrationOptions(BaseModel):
    """Enrollment sample collection."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    required_samples: int = Field(5, ge=1, le=20, description="Descriptors collected per enrollment")

    @classmethod
    def quick(cls) -> "RegistrationOptions":
        return cls(required_samples=3)

    @classmethod
    def balanced(cls) -> "RegistrationOptions":
        return cls()

    @classmethod
    def comprehensive(cls) -> "RegistrationOptions":
        return cls(required_samples=8)


class SessionProfile(BaseModel):
    """Everything a SessionOrchestrator needs to know about tuning."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = DEFAULT_PROFILE
    quality: QualityGateOptions = Field(default_factory=QualityGateOptions)
    processor: ProcessorOptions = Field(default_factory=ProcessorOptions)
    tracker: TrackerOptions = Field(default_factory=TrackerOptions)
    liveness: LivenessOptions = Field(default_factory=LivenessOptions)
    matcher: MatcherOptions = Field(default_factory=MatcherOptions)
    timeouts: TimeoutOptions = Field(default_factory=TimeoutOptions)
    authentication: AuthenticationOptions = Field(default_factory=AuthenticationOptions)
    registration: RegistrationOptions = Field(default_factory=RegistrationOptions)


def _default() -> SessionProfile:
    return SessionProfile(name="default")


def _speed() -> SessionProfile:
    return SessionProfile(
        name="speed",
        processor=ProcessorOptions.speed(),
        timeouts=TimeoutOptions.strict(),
        matcher=MatcherOptions.fast(),
        tracker=TrackerOptions.relaxed(),
        registration=RegistrationOptions.quick(),
    )


def _quality() -> SessionProfile:
    return SessionProfile(
        name="quality",
        quality=QualityGateOptions.strict(),
        processor=ProcessorOptions(buffer_size=10, processing_interval=3),
        timeouts=TimeoutOptions.relaxed(),
        matcher=MatcherOptions.strict(),
        tracker=TrackerOptions.strict(),
        authentication=AuthenticationOptions.strict(),
        registration=RegistrationOptions.comprehensive(),
    )


def _battery() -> SessionProfile:
    return SessionProfile(
        name="battery",
        processor=ProcessorOptions.battery(),
        timeouts=TimeoutOptions.relaxed(),
        registration=RegistrationOptions.quick(),
    )


def _strict() -> SessionProfile:
    return SessionProfile(
        name="strict",
        processor=ProcessorOptions(buffer_size=5, processing_interval=1),
        timeouts=TimeoutOptions.strict(),
        matcher=MatcherOptions.strict(),
        tracker=TrackerOptions.strict(),
        authentication=AuthenticationOptions.strict(),
        registration=RegistrationOptions.comprehensive(),
    )


def _development() -> SessionProfile:
    return SessionProfile(
        name="development",
        processor=ProcessorOptions(buffer_size=5, processing_interval=1),
        timeouts=TimeoutOptions.relaxed(),
        tracker=TrackerOptions.relaxed(),
        liveness=LivenessOptions.simulator(),
        authentication=AuthenticationOptions.development(),
    )


PROFILES: Dict[str, Callable[[], SessionProfile]] = {
    "default": _default,
    "speed": _speed,
    "quality": _quality,
    "battery": _battery,
    "strict": _strict,
    "development": _development,
}


def available_profiles() -> List[str]:
    return list(PROFILES)


def get_profile(name: str = DEFAULT_PROFILE) -> SessionProfile:
    """
    Look up a named profile.

    Raises:
        ConfigurationError: If the name is unknown.
    """
    factory = PROFILES.get(name)
    if factory is None:
        raise ConfigurationError(f"Unknown profile '{name}'. Available profiles: {available_profiles()}")
    return factory()


def _deep_merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_overrides(profile: SessionProfile, overrides: Optional[Mapping[str, Any]]) -> SessionProfile:
    """
    Return a copy of a profile with nested field overrides applied.

    Raises:
        ConfigurationError: If the result does not validate.
    """
    if not overrides:
        return profile
    try:
        return SessionProfile.model_validate(_deep_merge(profile.model_dump(), overrides))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid overrides for profile '{profile.name}': {e}") from e


def load_profile(name: Optional[str] = None, overrides: Optional[Mapping[str, Any]] = None) -> SessionProfile:
    """
    Build the session profile for this deployment.

    Args:
        name: Profile name. Defaults to session.profile in config.yaml,
              else "default".
        overrides: Nested overrides. Defaults to session.overrides in
                   config.yaml.

    Returns:
        Validated SessionProfile.

    Raises:
        ConfigurationError: Unknown profile name or invalid overrides.
    """
    try:
        from faceauth.config import get_session_config
        session_config = get_session_config()
    except (FileNotFoundError, KeyError):
        session_config = {}

    if name is None:
        name = session_config.get("profile") or DEFAULT_PROFILE
    if overrides is None:
        overrides = session_config.get("overrides") or {}

    profile = apply_overrides(get_profile(name), overrides)
    logger.info(f"Loaded session profile '{profile.name}'" + (f" with overrides {dict(overrides)}" if overrides else ""))
    return profile
