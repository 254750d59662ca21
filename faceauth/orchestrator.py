"""
Session Orchestrator Module

Drives one face authentication session at a time over a stream of frames:

    capture -> buffer/throttle -> detect -> track -> quality gate
            -> liveness -> extract -> authenticate | enroll | auto

The orchestrator owns the session state machine and every per-session
component (tracker, quality gate, liveness history, registration
accumulator). It runs on an asyncio event loop; collaborator calls
(detector, extractor, store, cipher) run in the default executor and are
bounded by the profile's per-operation timeouts.

Frames may be pushed from any thread through submit_frame(); at most one
frame is processed at a time and frames arriving meanwhile are dropped.
Results of a frame that was in flight when the session moved on (stop,
cancel, timeout, completion) are discarded.

Usage:
    orchestrator = (
        OrchestratorBuilder()
        .with_profile("default")
        .with_capture(OpenCVCaptureSource(0))
        .with_detector(MediaPipeFaceDetector())
        .with_extractor(ArcFaceExtractor())
        .with_store(SQLiteIdentityStore("storage/identities.sqlite"))
        .with_cipher(AESGCMDescriptorCipher.from_env())
        .build()
    )
    orchestrator.events.subscribe(print)

    await orchestrator.configure()
    await orchestrator.start(SessionMode.AUTO)
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple, Union

import numpy as np

from faceauth.crypto import DescriptorCipher
from faceauth.errors import (
    ConfigurationError,
    DataError,
    ExtractionError,
    FailureReason,
    MalformedFrameError,
    NoIdentitiesEnrolledError,
    RejectionReason,
    SessionStateError,
    StorageError,
    classify_failure,
)
from faceauth.events import (
    EventBus,
    FrameRejected,
    GuidanceIssued,
    ModeSwitched,
    QualityFeedbackIssued,
    RegistrationProgress,
    SessionCompleted,
    SessionEvent,
    SessionFailed,
    StateChanged,
)
from faceauth.face_tracker import FaceTracker, Guidance, GuidanceKind, TrackedFace
from faceauth.frame import Frame
from faceauth.frame_buffer import FrameBuffer
from faceauth.identity_store import IdentityRecord, IdentityStore, generate_identity_id
from faceauth.interfaces import CaptureSource, EmbeddingExtractor, FaceDetector
from faceauth.liveness import LivenessFusion, LivenessSignals
from faceauth.matching.identity_matcher import IdentityMatcher
from faceauth.profiles import SessionProfile, get_profile, load_profile
from faceauth.quality_gate import FrameQualityGate, FrameThrottle, PerformanceStats, feedback
from faceauth.session import (
    Cancelled,
    Completed,
    Configuring,
    Failed,
    FrameOutcome,
    NotConfigured,
    Processing,
    Ready,
    RegistrationAccumulator,
    Scanning,
    SessionMode,
    SessionResult,
    SessionState,
    UserRegistration,
    is_active,
)

logger = logging.getLogger(__name__)

# Margin around the detected face handed to the extractor
FACE_CROP_PADDING = 0.2

# Rejections caused by a collaborator rather than by the frame itself
COLLABORATOR_REJECTIONS = (RejectionReason.COLLABORATOR_ERROR, RejectionReason.OPERATION_TIMEOUT)


def default_identity_name() -> str:
    return f"User_{int(time.time())}"


class OrchestratorBuilder:
    """
    Assembles a SessionOrchestrator once every collaborator is known.

    build() refuses to produce a partially wired orchestrator.
    """

    def __init__(self):
        self._profile: Optional[SessionProfile] = None
        self._capture: Optional[CaptureSource] = None
        self._detector: Optional[FaceDetector] = None
        self._extractor: Optional[EmbeddingExtractor] = None
        self._store: Optional[IdentityStore] = None
        self._cipher: Optional[DescriptorCipher] = None
        self._matcher: Optional[IdentityMatcher] = None
        self._event_bus: Optional[EventBus] = None

    def with_profile(self, profile: Union[SessionProfile, str]) -> "OrchestratorBuilder":
        self._profile = get_profile(profile) if isinstance(profile, str) else profile
        return self

    def with_capture(self, capture: CaptureSource) -> "OrchestratorBuilder":
        self._capture = capture
        return self

    def with_detector(self, detector: FaceDetector) -> "OrchestratorBuilder":
        self._detector = detector
        return self

    def with_extractor(self, extractor: EmbeddingExtractor) -> "OrchestratorBuilder":
        self._extractor = extractor
        return self

    def with_store(self, store: IdentityStore) -> "OrchestratorBuilder":
        self._store = store
        return self

    def with_cipher(self, cipher: DescriptorCipher) -> "OrchestratorBuilder":
        self._cipher = cipher
        return self

    def with_matcher(self, matcher: IdentityMatcher) -> "OrchestratorBuilder":
        self._matcher = matcher
        return self

    def with_event_bus(self, event_bus: EventBus) -> "OrchestratorBuilder":
        self._event_bus = event_bus
        return self

    def build(self) -> "SessionOrchestrator":
        """
        Raises:
            ConfigurationError: Naming every missing collaborator.
        """
        required = {
            "capture": self._capture,
            "detector": self._detector,
            "extractor": self._extractor,
            "store": self._store,
            "cipher": self._cipher,
        }
        missing = [name for name, value in required.items() if value is None]
        if missing:
            raise ConfigurationError(f"Missing collaborators: {', '.join(missing)}")

        return SessionOrchestrator(
            profile=self._profile or load_profile(),
            capture=self._capture,
            detector=self._detector,
            extractor=self._extractor,
            store=self._store,
            cipher=self._cipher,
            matcher=self._matcher,
            event_bus=self._event_bus,
        )


class SessionOrchestrator:
    """
    Session state machine and frame pipeline.

    All state is mutated on the event loop that called start(); the only
    method safe to call from another thread is submit_frame().

    Args:
        profile: Tuning for every stage.
        capture: Camera collaborator.
        detector: Face detector collaborator.
        extractor: Descriptor extractor collaborator.
        store: Identity store collaborator.
        cipher: Descriptor encryption collaborator.
        matcher: Shared matcher (keeps adaptive thresholds across
                 sessions). Created from the profile if None.
        event_bus: Bus events are published on. Created if None.
    """

    def __init__(
        self,
        profile: SessionProfile,
        capture: CaptureSource,
        detector: FaceDetector,
        extractor: EmbeddingExtractor,
        store: IdentityStore,
        cipher: DescriptorCipher,
        matcher: Optional[IdentityMatcher] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.profile = profile
        self._capture = capture
        self._detector = detector
        self._extractor = extractor
        self._store = store
        self._cipher = cipher
        self._matcher = matcher or IdentityMatcher(profile.matcher)
        self.events = event_bus or EventBus()

        self._quality_gate = FrameQualityGate(profile.quality)
        self._throttle = FrameThrottle(profile.processor)
        self._buffer = FrameBuffer(profile.processor.buffer_size)
        self._tracker = FaceTracker(profile.tracker)
        self._liveness = LivenessFusion(profile.liveness)

        self._state: SessionState = NotConfigured()
        self._configured = False
        self._mode: Optional[SessionMode] = None
        self._generation = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._capture_stopping: Optional[asyncio.Future] = None
        self._started_at = 0.0
        self._accumulator: Optional[RegistrationAccumulator] = None
        self._gallery: Optional[Dict[str, List[np.ndarray]]] = None
        self._names: Dict[str, str] = {}
        self._consecutive_failures = 0
        self._last_guidance: Optional[GuidanceKind] = None
        self._last_feedback = None
        self._tasks: Set[asyncio.Task] = set()
        self._pending_name: Optional[str] = None
        # Generation whose own frame ended the session (its outcome is not stale)
        self._settled_generation: Optional[int] = None

        logger.info(f"SessionOrchestrator created with profile '{profile.name}'")

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def mode(self) -> Optional[SessionMode]:
        return self._mode

    @property
    def matcher(self) -> IdentityMatcher:
        return self._matcher

    @property
    def registration_progress(self) -> Optional[RegistrationProgress]:
        if self._accumulator is None:
            return None
        return RegistrationProgress(current=self._accumulator.count, total=self._accumulator.required)

    def performance_stats(self) -> PerformanceStats:
        return self._throttle.stats()

    def best_recent_frame(self) -> Optional[Frame]:
        """Most recent buffered frame in which a face was detected."""
        return self._buffer.best_recent()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def configure(self) -> None:
        """
        Prepare the capture collaborator: NotConfigured -> Configuring -> Ready.

        Raises:
            SessionStateError: If a session is running.
            FaceAuthError: Whatever the collaborator raised; the state is
                           Failed with the matching reason.
        """
        if is_active(self._state) or isinstance(self._state, Configuring):
            raise SessionStateError(f"Cannot configure while {type(self._state).__name__}")

        await self._wait_capture_stopped()
        self._set_state(Configuring())
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._capture.configure)
        except Exception as e:
            self._configured = False
            self._enter_failed(classify_failure(e), f"Configuration failed: {e}")
            raise

        self._configured = True
        self._set_state(Ready())
        logger.info("Orchestrator configured")

    async def start(
        self,
        mode: Union[SessionMode, str] = SessionMode.AUTHENTICATE,
        timeout: Optional[float] = None,
        identity_name: Optional[str] = None,
    ) -> None:
        """
        Start a session.

        Args:
            mode: AUTHENTICATE, ENROLL or AUTO.
            timeout: Session timeout in seconds. Defaults to the profile's
                     timeout for the mode.
            identity_name: Display name for enrollment (default
                           "User_<unix seconds>").

        Raises:
            ConfigurationError: configure() has not completed, or the
                                enrollment name is blank or already taken.
                                The state is left unchanged.
            SessionStateError: A session is already running.
            NoIdentitiesEnrolledError: AUTHENTICATE with an empty store.
            StorageError / CaptureError: Collaborator failures at start.
        """
        if not self._configured:
            raise ConfigurationError("configure() must complete before start()")
        if is_active(self._state) or isinstance(self._state, Configuring):
            raise SessionStateError(f"Cannot start while {type(self._state).__name__}")
        if timeout is not None and timeout <= 0:
            raise ConfigurationError(f"Session timeout must be positive, got {timeout}")

        mode = SessionMode(mode)
        if identity_name is not None and mode != SessionMode.AUTHENTICATE:
            identity_name = await self._check_identity_name(identity_name)

        # The previous session's capture stop must land before capture restarts
        await self._wait_capture_stopped()

        self._loop = asyncio.get_running_loop()
        self._reset_session()
        self._generation += 1
        self._mode = mode
        self._started_at = time.monotonic()

        if mode == SessionMode.AUTHENTICATE:
            try:
                enrolled = await self._call(self._store.count, timeout=self.profile.timeouts.storage)
            except Exception as e:
                self._enter_failed(classify_failure(e), f"Cannot read identity store: {e}")
                raise
            if enrolled == 0:
                self._enter_failed(FailureReason.NO_IDENTITIES_ENROLLED, "No identities enrolled")
                raise NoIdentitiesEnrolledError("Cannot authenticate: no identities enrolled")

        if mode == SessionMode.ENROLL:
            self._begin_registration(identity_name)
            self._set_state(UserRegistration())
        else:
            self._pending_name = identity_name
            self._set_state(Scanning())

        session_timeout = timeout or self._default_timeout(mode)
        generation = self._generation
        self._timeout_handle = self._loop.call_later(session_timeout, self._on_timeout, generation)

        try:
            self._capture.start(self.submit_frame)
        except Exception as e:
            self._enter_failed(classify_failure(e), f"Capture failed to start: {e}")
            raise

        logger.info(f"Session started: mode={mode.value}, timeout={session_timeout:.1f}s")

    async def stop(self) -> None:
        """Release session resources and return to Ready. Idempotent."""
        if not self._configured:
            return
        self._release()
        await self._wait_capture_stopped()
        if not isinstance(self._state, Ready):
            self._set_state(Ready())
            logger.info("Session stopped")

    async def cancel(self) -> None:
        """Release session resources and end in Cancelled. Idempotent."""
        if not self._configured or isinstance(self._state, Cancelled):
            return
        self._release()
        await self._wait_capture_stopped()
        self._set_state(Cancelled())
        logger.info("Session cancelled")

    async def _check_identity_name(self, identity_name: str) -> str:
        name = identity_name.strip()
        if not name:
            raise ConfigurationError("Identity name must not be blank")
        if await self._call(self._store.exists_by_name, name, timeout=self.profile.timeouts.storage):
            raise ConfigurationError(f"An identity named '{name}' is already enrolled")
        return name

    def _default_timeout(self, mode: SessionMode) -> float:
        timeouts = self.profile.timeouts
        if mode == SessionMode.AUTHENTICATE:
            return timeouts.authentication
        if mode == SessionMode.ENROLL:
            return timeouts.registration
        return timeouts.auto

    def _on_timeout(self, generation: int) -> None:
        if generation != self._generation or not is_active(self._state):
            return
        logger.warning(f"Session timed out after {time.monotonic() - self._started_at:.1f}s")
        self._enter_failed(FailureReason.TIMEOUT, "Session timed out")

    def _reset_session(self) -> None:
        self._tracker.reset()
        self._liveness.reset()
        self._quality_gate.reset()
        self._throttle.reset()
        self._buffer.clear()
        self._accumulator = None
        self._gallery = None
        self._names = {}
        self._consecutive_failures = 0
        self._last_guidance = None
        self._last_feedback = None
        self._pending_name = None

    def _release(self) -> None:
        """Stop capture, disarm the timer and invalidate in-flight work."""
        self._generation += 1
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

        self._stop_capture()

        self._throttle.reset()
        self._tracker.reset()
        self._liveness.reset()
        self._quality_gate.reset()
        self._accumulator = None
        self._gallery = None

    def _stop_capture(self) -> None:
        """
        Stop capture in the default executor.

        capture.stop() may join a reader thread, so it never runs on the
        event loop. configure(), start(), stop() and cancel() wait for it.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._stop_capture_now()
            return
        if self._capture_stopping is not None and not self._capture_stopping.done():
            # Capture cannot restart before the pending stop finishes
            return
        self._capture_stopping = loop.run_in_executor(None, self._stop_capture_now)

    def _stop_capture_now(self) -> None:
        try:
            self._capture.stop()
        except Exception as e:
            logger.warning(f"Capture stop failed: {e}")

    async def _wait_capture_stopped(self) -> None:
        stopping = self._capture_stopping
        if stopping is not None:
            await stopping
            if self._capture_stopping is stopping:
                self._capture_stopping = None

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        previous = self._state
        self._state = state
        if previous != state:
            logger.debug(f"State: {type(previous).__name__} -> {type(state).__name__}")
            self._publish(StateChanged(previous=previous, current=state))

    def _enter_failed(self, reason: FailureReason, detail: str = "") -> None:
        self._release()
        self._set_state(Failed(reason=reason, detail=detail))
        logger.error(f"Session failed ({reason.value}): {detail}")
        self._publish(SessionFailed(reason=reason, detail=detail))

    def _complete(self, result: SessionResult) -> None:
        self._release()
        self._set_state(Completed(result=result))
        logger.info(
            f"Session completed: {result.method.value} {result.display_name} "
            f"(id={result.identity_id}, confidence={result.confidence:.3f}, {result.processing_time:.2f}s)"
        )
        self._publish(SessionCompleted(result=result))

    def _publish(self, event: SessionEvent) -> None:
        self.events.publish(event)

    # ------------------------------------------------------------------
    # Frame admission
    # ------------------------------------------------------------------

    def submit_frame(self, frame: Frame) -> None:
        """
        Offer a frame from any thread (the capture callback).

        The frame is always buffered. It is processed only if the session
        is active, the sampling interval selects it and no other frame is
        in flight; otherwise it is skipped or dropped.
        """
        self._buffer.append(frame)

        loop = self._loop
        if loop is None or loop.is_closed() or not is_active(self._state):
            return
        if not self._throttle.should_sample():
            return
        if not self._throttle.try_acquire():
            return

        generation = self._generation
        try:
            loop.call_soon_threadsafe(self._spawn, frame, generation)
        except RuntimeError:
            # Loop closed between the check and the call
            self._throttle.release()

    def _spawn(self, frame: Frame, generation: int) -> None:
        if generation != self._generation:
            self._throttle.release()
            return
        task = asyncio.get_running_loop().create_task(self._run_admitted(frame))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_admitted(self, frame: Frame) -> None:
        started = time.perf_counter()
        try:
            await self._process(frame)
        except MalformedFrameError as e:
            logger.warning(f"Frame {frame.index} malformed: {e}")
        finally:
            self._throttle.release(time.perf_counter() - started)

    async def process_frame(self, frame: Frame) -> FrameOutcome:
        """
        Buffer a frame and run it through the pipeline immediately.

        Returns:
            FrameOutcome describing what the frame did.

        Raises:
            MalformedFrameError: The detector rejected the input. The
                                 session continues.
        """
        self._buffer.append(frame)
        return await self._process(frame)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _process(self, frame: Frame) -> FrameOutcome:
        if isinstance(self._state, Processing):
            return FrameOutcome.ignored(self._state, "another frame is in flight")
        if not is_active(self._state):
            return FrameOutcome.ignored(self._state, "no active session")

        generation = self._generation
        self._set_state(Processing())

        try:
            outcome = await self._run_pipeline(frame, generation)
        except MalformedFrameError as e:
            if generation == self._generation:
                self._resume_scanning()
                self._publish(FrameRejected(reason=RejectionReason.MALFORMED_FRAME, detail=str(e)))
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while processing frame {frame.index}")
            if self._settle(generation):
                self._enter_failed(classify_failure(e), f"Unexpected error: {e}")
            return FrameOutcome.rejected(RejectionReason.COLLABORATOR_ERROR, self._state, str(e))

        if generation != self._generation:
            if self._settled_generation != generation:
                return FrameOutcome.ignored(self._state, "session moved on while the frame was in flight")
            # This frame ended the session itself
            return FrameOutcome(
                accepted=outcome.accepted,
                state=self._state,
                rejection=outcome.rejection,
                detail=outcome.detail,
            )

        self._resume_scanning()

        if outcome.rejection is not None:
            self._publish(FrameRejected(reason=outcome.rejection, detail=outcome.detail))
            if self._note_rejection(outcome.rejection):
                return FrameOutcome.rejected(outcome.rejection, self._state, outcome.detail)
        else:
            self._consecutive_failures = 0

        return FrameOutcome(
            accepted=outcome.accepted,
            state=self._state,
            rejection=outcome.rejection,
            detail=outcome.detail,
        )

    def _settle(self, generation: int) -> bool:
        """
        Claim the right to end the session from a frame's pipeline.

        False if the session already moved on while the frame was in flight.
        """
        if generation != self._generation:
            return False
        self._settled_generation = generation
        return True

    def _resume_scanning(self) -> None:
        self._set_state(UserRegistration() if self._accumulator is not None else Scanning())

    def _note_rejection(self, reason: RejectionReason) -> bool:
        """Count collaborator failures. Returns True if the session failed."""
        if reason not in COLLABORATOR_REJECTIONS:
            self._consecutive_failures = 0
            return False

        self._consecutive_failures += 1
        limit = self.profile.authentication.max_collaborator_failures
        logger.warning(f"Collaborator failure {self._consecutive_failures}/{limit} ({reason.value})")
        if self._consecutive_failures >= limit:
            self._enter_failed(
                FailureReason.COLLABORATOR_FAILURE,
                f"{self._consecutive_failures} consecutive collaborator failures",
            )
            return True
        return False

    async def _run_pipeline(self, frame: Frame, generation: int) -> FrameOutcome:
        timeouts = self.profile.timeouts
        state = self._state

        # 1. Detect
        try:
            regions = await self._call(self._detector.detect, frame, timeout=timeouts.processing)
        except MalformedFrameError:
            raise
        except asyncio.TimeoutError:
            return FrameOutcome.rejected(RejectionReason.OPERATION_TIMEOUT, state, "detector timed out")
        except ConfigurationError as e:
            if self._settle(generation):
                self._enter_failed(FailureReason.CONFIGURATION, f"Detector misconfigured: {e}")
            return FrameOutcome.rejected(RejectionReason.COLLABORATOR_ERROR, self._state, str(e))
        except Exception as e:
            logger.warning(f"Detector failed on frame {frame.index}: {e}")
            return FrameOutcome.rejected(RejectionReason.COLLABORATOR_ERROR, state, f"detector error: {e}")

        if generation != self._generation:
            return FrameOutcome.ignored(self._state)

        self._buffer.mark_face(frame, bool(regions))

        # 2. Track + quality
        if not regions:
            update = self._tracker.track([], timestamp=frame.timestamp)
            self._issue_guidance(update.guidance)
            return FrameOutcome.rejected(RejectionReason.NO_FACE, state)

        if len(regions) > 1 and not self.profile.authentication.allow_multiple_faces:
            update = self._tracker.track(regions, timestamp=frame.timestamp)
            self._issue_guidance(update.guidance)
            return FrameOutcome.rejected(RejectionReason.MULTIPLE_FACES, state, f"{len(regions)} faces")

        candidate = max(regions, key=lambda r: r.area)
        quality = self._quality_gate.evaluate(frame, candidate)
        update = self._tracker.track(regions, frame_quality=quality, timestamp=frame.timestamp)
        self._issue_guidance(update.guidance)
        self._issue_feedback(quality)

        face = update.primary
        if face is None:
            return FrameOutcome.rejected(RejectionReason.NO_FACE, state)
        if not quality.is_acceptable:
            return FrameOutcome.rejected(RejectionReason.LOW_QUALITY, state, f"overall={quality.overall:.2f}")
        if self.profile.authentication.require_stable_face and not self._is_steady(face):
            return FrameOutcome.rejected(RejectionReason.UNSTABLE_FACE, state)

        # 3. Liveness
        liveness = self._liveness.update(LivenessSignals(frame=frame, face=face.region))
        if self.profile.liveness.required and not liveness.is_live:
            return FrameOutcome.rejected(
                RejectionReason.LIVENESS, state, f"liveness confidence {liveness.confidence:.2f}"
            )

        # 4. Extract
        enhanced = self._quality_gate.enhance(frame, quality)
        crop = face.region.crop(enhanced, padding=FACE_CROP_PADDING)
        if crop.size == 0:
            return FrameOutcome.rejected(RejectionReason.EXTRACTION_FAILED, state, "empty face crop")

        try:
            extraction = await self._call(self._extractor.extract, crop, timeout=timeouts.processing)
        except ExtractionError as e:
            return FrameOutcome.rejected(RejectionReason.EXTRACTION_FAILED, state, str(e))
        except asyncio.TimeoutError:
            return FrameOutcome.rejected(RejectionReason.OPERATION_TIMEOUT, state, "extractor timed out")
        except ConfigurationError as e:
            if self._settle(generation):
                self._enter_failed(FailureReason.CONFIGURATION, f"Extractor misconfigured: {e}")
            return FrameOutcome.rejected(RejectionReason.COLLABORATOR_ERROR, self._state, str(e))
        except Exception as e:
            logger.warning(f"Extractor failed on frame {frame.index}: {e}")
            return FrameOutcome.rejected(RejectionReason.COLLABORATOR_ERROR, state, f"extractor error: {e}")

        if generation != self._generation:
            return FrameOutcome.ignored(self._state)

        # 5. Mode action
        descriptor = np.asarray(extraction.descriptor, dtype=np.float32)
        try:
            if self._mode == SessionMode.ENROLL:
                return await self._enroll(descriptor, generation)
            if self._mode == SessionMode.AUTO:
                return await self._auto(descriptor, generation)
            return await self._authenticate(descriptor, generation)
        except DataError as e:
            if self._settle(generation):
                self._enter_failed(FailureReason.DATA_ERROR, str(e))
            return FrameOutcome.rejected(RejectionReason.COLLABORATOR_ERROR, self._state, str(e))
        except NoIdentitiesEnrolledError as e:
            if self._settle(generation):
                self._enter_failed(FailureReason.NO_IDENTITIES_ENROLLED, str(e))
            return FrameOutcome.rejected(RejectionReason.NOT_RECOGNIZED, self._state, str(e))
        except asyncio.TimeoutError:
            return FrameOutcome.rejected(RejectionReason.OPERATION_TIMEOUT, self._state, "identity store timed out")
        except StorageError as e:
            logger.warning(f"Identity store error: {e}")
            return FrameOutcome.rejected(RejectionReason.COLLABORATOR_ERROR, self._state, str(e))

    def _is_steady(self, face: TrackedFace) -> bool:
        required = min(self.profile.authentication.required_stability, face.history.maxlen or 1)
        return face.is_stable and len(face.history) >= required

    def _issue_guidance(self, guidance: Guidance) -> None:
        if guidance.kind != self._last_guidance:
            self._last_guidance = guidance.kind
            self._publish(GuidanceIssued(guidance=guidance))

    def _issue_feedback(self, quality) -> None:
        hint = feedback(quality)
        if hint != self._last_feedback:
            self._last_feedback = hint
            self._publish(QualityFeedbackIssued(feedback=hint, quality=quality))

    async def _call(self, fn, *args, timeout: float):
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(None, fn, *args), timeout)

    # ------------------------------------------------------------------
    # Mode actions
    # ------------------------------------------------------------------

    async def _authenticate(self, descriptor: np.ndarray, generation: int) -> FrameOutcome:
        gallery = await self._load_gallery()
        if generation != self._generation:
            return FrameOutcome.ignored(self._state)

        result = self._matcher.identify(descriptor, gallery)
        if not result.is_identified:
            return FrameOutcome.rejected(result.rejection, self._state, self._describe(result))
        return self._accept_match(result, generation)

    async def _auto(self, descriptor: np.ndarray, generation: int) -> FrameOutcome:
        gallery = await self._load_gallery()
        if generation != self._generation:
            return FrameOutcome.ignored(self._state)

        if gallery:
            result = self._matcher.identify(descriptor, gallery)
            if result.is_identified:
                return self._accept_match(result, generation)
            reason = self._describe(result)
        else:
            reason = "no identities enrolled"

        previous = self._mode
        self._mode = SessionMode.ENROLL
        self._begin_registration(self._pending_name)
        logger.info(f"Auto mode: {reason}, switching to enrollment as {self._accumulator.display_name}")
        self._publish(
            ModeSwitched(previous=previous, current=self._mode, identity_name=self._accumulator.display_name)
        )
        self._publish(GuidanceIssued(guidance=Guidance.of(GuidanceKind.ENROLLING)))
        self._last_guidance = GuidanceKind.ENROLLING

        return await self._enroll(descriptor, generation)

    def _accept_match(self, result, generation: int) -> FrameOutcome:
        if not self._settle(generation):
            return FrameOutcome.ignored(self._state)
        self._complete(
            SessionResult(
                identity_id=result.identity_id,
                display_name=self._names.get(result.identity_id, result.identity_id),
                confidence=result.comparison.confidence,
                method=SessionMode.AUTHENTICATE,
                processing_time=time.monotonic() - self._started_at,
            )
        )
        return FrameOutcome(accepted=True, state=self._state)

    async def _enroll(self, descriptor: np.ndarray, generation: int) -> FrameOutcome:
        accumulator = self._accumulator
        if not accumulator.is_complete:
            accumulator.add(descriptor)
            progress = RegistrationProgress(current=accumulator.count, total=accumulator.required)
            logger.info(f"Registration progress: {progress.current}/{progress.total}")
            self._publish(progress)

        if not accumulator.is_complete:
            return FrameOutcome(accepted=True, state=self._state)

        try:
            stored = await self._persist(accumulator)
        except asyncio.TimeoutError:
            stored = False
        if not self._settle(generation):
            return FrameOutcome.ignored(self._state)
        if not stored:
            self._enter_failed(
                FailureReason.STORAGE_ERROR,
                f"Identity store timed out storing {accumulator.display_name}",
            )
            return FrameOutcome.rejected(RejectionReason.OPERATION_TIMEOUT, self._state, "identity store timed out")

        self._matcher.update_adaptive_threshold(accumulator.identity_id, accumulator.descriptors)
        self._complete(
            SessionResult(
                identity_id=accumulator.identity_id,
                display_name=accumulator.display_name,
                confidence=1.0,
                method=SessionMode.ENROLL,
                processing_time=time.monotonic() - self._started_at,
            )
        )
        return FrameOutcome(accepted=True, state=self._state)

    def _begin_registration(self, identity_name: Optional[str]) -> None:
        self._accumulator = RegistrationAccumulator(
            identity_id=generate_identity_id(),
            display_name=identity_name or default_identity_name(),
            required=self.profile.registration.required_samples,
        )

    async def _persist(self, accumulator: RegistrationAccumulator) -> bool:
        """
        Encrypt and store the collected descriptors.

        A write that times out or reports an error may still have landed, so
        the store is asked whether the identity exists before giving up.

        Returns:
            False if the write timed out and the identity is not stored.

        Raises:
            StorageError: The store rejected the write and nothing was stored.
            asyncio.TimeoutError: The existence check timed out as well.
        """
        timeout = self.profile.timeouts.storage

        def write() -> None:
            record = IdentityRecord(
                identity_id=accumulator.identity_id,
                display_name=accumulator.display_name,
                descriptors=[self._cipher.encrypt(d) for d in accumulator.descriptors],
                metadata={
                    "profile": self.profile.name,
                    "enrolled_at": datetime.now().isoformat(),
                    "dimension": int(accumulator.descriptors[0].shape[0]),
                },
            )
            self._store.add(record)

        try:
            await self._call(write, timeout=timeout)
        except asyncio.TimeoutError:
            if not await self._call(self._store.exists, accumulator.identity_id, timeout=timeout):
                logger.error(f"Identity store timed out; {accumulator.identity_id} was not stored")
                return False
            logger.warning(f"Identity store was slow to confirm {accumulator.identity_id}, but it is stored")
        except StorageError as e:
            if not await self._call(self._store.exists, accumulator.identity_id, timeout=timeout):
                raise
            logger.warning(f"Identity store reported {e}, but {accumulator.identity_id} is stored")

        self._gallery = None
        logger.info(
            f"Enrolled {accumulator.display_name} (id={accumulator.identity_id}, "
            f"samples={accumulator.count})"
        )
        return True

    async def _load_gallery(self) -> Dict[str, List[np.ndarray]]:
        """Decrypted descriptors of every identity, cached for the session."""
        if self._gallery is not None:
            return self._gallery

        def read() -> Tuple[Dict[str, List[np.ndarray]], Dict[str, str]]:
            gallery: Dict[str, List[np.ndarray]] = {}
            names: Dict[str, str] = {}
            for record in self._store.list_identities():
                gallery[record.identity_id] = [self._cipher.decrypt(d) for d in record.descriptors]
                names[record.identity_id] = record.display_name
            return gallery, names

        gallery, names = await self._call(read, timeout=self.profile.timeouts.storage)
        self._gallery = gallery
        self._names = names
        logger.debug(f"Loaded gallery of {len(gallery)} identities")
        return gallery

    @staticmethod
    def _describe(result) -> str:
        if result.comparison is None:
            return "no comparable descriptors"
        detail = f"best similarity {result.comparison.similarity:.3f}"
        if result.margin is not None:
            detail += f", margin {result.margin:.3f}"
        return detail

    # ------------------------------------------------------------------
    # Identity management
    # ------------------------------------------------------------------

    async def list_identities(self) -> List[IdentityRecord]:
        return await self._call(self._store.list_identities, timeout=self.profile.timeouts.storage)

    async def delete_identity(self, identity_id: str) -> bool:
        """Remove an identity and forget its matcher statistics."""
        deleted = await self._call(self._store.delete, identity_id, timeout=self.profile.timeouts.storage)
        if deleted:
            self._matcher.reset_statistics(identity_id)
            self._gallery = None
        return deleted
