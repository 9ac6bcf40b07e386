"""
Recording session lifecycle with automatic stop triggers.

A RecordingSession owns one capture at a time. Once started it runs two
independent periodic tasks on the event loop: a detection tick that feeds
the adaptive silence detector, and a bookkeeping tick that watches device
liveness and the duration and size limits. Whichever trigger fires first (manual stop,
silence, duration limit, size limit, device lost) wins; the session then
tears everything down and hands back a single RecordingResult.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .device import (
    AudioRecorderError,
    CaptureDevice,
    DetectionSetupError,
    DeviceLostError,
)
from .sampler import EnergySampler
from .silence import DetectionTunables, SilenceDetector, TickResult

logger = logging.getLogger(__name__)

# Upload limit of the transcription API
MAX_FILE_SIZE_BYTES = 25 * 1024 * 1024


class SessionState(str, Enum):
    IDLE = "idle"
    CALIBRATING = "calibrating"
    LISTENING = "listening"
    STOPPING = "stopping"
    FINALIZED = "finalized"


class StopReason(str, Enum):
    MANUAL = "manual"
    SILENCE = "silence"
    MAX_DURATION = "max_duration"
    MAX_SIZE = "max_size"
    DEVICE_LOST = "device_lost"

    @property
    def is_automatic(self) -> bool:
        return self is not StopReason.MANUAL


class SessionError(AudioRecorderError):
    """Raised when the session is used in the wrong state."""
    pass


@dataclass
class SessionOptions:
    """Per-recording options exposed to the caller."""
    max_duration_seconds: float = 120
    silence_detection_enabled: bool = True
    silence_duration_ms: int = 3000
    max_size_bytes: int = MAX_FILE_SIZE_BYTES
    bookkeeping_interval_ms: int = 100

    def __post_init__(self) -> None:
        if self.max_duration_seconds <= 0:
            raise ValueError(f"Max duration must be positive, got {self.max_duration_seconds}")
        if self.silence_duration_ms <= 0:
            raise ValueError(f"Silence duration must be positive, got {self.silence_duration_ms}")
        if self.max_size_bytes <= 0:
            raise ValueError(f"Max size must be positive, got {self.max_size_bytes}")
        if self.bookkeeping_interval_ms <= 0:
            raise ValueError(f"Bookkeeping interval must be positive, got {self.bookkeeping_interval_ms}")


@dataclass(frozen=True)
class RecordingResult:
    """Finished recording handed to the transcription boundary."""
    audio: bytes
    duration_seconds: float
    stop_reason: StopReason
    size_bytes: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "size_bytes", len(self.audio))


class RecordingSession:
    """
    Async state machine around a CaptureDevice.

    Example:
        >>> session = RecordingSession(device, SessionOptions(max_duration_seconds=60))
        >>> await session.start()
        >>> result = await session.wait()      # ends by itself
        >>> result.stop_reason
        <StopReason.SILENCE: 'silence'>

        # Manual stop, with guaranteed cleanup
        >>> async with session:
        ...     await session.start()
        ...     result = await session.stop()
    """

    def __init__(
        self,
        device: CaptureDevice,
        options: Optional[SessionOptions] = None,
        *,
        tunables: Optional[DetectionTunables] = None,
        on_silence_stop: Optional[Callable[[RecordingResult], None]] = None,
        on_limit_reached: Optional[Callable[[RecordingResult], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.device = device
        self.options = options or SessionOptions()
        self.tunables = tunables or DetectionTunables()
        self.on_silence_stop = on_silence_stop
        self.on_limit_reached = on_limit_reached
        self._clock = clock

        self._state = SessionState.IDLE
        self._sampler = EnergySampler(device)
        self._detector: Optional[SilenceDetector] = None
        self._tasks: List[asyncio.Task] = []
        self._supervisor: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._finished: Optional[asyncio.Future] = None
        self._stop_reason: Optional[StopReason] = None
        self._started_at: Optional[float] = None
        self._elapsed_seconds = 0.0
        self._last_result: Optional[RecordingResult] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def elapsed_seconds(self) -> float:
        return self._elapsed_seconds

    @property
    def detection_active(self) -> bool:
        return self._detector is not None

    @property
    def detector(self) -> Optional[SilenceDetector]:
        return self._detector

    @property
    def stop_reason(self) -> Optional[StopReason]:
        return self._stop_reason

    def is_recording(self) -> bool:
        return self._state in (SessionState.CALIBRATING, SessionState.LISTENING)

    async def start(self) -> None:
        """
        Open the device and begin monitoring.

        Raises:
            SessionError: If a session is already active
            DeviceUnavailableError: If the device cannot be opened
        """
        if self._state is not SessionState.IDLE:
            raise SessionError(f"Cannot start a session while {self._state.value}")

        self._reset()
        try:
            self.device.open()
        except Exception:
            self._reset()
            raise

        try:
            self._started_at = self._clock()
            self._setup_detection()
            self._state = SessionState.CALIBRATING if self._detector else SessionState.LISTENING

            loop = asyncio.get_running_loop()
            self._stop_event = asyncio.Event()
            self._finished = loop.create_future()
            self._tasks = [asyncio.create_task(self._bookkeeping_loop(), name="verba-bookkeeping")]
            if self._detector is not None:
                self._tasks.append(asyncio.create_task(self._detection_loop(), name="verba-detection"))
            self._supervisor = asyncio.create_task(self._supervise(), name="verba-supervisor")
        except Exception:
            await self._cancel_tasks()
            self._release_device()
            self._reset()
            raise

        logger.info(
            f"Recording session started (max {self.options.max_duration_seconds}s, "
            f"silence detection {'on' if self._detector else 'off'})"
        )

    async def stop(self) -> Optional[RecordingResult]:
        """
        Stop the recording and return the finished result.

        Idempotent: while stopping it waits for the same result, and on an
        idle session it returns the previous result (or None).
        """
        if self._state is SessionState.IDLE or self._finished is None:
            return self._last_result
        self._trigger_stop(StopReason.MANUAL)
        return await asyncio.shield(self._finished)

    async def wait(self) -> RecordingResult:
        """Wait until any trigger ends the session."""
        if self._finished is None:
            if self._last_result is None:
                raise SessionError("No recording session has been started")
            return self._last_result
        return await asyncio.shield(self._finished)

    def process_tick(self) -> Optional[TickResult]:
        """Run one detection tick against the device."""
        if not self.is_recording() or self._detector is None:
            return None

        elapsed_ms = self._elapsed_ms()
        try:
            sample = self._sampler.sample(elapsed_ms)
        except DeviceLostError as e:
            logger.error(f"Capture device lost: {e}")
            self._trigger_stop(StopReason.DEVICE_LOST)
            return None
        except Exception as e:
            self._disable_detection(e)
            return None

        try:
            if sample is None:
                result = self._detector.advance_clock(elapsed_ms)
            else:
                result = self._detector.tick(sample)
        except Exception as e:
            self._disable_detection(e)
            return None
        if result is None:
            return None

        if result.calibration_completed and self._state is SessionState.CALIBRATING:
            self._state = SessionState.LISTENING
        if result.silence_detected:
            self._trigger_stop(StopReason.SILENCE)
        return result

    def check_limits(self) -> Optional[StopReason]:
        """Update elapsed time and stop on device loss, duration or size limits."""
        if not self.is_recording():
            return None

        self._elapsed_seconds = self._clock() - self._started_at
        if not self.device.is_alive():
            logger.error("Capture device lost: input stream is no longer active")
            self._trigger_stop(StopReason.DEVICE_LOST)
            return StopReason.DEVICE_LOST

        reason = None
        if self._elapsed_seconds >= self.options.max_duration_seconds:
            reason = StopReason.MAX_DURATION
        elif self.device.bytes_captured >= self.options.max_size_bytes:
            reason = StopReason.MAX_SIZE

        if reason is not None:
            logger.info(f"Recording limit reached: {reason.value}")
            self._trigger_stop(reason)
        return reason

    def _setup_detection(self) -> None:
        self._detector = None
        if not self.options.silence_detection_enabled:
            return
        try:
            self.device.attach_analyser()
        except Exception as e:
            if not isinstance(e, DetectionSetupError):
                e = DetectionSetupError(str(e))
            logger.warning(f"Silence detection setup failed, recording continues without it: {e}")
            return
        self._detector = SilenceDetector(self.options.silence_duration_ms, self.tunables)

    def _disable_detection(self, error: Exception) -> None:
        logger.warning(f"Silence detection failed, auto-stop disabled: {error}")
        self._detector = None
        self._state = SessionState.LISTENING

    def _trigger_stop(self, reason: StopReason) -> None:
        # First trigger wins; later ones in the same or later ticks are no-ops
        if self._stop_reason is not None or not self.is_recording():
            return
        self._stop_reason = reason
        self._state = SessionState.STOPPING
        self._stop_event.set()
        logger.debug(f"Stop triggered: {reason.value}")

    async def _detection_loop(self) -> None:
        interval = self.tunables.check_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.process_tick()

    async def _bookkeeping_loop(self) -> None:
        interval = self.options.bookkeeping_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.check_limits()

    async def _supervise(self) -> None:
        await self._stop_event.wait()
        try:
            result = await self._finalize()
        except Exception as e:
            logger.error(f"Failed to finalize recording: {e}")
            self._state = SessionState.IDLE
            if not self._finished.done():
                self._finished.set_exception(e)
            return

        if not self._finished.done():
            self._finished.set_result(result)
        self._notify(result)

    async def _finalize(self) -> RecordingResult:
        reason = self._stop_reason or StopReason.MANUAL
        duration = self._clock() - self._started_at
        try:
            await self._cancel_tasks()
            audio = self.device.close()
        finally:
            self._detector = None
            self._state = SessionState.FINALIZED

        result = RecordingResult(audio=audio, duration_seconds=duration, stop_reason=reason)
        self._elapsed_seconds = duration
        self._last_result = result
        self._state = SessionState.IDLE
        logger.info(
            f"Recording stopped ({reason.value}): {result.size_bytes} bytes, {duration:.1f}s"
        )
        return result

    async def _cancel_tasks(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                logger.warning(f"Monitor task ended with error: {outcome}")

    def _notify(self, result: RecordingResult) -> None:
        if result.stop_reason is StopReason.SILENCE:
            callback = self.on_silence_stop
        elif result.stop_reason in (StopReason.MAX_DURATION, StopReason.MAX_SIZE):
            callback = self.on_limit_reached
        else:
            callback = None
        if callback is None:
            return
        try:
            callback(result)
        except Exception as e:
            logger.warning(f"Stop callback failed: {e}")

    def _release_device(self) -> None:
        try:
            self.device.close()
        except Exception as e:
            logger.warning(f"Error during cleanup: {e}")

    def _elapsed_ms(self) -> int:
        return int((self._clock() - self._started_at) * 1000)

    def _reset(self) -> None:
        self._state = SessionState.IDLE
        self._detector = None
        self._tasks = []
        self._supervisor = None
        self._stop_event = None
        self._finished = None
        self._stop_reason = None
        self._started_at = None
        self._elapsed_seconds = 0.0

    async def __aenter__(self) -> "RecordingSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.is_recording() or self._state is SessionState.STOPPING:
            try:
                await self.stop()
            except Exception as e:
                logger.warning(f"Error stopping recording during cleanup: {e}")
