"""
Adaptive end-of-speech detection.

Decides when the speaker has stopped talking without a fixed volume
threshold. The first moments of a recording calibrate the ambient noise
floor, a decaying peak tracks how loud the speaker actually is, and a
hysteresis state machine fires a single "silence detected" event once
confirmed silence follows confirmed speech for long enough.

Everything here is pure: no timers, no audio I/O. RecordingSession feeds
one LoudnessSample per tick into SilenceDetector.tick().
"""

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Deque, List, Optional

from .sampler import LoudnessSample

logger = logging.getLogger(__name__)


@dataclass
class DetectionTunables:
    """
    Constants of the adaptive detector.

    The defaults are the values the detector was tuned with; tests override
    them to run scenarios quickly.
    """
    check_interval_ms: int = 100
    min_recording_duration_ms: int = 2000
    calibration_duration_ms: int = 1500
    noise_floor_multiplier: float = 1.5
    speech_threshold_multiplier: float = 4.0
    silence_threshold_percent: float = 0.20
    moving_average_samples: int = 10
    peak_decay_rate: float = 0.998
    min_peak_level: float = 0.05
    speech_confirmation_samples: int = 3
    silence_confirmation_samples: int = 5
    # Step by which the silence counter shrinks in the ambient zone.
    ambient_decay_step: int = 1

    def __post_init__(self) -> None:
        if self.check_interval_ms <= 0:
            raise ValueError(f"Check interval must be positive, got {self.check_interval_ms}")
        if self.calibration_duration_ms < 0 or self.min_recording_duration_ms < 0:
            raise ValueError("Calibration and minimum recording durations cannot be negative")
        if self.moving_average_samples <= 0:
            raise ValueError(f"Moving average window must be positive, got {self.moving_average_samples}")
        if not 0.0 < self.peak_decay_rate <= 1.0:
            raise ValueError(f"Peak decay rate must be in (0, 1], got {self.peak_decay_rate}")
        if not 0.0 < self.silence_threshold_percent < 1.0:
            raise ValueError(
                f"Silence threshold percent must be in (0, 1), got {self.silence_threshold_percent}"
            )
        if self.min_peak_level <= 0.0:
            raise ValueError(f"Minimum peak level must be positive, got {self.min_peak_level}")
        if self.speech_confirmation_samples <= 0 or self.silence_confirmation_samples <= 0:
            raise ValueError("Confirmation sample counts must be positive")
        if self.ambient_decay_step < 0:
            raise ValueError(f"Ambient decay step cannot be negative, got {self.ambient_decay_step}")


@dataclass(frozen=True)
class Baseline:
    """Outcome of calibration."""
    noise_floor: float
    initial_peak: float
    sample_count: int


class Calibrator:
    """
    Collects loudness samples during the calibration window.

    The noise floor comes from the median so a single loud event while the
    user is getting ready does not inflate it.
    """

    def __init__(self, tunables: DetectionTunables):
        self.tunables = tunables
        self.samples: List[float] = []
        self.complete = False

    def add(self, value: float) -> None:
        if self.complete:
            raise RuntimeError("Calibration already complete")
        self.samples.append(value)

    def finish(self) -> Baseline:
        """
        Close the calibration window and derive the baseline.

        With no samples at all (silent or missing device), fall back to
        defaults derived from min_peak_level so the session can continue.
        """
        tunables = self.tunables
        count = len(self.samples)
        if count == 0:
            baseline = Baseline(
                noise_floor=tunables.min_peak_level * tunables.silence_threshold_percent,
                initial_peak=tunables.min_peak_level,
                sample_count=0,
            )
        else:
            ordered = sorted(self.samples)
            median = ordered[count // 2]
            p90 = ordered[min(int(count * 0.9), count - 1)]
            baseline = Baseline(
                noise_floor=median * tunables.noise_floor_multiplier,
                initial_peak=max(p90, tunables.min_peak_level),
                sample_count=count,
            )

        self.samples = []
        self.complete = True
        return baseline


class AdaptiveThresholdTracker:
    """
    Decaying peak speech level and the two thresholds derived from it.

    The peak decays on every tick that does not raise it, quiet ticks
    included, so a loud burst early in a recording cannot keep the silence
    threshold high through a long pause spoken more softly afterwards.
    """

    def __init__(self, tunables: DetectionTunables, baseline: Baseline):
        self.tunables = tunables
        self.noise_floor = baseline.noise_floor
        self.peak_speech_level = max(baseline.initial_peak, tunables.min_peak_level)

    @property
    def speech_threshold(self) -> float:
        return self.noise_floor * self.tunables.speech_threshold_multiplier

    @property
    def silence_threshold(self) -> float:
        adaptive = self.peak_speech_level * self.tunables.silence_threshold_percent
        return max(adaptive, self.noise_floor)

    def update(self, avg: float) -> None:
        """Raise the peak on louder speech, otherwise let it decay."""
        if avg > self.speech_threshold and avg > self.peak_speech_level:
            self.peak_speech_level = avg
        else:
            decayed = self.peak_speech_level * self.tunables.peak_decay_rate
            self.peak_speech_level = max(decayed, self.tunables.min_peak_level)


class EndpointPhase(str, Enum):
    AWAITING_SPEECH = "awaiting_speech"
    SPEECH_CONFIRMED = "speech_confirmed"
    SILENCE_ACCUMULATING = "silence_accumulating"
    SILENCE_TRIGGERED = "silence_triggered"


@dataclass
class HysteresisCounters:
    consecutive_speech: int = 0
    consecutive_silence: int = 0
    speech_confirmed: bool = False
    silence_started_at: Optional[int] = None


class EndpointDetector:
    """
    Debounced double-threshold comparator.

    Speech must be seen on several consecutive ticks before it counts, and
    only confirmed speech arms the silence timer. Loudness between the two
    thresholds erodes accumulated silence evidence one step at a time
    instead of wiping it.
    """

    def __init__(self, tunables: DetectionTunables, silence_duration_ms: int):
        self.tunables = tunables
        self.silence_duration_ms = silence_duration_ms
        self.counters = HysteresisCounters()
        self.fired = False

    @property
    def phase(self) -> EndpointPhase:
        if self.fired:
            return EndpointPhase.SILENCE_TRIGGERED
        if not self.counters.speech_confirmed:
            return EndpointPhase.AWAITING_SPEECH
        if self.counters.consecutive_silence > 0:
            return EndpointPhase.SILENCE_ACCUMULATING
        return EndpointPhase.SPEECH_CONFIRMED

    def clear_timer(self) -> None:
        self.counters.silence_started_at = None

    def update(self, avg: float, speech_threshold: float, silence_threshold: float, now_ms: int) -> bool:
        """
        Advance the state machine by one tick.

        Returns:
            True only on the tick the silence event fires
        """
        counters = self.counters
        confirm_silence = self.tunables.silence_confirmation_samples

        if avg > speech_threshold:
            counters.consecutive_speech += 1
            counters.consecutive_silence = 0
            counters.silence_started_at = None
            if (not counters.speech_confirmed
                    and counters.consecutive_speech >= self.tunables.speech_confirmation_samples):
                counters.speech_confirmed = True
                logger.debug(f"Speech confirmed at {now_ms}ms (avg={avg:.4f})")
            return False

        counters.consecutive_speech = 0

        if avg < silence_threshold and counters.speech_confirmed:
            counters.consecutive_silence += 1
            if counters.consecutive_silence < confirm_silence:
                return False
            if counters.silence_started_at is None:
                counters.silence_started_at = now_ms
                logger.debug(f"Silence timer started at {now_ms}ms")
                return False
            if not self.fired and now_ms - counters.silence_started_at >= self.silence_duration_ms:
                self.fired = True
                return True
            return False

        # Ambient zone, or quiet before any speech
        counters.consecutive_silence = max(0, counters.consecutive_silence - self.tunables.ambient_decay_step)
        if counters.consecutive_silence < confirm_silence:
            counters.silence_started_at = None
        return False


@dataclass(frozen=True)
class TickResult:
    """What a single detection tick observed and decided."""
    calibrating: bool
    average: Optional[float] = None
    speech_threshold: Optional[float] = None
    silence_threshold: Optional[float] = None
    speech_confirmed: bool = False
    silence_detected: bool = False
    calibration_completed: bool = False


@dataclass
class DetectorState:
    """Snapshot of the detector for status displays and tests."""
    calibrating: bool
    phase: EndpointPhase
    noise_floor: Optional[float]
    peak_speech_level: Optional[float]
    counters: HysteresisCounters = field(default_factory=HysteresisCounters)


class SilenceDetector:
    """
    Composes calibration, threshold tracking and endpoint detection.

    One instance lives for exactly one recording session. Samples must be
    fed in elapsed-time order.
    """

    def __init__(self, silence_duration_ms: int = 3000, tunables: Optional[DetectionTunables] = None):
        if silence_duration_ms <= 0:
            raise ValueError(f"Silence duration must be positive, got {silence_duration_ms}")
        self.tunables = tunables or DetectionTunables()
        self.silence_duration_ms = silence_duration_ms
        self.calibrator = Calibrator(self.tunables)
        self.tracker: Optional[AdaptiveThresholdTracker] = None
        self.endpoint = EndpointDetector(self.tunables, silence_duration_ms)
        self._history: Deque[float] = deque(maxlen=self.tunables.moving_average_samples)
        self._pending_event = False

    @property
    def calibrating(self) -> bool:
        return not self.calibrator.complete

    @property
    def silence_detected(self) -> bool:
        return self.endpoint.fired

    def tick(self, sample: LoudnessSample) -> TickResult:
        """
        Feed one loudness sample and return what was decided.

        silence_detected is True on exactly one tick per detector: the first
        tick at which the endpoint has fired and the minimum recording
        duration has elapsed.
        """
        self._history.append(sample.value)
        avg = sum(self._history) / len(self._history)

        calibration_completed = False
        if self.tracker is None:
            if sample.elapsed_ms < self.tunables.calibration_duration_ms:
                self.calibrator.add(sample.value)
                self.endpoint.clear_timer()
                return TickResult(calibrating=True, average=avg)
            self._finish_calibration()
            calibration_completed = True

        tracker = self.tracker
        tracker.update(avg)
        speech_threshold = tracker.speech_threshold
        silence_threshold = tracker.silence_threshold

        if self.endpoint.update(avg, speech_threshold, silence_threshold, sample.elapsed_ms):
            self._pending_event = True

        return TickResult(
            calibrating=False,
            average=avg,
            speech_threshold=speech_threshold,
            silence_threshold=silence_threshold,
            speech_confirmed=self.endpoint.counters.speech_confirmed,
            silence_detected=self._release_event(sample.elapsed_ms),
            calibration_completed=calibration_completed,
        )

    def advance_clock(self, elapsed_ms: int) -> Optional[TickResult]:
        """
        Account for a tick that produced no sample.

        Nothing is fed to the moving average or the endpoint detector, but
        time still moves: calibration closes once its window has passed
        (with the zero-sample defaults if nothing ever arrived) and a held
        silence event is released once the minimum duration is reached.

        Returns:
            A TickResult when either of those happened, otherwise None
        """
        calibration_completed = False
        if self.tracker is None:
            if elapsed_ms < self.tunables.calibration_duration_ms:
                return None
            self._finish_calibration()
            calibration_completed = True

        detected = self._release_event(elapsed_ms)
        if not (calibration_completed or detected):
            return None
        return TickResult(
            calibrating=False,
            speech_threshold=self.tracker.speech_threshold,
            silence_threshold=self.tracker.silence_threshold,
            speech_confirmed=self.endpoint.counters.speech_confirmed,
            silence_detected=detected,
            calibration_completed=calibration_completed,
        )

    def _finish_calibration(self) -> None:
        baseline = self.calibrator.finish()
        self.tracker = AdaptiveThresholdTracker(self.tunables, baseline)
        self.endpoint.clear_timer()
        logger.info(
            f"Calibration complete: noise floor {baseline.noise_floor:.4f}, "
            f"initial peak {baseline.initial_peak:.4f} ({baseline.sample_count} samples)"
        )

    def _release_event(self, elapsed_ms: int) -> bool:
        if self._pending_event and elapsed_ms >= self.tunables.min_recording_duration_ms:
            self._pending_event = False
            logger.info(f"Silence detected at {elapsed_ms}ms")
            return True
        return False

    def get_state(self) -> DetectorState:
        return DetectorState(
            calibrating=self.calibrating,
            phase=self.endpoint.phase,
            noise_floor=self.tracker.noise_floor if self.tracker else None,
            peak_speech_level=self.tracker.peak_speech_level if self.tracker else None,
            counters=replace(self.endpoint.counters),
        )
