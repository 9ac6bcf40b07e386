"""
Tests for the adaptive silence detector.

All scenarios run on simulated time: one sample per 100ms tick, fed
straight into the pure detector classes.
"""

import random
from typing import Callable, List, Tuple

import pytest

from verba.audio.sampler import LoudnessSample
from verba.audio.silence import (
    AdaptiveThresholdTracker,
    Baseline,
    Calibrator,
    DetectionTunables,
    EndpointDetector,
    EndpointPhase,
    SilenceDetector,
)

TICK_MS = 100


def run_detector(
    detector: SilenceDetector,
    level_at: Callable[[int], float],
    until_ms: int
) -> List[Tuple[int, object]]:
    """Feed level_at(t) every tick from 0 to until_ms and collect results."""
    results = []
    for t in range(0, until_ms + 1, TICK_MS):
        results.append((t, detector.tick(LoudnessSample(value=level_at(t), elapsed_ms=t))))
    return results


def event_times(results) -> List[int]:
    return [t for t, result in results if result.silence_detected]


class TestCalibrator:
    """Noise floor and initial peak estimation."""

    def test_median_ignores_single_spike(self):
        calibrator = Calibrator(DetectionTunables())
        for value in [0.1, 0.1, 0.1, 0.1, 0.9]:
            calibrator.add(value)

        baseline = calibrator.finish()

        assert baseline.noise_floor == pytest.approx(0.1 * 1.5)
        assert baseline.initial_peak == pytest.approx(0.9)
        assert baseline.sample_count == 5
        assert calibrator.complete
        assert calibrator.samples == []

    def test_initial_peak_never_below_min_peak_level(self):
        calibrator = Calibrator(DetectionTunables())
        for _ in range(15):
            calibrator.add(0.01)

        baseline = calibrator.finish()

        assert baseline.noise_floor == pytest.approx(0.015)
        assert baseline.initial_peak == pytest.approx(0.05)

    def test_no_samples_falls_back_to_defaults(self):
        tunables = DetectionTunables()
        baseline = Calibrator(tunables).finish()

        assert baseline.sample_count == 0
        assert baseline.initial_peak == pytest.approx(tunables.min_peak_level)
        assert baseline.noise_floor == pytest.approx(
            tunables.min_peak_level * tunables.silence_threshold_percent
        )

    def test_cannot_add_after_finish(self):
        calibrator = Calibrator(DetectionTunables())
        calibrator.finish()
        with pytest.raises(RuntimeError):
            calibrator.add(0.1)


class TestAdaptiveThresholdTracker:
    """Peak tracking and derived thresholds."""

    def test_thresholds_from_baseline(self):
        tracker = AdaptiveThresholdTracker(
            DetectionTunables(), Baseline(noise_floor=0.03, initial_peak=0.5, sample_count=15)
        )
        assert tracker.speech_threshold == pytest.approx(0.12)
        assert tracker.silence_threshold == pytest.approx(0.1)

    def test_silence_threshold_never_below_noise_floor(self):
        tracker = AdaptiveThresholdTracker(
            DetectionTunables(), Baseline(noise_floor=0.04, initial_peak=0.05, sample_count=15)
        )
        assert tracker.silence_threshold == pytest.approx(0.04)

    def test_louder_speech_raises_peak(self):
        tracker = AdaptiveThresholdTracker(
            DetectionTunables(), Baseline(noise_floor=0.015, initial_peak=0.05, sample_count=15)
        )
        tracker.update(0.4)
        assert tracker.peak_speech_level == pytest.approx(0.4)

    def test_peak_decays_but_respects_floor(self):
        tunables = DetectionTunables()
        tracker = AdaptiveThresholdTracker(
            tunables, Baseline(noise_floor=0.015, initial_peak=0.5, sample_count=15)
        )
        tracker.update(0.0)
        assert tracker.peak_speech_level == pytest.approx(0.5 * 0.998)

        for _ in range(5000):
            tracker.update(0.0)
            assert tracker.peak_speech_level >= tunables.min_peak_level
        assert tracker.peak_speech_level == pytest.approx(tunables.min_peak_level)

    def test_brief_pause_keeps_most_of_peak(self):
        tracker = AdaptiveThresholdTracker(
            DetectionTunables(), Baseline(noise_floor=0.015, initial_peak=0.5, sample_count=15)
        )
        for _ in range(10):  # one second of pause
            tracker.update(0.01)
        assert tracker.peak_speech_level > 0.49


class TestEndpointDetector:
    """Hysteresis state machine with fixed thresholds."""

    SPEECH = 0.48
    SILENCE = 0.12

    def feed(self, detector: EndpointDetector, level_at: Callable[[int], float], until_ms: int) -> List[int]:
        fired = []
        for t in range(0, until_ms + 1, TICK_MS):
            if detector.update(level_at(t), self.SPEECH, self.SILENCE, t):
                fired.append(t)
        return fired

    def test_never_fires_without_confirmed_speech(self):
        detector = EndpointDetector(DetectionTunables(), 3000)
        fired = self.feed(detector, lambda t: 0.01, 20000)

        assert fired == []
        assert not detector.counters.speech_confirmed
        assert detector.phase is EndpointPhase.AWAITING_SPEECH

    def test_two_speech_ticks_do_not_confirm(self):
        detector = EndpointDetector(DetectionTunables(), 3000)
        fired = self.feed(detector, lambda t: 0.5 if t < 200 else 0.01, 10000)

        assert fired == []
        assert not detector.counters.speech_confirmed

    def test_fires_once_after_silence_duration(self):
        detector = EndpointDetector(DetectionTunables(), 3000)
        fired = self.feed(detector, lambda t: 0.5 if t < 500 else 0.01, 20000)

        # Silence confirmed on the fifth quiet tick (900ms), timer runs 3000ms
        assert fired == [3900]
        assert detector.phase is EndpointPhase.SILENCE_TRIGGERED

    def test_speech_resets_silence_timer(self):
        detector = EndpointDetector(DetectionTunables(), 3000)

        def level(t):
            if t < 500 or 2000 <= t < 2100:
                return 0.5
            return 0.01

        fired = self.feed(detector, level, 20000)

        # Timer restarts after the burst at 2000ms: confirmed again at 2500ms
        assert fired == [5500]

    def test_ambient_spike_only_decrements_silence_counter(self):
        quiet = EndpointDetector(DetectionTunables(), 3000)
        baseline_fired = self.feed(quiet, lambda t: 0.5 if t < 500 else 0.01, 20000)

        spiked = EndpointDetector(DetectionTunables(), 3000)
        for t in range(0, 2000, TICK_MS):
            spiked.update(0.5 if t < 500 else 0.01, self.SPEECH, self.SILENCE, t)
        before = spiked.counters.consecutive_silence
        timer = spiked.counters.silence_started_at

        spiked.update(0.4, self.SPEECH, self.SILENCE, 2000)

        assert spiked.counters.consecutive_silence == before - 1
        assert spiked.counters.silence_started_at == timer

        fired = []
        for t in range(2100, 20001, TICK_MS):
            if spiked.update(0.01, self.SPEECH, self.SILENCE, t):
                fired.append(t)

        confirmation_window_ms = DetectionTunables().silence_confirmation_samples * TICK_MS
        assert len(fired) == 1
        assert fired[0] - baseline_fired[0] < confirmation_window_ms

    def test_ambient_tick_below_confirmation_clears_timer(self):
        detector = EndpointDetector(DetectionTunables(), 3000)
        for t in range(0, 1000, TICK_MS):
            detector.update(0.5 if t < 500 else 0.01, self.SPEECH, self.SILENCE, t)
        assert detector.counters.consecutive_silence == 5
        assert detector.counters.silence_started_at == 900

        detector.update(0.3, self.SPEECH, self.SILENCE, 1000)

        assert detector.counters.consecutive_silence == 4
        assert detector.counters.silence_started_at is None

    def test_speech_confirmation_is_sticky_and_counters_exclusive(self):
        rng = random.Random(1234)
        detector = EndpointDetector(DetectionTunables(), 1500)
        confirmed_seen = False

        for i in range(5000):
            level = rng.choice([0.01, 0.05, 0.2, 0.3, 0.5, 0.9])
            detector.update(level, self.SPEECH, self.SILENCE, i * TICK_MS)
            counters = detector.counters

            if confirmed_seen:
                assert counters.speech_confirmed
            confirmed_seen = confirmed_seen or counters.speech_confirmed
            assert counters.consecutive_speech == 0 or counters.consecutive_silence == 0

        assert confirmed_seen


class TestSilenceDetector:
    """End-to-end scenarios on the composed detector with default tunables."""

    def test_speech_then_silence_fires_exactly_once(self):
        silence_onset = 2000

        def level(t):
            if t < 1500:
                return 0.01      # calibration, room noise
            if t < silence_onset:
                return 0.5       # 500ms of speech
            return 0.01

        detector = SilenceDetector(silence_duration_ms=3000)
        results = run_detector(detector, level, 15000)
        fired = event_times(results)

        assert len(fired) == 1
        assert fired[0] - silence_onset >= 3000
        assert fired[0] >= DetectionTunables().min_recording_duration_ms
        assert fired[0] - silence_onset <= 5000
        assert detector.silence_detected

    def test_constant_zero_stream_never_fires(self):
        detector = SilenceDetector(silence_duration_ms=3000)
        results = run_detector(detector, lambda t: 0.0, 10000)

        assert event_times(results) == []
        assert not detector.get_state().counters.speech_confirmed

    def test_quiet_speaker_never_crossing_speech_threshold(self):
        detector = SilenceDetector(silence_duration_ms=1000)
        # Room at 0.05 sets the speech threshold to 0.3; nothing reaches it
        results = run_detector(detector, lambda t: 0.05 if t < 1500 else 0.25, 10000)

        assert event_times(results) == []

    def test_no_endpoint_activity_during_calibration(self):
        detector = SilenceDetector(silence_duration_ms=3000)
        results = run_detector(detector, lambda t: 0.9 if t % 200 else 0.0, 1400)

        for _, result in results:
            assert result.calibrating
            assert not result.silence_detected
        state = detector.get_state()
        assert state.calibrating
        assert state.counters.consecutive_speech == 0
        assert state.counters.silence_started_at is None

    def test_calibration_completes_on_first_tick_after_window(self):
        detector = SilenceDetector(silence_duration_ms=3000)
        results = run_detector(detector, lambda t: 0.02, 1600)

        completed = [t for t, result in results if result.calibration_completed]
        assert completed == [1500]
        assert detector.get_state().noise_floor == pytest.approx(0.03)

    def test_event_held_until_minimum_recording_duration(self):
        tunables = DetectionTunables(
            calibration_duration_ms=0,
            min_recording_duration_ms=5000,
            moving_average_samples=1
        )
        detector = SilenceDetector(silence_duration_ms=300, tunables=tunables)
        results = run_detector(detector, lambda t: 0.5 if t < 500 else 0.0, 8000)

        assert detector.endpoint.fired
        assert event_times(results) == [5000]

    def test_clock_alone_closes_calibration_with_defaults(self):
        tunables = DetectionTunables()
        detector = SilenceDetector(silence_duration_ms=3000)

        assert detector.advance_clock(1400) is None
        assert detector.calibrating

        result = detector.advance_clock(1500)

        assert result.calibration_completed
        assert not result.silence_detected
        assert not detector.calibrating
        state = detector.get_state()
        assert state.peak_speech_level == pytest.approx(tunables.min_peak_level)
        assert state.noise_floor == pytest.approx(
            tunables.min_peak_level * tunables.silence_threshold_percent
        )
        assert detector.advance_clock(1600) is None

    def test_clock_releases_held_event(self):
        tunables = DetectionTunables(
            calibration_duration_ms=0,
            min_recording_duration_ms=5000,
            moving_average_samples=1
        )
        detector = SilenceDetector(silence_duration_ms=300, tunables=tunables)
        results = run_detector(detector, lambda t: 0.5 if t < 500 else 0.0, 2000)
        assert detector.endpoint.fired
        assert event_times(results) == []

        assert detector.advance_clock(4900) is None
        assert detector.advance_clock(5000).silence_detected
        assert detector.advance_clock(5100) is None

    def test_invalid_silence_duration(self):
        with pytest.raises(ValueError):
            SilenceDetector(silence_duration_ms=0)


class TestDetectionTunables:
    """Validation of overridable constants."""

    def test_defaults(self):
        tunables = DetectionTunables()
        assert tunables.check_interval_ms == 100
        assert tunables.calibration_duration_ms == 1500
        assert tunables.speech_confirmation_samples == 3
        assert tunables.silence_confirmation_samples == 5
        assert tunables.peak_decay_rate == 0.998

    @pytest.mark.parametrize("overrides", [
        {"check_interval_ms": 0},
        {"moving_average_samples": 0},
        {"peak_decay_rate": 1.5},
        {"silence_threshold_percent": 0.0},
        {"min_peak_level": 0.0},
        {"speech_confirmation_samples": 0},
        {"ambient_decay_step": -1},
    ])
    def test_rejects_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            DetectionTunables(**overrides)
