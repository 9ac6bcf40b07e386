"""
Loudness sampling from frequency-domain snapshots.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from .device import CaptureDevice

MAX_BIN_VALUE = 255.0


@dataclass(frozen=True)
class LoudnessSample:
    """Normalized RMS energy for a single detection tick."""
    value: float       # 0..1
    elapsed_ms: int    # Milliseconds since the session started


def spectrum_rms(bins: Sequence[int]) -> float:
    """
    Reduce byte-scaled magnitude bins to a normalized RMS loudness.

    Args:
        bins: Magnitudes in the 0-255 range

    Returns:
        sqrt(mean(bin^2)) / 255, clamped to [0, 1]. An empty spectrum is 0.
    """
    if len(bins) == 0:
        return 0.0
    total = 0.0
    for value in bins:
        total += float(value) * float(value)
    rms = math.sqrt(total / len(bins)) / MAX_BIN_VALUE
    return min(1.0, max(0.0, rms))


class EnergySampler:
    """Turns the device's current spectrum into one LoudnessSample per tick."""

    def __init__(self, device: CaptureDevice):
        self.device = device

    def sample(self, elapsed_ms: int) -> Optional[LoudnessSample]:
        """
        Read the device spectrum and reduce it to a loudness sample.

        Returns None when the device has no spectrum yet; callers skip the
        tick rather than treating it as silence. DeviceLostError propagates.
        """
        bins = self.device.read_spectrum()
        if bins is None:
            return None
        return LoudnessSample(value=spectrum_rms(bins), elapsed_ms=elapsed_ms)
