"""
Shared fixtures: a scripted capture device that replays loudness levels.
"""

import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

# Add repo root to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent))

from verba.audio.device import CaptureDevice, DeviceLostError


def spectrum_for(level: float, bins: int = 128) -> List[int]:
    """Flat spectrum whose normalized RMS is approximately level."""
    value = max(0, min(255, round(level * 255)))
    return [value] * bins


class ScriptedDevice(CaptureDevice):
    """
    CaptureDevice that replays a loudness script, one entry per read.

    The last level repeats once the script runs out.
    """

    def __init__(
        self,
        levels: Sequence[Optional[float]] = (0.0,),
        audio: bytes = b"RIFF" + b"\x00" * 252,
        open_error: Optional[Exception] = None,
        attach_error: Optional[Exception] = None,
        lose_after: Optional[int] = None,
        size_growth: int = 0,
        read_error: Optional[Exception] = None
    ):
        self.levels = list(levels)
        self.audio = audio
        self.open_error = open_error
        self.attach_error = attach_error
        self.lose_after = lose_after
        self.size_growth = size_growth
        self.read_error = read_error

        self.opened = 0
        self.closed = 0
        self.reads = 0
        self.is_open = False
        self._size = 44

    def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.opened += 1
        self.is_open = True
        self.reads = 0

    def attach_analyser(self) -> None:
        if self.attach_error is not None:
            raise self.attach_error

    def read_spectrum(self):
        if self.lose_after is not None and self.reads >= self.lose_after:
            raise DeviceLostError("unplugged")
        if self.read_error is not None:
            raise self.read_error
        index = min(self.reads, len(self.levels) - 1)
        self.reads += 1
        level = self.levels[index]
        if level is None:
            return None
        return spectrum_for(level)

    @property
    def bytes_captured(self) -> int:
        self._size += self.size_growth
        return self._size

    def is_alive(self) -> bool:
        return self.lose_after is None or self.reads < self.lose_after

    def close(self) -> bytes:
        self.closed += 1
        self.is_open = False
        return self.audio


@pytest.fixture
def make_device() -> Callable[..., ScriptedDevice]:
    return ScriptedDevice
