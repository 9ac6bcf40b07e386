"""
Capture device abstraction used by the recording session.

The session never talks to audio hardware directly. It drives an object
implementing CaptureDevice, which owns the input stream, exposes the latest
frequency spectrum and returns the encoded recording when closed.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence


class AudioRecorderError(Exception):
    """Base exception for audio recorder errors."""
    pass


class DeviceUnavailableError(AudioRecorderError):
    """Raised when no audio input device can be opened."""
    pass


class MicrophonePermissionError(DeviceUnavailableError):
    """Raised when microphone permissions are not granted."""
    pass


class DeviceLostError(AudioRecorderError):
    """Raised when the input device disappears during a recording."""
    pass


class DetectionSetupError(AudioRecorderError):
    """Raised when the spectrum analyser cannot be attached to the stream."""
    pass


class CaptureDevice(ABC):
    """
    Abstract audio input used by RecordingSession.

    Implementations must never block in read_spectrum(); it is called from
    the event loop once per detection tick.
    """

    @abstractmethod
    def open(self) -> None:
        """
        Acquire the input stream and begin capturing.

        Raises:
            DeviceUnavailableError: If no input device can be opened
            MicrophonePermissionError: If access to the microphone is denied
        """
        pass

    @abstractmethod
    def attach_analyser(self) -> None:
        """
        Prepare spectrum analysis on the open stream.

        Raises:
            DetectionSetupError: If the analyser cannot be attached
        """
        pass

    @abstractmethod
    def read_spectrum(self) -> Optional[Sequence[int]]:
        """
        Return the current magnitude spectrum as 0-255 bins.

        Returns None when no spectrum is available yet.

        Raises:
            DeviceLostError: If the device was disconnected
        """
        pass

    @property
    @abstractmethod
    def bytes_captured(self) -> int:
        """Size in bytes the encoded recording would have right now."""
        pass

    def is_alive(self) -> bool:
        """
        Whether the input is still delivering audio.

        Polled once per bookkeeping tick, so it must not block. Devices that
        cannot tell report True.
        """
        return True

    @abstractmethod
    def close(self) -> bytes:
        """Release the stream and return the encoded recording."""
        pass
