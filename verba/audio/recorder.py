"""
Microphone capture using PyAudio.

Captures from the default (or a chosen) input device at 16kHz mono 16-bit,
keeps the raw frames in memory for the final WAV, and exposes a byte-scaled
magnitude spectrum of the most recent audio for silence detection.
"""

import io
import logging
import threading
import wave
from typing import Optional, Sequence

import numpy as np
import pyaudio
from rich.console import Console

from .device import (
    CaptureDevice,
    DetectionSetupError,
    DeviceLostError,
    DeviceUnavailableError,
    MicrophonePermissionError,
)

logger = logging.getLogger(__name__)
console = Console()

WAV_HEADER_SIZE = 44


class SpectrumAnalyser:
    """
    Byte-scaled magnitude spectrum of the latest audio window.

    Mirrors what a browser AnalyserNode reports: Blackman window, FFT,
    temporal smoothing between snapshots, and decibels in
    [min_decibels, max_decibels] mapped onto 0-255.
    """

    def __init__(
        self,
        fft_size: int = 256,
        smoothing: float = 0.3,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0
    ):
        if fft_size <= 0 or fft_size & (fft_size - 1):
            raise ValueError(f"FFT size must be a power of two, got {fft_size}")
        if not 0.0 <= smoothing < 1.0:
            raise ValueError(f"Smoothing must be in [0, 1), got {smoothing}")
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels
        self._window = np.blackman(fft_size)
        self._previous = np.zeros(fft_size // 2)

    @property
    def bin_count(self) -> int:
        return self.fft_size // 2

    def analyse(self, samples: np.ndarray) -> np.ndarray:
        """
        Compute the spectrum of the last fft_size samples.

        Args:
            samples: Float samples in [-1, 1]; zero-padded at the front if short

        Returns:
            uint8 array of bin_count magnitudes
        """
        frame = np.zeros(self.fft_size)
        tail = samples[-self.fft_size:]
        if tail.size:
            frame[-tail.size:] = tail

        magnitudes = np.abs(np.fft.rfft(frame * self._window))[:self.bin_count] / self.fft_size
        smoothed = self.smoothing * self._previous + (1.0 - self.smoothing) * magnitudes
        self._previous = smoothed

        with np.errstate(divide="ignore"):
            decibels = 20.0 * np.log10(smoothed)
        scale = 255.0 / (self.max_decibels - self.min_decibels)
        scaled = (decibels - self.min_decibels) * scale
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)

    def reset(self) -> None:
        self._previous = np.zeros(self.bin_count)


class PyAudioCaptureDevice(CaptureDevice):
    """
    PyAudio-backed CaptureDevice that returns WAV bytes when closed.

    Frames arrive on PortAudio's callback thread and are appended to an
    in-memory buffer under a lock, so reading the spectrum from the event
    loop never blocks on the audio stream.

    Args:
        sample_rate: Audio sample rate in Hz (16kHz recommended for Whisper)
        chunk_size: Frames per callback (512 for latency/CPU balance)
        channels: Number of audio channels (1 for mono)
        device_index: PyAudio input device index, None for the default
        fft_size: Analyser FFT size
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        chunk_size: int = 512,
        channels: int = 1,
        device_index: Optional[int] = None,
        fft_size: int = 256
    ):
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self.channels = channels
        self.device_index = device_index
        self.format = pyaudio.paInt16  # 16-bit audio
        self.sample_width = 2  # 16-bit = 2 bytes per sample
        self.fft_size = fft_size

        # Internal state
        self._audio: Optional[pyaudio.PyAudio] = None
        self._stream = None
        self._audio_buffer: list[bytes] = []
        self._buffered_bytes = 0
        self._lock = threading.Lock()
        self._analyser: Optional[SpectrumAnalyser] = None

        self._validate_config()

    def _validate_config(self) -> None:
        """Validate audio configuration parameters."""
        if self.sample_rate <= 0:
            raise ValueError(f"Sample rate must be positive, got {self.sample_rate}")
        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.channels not in (1, 2):
            raise ValueError(f"Channels must be 1 or 2, got {self.channels}")

    def open(self) -> None:
        """
        Open the input stream and start capturing.

        Raises:
            MicrophonePermissionError: If microphone permissions denied (macOS)
            DeviceUnavailableError: If no input device can be opened
        """
        if self._stream is not None:
            raise RuntimeError("Capture device already open")

        with self._lock:
            self._audio_buffer.clear()
            self._buffered_bytes = 0

        try:
            self._audio = pyaudio.PyAudio()

            if not self._has_input_devices():
                raise DeviceUnavailableError("No audio input devices found")

            try:
                self._stream = self._audio.open(
                    format=self.format,
                    channels=self.channels,
                    rate=self.sample_rate,
                    input=True,
                    frames_per_buffer=self.chunk_size,
                    input_device_index=self.device_index,
                    stream_callback=self._on_audio
                )
            except OSError as e:
                if "device" in str(e).lower() or "input" in str(e).lower():
                    raise MicrophonePermissionError(self._format_permission_error()) from e
                raise DeviceUnavailableError(f"Failed to open audio stream: {e}") from e

            self._stream.start_stream()
            logger.info(f"Recording started: {self.sample_rate}Hz, {self.channels} channel(s)")

        except Exception as e:
            self._cleanup_resources()
            if isinstance(e, DeviceUnavailableError):
                raise
            raise DeviceUnavailableError(f"Failed to start recording: {e}") from e

    def attach_analyser(self) -> None:
        if self._stream is None:
            raise DetectionSetupError("Cannot attach analyser: stream is not open")
        try:
            self._analyser = SpectrumAnalyser(fft_size=self.fft_size)
        except ValueError as e:
            raise DetectionSetupError(str(e)) from e

    def read_spectrum(self) -> Optional[Sequence[int]]:
        if self._stream is None or self._analyser is None:
            return None
        if not self._stream.is_active():
            raise DeviceLostError("Audio input stream is no longer active")

        with self._lock:
            recent = self._recent_frames(self.fft_size * self.sample_width * self.channels)
        if not recent:
            return None

        samples = np.frombuffer(recent, dtype=np.int16)
        if self.channels > 1:
            samples = samples[::self.channels]
        return self._analyser.analyse(samples.astype(np.float64) / 32768.0)

    @property
    def bytes_captured(self) -> int:
        return WAV_HEADER_SIZE + self._buffered_bytes

    def is_alive(self) -> bool:
        if self._stream is None:
            return False
        try:
            return self._stream.is_active()
        except OSError as e:
            logger.warning(f"Audio stream check failed: {e}")
            return False

    def close(self) -> bytes:
        """Stop the stream, release PyAudio and return the recording as WAV."""
        self._cleanup_resources()
        self._analyser = None
        with self._lock:
            wav_data = self._create_wav_data()
        logger.info(f"Recording stopped: {len(wav_data)} bytes captured")
        return wav_data

    def _on_audio(self, in_data, frame_count, time_info, status):
        if in_data:
            with self._lock:
                self._audio_buffer.append(in_data)
                self._buffered_bytes += len(in_data)
        return (None, pyaudio.paContinue)

    def _recent_frames(self, size: int) -> bytes:
        parts = []
        collected = 0
        for chunk in reversed(self._audio_buffer):
            parts.append(chunk)
            collected += len(chunk)
            if collected >= size:
                break
        return b''.join(reversed(parts))[-size:]

    def _create_wav_data(self) -> bytes:
        """
        Create WAV file data from captured audio buffer.

        An empty buffer still yields a valid (empty) WAV file.
        """
        wav_buffer = io.BytesIO()

        with wave.open(wav_buffer, 'wb') as wav_file:
            wav_file.setnchannels(self.channels)
            wav_file.setsampwidth(self.sample_width)
            wav_file.setframerate(self.sample_rate)
            wav_file.writeframes(b''.join(self._audio_buffer))

        return wav_buffer.getvalue()

    def _has_input_devices(self) -> bool:
        """Check if any audio input devices are available."""
        if not self._audio:
            return False

        try:
            for i in range(self._audio.get_device_count()):
                device_info = self._audio.get_device_info_by_index(i)
                if device_info.get('maxInputChannels', 0) > 0:
                    return True
        except Exception as e:
            logger.warning(f"Error checking input devices: {e}")

        return False

    def _format_permission_error(self) -> str:
        """Format a helpful permission error message for macOS."""
        return (
            "Microphone access denied. On macOS:\n"
            "1. Open System Settings → Privacy & Security → Microphone\n"
            "2. Enable microphone access for Terminal or your application\n"
            "3. Restart the application and try again"
        )

    def _cleanup_resources(self) -> None:
        """Clean up PyAudio resources safely."""
        try:
            if self._stream:
                if self._stream.is_active():
                    self._stream.stop_stream()
                self._stream.close()
        except Exception as e:
            logger.warning(f"Error during cleanup: {e}")
        finally:
            self._stream = None

        try:
            if self._audio:
                self._audio.terminate()
        except Exception as e:
            logger.warning(f"Error during cleanup: {e}")
        finally:
            self._audio = None


def list_input_devices() -> list[dict]:
    """
    Get a list of available audio input devices.

    Returns:
        List of dictionaries with device information (name, index, channels, etc.)

    Raises:
        DeviceUnavailableError: If PyAudio cannot enumerate devices
    """
    devices = []
    audio = None

    try:
        audio = pyaudio.PyAudio()
        try:
            default_index = audio.get_default_input_device_info().get('index', -1)
        except OSError:
            default_index = -1

        for i in range(audio.get_device_count()):
            try:
                device_info = audio.get_device_info_by_index(i)
                if device_info.get('maxInputChannels', 0) > 0:
                    devices.append({
                        'index': i,
                        'name': device_info.get('name', 'Unknown'),
                        'channels': device_info.get('maxInputChannels', 0),
                        'sample_rate': int(device_info.get('defaultSampleRate', 0)),
                        'is_default': i == default_index
                    })
            except Exception as e:
                logger.warning(f"Error getting device {i} info: {e}")
                continue

    except Exception as e:
        logger.error(f"Error enumerating audio devices: {e}")
        raise DeviceUnavailableError(f"Failed to enumerate audio devices: {e}") from e
    finally:
        if audio:
            audio.terminate()

    return devices


def print_input_devices() -> None:
    """Print the available input devices with Rich formatting."""
    try:
        devices = list_input_devices()
    except DeviceUnavailableError as e:
        console.print(f"[red]✗ {e}[/red]")
        return

    if not devices:
        console.print("[red]✗ No input devices found[/red]")
        return

    for device in devices:
        marker = "[green]*[/green]" if device['is_default'] else " "
        console.print(
            f"{marker} [cyan]{device['index']:>2}[/cyan]  {device['name']} "
            f"[dim]({device['channels']} ch, {device['sample_rate']} Hz)[/dim]"
        )
