"""
Tests for the PyAudio capture device and spectrum analyser.

PyAudio itself is mocked; no microphone is needed.
"""

import io
import wave
from unittest.mock import MagicMock, patch

import pytest

np = pytest.importorskip("numpy")
pytest.importorskip("pyaudio")

from verba.audio.device import (
    DetectionSetupError,
    DeviceLostError,
    DeviceUnavailableError,
    MicrophonePermissionError,
)
from verba.audio.recorder import WAV_HEADER_SIZE, PyAudioCaptureDevice, SpectrumAnalyser


def mock_pyaudio(input_channels=1, open_error=None):
    audio = MagicMock()
    audio.get_device_count.return_value = 1 if input_channels is not None else 0
    audio.get_device_info_by_index.return_value = {
        'maxInputChannels': input_channels or 0,
        'name': 'Test Mic'
    }
    stream = MagicMock()
    stream.is_active.return_value = True
    if open_error is not None:
        audio.open.side_effect = open_error
    else:
        audio.open.return_value = stream
    return audio, stream


class TestSpectrumAnalyser:

    def test_silence_maps_to_zero(self):
        analyser = SpectrumAnalyser()
        spectrum = analyser.analyse(np.zeros(256))

        assert spectrum.dtype == np.uint8
        assert len(spectrum) == analyser.bin_count == 128
        assert spectrum.max() == 0

    def test_tone_peaks_at_its_bin(self):
        analyser = SpectrumAnalyser()
        n = np.arange(256)
        tone = 0.5 * np.sin(2 * np.pi * 16 * n / 256)

        spectrum = analyser.analyse(tone)

        assert int(np.argmax(spectrum)) == 16
        assert spectrum[16] > 200

    def test_short_input_is_padded(self):
        spectrum = SpectrumAnalyser().analyse(np.zeros(10))
        assert len(spectrum) == 128

    @pytest.mark.parametrize("kwargs", [
        {"fft_size": 100},
        {"fft_size": 0},
        {"smoothing": 1.0},
        {"smoothing": -0.1},
    ])
    def test_rejects_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            SpectrumAnalyser(**kwargs)


class TestPyAudioCaptureDevice:

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            PyAudioCaptureDevice(sample_rate=0)
        with pytest.raises(ValueError):
            PyAudioCaptureDevice(channels=3)

    def test_close_without_open_returns_empty_wav(self):
        device = PyAudioCaptureDevice()
        assert device.bytes_captured == WAV_HEADER_SIZE

        data = device.close()

        assert len(data) == WAV_HEADER_SIZE
        with wave.open(io.BytesIO(data), 'rb') as wav_file:
            assert wav_file.getnframes() == 0
            assert wav_file.getframerate() == 16000

    def test_no_input_devices(self):
        audio, _ = mock_pyaudio(input_channels=None)
        with patch('verba.audio.recorder.pyaudio.PyAudio', return_value=audio):
            device = PyAudioCaptureDevice()
            with pytest.raises(DeviceUnavailableError, match="No audio input devices"):
                device.open()

        audio.terminate.assert_called_once()

    def test_permission_denied(self):
        audio, _ = mock_pyaudio(open_error=OSError("Invalid input device"))
        with patch('verba.audio.recorder.pyaudio.PyAudio', return_value=audio):
            device = PyAudioCaptureDevice()
            with pytest.raises(MicrophonePermissionError):
                device.open()

        audio.terminate.assert_called_once()

    def test_attach_before_open_fails(self):
        with pytest.raises(DetectionSetupError):
            PyAudioCaptureDevice().attach_analyser()

    def test_capture_spectrum_and_wav(self):
        audio, stream = mock_pyaudio()
        with patch('verba.audio.recorder.pyaudio.PyAudio', return_value=audio):
            device = PyAudioCaptureDevice()
            device.open()
            device.attach_analyser()

            # Nothing captured yet
            assert device.read_spectrum() is None

            chunk = (np.ones(512) * 8000).astype(np.int16).tobytes()
            device._on_audio(chunk, 512, None, 0)
            device._on_audio(chunk, 512, None, 0)

            spectrum = device.read_spectrum()
            assert len(spectrum) == 128
            assert device.bytes_captured == WAV_HEADER_SIZE + 2 * len(chunk)

            data = device.close()

        stream.stop_stream.assert_called_once()
        stream.close.assert_called_once()
        audio.terminate.assert_called_once()
        with wave.open(io.BytesIO(data), 'rb') as wav_file:
            assert wav_file.getnframes() == 1024
            assert wav_file.getsampwidth() == 2
            assert wav_file.getnchannels() == 1

    def test_inactive_stream_is_device_lost(self):
        audio, stream = mock_pyaudio()
        with patch('verba.audio.recorder.pyaudio.PyAudio', return_value=audio):
            device = PyAudioCaptureDevice()
            device.open()
            device.attach_analyser()
            stream.is_active.return_value = False

            with pytest.raises(DeviceLostError):
                device.read_spectrum()
            device.close()

    def test_liveness_follows_stream(self):
        audio, stream = mock_pyaudio()
        device = PyAudioCaptureDevice()
        assert not device.is_alive()

        with patch('verba.audio.recorder.pyaudio.PyAudio', return_value=audio):
            device.open()
            assert device.is_alive()

            stream.is_active.side_effect = OSError("Stream closed")
            assert not device.is_alive()

            stream.is_active.side_effect = None
            stream.is_active.return_value = False
            assert not device.is_alive()
            device.close()
