"""
Main application entry point for Verba.

This module provides the command-line interface and orchestrates the
recording session, transcription and clipboard hand-off.
"""

import asyncio
import logging
import sys
from typing import Callable, Optional

import click
from rich.console import Console
import pyperclip

from . import __version__
from .audio.device import AudioRecorderError, CaptureDevice
from .audio.session import RecordingResult, RecordingSession, SessionOptions
from .audio.silence import DetectionTunables
from .audio.transcriber import OpenAITranscriber, TranscriptionResult
from .ui.terminal import TerminalUI

logger = logging.getLogger(__name__)


def _default_device_factory() -> CaptureDevice:
    from .audio.recorder import PyAudioCaptureDevice
    return PyAudioCaptureDevice()


class DictationApp:
    """
    Main application class that coordinates all components.

    Runs one dictation: record until the user presses Enter or the session
    stops itself, transcribe, and copy the text to the clipboard.
    """

    def __init__(
        self,
        options: Optional[SessionOptions] = None,
        transcriber: Optional[OpenAITranscriber] = None,
        device_factory: Callable[[], CaptureDevice] = _default_device_factory,
        tunables: Optional[DetectionTunables] = None,
        copy_to_clipboard: bool = True
    ):
        """Initialize the dictation application."""
        self.ui = TerminalUI()
        self.transcriber = transcriber or OpenAITranscriber()
        self.options = options or SessionOptions()
        self.tunables = tunables
        self.device_factory = device_factory
        self.copy_to_clipboard = copy_to_clipboard
        self.console = Console()

    async def run_session(self) -> Optional[str]:
        """
        Run a complete dictation session.

        Returns:
            The transcribed text, or None if the session was cancelled or failed.
        """
        try:
            if not await self.ui.prompt_start_recording():
                return None

            recording = await self._record_audio()
            if recording is None:
                return None

            transcription = await self._transcribe_audio(recording)
            if transcription is None:
                return None

            self.ui.show_transcription(transcription)
            if not transcription.text:
                self.console.print("[red]❌ No speech detected in recording.[/red]")
                return None

            if self.copy_to_clipboard:
                self._copy_to_clipboard(transcription.text)
                await self.ui.show_success(transcription.text)
            return transcription.text

        except KeyboardInterrupt:
            self.console.print("\n[yellow]Session cancelled by user.[/yellow]")
            return None
        except Exception as e:
            logger.error(f"Dictation session failed: {e}")
            await self.ui.show_error(e)
            return None

    async def _record_audio(self) -> Optional[RecordingResult]:
        """
        Record until Enter is pressed or the session stops itself.

        Returns:
            The finished recording, or None if nothing usable was captured.

        Raises:
            AudioRecorderError: If the microphone cannot be opened
        """
        session = RecordingSession(self.device_factory(), self.options, tunables=self.tunables)

        async with session:
            await session.start()
            await self.ui.show_recording_status(session.detection_active)

            enter_task = asyncio.create_task(self.ui.wait_for_enter())
            auto_task = asyncio.create_task(session.wait())
            done, _ = await asyncio.wait(
                {enter_task, auto_task},
                return_when=asyncio.FIRST_COMPLETED
            )

            if auto_task in done:
                enter_task.cancel()
                result = auto_task.result()
            else:
                auto_task.cancel()
                result = await session.stop()
            await asyncio.gather(enter_task, auto_task, return_exceptions=True)

        self.ui.show_recording_stopped(result)

        # WAV header is 44 bytes, anything barely larger has no audio
        if result.size_bytes <= 100:
            self.console.print("[red]❌ No audio was recorded.[/red]")
            return None
        return result

    async def _transcribe_audio(self, recording: RecordingResult) -> Optional[TranscriptionResult]:
        """
        Transcribe the recording.

        Returns:
            Transcription result, or None if transcription failed.
        """
        try:
            with self.ui.show_transcription_progress(self.transcriber.model):
                return await self.transcriber.transcribe_with_retry(
                    recording.audio,
                    duration=recording.duration_seconds
                )
        except Exception as e:
            await self.ui.show_error(e)
            return None

    def _copy_to_clipboard(self, text: str) -> None:
        """
        Copy text to system clipboard.

        Args:
            text: Text to copy
        """
        try:
            pyperclip.copy(text)
        except Exception as e:
            self.console.print(f"[yellow]⚠️  Could not copy to clipboard: {e}[/yellow]")
            self.console.print("[dim]Transcribed text:[/dim]")
            self.console.print(f"[green]{text}[/green]")


@click.command()
@click.version_option(version=__version__)
@click.option(
    '--model',
    default='whisper-1',
    help='Transcription model',
    type=click.Choice(OpenAITranscriber.AVAILABLE_MODELS)
)
@click.option('--language', default=None, help='Language hint, e.g. "en" (auto-detect if omitted)')
@click.option(
    '--max-duration',
    default=120,
    type=click.IntRange(min=1),
    show_default=True,
    help='Maximum recording length in seconds'
)
@click.option(
    '--silence/--no-silence',
    'silence_enabled',
    default=True,
    show_default=True,
    help='Stop automatically when you stop talking'
)
@click.option(
    '--silence-duration-ms',
    default=3000,
    type=click.IntRange(min=100),
    show_default=True,
    help='How long the silence must last before stopping'
)
@click.option('--device', 'device_index', default=None, type=int, help='Input device index (see --list-devices)')
@click.option('--list-devices', is_flag=True, help='List input devices and exit')
@click.option('--no-copy', is_flag=True, help='Print the text without copying it to the clipboard')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def main(
    model: str,
    language: Optional[str],
    max_duration: int,
    silence_enabled: bool,
    silence_duration_ms: int,
    device_index: Optional[int],
    list_devices: bool,
    no_copy: bool,
    verbose: bool
) -> None:
    """
    Verba - push-to-record dictation with adaptive silence auto-stop.

    Records from the microphone, stops when you press Enter or stop talking,
    transcribes with OpenAI and copies the text to the clipboard.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s"
    )

    try:
        from .audio.recorder import PyAudioCaptureDevice, print_input_devices

        if list_devices:
            print_input_devices()
            return

        options = SessionOptions(
            max_duration_seconds=max_duration,
            silence_detection_enabled=silence_enabled,
            silence_duration_ms=silence_duration_ms
        )
        app = DictationApp(
            options=options,
            transcriber=OpenAITranscriber(model=model, language=language),
            device_factory=lambda: PyAudioCaptureDevice(device_index=device_index),
            copy_to_clipboard=not no_copy
        )

        text = asyncio.run(app.run_session())
        if text and no_copy:
            click.echo(text)

    except KeyboardInterrupt:
        click.echo("\nApplication interrupted by user.")
        sys.exit(0)
    except AudioRecorderError as e:
        click.echo(f"Audio error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
