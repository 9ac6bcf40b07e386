"""
Rich-based terminal user interface.

Shows the recording state, why a recording ended, transcription progress
and the final text.
"""

from contextlib import contextmanager
from typing import Iterator, Optional
import asyncio
import sys
import threading

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from ..audio.session import RecordingResult, StopReason
from ..audio.transcriber import TranscriptionError, TranscriptionResult


STOP_MESSAGES = {
    StopReason.MANUAL: "⏹️  Recording stopped",
    StopReason.SILENCE: "🤫 Stopped automatically after silence",
    StopReason.MAX_DURATION: "⏱️  Maximum recording duration reached",
    StopReason.MAX_SIZE: "📦 Maximum file size (25MB) reached",
    StopReason.DEVICE_LOST: "🔌 Microphone disconnected, keeping what was captured",
}


class TerminalUI:
    """
    Rich-based terminal interface for the dictation application.

    Input is read without blocking the event loop so a recording can end
    on its own while the UI is still waiting for Enter.
    """

    def __init__(self, console: Optional[Console] = None):
        """Initialize the terminal UI."""
        self.console = console or Console()

    async def prompt_start_recording(self) -> bool:
        """
        Prompt user to start recording.

        Returns:
            True if user wants to start recording, False otherwise.
        """
        welcome_text = Text()
        welcome_text.append("🎙️  Verba", style="bold magenta")
        welcome_text.append("\n\nSpeak, pause, and your words land on the clipboard\n")

        self.console.print(Panel(
            welcome_text,
            title="Welcome",
            title_align="center",
            border_style="cyan",
            padding=(1, 2)
        ))
        self.console.print("\n📋 Instructions:")
        self.console.print("  • Press [bold green]Enter[/bold green] to start recording")
        self.console.print("  • Stay quiet for a moment while the microphone calibrates")
        self.console.print("  • Stop talking and recording ends by itself, or press [bold red]Enter[/bold red]")
        self.console.print()

        self.console.print("Press Enter to start recording (or Ctrl+C to quit): ", end="")
        try:
            await self.wait_for_enter()
            return True
        except (KeyboardInterrupt, EOFError):
            return False

    async def show_recording_status(self, silence_detection: bool) -> None:
        """
        Display recording status with visual indicators.

        Args:
            silence_detection: Whether the recording will stop by itself
        """
        hint = "\n\nSpeak now... Press Enter to stop"
        if silence_detection:
            hint += " (or just stop talking)"

        self.console.print(Panel(
            Text("🔴 RECORDING", style="bold red") + Text(hint, style="white"),
            title="Recording Audio",
            title_align="center",
            border_style="red",
            padding=(1, 2)
        ))

    async def wait_for_enter(self) -> None:
        """
        Wait for a line on stdin without blocking the event loop.

        Raises:
            EOFError: If stdin is closed
        """
        loop = asyncio.get_running_loop()
        try:
            fd = sys.stdin.fileno()
        except (AttributeError, ValueError, OSError):
            fd = None

        if fd is None:
            line = await self._readline_in_thread(loop)
        else:
            line_ready: asyncio.Future = loop.create_future()

            def _on_readable() -> None:
                if not line_ready.done():
                    line_ready.set_result(sys.stdin.readline())

            try:
                loop.add_reader(fd, _on_readable)
            except NotImplementedError:
                # Proactor event loops cannot watch stdin
                line = await self._readline_in_thread(loop)
            else:
                try:
                    line = await line_ready
                finally:
                    loop.remove_reader(fd)

        if line == "":
            raise EOFError("stdin closed")

    @staticmethod
    def _readline_in_thread(loop: asyncio.AbstractEventLoop) -> asyncio.Future:
        """
        Read one line on a daemon thread.

        Cancelling the returned future abandons the read; the thread stays
        blocked on stdin but does not keep the process alive at exit.
        """
        line_ready: asyncio.Future = loop.create_future()

        def _deliver(line: str) -> None:
            if not line_ready.done():
                line_ready.set_result(line)

        def _read() -> None:
            line = sys.stdin.readline()
            try:
                loop.call_soon_threadsafe(_deliver, line)
            except RuntimeError:
                pass  # loop already closed

        threading.Thread(target=_read, name="verba-stdin", daemon=True).start()
        return line_ready

    def show_recording_stopped(self, result: RecordingResult) -> None:
        """Explain why and after how long the recording ended."""
        message = STOP_MESSAGES.get(result.stop_reason, "⏹️  Recording stopped")
        style = "yellow" if result.stop_reason is StopReason.DEVICE_LOST else None
        self.console.print(
            f"{message} ({result.duration_seconds:.1f}s, {result.size_bytes / 1024:.0f} KB)",
            style=style
        )
        self.console.print()

    @contextmanager
    def show_transcription_progress(self, model: str) -> Iterator[None]:
        """Spinner shown while the recording is being transcribed."""
        with self.console.status(f"🤖 Transcribing with {model}...", spinner="dots"):
            yield

    def show_transcription(self, result: TranscriptionResult) -> None:
        """Display the transcribed text."""
        details = f"{result.model}"
        if result.processing_time is not None:
            details += f" • {result.processing_time:.1f}s"

        self.console.print(Panel(
            Text(result.text or "(empty)", style="white"),
            title="Transcription",
            subtitle=details,
            title_align="center",
            border_style="cyan",
            padding=(1, 2)
        ))

    async def show_error(self, error: Exception) -> None:
        """
        Display error message with Rich formatting.

        Args:
            error: Exception to display
        """
        if isinstance(error, TranscriptionError):
            error_message = error.user_message
        else:
            error_message = str(error)

        lowered = error_message.lower()
        if "permission" in lowered or "microphone" in lowered or "audio" in lowered:
            guidance = "\n\n💡 Try checking your microphone connection and permissions."
        elif "network" in lowered or "api" in lowered or "internet" in lowered:
            guidance = "\n\n💡 Check your internet connection and API keys."
        elif "timeout" in lowered or "timed out" in lowered:
            guidance = "\n\n💡 Try again - the service might be temporarily slow."
        else:
            guidance = ""

        self.console.print(Panel(
            Text(f"❌ {error_message}{guidance}", style="red"),
            title="Error",
            title_align="center",
            border_style="red",
            padding=(1, 2)
        ))

    async def show_success(self, message: str) -> None:
        """
        Display success message with Rich formatting.

        Args:
            message: Text that was copied to the clipboard
        """
        if len(message) > 100:
            preview = message[:100] + "..."
        else:
            preview = message
        content = f"📋 Copied to clipboard!\n\n[dim]{preview}[/dim]"

        self.console.print(Panel(
            content,
            title="Success",
            title_align="center",
            border_style="green",
            padding=(1, 2)
        ))
