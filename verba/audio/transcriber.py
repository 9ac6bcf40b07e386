"""
Speech-to-text transcription using the OpenAI audio API.

Uploads a finished recording to OpenAI's transcription endpoint and maps
API failures to errors that carry a user-facing message and tell the
caller whether trying again could help.
"""

from typing import Optional, List, Dict, Any, Awaitable, Callable, TypeVar
from dataclasses import dataclass
import asyncio
import logging
import os
import time

import openai

from .session import MAX_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TranscriptionResult:
    """Complete transcription result with metadata."""
    text: str                                # Full transcribed text
    model: str                               # Model that produced it
    language: Optional[str] = None           # Requested language, if any
    duration: Optional[float] = None         # Audio duration in seconds
    processing_time: Optional[float] = None  # Time taken to transcribe


class TranscriptionError(Exception):
    """
    Raised when a transcription request fails.

    Attributes:
        code: Short machine-readable error code
        user_message: Message suitable for showing to the user
        retryable: Whether repeating the request may succeed
    """

    def __init__(self, code: str, message: str, user_message: str, retryable: bool):
        super().__init__(message)
        self.code = code
        self.user_message = user_message
        self.retryable = retryable


_STATUS_ERRORS = {
    400: ("BAD_REQUEST", "Invalid audio format or parameters. Please check your settings.", False),
    401: ("INVALID_API_KEY", "Invalid API key. Please check your OpenAI API key.", False),
    403: ("FORBIDDEN", "You do not have access to this model. Please check your API key permissions.", False),
    404: ("NOT_FOUND", "The selected model is not available. Please try a different model.", False),
    413: ("FILE_TOO_LARGE", "Audio file is too large. Maximum size is 25MB. Try recording a shorter clip.", False),
    415: ("UNSUPPORTED_FORMAT", "Unsupported audio format. Please try recording again.", True),
    429: ("RATE_LIMIT", "Rate limit exceeded. Please wait a moment and try again.", True),
}


def parse_transcription_error(error: Exception) -> TranscriptionError:
    """
    Classify an exception raised by the OpenAI client.

    Args:
        error: Exception from the API call

    Returns:
        TranscriptionError describing the failure
    """
    if isinstance(error, TranscriptionError):
        return error

    message = str(error) or "Transcription failed"
    status = getattr(error, "status_code", None)

    if status in _STATUS_ERRORS:
        code, user_message, retryable = _STATUS_ERRORS[status]
        return TranscriptionError(code, message, user_message, retryable)
    if isinstance(status, int) and 500 <= status < 600:
        return TranscriptionError(
            "SERVER_ERROR",
            message,
            "OpenAI service is temporarily unavailable. Please try again in a few moments.",
            True
        )
    if isinstance(error, openai.APITimeoutError):
        return TranscriptionError(
            "TIMEOUT",
            message,
            "Request timed out. The audio may be too long. Please try a shorter recording.",
            True
        )
    if isinstance(error, openai.APIConnectionError):
        return TranscriptionError(
            "NETWORK_ERROR",
            message,
            "Could not reach OpenAI. Check your internet connection.",
            True
        )
    return TranscriptionError("TRANSCRIPTION_ERROR", message, message, True)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0
) -> T:
    """
    Call fn until it succeeds, doubling the delay between attempts.

    Errors that parse as non-retryable are raised immediately.
    """
    if max_retries <= 0:
        raise ValueError(f"max_retries must be positive, got {max_retries}")

    for attempt in range(max_retries):
        try:
            return await fn()
        except Exception as e:
            parsed = parse_transcription_error(e)
            if not parsed.retryable or attempt == max_retries - 1:
                raise
            delay = initial_delay * (2 ** attempt)
            logger.warning(f"Transcription attempt {attempt + 1} failed ({parsed.code}), retrying in {delay:.1f}s")
            await asyncio.sleep(delay)


class OpenAITranscriber:
    """
    OpenAI speech-to-text client.

    Features:
    - whisper-1, gpt-4o-transcribe and gpt-4o-mini-transcribe models
    - Synchronous client run in an executor so the event loop stays free
    - Typed, classified errors with retry support
    """

    AVAILABLE_MODELS = [
        "gpt-4o-transcribe",       # Best accuracy
        "gpt-4o-mini-transcribe",  # Balanced cost
        "whisper-1"                # Original model
    ]

    def __init__(
        self,
        model: str = "whisper-1",
        api_key: Optional[str] = None,
        language: Optional[str] = None,
        temperature: float = 0.0,
        timeout: float = 60.0
    ):
        """
        Initialize the transcriber.

        Args:
            model: Transcription model name
            api_key: OpenAI API key (defaults to OPENAI_API_KEY)
            language: ISO-639-1 language hint, None for auto-detect
            temperature: Sampling temperature
            timeout: Request timeout in seconds
        """
        if not self.is_model_available(model):
            raise ValueError(f"Unsupported model '{model}', choose one of {self.AVAILABLE_MODELS}")
        self.model = model
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.language = language
        self.temperature = temperature
        self.timeout = timeout
        self._client: Optional[openai.OpenAI] = None

    def is_available(self) -> bool:
        """Check if an API key is configured."""
        return bool(self.api_key)

    async def transcribe(
        self,
        audio_data: bytes,
        duration: Optional[float] = None,
        filename: str = "recording.wav"
    ) -> TranscriptionResult:
        """
        Transcribe audio bytes to text.

        Args:
            audio_data: Encoded audio (WAV) as bytes
            duration: Audio duration in seconds, for reporting
            filename: Name sent with the upload; its extension tells the API the format

        Returns:
            TranscriptionResult with the transcribed text and metadata.

        Raises:
            ValueError: If audio_data is empty
            TranscriptionError: If the request fails
        """
        if not audio_data:
            raise ValueError("Audio data cannot be empty")
        if len(audio_data) > MAX_FILE_SIZE_BYTES:
            raise TranscriptionError(
                "FILE_TOO_LARGE",
                f"Audio is {len(audio_data)} bytes, limit is {MAX_FILE_SIZE_BYTES}",
                _STATUS_ERRORS[413][1],
                False
            )
        if not self.is_available():
            raise TranscriptionError(
                "INVALID_API_KEY",
                "OPENAI_API_KEY is not set",
                "No OpenAI API key configured. Set OPENAI_API_KEY and try again.",
                False
            )

        start_time = time.time()
        try:
            loop = asyncio.get_running_loop()
            text = await loop.run_in_executor(
                None,
                self._sync_transcribe,
                audio_data,
                filename
            )
        except Exception as e:
            parsed = parse_transcription_error(e)
            logger.error(f"Transcription failed: {parsed.code}: {e}")
            raise parsed from e

        processing_time = time.time() - start_time
        logger.info(f"Transcription completed in {processing_time:.2f}s with {self.model}")
        return TranscriptionResult(
            text=text.strip(),
            model=self.model,
            language=self.language,
            duration=duration,
            processing_time=processing_time
        )

    async def transcribe_with_retry(
        self,
        audio_data: bytes,
        duration: Optional[float] = None,
        max_retries: int = 3,
        initial_delay: float = 1.0
    ) -> TranscriptionResult:
        """Transcribe, retrying retryable failures with exponential backoff."""
        return await retry_with_backoff(
            lambda: self.transcribe(audio_data, duration=duration),
            max_retries=max_retries,
            initial_delay=initial_delay
        )

    def _sync_transcribe(self, audio_data: bytes, filename: str) -> str:
        """Synchronous API call to be run in executor."""
        if not self._client:
            # retry_with_backoff is the only retry layer
            self._client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)

        params: Dict[str, Any] = {
            "file": (filename, audio_data),
            "model": self.model,
            "response_format": "text",
            "temperature": self.temperature
        }
        if self.language:
            params["language"] = self.language

        response = self._client.audio.transcriptions.create(**params)

        if isinstance(response, str):
            return response
        return getattr(response, "text", "") or ""

    def get_available_models(self) -> List[str]:
        """Get list of supported transcription models."""
        return self.AVAILABLE_MODELS.copy()

    def is_model_available(self, model: str) -> bool:
        """Check if a model name is supported."""
        return model in self.AVAILABLE_MODELS
