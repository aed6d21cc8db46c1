"""Abstract interface for request/response speech transcription."""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field


class TranscriptionResult(BaseModel):
    """Text recognised in a recording."""

    text: str = Field(default="", description="Transcribed text")
    language: Optional[str] = Field(None, description="Detected language, when reported")


class TranscriptionService(ABC):
    """Interface for transcription back-ends."""

    @abstractmethod
    async def transcribe(self, audio: bytes, filename: str, model: str) -> TranscriptionResult:
        """Transcribe a recording.

        Args:
            audio: Encoded audio file contents
            filename: File name used to infer the audio format
            model: Transcription model identifier

        Returns:
            TranscriptionResult with text and detected language

        Raises:
            AuthError: Credentials were rejected
            BackendConnectionError: The service could not be reached
        """
        pass
