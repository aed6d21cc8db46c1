"""Transcription and chat services built on the OpenAI API."""

import io
import logging
from typing import List, Optional

import openai
from openai import AsyncOpenAI

from codewhisper.lib.config import get_api_key
from codewhisper.lib.errors import AuthError, BackendConnectionError, VoiceSessionError
from codewhisper.services.interfaces.chat_service import ChatMessage, ChatService
from codewhisper.services.interfaces.transcription_service import TranscriptionResult, TranscriptionService


logger = logging.getLogger(__name__)


def _map_openai_error(error: openai.OpenAIError, operation: str) -> VoiceSessionError:
    """Translate an OpenAI client error into the session error taxonomy."""
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthError(f"{operation} was rejected: {error}", code="authentication_error")
    if isinstance(error, openai.RateLimitError) and getattr(error, "code", None) == "insufficient_quota":
        return AuthError(f"{operation} failed: quota exhausted", code="insufficient_quota")
    if isinstance(error, openai.APIStatusError):
        return BackendConnectionError(f"{operation} failed (HTTP {error.status_code}): {error}", code=f"http_{error.status_code}")
    return BackendConnectionError(f"{operation} failed: {error}", code="connect_failed")


class OpenAITranscriptionService(TranscriptionService):
    """Transcribes recordings with the audio transcriptions endpoint."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(api_key=get_api_key())

    async def transcribe(self, audio: bytes, filename: str, model: str) -> TranscriptionResult:
        audio_file = io.BytesIO(audio)
        audio_file.name = filename

        try:
            response = await self.client.audio.transcriptions.create(model=model, file=audio_file)
        except openai.OpenAIError as e:
            logger.error(f"Transcription request failed: {e}")
            raise _map_openai_error(e, "Transcription") from e

        text = getattr(response, "text", None) or ""
        logger.info(f"Transcribed {len(audio)} bytes into {len(text)} characters")
        return TranscriptionResult(text=text, language=getattr(response, "language", None))


class OpenAIChatService(ChatService):
    """Chat completions used for prompt enhancement and spoken replies."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(api_key=get_api_key())

    async def complete(
        self,
        messages: List[ChatMessage],
        model: str,
        max_tokens: int,
        temperature: float
    ) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=[message.model_dump() for message in messages],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.OpenAIError as e:
            logger.error(f"Chat completion failed: {e}")
            raise _map_openai_error(e, "Chat completion") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""
