"""Chat-based clean-up of raw transcriptions."""

import logging
from typing import Optional

from codewhisper.services.interfaces.chat_service import ChatMessage, ChatService


logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You clean up speech-to-text output. Your job is to:
1. Fix obvious transcription mistakes
2. Add punctuation and sensible formatting
3. Format commands or instructions clearly
4. Keep the original meaning unchanged
5. Reply with the cleaned-up text only, without commentary"""


class PromptEnhancer:
    """Improves transcribed text with a chat model.

    Enhancement is best effort: if the chat service fails, the raw text is
    returned unchanged.
    """

    def __init__(
        self,
        chat_service: ChatService,
        model: str = "gpt-4o-mini",
        max_tokens: int = 1024,
        temperature: float = 0.3,
        system_prompt: Optional[str] = None
    ):
        self.chat_service = chat_service
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT

    async def enhance(self, text: str) -> str:
        """Return an enhanced version of text.

        Inputs of two characters or fewer are returned as-is.
        """
        stripped = text.strip()
        if len(stripped) <= 2:
            return text

        messages = [
            ChatMessage(role="system", content=self.system_prompt),
            ChatMessage(role="user", content=stripped),
        ]

        try:
            enhanced = await self.chat_service.complete(
                messages, model=self.model, max_tokens=self.max_tokens, temperature=self.temperature
            )
        except Exception as e:
            logger.warning(f"Prompt enhancement failed, keeping raw transcription: {e}")
            return text

        enhanced = (enhanced or "").strip()
        return enhanced or text
