"""Abstract interface for chat completion back-ends."""

from abc import ABC, abstractmethod
from typing import List

from pydantic import BaseModel, Field, field_validator


class ChatMessage(BaseModel):
    """One message of a chat completion request."""

    role: str = Field(..., description="system, user or assistant")
    content: str = Field(..., description="Message text")

    @field_validator('role')
    @classmethod
    def validate_role(cls, v):
        """Validate role is one the completion API understands."""
        if v not in ("system", "user", "assistant"):
            raise ValueError(f"Unsupported chat role: {v}")
        return v


class ChatService(ABC):
    """Interface for chat completion."""

    @abstractmethod
    async def complete(
        self,
        messages: List[ChatMessage],
        model: str,
        max_tokens: int,
        temperature: float
    ) -> str:
        """Return the assistant's reply text for a conversation."""
        pass
