"""Transcript entry model."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Who produced a transcript entry."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class EntryKind(str, Enum):
    """What a transcript entry records."""

    TEXT = "text"
    TOOL_START = "tool_start"
    TOOL_PROGRESS = "tool_progress"
    TOOL_RESULT = "tool_result"
    TOOL_ERROR = "tool_error"


class TranscriptEntry(BaseModel):
    """Immutable record of one piece of conversation activity."""

    entry_id: str = Field(default_factory=lambda: str(uuid4()), description="Unique entry identifier")
    role: Role = Field(..., description="Speaker")
    kind: EntryKind = Field(default=EntryKind.TEXT, description="Entry kind")
    content: str = Field(..., description="Entry text")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Creation time")
    attached_image: Optional[bytes] = Field(None, repr=False, description="PNG image attached to the entry")
    tool_call_id: Optional[str] = Field(None, description="Tool call this entry reports on")
    warning: bool = Field(default=False, description="Entry reports a transient error")

    class Config:
        """Pydantic configuration."""

        frozen = True

    @classmethod
    def user(cls, content: str) -> "TranscriptEntry":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "TranscriptEntry":
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def system_warning(cls, content: str, kind: EntryKind = EntryKind.TEXT, tool_call_id: Optional[str] = None) -> "TranscriptEntry":
        return cls(role=Role.SYSTEM, kind=kind, content=content, tool_call_id=tool_call_id, warning=True)

    @classmethod
    def tool_event(
        cls,
        kind: EntryKind,
        content: str,
        tool_call_id: Optional[str] = None,
        attached_image: Optional[bytes] = None
    ) -> "TranscriptEntry":
        return cls(
            role=Role.SYSTEM,
            kind=kind,
            content=content,
            tool_call_id=tool_call_id,
            attached_image=attached_image,
            warning=kind == EntryKind.TOOL_ERROR,
        )
