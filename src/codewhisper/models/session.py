"""Session model with mode-gated state transitions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class Mode(str, Enum):
    """Interaction mode, fixed for the lifetime of a session."""

    TRANSCRIBE_ONLY = "transcribe_only"
    TRANSCRIBE_AND_SPEAK = "transcribe_and_speak"
    REALTIME = "realtime"


class SessionState(str, Enum):
    """Orchestrator state machine states."""

    IDLE = "idle"
    CONNECTING = "connecting"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    AWAITING_REPLY = "awaiting_reply"
    EXECUTING_TOOL = "executing_tool"
    SPEAKING = "speaking"
    ERROR = "error"


# Edges reachable without cancel/fatal error, which are accepted from any state.
MODE_TRANSITIONS: Dict[Mode, Dict[SessionState, List[SessionState]]] = {
    Mode.TRANSCRIBE_ONLY: {
        SessionState.IDLE: [SessionState.CONNECTING],
        SessionState.CONNECTING: [SessionState.RECORDING],
        SessionState.RECORDING: [SessionState.TRANSCRIBING],
        SessionState.TRANSCRIBING: [SessionState.IDLE],
    },
    Mode.TRANSCRIBE_AND_SPEAK: {
        SessionState.IDLE: [SessionState.CONNECTING],
        SessionState.CONNECTING: [SessionState.RECORDING],
        SessionState.RECORDING: [SessionState.TRANSCRIBING],
        SessionState.TRANSCRIBING: [SessionState.AWAITING_REPLY, SessionState.IDLE],
        SessionState.AWAITING_REPLY: [SessionState.SPEAKING],
        SessionState.SPEAKING: [SessionState.IDLE],
    },
    Mode.REALTIME: {
        SessionState.IDLE: [SessionState.CONNECTING],
        SessionState.CONNECTING: [SessionState.RECORDING],
        SessionState.RECORDING: [SessionState.EXECUTING_TOOL, SessionState.IDLE],
        SessionState.EXECUTING_TOOL: [SessionState.RECORDING, SessionState.IDLE],
    },
}


class Session(BaseModel):
    """
    One live conversation with the backend.

    The transport handle is held by the orchestrator, never by this model,
    so snapshots of a session can be handed to callers safely.
    """

    session_id: str = Field(default_factory=lambda: str(uuid4()), description="Opaque session identifier")
    mode: Mode = Field(..., description="Interaction mode for the whole session")
    state: SessionState = Field(default=SessionState.IDLE, description="Current machine state")
    muted: bool = Field(default=False, description="Outbound audio suppressed")
    tool_names: List[str] = Field(default_factory=list, description="Tools offered to the backend")
    handled_reply_ids: List[str] = Field(default_factory=list, description="Reply ids already acted on")
    last_error: Optional[Any] = Field(None, description="Fatal error that moved the session to Error")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Session start time")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Last transition time")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Transition history and extras")

    class Config:
        """Pydantic configuration."""

        arbitrary_types_allowed = True

    @field_validator('session_id')
    @classmethod
    def validate_session_id(cls, v):
        """Validate session ID is not empty."""
        if not v or not v.strip():
            raise ValueError("session_id cannot be empty")
        return v.strip()

    def can_transition(self, new_state: SessionState) -> bool:
        """Check whether the mode's transition table allows moving to new_state."""
        if new_state in (SessionState.IDLE, SessionState.ERROR):
            return True
        return new_state in MODE_TRANSITIONS[self.mode].get(self.state, [])

    def transition_to(self, new_state: SessionState, reason: Optional[str] = None) -> bool:
        """Transition to a new state with validation.

        Args:
            new_state: Target state
            reason: Optional reason kept in the transition history

        Returns:
            True if the transition was applied
        """
        if not self.can_transition(new_state):
            return False

        previous = self.state
        self.state = new_state
        self.updated_at = datetime.now(timezone.utc)

        self.metadata.setdefault('state_transitions', []).append({
            'from': previous.value,
            'to': new_state.value,
            'reason': reason,
            'timestamp': self.updated_at.isoformat()
        })
        return True

    def mark_reply_handled(self, reply_id: str) -> bool:
        """Record a reply id, returning False if it was already acted on."""
        if reply_id in self.handled_reply_ids:
            return False
        self.handled_reply_ids.append(reply_id)
        return True

    @property
    def is_active(self) -> bool:
        """Whether the session still holds resources."""
        return self.state not in (SessionState.IDLE, SessionState.ERROR)

    def get_session_summary(self) -> Dict[str, Any]:
        """Get a summary of the session for status output."""
        return {
            "session_id": self.session_id,
            "mode": self.mode.value,
            "state": self.state.value,
            "muted": self.muted,
            "tools": list(self.tool_names),
            "last_error": self.last_error.to_dict() if hasattr(self.last_error, "to_dict") else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
