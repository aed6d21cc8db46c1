"""ToolCall model with monotonic status transitions."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ToolCallStatus(str, Enum):
    """Lifecycle status of a backend-issued tool call."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ToolCallStatus.DENIED,
    ToolCallStatus.SUCCEEDED,
    ToolCallStatus.FAILED,
    ToolCallStatus.CANCELLED,
})


class ToolOutcome(BaseModel):
    """Result produced by a local tool handler."""

    output: str = Field(default="", description="Text returned to the backend")
    summary: Optional[str] = Field(None, description="Short text for the transcript, defaults to output")
    image_png: Optional[bytes] = Field(None, repr=False, description="Image produced by the tool")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Executor-specific details")


class ToolCall(BaseModel):
    """
    A request from the backend to execute a named tool.

    Status only moves forward and reaches at most one terminal status;
    transition_status refuses anything else instead of raising.
    """

    call_id: str = Field(..., description="Backend call identifier, unique per call")
    name: str = Field(..., description="Tool name")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Decoded call arguments")
    session_id: Optional[str] = Field(None, description="Owning session")
    status: ToolCallStatus = Field(default=ToolCallStatus.PENDING, description="Current status")
    outcome: Optional[ToolOutcome] = Field(None, description="Result for succeeded calls")
    error: Optional[str] = Field(None, description="Error payload for failed calls")
    history: List[ToolCallStatus] = Field(default_factory=lambda: [ToolCallStatus.PENDING], description="Statuses reached, in order")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="When the backend issued the call")
    started_at: Optional[datetime] = Field(None, description="When execution began")
    completed_at: Optional[datetime] = Field(None, description="When a terminal status was reached")

    @field_validator('call_id', 'name')
    @classmethod
    def validate_not_empty(cls, v):
        """Validate identifiers are not empty."""
        if not v or not v.strip():
            raise ValueError("call_id and name cannot be empty")
        return v.strip()

    @classmethod
    def from_backend(cls, call_id: str, name: str, raw_arguments: Any, session_id: Optional[str] = None) -> "ToolCall":
        """Build a call from the backend's JSON-encoded argument string.

        Undecodable arguments are kept under "_raw" so the handler can
        report a meaningful failure.
        """
        if isinstance(raw_arguments, dict):
            arguments = raw_arguments
        else:
            try:
                arguments = json.loads(raw_arguments or "{}")
            except (TypeError, ValueError):
                arguments = {"_raw": raw_arguments}
            if not isinstance(arguments, dict):
                arguments = {"_raw": raw_arguments}
        return cls(call_id=call_id, name=name, arguments=arguments, session_id=session_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_status(self, new_status: ToolCallStatus, error: Optional[str] = None) -> bool:
        """Move to a new status if the lifecycle allows it.

        Args:
            new_status: Target status
            error: Error payload recorded for FAILED

        Returns:
            True if the status changed
        """
        valid_transitions = {
            ToolCallStatus.PENDING: [ToolCallStatus.APPROVED, ToolCallStatus.DENIED, ToolCallStatus.FAILED, ToolCallStatus.CANCELLED],
            ToolCallStatus.APPROVED: [ToolCallStatus.EXECUTING, ToolCallStatus.CANCELLED],
            ToolCallStatus.EXECUTING: [ToolCallStatus.SUCCEEDED, ToolCallStatus.FAILED, ToolCallStatus.CANCELLED],
            ToolCallStatus.DENIED: [],     # Terminal state
            ToolCallStatus.SUCCEEDED: [],  # Terminal state
            ToolCallStatus.FAILED: [],     # Terminal state
            ToolCallStatus.CANCELLED: [],  # Terminal state
        }

        if new_status not in valid_transitions.get(self.status, []):
            return False

        now = datetime.now(timezone.utc)
        self.status = new_status
        self.history.append(new_status)

        if new_status == ToolCallStatus.EXECUTING:
            self.started_at = now
        if new_status in TERMINAL_STATUSES:
            self.completed_at = now
        if error is not None:
            self.error = error

        return True

    def duration_ms(self) -> Optional[int]:
        """Execution time in milliseconds, if the call ran and finished."""
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def result_text(self) -> str:
        """Text sent back to the backend as the function call output."""
        if self.status == ToolCallStatus.SUCCEEDED:
            return self.outcome.output if self.outcome else ""
        if self.status == ToolCallStatus.FAILED:
            return f"Error: {self.error or 'tool execution failed'}"
        if self.status == ToolCallStatus.DENIED:
            return "The user denied permission to run this tool."
        if self.status == ToolCallStatus.CANCELLED:
            return "Execution interrupted by user"
        return ""
