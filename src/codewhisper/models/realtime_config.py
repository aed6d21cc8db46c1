"""Wire models for the realtime session configuration payload.

Field names match the backend's JSON keys exactly; changing them breaks
interoperability.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class TurnDetectionEagerness(str, Enum):
    """How eagerly the backend decides the user finished speaking."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TurnDetection(BaseModel):
    type: str = Field(default="semantic_vad", description="Turn detection strategy")
    eagerness: TurnDetectionEagerness = Field(default=TurnDetectionEagerness.MEDIUM, description="Detection sensitivity")


class InputAudioTranscription(BaseModel):
    model: str = Field(default="whisper-1", description="Transcription model identifier")


class FunctionToolDescriptor(BaseModel):
    """Local function tool as declared to the backend."""

    type: Literal["function"] = "function"
    name: str
    description: str
    parameters: Dict[str, Any]


class MCPToolDescriptor(BaseModel):
    """Remote MCP server as declared to the backend."""

    type: Literal["mcp"] = "mcp"
    server_label: str
    server_url: str
    authorization: Optional[str] = Field(None, repr=False)
    require_approval: Literal["never", "always"] = "never"


ToolDescriptor = Union[FunctionToolDescriptor, MCPToolDescriptor]


class RealtimeSessionConfiguration(BaseModel):
    """Payload of the session.update event sent right after connecting."""

    input_audio_format: str = Field(default="pcm16", description="Inbound audio encoding")
    output_audio_format: str = Field(default="pcm16", description="Outbound audio encoding")
    input_audio_transcription: InputAudioTranscription = Field(default_factory=InputAudioTranscription)
    instructions: str = Field(..., description="System instructions for the assistant")
    max_response_output_tokens: int = Field(default=4096, gt=0, description="Max output tokens per response")
    modalities: List[str] = Field(default_factory=lambda: ["audio", "text"], description="Response modalities")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature")
    tools: List[ToolDescriptor] = Field(default_factory=list, description="Local tools first, then MCP servers")
    turn_detection: TurnDetection = Field(default_factory=TurnDetection)
    voice: str = Field(default="alloy", description="Voice identifier")

    def to_wire(self) -> Dict[str, Any]:
        """Serialize the session object with the backend's keys."""
        return self.model_dump(mode="json", exclude_none=True)

    def to_event(self) -> Dict[str, Any]:
        """Wrap the payload in a session.update client event."""
        return {"type": "session.update", "session": self.to_wire()}

    def masked(self) -> Dict[str, Any]:
        """Wire payload with MCP credentials redacted, for display."""
        payload = self.to_wire()
        for tool in payload.get("tools", []):
            if tool.get("authorization"):
                tool["authorization"] = "***"
        return payload
