"""Tool specification models with approval policies."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ToolKind(str, Enum):
    """Where a tool executes."""

    LOCAL_FUNCTION = "local_function"
    REMOTE_MCP = "remote_mcp"


class ApprovalMode(str, Enum):
    """Approval policy kinds."""

    NEVER = "never"
    ALWAYS = "always"
    FILTERED_BY_NAME = "filtered_by_name"


class ApprovalPolicy(BaseModel):
    """
    Rule deciding whether a tool call needs user confirmation.

    FILTERED_BY_NAME carries glob patterns matched against the tool name.
    The backend only understands never/always, so the filtered form is
    sent as "always" and evaluated locally.
    """

    mode: ApprovalMode = Field(default=ApprovalMode.NEVER, description="Policy kind")
    patterns: List[str] = Field(default_factory=list, description="Glob patterns for FILTERED_BY_NAME")

    class Config:
        """Pydantic configuration."""

        frozen = True

    @model_validator(mode='before')
    @classmethod
    def coerce_shorthand(cls, data):
        """Accept a bare mode string such as "never" or "always"."""
        if isinstance(data, str):
            return {"mode": data}
        return data

    @model_validator(mode='after')
    def validate_patterns(self):
        """Filtered policies need at least one pattern."""
        if self.mode == ApprovalMode.FILTERED_BY_NAME and not self.patterns:
            raise ValueError("filtered_by_name policy requires at least one pattern")
        return self

    @classmethod
    def never(cls) -> "ApprovalPolicy":
        return cls(mode=ApprovalMode.NEVER)

    @classmethod
    def always(cls) -> "ApprovalPolicy":
        return cls(mode=ApprovalMode.ALWAYS)

    @classmethod
    def filtered_by_name(cls, patterns: List[str]) -> "ApprovalPolicy":
        return cls(mode=ApprovalMode.FILTERED_BY_NAME, patterns=list(patterns))

    @property
    def wire_value(self) -> str:
        """Collapse onto the backend's two-valued require_approval field."""
        return "never" if self.mode == ApprovalMode.NEVER else "always"


class MCPServerConfig(BaseModel):
    """Remote MCP tool server declared to the backend."""

    label: str = Field(..., description="Server label, unique within a session's tool set")
    server_url: str = Field(..., description="Server URL (http or https)")
    authorization: Optional[str] = Field(None, repr=False, description="Optional bearer credential")
    approval_policy: ApprovalPolicy = Field(default_factory=ApprovalPolicy.never, description="Approval policy")
    enabled: bool = Field(default=True, description="Disabled servers are left out of the tool set")

    @field_validator('label')
    @classmethod
    def validate_label(cls, v):
        """Validate label is not empty."""
        if not v or not v.strip():
            raise ValueError("label cannot be empty")
        return v.strip()

    @field_validator('server_url')
    @classmethod
    def validate_server_url(cls, v):
        """MCP servers must be reachable over http or https."""
        v = v.strip()
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("server_url must start with http:// or https://")
        return v

    @field_validator('authorization')
    @classmethod
    def normalize_authorization(cls, v):
        """Treat blank tokens as absent."""
        if v is not None and not v.strip():
            return None
        return v


class ToolSpec(BaseModel):
    """Declarative description of one invocable capability."""

    name: str = Field(..., description="Tool name as seen by the backend")
    kind: ToolKind = Field(..., description="Local function or remote MCP server")
    description: str = Field(default="", description="Description offered to the model")
    parameters_schema: Dict[str, Any] = Field(default_factory=dict, description="JSON schema of the arguments")
    endpoint: Optional[str] = Field(None, description="MCP server URL")
    auth_token: Optional[str] = Field(None, repr=False, description="MCP bearer credential")
    approval_policy: ApprovalPolicy = Field(default_factory=ApprovalPolicy.never, description="Approval policy")

    class Config:
        """Pydantic configuration."""

        frozen = True

    @model_validator(mode='after')
    def validate_kind_fields(self):
        """Remote tools need an endpoint; local tools must not carry one."""
        if self.kind == ToolKind.REMOTE_MCP and not self.endpoint:
            raise ValueError("remote MCP tools require an endpoint")
        if self.kind == ToolKind.LOCAL_FUNCTION and self.endpoint:
            raise ValueError("local function tools cannot declare an endpoint")
        return self

    @classmethod
    def from_mcp_config(cls, config: MCPServerConfig) -> "ToolSpec":
        """Build the tool spec for a configured MCP server."""
        return cls(
            name=config.label,
            kind=ToolKind.REMOTE_MCP,
            description=f"MCP server at {config.server_url}",
            endpoint=config.server_url,
            auth_token=config.authorization,
            approval_policy=config.approval_policy,
        )

    @property
    def is_remote(self) -> bool:
        return self.kind == ToolKind.REMOTE_MCP
