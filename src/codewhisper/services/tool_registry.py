"""Tool registry building the tool set offered to the backend."""

import logging
from typing import Iterable, List, NamedTuple, Optional

from codewhisper.lib.errors import ConfigurationError
from codewhisper.models.tool_spec import ApprovalPolicy, MCPServerConfig, ToolKind, ToolSpec


logger = logging.getLogger(__name__)

SCREENSHOT_TOOL_NAME = "take_screenshot"
EXTERNAL_TASK_TOOL_NAME = "execute_external_task"


def screenshot_tool_spec(approval_policy: Optional[ApprovalPolicy] = None) -> ToolSpec:
    """Spec of the screenshot tool."""
    return ToolSpec(
        name=SCREENSHOT_TOOL_NAME,
        kind=ToolKind.LOCAL_FUNCTION,
        description=(
            "Capture a screenshot of the user's screen or of a specific application window. "
            "Use it when the user asks to see their screen, or to gather context about "
            "what they are working on before a coding task."
        ),
        parameters_schema={
            "type": "object",
            "properties": {
                "capture_type": {
                    "type": "string",
                    "enum": ["full_screen", "window"],
                    "description": "Capture the whole screen or a single window"
                },
                "app_name": {
                    "type": "string",
                    "description": "Application whose window to capture, e.g. 'Xcode' or 'Safari'"
                },
                "window_title": {
                    "type": "string",
                    "description": "Title, or part of the title, of the window to capture"
                }
            },
            "required": ["capture_type"]
        },
        approval_policy=approval_policy or ApprovalPolicy.never(),
    )


def external_task_tool_spec(approval_policy: Optional[ApprovalPolicy] = None) -> ToolSpec:
    """Spec of the external coding-task tool."""
    return ToolSpec(
        name=EXTERNAL_TASK_TOOL_NAME,
        kind=ToolKind.LOCAL_FUNCTION,
        description=(
            "Hand a coding task to the coding agent: reading or editing files, running commands, "
            "refactoring or debugging. The agent cannot hear the conversation, so describe the "
            "task completely."
        ),
        parameters_schema={
            "type": "object",
            "properties": {
                "task": {
                    "type": "string",
                    "description": "Complete description of the coding task to perform"
                }
            },
            "required": ["task"]
        },
        approval_policy=approval_policy or ApprovalPolicy.never(),
    )


class RegistryBuild(NamedTuple):
    """Tool set for one session and the configuration errors found building it."""

    tools: List[ToolSpec]
    errors: List[ConfigurationError]


class ToolRegistry:
    """
    Holds registered MCP servers and builds session tool sets.

    build() is a pure function of its inputs: local tools first in the
    order given, then MCP servers in configuration order. Duplicates are
    refused rather than merged; the first occurrence wins.
    """

    def __init__(self, mcp_servers: Optional[Iterable[MCPServerConfig]] = None):
        self._servers: List[MCPServerConfig] = []
        for server in mcp_servers or []:
            self.register_server(server)

    @property
    def servers(self) -> List[MCPServerConfig]:
        return list(self._servers)

    def register_server(self, config: MCPServerConfig) -> None:
        """Add an MCP server.

        Raises:
            ConfigurationError: A server with the same label is already registered
        """
        if any(existing.label == config.label for existing in self._servers):
            raise ConfigurationError(f"MCP server label already registered: {config.label}", code="duplicate_label")
        self._servers.append(config)
        logger.info(f"Registered MCP server {config.label} at {config.server_url}")

    def remove_server(self, label: str) -> bool:
        """Remove an MCP server by label, returning whether it existed."""
        remaining = [server for server in self._servers if server.label != label]
        removed = len(remaining) != len(self._servers)
        self._servers = remaining
        return removed

    def build_for(self, local_tools: List[ToolSpec]) -> RegistryBuild:
        """Build the tool set from the registered servers."""
        return self.build(local_tools, self._servers)

    @staticmethod
    def build(local_tools: List[ToolSpec], mcp_configs: List[MCPServerConfig]) -> RegistryBuild:
        """Build the ordered tool set for a session.

        Args:
            local_tools: Local function tools in registration order
            mcp_configs: MCP server configurations in the order they were added

        Returns:
            RegistryBuild with the accepted tools and one ConfigurationError per rejected entry
        """
        tools: List[ToolSpec] = []
        errors: List[ConfigurationError] = []
        names = set()

        for spec in local_tools:
            if spec.kind != ToolKind.LOCAL_FUNCTION:
                errors.append(ConfigurationError(f"Tool {spec.name} is not a local function", code="invalid_kind"))
                continue
            if spec.name in names:
                errors.append(ConfigurationError(f"Duplicate local tool name: {spec.name}", code="duplicate_name"))
                continue
            names.add(spec.name)
            tools.append(spec)

        labels = set()
        for config in mcp_configs:
            if not config.enabled:
                continue
            if config.label in labels:
                errors.append(ConfigurationError(f"Duplicate MCP server label: {config.label}", code="duplicate_label"))
                continue
            if config.label in names:
                errors.append(ConfigurationError(f"MCP server label collides with a local tool: {config.label}", code="duplicate_name"))
                continue
            labels.add(config.label)
            tools.append(ToolSpec.from_mcp_config(config))

        for error in errors:
            logger.warning(f"Tool configuration rejected: {error.message}")

        return RegistryBuild(tools=tools, errors=errors)
