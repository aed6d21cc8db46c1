"""
Configuration management and validation for CodeWhisper.

Loads the YAML configuration file, overlays environment variables and
validates everything into pydantic models. Sessions never read this
module's live state; the orchestrator takes a deep copy at start.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List
from pydantic import BaseModel, Field, ValidationError

from codewhisper.lib.errors import ConfigurationError
from codewhisper.models.realtime_config import TurnDetectionEagerness
from codewhisper.models.tool_spec import ApprovalPolicy, MCPServerConfig


DEFAULT_INSTRUCTIONS = """You are a voice coding assistant. Keep spoken answers short and focus on getting the user's coding work done.
You can call these tools:

1. take_screenshot: capture the full screen or a single window. Use it when the user asks to see their screen, and before coding tasks when you need to know which editor, language or framework they are working in.

2. execute_external_task: hand a coding task (reading or editing files, running commands, refactoring, debugging) to the coding agent. Describe the task completely, the agent cannot hear the conversation.

Summarize tool results briefly once they come back."""


class ObservabilityConfig(BaseModel):
    """Configuration for observability settings."""
    enabled: bool = False
    service_name: str = "codewhisper"
    service_version: str = "1.0.0"
    environment: str = "development"
    otlp_endpoint: str = "http://localhost:4317"
    trace_sampling_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    export_timeout: int = Field(default=30, gt=0)
    resource_attributes: Dict[str, str] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    """Configuration for logging settings."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="structured", pattern="^(structured|simple)$")
    directory: str = "~/.codewhisper/logs"
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    backup_count: int = Field(default=5, ge=1)
    include_trace: bool = True
    environment: str = "development"


class RealtimeConfig(BaseModel):
    """Configuration for the realtime backend session."""
    url: str = "wss://api.openai.com/v1/realtime"
    model: str = "gpt-realtime"
    voice: str = "alloy"
    instructions: str = DEFAULT_INSTRUCTIONS
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_response_output_tokens: int = Field(default=4096, gt=0)
    turn_detection_eagerness: TurnDetectionEagerness = TurnDetectionEagerness.MEDIUM
    transcription_model: str = "whisper-1"
    assistant_speaks_first: bool = True


class TranscriptionConfig(BaseModel):
    """Configuration for request/response transcription."""
    model: str = "gpt-4o-mini-transcribe"
    filename: str = "recording.wav"
    enhance_prompt: bool = False
    enhancer_model: str = "gpt-4o-mini"
    enhancer_max_tokens: int = Field(default=1024, gt=0)
    enhancer_temperature: float = Field(default=0.3, ge=0.0, le=2.0)


class SpeechConfig(BaseModel):
    """Configuration for the transcribe-and-speak reply path."""
    auto_reply: bool = False
    chat_model: str = "gpt-4o-mini"
    max_tokens: int = Field(default=1024, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    system_prompt: str = "You are a helpful voice assistant. Answer in one or two short spoken sentences."
    delay_after_completion: float = Field(default=0.1, ge=0.0)


class SessionConfig(BaseModel):
    """Configuration for session timing and audio behaviour."""
    cancel_grace_period: float = Field(default=2.0, gt=0)
    approval_timeout: float = Field(default=30.0, gt=0)
    connect_timeout: float = Field(default=15.0, gt=0)
    send_timeout: float = Field(default=5.0, gt=0)
    mute_during_tool_execution: bool = True


class ExternalTaskConfig(BaseModel):
    """Configuration for the external coding-agent executor."""
    command_path: str = "claude"
    working_directory: Optional[str] = None
    timeout_seconds: int = Field(default=600, gt=0)
    allowed_tools: List[str] = Field(default_factory=list)
    extra_args: List[str] = Field(default_factory=list)


class ToolsConfig(BaseModel):
    """Configuration for the built-in local tools."""
    screenshot_enabled: bool = True
    screenshot_approval: ApprovalPolicy = Field(default_factory=ApprovalPolicy.never)
    external_task_enabled: bool = True
    external_task_approval: ApprovalPolicy = Field(default_factory=ApprovalPolicy.never)
    external_task: ExternalTaskConfig = Field(default_factory=ExternalTaskConfig)


class CodeWhisperConfig(BaseModel):
    """Main CodeWhisper configuration."""
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    mcp_servers: List[MCPServerConfig] = Field(default_factory=list)

    # Global settings
    debug: bool = False
    config_file_path: Optional[str] = None

    def snapshot(self) -> "CodeWhisperConfig":
        """Detached copy handed to a session so later edits never reach it."""
        return self.model_copy(deep=True)


class ConfigurationManager:
    """Manages CodeWhisper configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.config: Optional[CodeWhisperConfig] = None

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        if "CODEWHISPER_CONFIG_PATH" in os.environ:
            return os.environ["CODEWHISPER_CONFIG_PATH"]

        candidates = [
            "~/.codewhisper/config.yaml",
            "./config/config.yaml",
            "./config.yaml"
        ]

        for candidate in candidates:
            path = Path(candidate).expanduser()
            if path.exists():
                return str(path)

        return "~/.codewhisper/config.yaml"

    def load_config(self, config_path: Optional[str] = None) -> CodeWhisperConfig:
        """Load and validate configuration from file."""
        if config_path:
            self.config_path = config_path

        config_file = Path(self.config_path).expanduser()

        if not config_file.exists():
            self._create_default_config(config_file)

        try:
            with open(config_file, 'r') as f:
                config_data = yaml.safe_load(f) or {}

            config_data = self._merge_environment_config(config_data)

            self.config = CodeWhisperConfig(**config_data)
            self.config.config_file_path = str(config_file)

            return self.config

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_file}: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error loading configuration: {e}")

    def write_default_config(self) -> Path:
        """Write the default configuration to config_path, replacing any existing file.

        Returns:
            The path written
        """
        config_file = Path(self.config_path).expanduser()
        self._create_default_config(config_file)
        return config_file

    def _create_default_config(self, config_file: Path) -> None:
        """Create a default configuration file."""
        config_file.parent.mkdir(parents=True, exist_ok=True)

        default_config = {
            "observability": {
                "enabled": False,
                "service_name": "codewhisper",
                "otlp_endpoint": os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
            },
            "logging": {
                "level": os.getenv("CODEWHISPER_LOG_LEVEL", "INFO"),
                "directory": "~/.codewhisper/logs"
            },
            "realtime": {
                "model": "gpt-realtime",
                "voice": "alloy",
                "turn_detection_eagerness": "medium"
            },
            "session": {
                "cancel_grace_period": 2.0,
                "approval_timeout": 30.0
            },
            "tools": {
                "screenshot_approval": "never",
                "external_task_approval": "never",
                "external_task": {
                    "command_path": "claude"
                }
            },
            "mcp_servers": []
        }

        with open(config_file, 'w') as f:
            yaml.dump(default_config, f, default_flow_style=False, indent=2)

    def _merge_environment_config(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration with environment variables."""
        env_mappings = {
            "CODEWHISPER_LOG_LEVEL": ["logging", "level"],
            "CODEWHISPER_DEBUG": ["debug"],
            "CODEWHISPER_REALTIME_MODEL": ["realtime", "model"],
            "CODEWHISPER_VOICE": ["realtime", "voice"],
            "OTEL_EXPORTER_OTLP_ENDPOINT": ["observability", "otlp_endpoint"]
        }

        for env_var, config_path in env_mappings.items():
            if env_var in os.environ:
                value = os.environ[env_var]

                if env_var == "CODEWHISPER_DEBUG":
                    value = value.lower() in ("true", "1", "yes")

                current = config_data
                for key in config_path[:-1]:
                    current = current.setdefault(key, {})
                current[config_path[-1]] = value

        return config_data

    def get_config(self) -> CodeWhisperConfig:
        """Get the loaded configuration."""
        if self.config is None:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self.config

    def validate_config(self) -> List[str]:
        """Validate the current configuration and return any warnings."""
        warnings = []
        config = self.get_config()

        if not os.environ.get("OPENAI_API_KEY"):
            warnings.append("OPENAI_API_KEY is not set; backend connections will fail")

        if config.debug and config.observability.environment == "production":
            warnings.append("Debug mode enabled in production environment")

        seen_labels = set()
        for server in config.mcp_servers:
            if server.label in seen_labels:
                warnings.append(f"Duplicate MCP server label will be ignored: {server.label}")
            seen_labels.add(server.label)

            if server.server_url.startswith("http://") and server.authorization:
                warnings.append(f"MCP server {server.label} sends its authorization over plain http")

        if config.session.approval_timeout < 5:
            warnings.append("Approval timeout under 5 seconds leaves little time to answer a prompt")

        return warnings

    def reload_config(self) -> CodeWhisperConfig:
        """Reload configuration from file."""
        return self.load_config()


def get_api_key() -> str:
    """Read the backend API key from the environment."""
    api_key = os.environ.get("OPENAI_API_KEY", "").strip()
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY environment variable is not set")
    return api_key


# Global configuration manager instance
_config_manager: Optional[ConfigurationManager] = None


def initialize_config(config_path: Optional[str] = None) -> ConfigurationManager:
    """Initialize global configuration manager."""
    global _config_manager
    _config_manager = ConfigurationManager(config_path)
    _config_manager.load_config()
    return _config_manager


def get_config_manager() -> ConfigurationManager:
    """Get the global configuration manager instance."""
    if _config_manager is None:
        raise ConfigurationError("Configuration not initialized. Call initialize_config() first.")
    return _config_manager


def get_config() -> CodeWhisperConfig:
    """Get the global configuration."""
    return get_config_manager().get_config()
