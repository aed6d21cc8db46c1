"""Unit tests for configuration loading and validation.

Covers YAML loading, environment overrides, default file creation,
snapshots and the warnings reported by validate_config.
"""

import pytest
import yaml

from codewhisper.lib.config import (
    CodeWhisperConfig,
    ConfigurationManager,
    SessionConfig,
    get_api_key,
)
from codewhisper.lib.errors import ConfigurationError
from codewhisper.models.tool_spec import ApprovalMode, MCPServerConfig


@pytest.fixture
def config_file(tmp_path):
    """Configuration file with one MCP server and filtered approval."""
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        "realtime": {"voice": "verse", "turn_detection_eagerness": "high"},
        "session": {"cancel_grace_period": 1.5},
        "tools": {
            "screenshot_approval": "always",
            "external_task_approval": {"mode": "filtered_by_name", "patterns": ["execute_*"]},
        },
        "mcp_servers": [
            {"label": "stripe", "server_url": "https://mcp.stripe.com", "authorization": "sk_test"},
        ],
    }))
    return path


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ("CODEWHISPER_LOG_LEVEL", "CODEWHISPER_DEBUG", "CODEWHISPER_REALTIME_MODEL",
                 "CODEWHISPER_VOICE", "CODEWHISPER_CONFIG_PATH", "OTEL_EXPORTER_OTLP_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")


class TestConfigurationDefaults:
    """Test default configuration values."""

    def test_defaults(self):
        config = CodeWhisperConfig()

        assert config.realtime.assistant_speaks_first is True
        assert config.session.cancel_grace_period == 2.0
        assert config.session.mute_during_tool_execution is True
        assert config.speech.delay_after_completion == 0.1
        assert config.tools.screenshot_approval.mode == ApprovalMode.NEVER
        assert config.mcp_servers == []

    def test_grace_period_must_be_positive(self):
        with pytest.raises(ValueError):
            SessionConfig(cancel_grace_period=0)

    def test_snapshot_is_detached(self):
        config = CodeWhisperConfig()
        snapshot = config.snapshot()

        config.realtime.voice = "shimmer"
        config.mcp_servers.append(MCPServerConfig(label="late", server_url="https://late.example.com"))

        assert snapshot.realtime.voice == "alloy"
        assert snapshot.mcp_servers == []


class TestConfigurationManager:
    """Test loading configuration files."""

    def test_load_from_file(self, config_file):
        config = ConfigurationManager(str(config_file)).load_config()

        assert config.realtime.voice == "verse"
        assert config.realtime.turn_detection_eagerness.value == "high"
        assert config.session.cancel_grace_period == 1.5
        assert config.tools.screenshot_approval.mode == ApprovalMode.ALWAYS
        assert config.tools.external_task_approval.patterns == ["execute_*"]
        assert config.mcp_servers[0].label == "stripe"
        assert config.config_file_path == str(config_file)

    def test_missing_file_created_with_defaults(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"

        config = ConfigurationManager(str(path)).load_config()

        assert path.exists()
        assert config.realtime.model == "gpt-realtime"
        assert config.tools.external_task.command_path == "claude"

    def test_environment_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv("CODEWHISPER_VOICE", "echo")
        monkeypatch.setenv("CODEWHISPER_DEBUG", "yes")
        monkeypatch.setenv("CODEWHISPER_LOG_LEVEL", "DEBUG")

        config = ConfigurationManager(str(config_file)).load_config()

        assert config.realtime.voice == "echo"
        assert config.debug is True
        assert config.logging.level == "DEBUG"

    def test_config_path_from_environment(self, config_file, monkeypatch):
        monkeypatch.setenv("CODEWHISPER_CONFIG_PATH", str(config_file))
        assert ConfigurationManager().config_path == str(config_file)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("realtime: [unclosed")

        with pytest.raises(ConfigurationError) as exc_info:
            ConfigurationManager(str(path)).load_config()
        assert "Invalid YAML" in exc_info.value.message

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"mcp_servers": [{"label": "bad", "server_url": "ftp://bad"}]}))

        with pytest.raises(ConfigurationError) as exc_info:
            ConfigurationManager(str(path)).load_config()
        assert "validation failed" in exc_info.value.message

    def test_get_config_before_load(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(tmp_path / "config.yaml")).get_config()

    def test_reload_picks_up_edits(self, config_file):
        manager = ConfigurationManager(str(config_file))
        manager.load_config()

        config_file.write_text(yaml.dump({"realtime": {"voice": "shimmer"}}))
        config = manager.reload_config()

        assert config.realtime.voice == "shimmer"
        assert config.mcp_servers == []

    def test_write_default_config_replaces_file(self, config_file):
        manager = ConfigurationManager(str(config_file))

        written = manager.write_default_config()

        assert written == config_file
        assert yaml.safe_load(config_file.read_text())["realtime"]["voice"] == "alloy"
        assert manager.load_config().mcp_servers == []


class TestValidateConfig:
    """Test configuration warnings."""

    def test_clean_configuration_has_no_warnings(self, config_file):
        manager = ConfigurationManager(str(config_file))
        manager.load_config()

        assert manager.validate_config() == []

    def test_missing_api_key_warns(self, config_file, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY")
        manager = ConfigurationManager(str(config_file))
        manager.load_config()

        assert any("OPENAI_API_KEY" in warning for warning in manager.validate_config())

    def test_duplicate_labels_and_plain_http_warn(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            "session": {"approval_timeout": 2},
            "mcp_servers": [
                {"label": "files", "server_url": "http://localhost:8000", "authorization": "token"},
                {"label": "files", "server_url": "https://files.example.com"},
            ],
        }))
        manager = ConfigurationManager(str(path))
        manager.load_config()

        warnings = manager.validate_config()

        assert any("Duplicate MCP server label" in warning for warning in warnings)
        assert any("plain http" in warning for warning in warnings)
        assert any("Approval timeout" in warning for warning in warnings)


class TestApiKey:

    def test_get_api_key(self):
        assert get_api_key() == "sk-test"

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "  ")
        with pytest.raises(ConfigurationError):
            get_api_key()
