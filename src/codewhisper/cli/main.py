"""
Main CLI application for CodeWhisper.

Provides commands for managing the configuration, inspecting the tool set
and session payload offered to the realtime backend, and running the
request/response transcription path on audio files.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import yaml

from codewhisper import __version__
from codewhisper.lib.config import CodeWhisperConfig, ConfigurationManager, initialize_config
from codewhisper.lib.errors import ConfigurationError, VoiceSessionError
from codewhisper.lib.logging_config import setup_logging, get_audit_logger
from codewhisper.lib.metrics import MetricsCollector, initialize_metrics
from codewhisper.lib.observability import initialize_telemetry, shutdown_telemetry
from codewhisper.models.tool_spec import ToolSpec
from codewhisper.services.adapters.claude_code_executor import ClaudeCodeTaskExecutor
from codewhisper.services.adapters.openai_realtime import OpenAIRealtimeBackend
from codewhisper.services.adapters.openai_transcription import OpenAIChatService, OpenAITranscriptionService
from codewhisper.services.interfaces import (
    ApprovalPrompter,
    AudioPipeline,
    LocalToolHandler,
    ScreenshotCapture,
    TaskExecutor,
)
from codewhisper.services.local_tools import ExternalTaskToolHandler, ScreenshotToolHandler
from codewhisper.services.prompt_enhancer import PromptEnhancer
from codewhisper.services.session_configurator import build_session_configuration
from codewhisper.services.session_orchestrator import SessionOrchestrator
from codewhisper.services.tool_dispatcher import ToolDispatcher
from codewhisper.services.tool_registry import RegistryBuild, ToolRegistry, external_task_tool_spec, screenshot_tool_spec


logger = logging.getLogger("codewhisper.cli")


class CodeWhisperApplication:
    """Wires configuration, logging, telemetry and services together."""

    def __init__(self, config_path: Optional[str] = None, debug: bool = False):
        self.config_path = config_path
        self.debug = debug
        self.config_manager: Optional[ConfigurationManager] = None
        self.config: Optional[CodeWhisperConfig] = None
        self.metrics_collector: Optional[MetricsCollector] = None

    def initialize(self, with_logging: bool = True) -> CodeWhisperConfig:
        """Load configuration and set up logging and observability."""
        self.config_manager = initialize_config(self.config_path)
        self.config = self.config_manager.get_config()
        if self.debug:
            self.config.debug = True
            self.config.logging.level = "DEBUG"

        if with_logging:
            setup_logging(self.config.logging.model_dump())
            logger.debug("Logging configured")

        if self.config.observability.enabled:
            telemetry_manager = initialize_telemetry(self.config.observability.model_dump())
            self.metrics_collector = initialize_metrics(telemetry_manager.get_meter())
            logger.info("Observability initialized")

        return self.config

    def shutdown(self) -> None:
        if self.config is not None and self.config.observability.enabled:
            shutdown_telemetry()

    def local_tool_specs(self) -> List[ToolSpec]:
        """Specs of the enabled built-in tools, in registration order."""
        tools_config = self.config.tools
        specs = []
        if tools_config.screenshot_enabled:
            specs.append(screenshot_tool_spec(tools_config.screenshot_approval))
        if tools_config.external_task_enabled:
            specs.append(external_task_tool_spec(tools_config.external_task_approval))
        return specs

    def build_tools(self) -> RegistryBuild:
        return ToolRegistry.build(self.local_tool_specs(), self.config.mcp_servers)

    def build_tool_handlers(
        self,
        screenshot_capture: Optional[ScreenshotCapture] = None,
        task_executor: Optional[TaskExecutor] = None
    ) -> List[LocalToolHandler]:
        tools_config = self.config.tools
        handlers: List[LocalToolHandler] = []
        if screenshot_capture is not None:
            handlers.append(ScreenshotToolHandler(screenshot_capture))
        if tools_config.external_task_enabled:
            executor = task_executor or ClaudeCodeTaskExecutor.from_config(tools_config.external_task)
            handlers.append(ExternalTaskToolHandler(executor))
        return handlers

    def create_orchestrator(
        self,
        audio: AudioPipeline,
        screenshot_capture: Optional[ScreenshotCapture] = None,
        approval_prompter: Optional[ApprovalPrompter] = None,
        task_executor: Optional[TaskExecutor] = None
    ) -> SessionOrchestrator:
        """Build an orchestrator backed by the OpenAI adapters.

        The audio pipeline and screenshot capture are platform specific and
        supplied by the embedding application.
        """
        config = self.config
        audit_logger = get_audit_logger()
        dispatcher = ToolDispatcher(
            handlers=self.build_tool_handlers(screenshot_capture, task_executor),
            approval_prompter=approval_prompter,
            approval_timeout=config.session.approval_timeout,
            audit_logger=audit_logger,
            metrics_collector=self.metrics_collector,
        )
        return SessionOrchestrator(
            config,
            audio,
            backend=OpenAIRealtimeBackend(url=config.realtime.url, model=config.realtime.model),
            transcription_service=OpenAITranscriptionService(),
            dispatcher=dispatcher,
            chat_service=OpenAIChatService(),
            audit_logger=audit_logger,
            metrics_collector=self.metrics_collector,
        )


def _masked_config(config: CodeWhisperConfig) -> Dict[str, Any]:
    data = config.model_dump(mode="json")
    for server in data.get("mcp_servers", []):
        if server.get("authorization"):
            server["authorization"] = "***"
    return data


def _load_app(ctx) -> CodeWhisperApplication:
    app = CodeWhisperApplication(config_path=ctx.obj.get('config_path'), debug=ctx.obj.get('debug', False))
    app.initialize(with_logging=ctx.obj.get('debug', False))
    return app


# CLI Commands

@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.version_option(__version__, prog_name="codewhisper")
@click.pass_context
def cli(ctx, config, debug):
    """CodeWhisper voice coding assistant CLI."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['debug'] = debug


@cli.group('config')
@click.pass_context
def config_group(ctx):
    """Manage the configuration file."""
    pass


@config_group.command('init')
@click.option('--force', is_flag=True, help='Overwrite an existing configuration file')
@click.pass_context
def config_init(ctx, force):
    """Write a default configuration file."""
    manager = ConfigurationManager(ctx.obj.get('config_path'))
    config_file = Path(manager.config_path).expanduser()

    if config_file.exists() and not force:
        click.echo(f"Configuration already exists: {config_file} (use --force to overwrite)", err=True)
        sys.exit(1)

    try:
        manager.write_default_config()
        manager.load_config()
    except (ConfigurationError, OSError) as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Configuration written to: {config_file}")


@config_group.command('show')
@click.option('--format', 'output_format', type=click.Choice(['yaml', 'json']), default='yaml', help='Output format')
@click.pass_context
def config_show(ctx, output_format):
    """Print the effective configuration with secrets masked."""
    try:
        app = _load_app(ctx)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    data = _masked_config(app.config)
    if output_format == 'json':
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.dump(data, default_flow_style=False, indent=2, sort_keys=False))


@config_group.command('validate')
@click.pass_context
def config_validate(ctx):
    """Validate the configuration and the tool set it declares."""
    try:
        app = _load_app(ctx)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    config = app.config
    warnings = app.config_manager.validate_config()
    build = app.build_tools()

    click.echo("Configuration validation completed successfully!")
    click.echo(f"Configuration file: {config.config_file_path}")
    click.echo(f"Realtime model: {config.realtime.model}")
    click.echo(f"Tools offered: {len(build.tools)}")
    click.echo(f"MCP servers configured: {len(config.mcp_servers)}")

    if build.errors:
        click.echo("\nErrors:")
        for error in build.errors:
            click.echo(f"  - {error.message}")

    if warnings:
        click.echo("\nWarnings:")
        for warning in warnings:
            click.echo(f"  - {warning}")
    elif not build.errors:
        click.echo("\nNo warnings found.")

    if build.errors:
        sys.exit(1)


@cli.command()
@click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text', help='Output format')
@click.pass_context
def tools(ctx, output_format):
    """List the tools offered to the realtime backend."""
    try:
        app = _load_app(ctx)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    build = app.build_tools()

    if output_format == 'json':
        click.echo(json.dumps({
            "tools": [
                {
                    "name": spec.name,
                    "kind": spec.kind.value,
                    "endpoint": spec.endpoint,
                    "approval": spec.approval_policy.mode.value,
                    "patterns": list(spec.approval_policy.patterns),
                }
                for spec in build.tools
            ],
            "errors": [error.to_dict() for error in build.errors],
        }, indent=2))
    else:
        click.echo(f"Tools ({len(build.tools)}):")
        for spec in build.tools:
            target = f" -> {spec.endpoint}" if spec.is_remote else ""
            click.echo(f"  - {spec.name} [{spec.kind.value}, approval: {spec.approval_policy.mode.value}]{target}")
        for error in build.errors:
            click.echo(f"Error: {error.message}", err=True)

    if build.errors:
        sys.exit(1)


@cli.command()
@click.pass_context
def payload(ctx):
    """Print the realtime session configuration with secrets masked."""
    try:
        app = _load_app(ctx)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    build = app.build_tools()
    for error in build.errors:
        click.echo(f"Warning: {error.message}", err=True)

    configuration = build_session_configuration(app.config, ToolDispatcher().descriptors(build.tools))
    click.echo(json.dumps(configuration.masked(), indent=2))


@cli.command()
@click.argument('audio_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--enhance/--no-enhance', default=None, help='Clean up the transcription with a chat model')
@click.option('--model', help='Transcription model (defaults to the configured one)')
@click.pass_context
def transcribe(ctx, audio_file, enhance, model):
    """Transcribe an audio file."""
    try:
        app = _load_app(ctx)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    try:
        text = asyncio.run(_transcribe_impl(app, Path(audio_file), enhance, model))
    except VoiceSessionError as e:
        click.echo(f"Transcription failed: {e.message}", err=True)
        sys.exit(1)
    finally:
        app.shutdown()

    click.echo(text)


async def _transcribe_impl(app: CodeWhisperApplication, audio_file: Path, enhance: Optional[bool], model: Optional[str]) -> str:
    """Implementation for transcribe command."""
    config = app.config.transcription
    service = OpenAITranscriptionService()
    result = await service.transcribe(audio_file.read_bytes(), filename=audio_file.name, model=model or config.model)

    if enhance is None:
        enhance = config.enhance_prompt
    if enhance:
        enhancer = PromptEnhancer(
            OpenAIChatService(),
            model=config.enhancer_model,
            max_tokens=config.enhancer_max_tokens,
            temperature=config.enhancer_temperature,
        )
        return await enhancer.enhance(result.text)

    return result.text


@cli.command()
@click.argument('text')
@click.pass_context
def enhance(ctx, text):
    """Clean up a piece of dictated text."""
    try:
        app = _load_app(ctx)
        config = app.config.transcription
        enhancer = PromptEnhancer(
            OpenAIChatService(),
            model=config.enhancer_model,
            max_tokens=config.enhancer_max_tokens,
            temperature=config.enhancer_temperature,
        )
        result = asyncio.run(enhancer.enhance(text))
    except VoiceSessionError as e:
        click.echo(f"Enhancement failed: {e.message}", err=True)
        sys.exit(1)

    click.echo(result)


if __name__ == '__main__':
    cli()
