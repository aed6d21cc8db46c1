"""
CodeWhisper - voice session orchestration for an AI coding assistant.

This package drives spoken conversations with a streaming AI backend in
three modes (transcription only, transcription with spoken replies, and
full-duplex realtime), mediating the tool calls the backend makes along
the way: screenshots, external coding tasks and remote MCP servers.
"""

__version__ = "1.0.0"
__author__ = "CodeWhisper Development Team"

__all__ = [
    "models",
    "services",
    "lib",
    "cli"
]
