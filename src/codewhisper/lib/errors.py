"""
Error taxonomy for CodeWhisper voice sessions.

Every error raised across the orchestrator boundary derives from
VoiceSessionError so callers can tell session failures apart from
programming errors. Fatal errors move the orchestrator to the Error
state; transient ones are reported as transcript warnings.
"""

from typing import Optional


class VoiceSessionError(Exception):
    """Base class for voice session errors."""

    fatal: bool = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> dict:
        """Serialize the error for logs and status output."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "fatal": self.fatal,
        }


class ConfigurationError(VoiceSessionError):
    """Invalid or duplicate tool/server configuration, rejected before a session starts."""
    pass


class BackendConnectionError(VoiceSessionError):
    """Transient failure talking to the streaming backend.

    Retryable by issuing a new start; nothing retries automatically.
    """
    pass


class ConnectionLostError(BackendConnectionError):
    """The backend connection dropped mid-session and cannot be resumed."""

    fatal = True


class AuthError(VoiceSessionError):
    """Credentials were rejected by the backend."""

    fatal = True


class ToolExecutionError(VoiceSessionError):
    """A single tool call failed. Scoped to that call, never ends the session."""

    def __init__(self, message: str, tool_name: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.tool_name = tool_name


class CancellationError(VoiceSessionError):
    """An operation was cancelled by the user. A normal terminal outcome, not a failure."""
    pass


class SessionStateError(VoiceSessionError):
    """A command cannot be honoured in the orchestrator's current state."""
    pass


class AlreadyActiveError(SessionStateError):
    """start was requested while another session holds the connection and audio device."""
    pass
