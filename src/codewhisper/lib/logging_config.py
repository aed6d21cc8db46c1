"""
Structured logging configuration with audit trail support for CodeWhisper.

Provides JSON-formatted logging with OpenTelemetry correlation and an
audit log of session lifecycle, approval decisions and tool calls.
"""

import json
import logging
import logging.config
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

from opentelemetry import trace


_RESERVED_RECORD_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter with OpenTelemetry trace correlation."""

    def __init__(self, include_trace: bool = True, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_trace = include_trace
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if self.include_trace:
            current_span = trace.get_current_span()
            if current_span and current_span.is_recording():
                span_context = current_span.get_span_context()
                log_entry.update({
                    "trace_id": format(span_context.trace_id, "032x"),
                    "span_id": format(span_context.span_id, "016x")
                })

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_entry[key] = value

        log_entry.update(self.extra_fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class AuditLogger:
    """Audit trail for sessions, approvals and tool calls."""

    def __init__(self, logger_name: str = "codewhisper.audit"):
        self.logger = logging.getLogger(logger_name)

    def log_session_event(
        self,
        event_type: str,
        session_id: str,
        mode: Optional[str] = None,
        state: Optional[str] = None,
        result: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a session lifecycle event."""
        self.logger.info(
            f"Session event: {event_type}",
            extra={
                "audit_type": "session",
                "event_type": event_type,
                "session_id": session_id,
                "mode": mode,
                "state": state,
                "result": result,
                "metadata": metadata or {}
            }
        )

    def log_approval_event(
        self,
        tool_name: str,
        call_id: str,
        policy: str,
        decision: str,
        session_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> None:
        """Log an approval gate decision for a tool call."""
        log = self.logger.warning if decision == "denied" else self.logger.info
        log(
            f"Approval event: {tool_name} - {decision}",
            extra={
                "audit_type": "approval",
                "tool_name": tool_name,
                "call_id": call_id,
                "policy": policy,
                "decision": decision,
                "reason": reason,
                "session_id": session_id
            }
        )

    def log_tool_event(
        self,
        event_type: str,
        tool_name: str,
        call_id: str,
        status: str,
        session_id: Optional[str] = None,
        execution_time_ms: Optional[int] = None,
        error: Optional[str] = None
    ) -> None:
        """Log a tool call lifecycle event."""
        self.logger.info(
            f"Tool event: {event_type} - {tool_name}",
            extra={
                "audit_type": "tool",
                "event_type": event_type,
                "tool_name": tool_name,
                "call_id": call_id,
                "status": status,
                "session_id": session_id,
                "execution_time_ms": execution_time_ms,
                "error": error
            }
        )


def setup_logging(config: Dict[str, Any]) -> None:
    """Setup structured logging configuration."""
    log_level = config.get("level", "INFO").upper()
    log_format = config.get("format", "structured")

    log_dir = Path(config.get("directory", "~/.codewhisper/logs")).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
                "include_trace": config.get("include_trace", True),
                "extra_fields": {
                    "service": "codewhisper",
                    "environment": config.get("environment", "development")
                }
            },
            "simple": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "structured" if log_format == "structured" else "simple",
                "stream": sys.stderr
            },
            "application_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": log_level,
                "formatter": "structured",
                "filename": str(log_dir / "codewhisper.log"),
                "maxBytes": config.get("max_file_size", 10 * 1024 * 1024),  # 10MB
                "backupCount": config.get("backup_count", 5)
            },
            "audit_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "INFO",
                "formatter": "structured",
                "filename": str(log_dir / "audit.jsonl"),
                "maxBytes": config.get("max_file_size", 10 * 1024 * 1024),  # 10MB
                "backupCount": config.get("backup_count", 10)
            }
        },
        "loggers": {
            "codewhisper": {
                "level": log_level,
                "handlers": ["console", "application_file"],
                "propagate": False
            },
            "codewhisper.audit": {
                "level": "INFO",
                "handlers": ["audit_file"],
                "propagate": False
            },
            "opentelemetry": {
                "level": "WARNING",
                "handlers": ["console", "application_file"],
                "propagate": False
            }
        },
        "root": {
            "level": log_level,
            "handlers": ["console"]
        }
    }

    logging.config.dictConfig(logging_config)

    logger = logging.getLogger("codewhisper.logging")
    logger.info("Structured logging initialized", extra={
        "config": {
            "level": log_level,
            "format": log_format,
            "directory": str(log_dir)
        }
    })


def get_audit_logger() -> AuditLogger:
    """Get the configured audit logger instance."""
    return AuditLogger()
