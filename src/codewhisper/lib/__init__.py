"""Shared infrastructure: configuration, errors, logging, telemetry and metrics."""
