"""Minimal observability for the dunning worker.

Provides JSON logging with PII redaction and cycle/tenant context.
"""
import uuid

from .logging import init_logging, set_cycle_id, set_tenant


def generate_cycle_id() -> str:
    """Generate a new ID for one dunning cycle."""
    return str(uuid.uuid4())


__all__ = [
    "generate_cycle_id",
    "init_logging",
    "set_cycle_id",
    "set_tenant",
]
