"""Shared infrastructure: structured logging."""

from rma_workflow.shared.infrastructure.logging import (
    setup_logging,
    get_logger,
    log_latency,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "log_latency",
]
