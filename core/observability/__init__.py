"""
Observability for the ERP sync core

Provides:
- Structured logging with correlation IDs
- In-memory metrics (job outcomes, remote call latency, queue depth)
"""

from core.observability.metrics import SyncMetrics

from core.observability.logging import (
    configure_logging,
    get_logger,
    CorrelationContext,
    get_correlation_context,
    with_correlation,
)

__all__ = [
    # Metrics
    "SyncMetrics",
    # Logging
    "configure_logging",
    "get_logger",
    "CorrelationContext",
    "get_correlation_context",
    "with_correlation",
]
