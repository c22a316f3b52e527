"""
Observability Module for the Inventory Sync Engine

Provides:
- Structured logging with correlation IDs (tenant, store, movement, sync run)
- Metrics collection (movement queue, pull runs, connector calls, timings)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
    record_processing_time,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
    log_sync_event,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "record_processing_time",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
    "log_sync_event",
]
