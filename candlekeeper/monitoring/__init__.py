"""Monitoring module for logging, metrics and health checks."""

from .logger import get_logger, setup_logger, EngineLogger
from .metrics_tracker import MetricsTracker
from .health_monitor import HealthMonitor

__all__ = [
    "get_logger",
    "setup_logger",
    "EngineLogger",
    "MetricsTracker",
    "HealthMonitor",
]
