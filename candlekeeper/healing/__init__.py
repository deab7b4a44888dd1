"""Healing module: backfill queue, circuit breaker, scheduler and orchestrator."""

from .backfill_queue import BackfillQueue
from .circuit_breaker import CircuitBreaker
from .orchestrator import HealingOrchestrator, HealResult
from .scheduler import ScheduledTask, Scheduler

__all__ = [
    "BackfillQueue",
    "CircuitBreaker",
    "HealingOrchestrator",
    "HealResult",
    "ScheduledTask",
    "Scheduler",
]
