"""
Periodic health checks for registered model types.

Runs health_check (and optionally repair_all) on an interval in a background
asyncio task. A failed run is logged and counted and the next interval runs
as normal; failures are never retried within a run.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..records.model_type import ModelType
from .engine import AuditEngine
from .repair import RepairEngine

logger = logging.getLogger(__name__)


class TaskStatus(Enum):
    """Status of the periodic health check."""
    STOPPED = "stopped"
    RUNNING = "running"
    ERROR = "error"


@dataclass
class SchedulerConfig:
    """Configuration for periodic health checks."""
    interval_seconds: float = 600.0
    initial_delay_seconds: float = 0.0
    max_execution_time_seconds: float = 300.0

    # Run repair_all when a check comes back unhealthy
    auto_repair: bool = False

    # Stop after this many consecutive failed runs (0 never stops)
    max_consecutive_failures: int = 0

    @classmethod
    def from_env(cls, prefix: str = "KVR_SCHEDULER_") -> 'SchedulerConfig':
        """Create config from environment variables."""
        return cls(
            interval_seconds=float(os.environ.get(f'{prefix}INTERVAL_SECONDS', '600')),
            initial_delay_seconds=float(os.environ.get(f'{prefix}INITIAL_DELAY_SECONDS', '0')),
            max_execution_time_seconds=float(os.environ.get(f'{prefix}MAX_EXECUTION_SECONDS', '300')),
            auto_repair=os.environ.get(f'{prefix}AUTO_REPAIR', 'false').lower() == 'true',
            max_consecutive_failures=int(os.environ.get(f'{prefix}MAX_CONSECUTIVE_FAILURES', '0'))
        )


@dataclass
class SchedulerMetrics:
    """Metrics for periodic health check execution."""
    total_runs: int = 0
    failed_runs: int = 0
    consecutive_failures: int = 0
    repairs: int = 0
    last_run_time: Optional[datetime] = None
    last_execution_duration_seconds: float = 0.0
    last_health: Dict[str, bool] = field(default_factory=dict)

    def update_success(self, execution_time: float, health: Dict[str, bool]) -> None:
        self.total_runs += 1
        self.consecutive_failures = 0
        self.last_run_time = datetime.now()
        self.last_execution_duration_seconds = execution_time
        self.last_health = dict(health)

    def update_failure(self, execution_time: float) -> None:
        self.total_runs += 1
        self.failed_runs += 1
        self.consecutive_failures += 1
        self.last_run_time = datetime.now()
        self.last_execution_duration_seconds = execution_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_runs": self.total_runs,
            "failed_runs": self.failed_runs,
            "consecutive_failures": self.consecutive_failures,
            "repairs": self.repairs,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_execution_duration_seconds": self.last_execution_duration_seconds,
            "last_health": dict(self.last_health)
        }


class PeriodicHealthCheck:
    """
    Asyncio-based scheduler for recurring audits.

    Each run audits every model type in turn and, with auto_repair, repairs
    the unhealthy ones using the report it just produced.
    """

    def __init__(
        self,
        model_types: Sequence[ModelType],
        audit_engine: Optional[AuditEngine] = None,
        repair_engine: Optional[RepairEngine] = None,
        config: Optional[SchedulerConfig] = None
    ):
        self.model_types: List[ModelType] = list(model_types)
        self.audit_engine = audit_engine or AuditEngine()
        self.repair_engine = repair_engine or RepairEngine(audit_engine=self.audit_engine)
        self.config = config or SchedulerConfig()

        self.status = TaskStatus.STOPPED
        self.metrics = SchedulerMetrics()
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._last_error: Optional[str] = None

        # Serializes start/stop
        self._lifecycle_lock = asyncio.Lock()

    async def start(self) -> bool:
        """
        Start the background loop.

        Returns:
            True if started, False if it was already running
        """
        async with self._lifecycle_lock:
            if self.status == TaskStatus.RUNNING:
                logger.warning("Periodic health check is already running")
                return False

            self._shutdown_event.clear()
            self._task = asyncio.create_task(self._run_periodic_task())
            self.status = TaskStatus.RUNNING
            logger.info(
                f"Started periodic health check for {[m.name for m in self.model_types]} "
                f"(interval: {self.config.interval_seconds}s)"
            )
            return True

    async def stop(self) -> None:
        """Stop the background loop and wait for it to finish."""
        async with self._lifecycle_lock:
            if self._task is None:
                self.status = TaskStatus.STOPPED
                return

            self._shutdown_event.set()
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("Periodic health check task cancelled")

            self._task = None
            self.status = TaskStatus.STOPPED
            logger.info("Periodic health check stopped")

    async def run_once(self) -> Dict[str, Any]:
        """
        Audit (and optionally repair) every model type now.

        Returns:
            Per-model report dicts, plus repair summaries when repairs ran
        """
        start_time = time.perf_counter()
        try:
            results = await asyncio.wait_for(
                self._check_all(),
                timeout=self.config.max_execution_time_seconds
            )
        except Exception as e:
            execution_time = time.perf_counter() - start_time
            self.metrics.update_failure(execution_time)
            self._last_error = f"Health check failed: {e!r}"
            logger.error(self._last_error)
            raise

        execution_time = time.perf_counter() - start_time
        self.metrics.update_success(
            execution_time,
            {name: result["report"]["healthy"] for name, result in results.items()}
        )
        return results

    async def _check_all(self) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        for model_type in self.model_types:
            report = await self.audit_engine.health_check(model_type)
            entry: Dict[str, Any] = {"report": report.to_dict()}

            if self.config.auto_repair and not report.healthy:
                summary = await self.repair_engine.repair_all(model_type, audit_result=report)
                self.metrics.repairs += 1
                entry["repair"] = summary.to_dict()
                entry["report"] = summary.report.to_dict()

            results[model_type.name] = entry
        return results

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "models": [m.name for m in self.model_types],
            "last_error": self._last_error,
            "config": {
                "interval_seconds": self.config.interval_seconds,
                "initial_delay_seconds": self.config.initial_delay_seconds,
                "auto_repair": self.config.auto_repair,
                "max_consecutive_failures": self.config.max_consecutive_failures
            },
            "metrics": self.metrics.to_dict()
        }

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to seconds; True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_periodic_task(self) -> None:
        if self.config.initial_delay_seconds > 0 and await self._wait(self.config.initial_delay_seconds):
            return

        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                limit = self.config.max_consecutive_failures
                if limit and self.metrics.consecutive_failures >= limit:
                    logger.error(f"Stopping after {self.metrics.consecutive_failures} consecutive failures")
                    self.status = TaskStatus.ERROR
                    return

            if await self._wait(self.config.interval_seconds):
                return
