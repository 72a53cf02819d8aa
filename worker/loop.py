"""
Worker Loop — the long-running scheduler.

Each cycle runs every Batch Runner once, in order (notification jobs before
completed emails), classifies the cycle and sleeps per the backoff policy.

  ┌────────────┐   ┌────────────┐   ┌──────────┐   ┌─────────┐
  │ runner A   │──▶│ runner B   │──▶│ classify │──▶│  sleep  │──┐
  └────────────┘   └────────────┘   └──────────┘   └─────────┘  │
        ▲                                                       │
        └───────────────────────────────────────────────────────┘

A runner raising is logged and turns the cycle into ERROR; the other runner
still runs and the loop carries on. Only the stop event ends the loop. It is
checked before each cycle, between runners and while sleeping.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, field
from typing import Optional

from config.settings import WorkerConfig
from models.schemas import BatchResult, CycleOutcome, QueueKind
from worker.backoff import classify_cycle, sleep_duration_ms
from worker.batch import BatchRunner

logger = structlog.get_logger()


@dataclass
class CycleReport:
    outcome: CycleOutcome
    results: dict[QueueKind, BatchResult] = field(default_factory=dict)
    errors: dict[QueueKind, str] = field(default_factory=dict)
    sleep_ms: int = 0


class NotificationWorker:
    """
    Drives the batch runners until stopped.

    Usage:
        worker = NotificationWorker(runners, config)
        task = worker.start_background()
        ...
        worker.stop()
        await task
    """

    def __init__(
        self,
        runners: list[BatchRunner],
        config: WorkerConfig,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.runners = runners
        self.config = config
        self._stop = stop_event or asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0
        self.consecutive_errors = 0
        self.last_report: Optional[CycleReport] = None

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Request a graceful stop. The current message is allowed to finish."""
        if not self._stop.is_set():
            logger.info("notification_worker_stopping", cycles=self.cycles)
        self._stop.set()

    async def wait_stop_requested(self) -> None:
        await self._stop.wait()

    def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name="notification-worker")
        return self._task

    async def run(self, max_cycles: Optional[int] = None) -> None:
        """Run cycles until stopped (or `max_cycles` have run)."""
        while not self._stop.is_set():
            try:
                report = await self.run_cycle()
            except Exception as e:
                logger.error("worker_cycle_error", error=str(e), exc_info=True)
                report = CycleReport(CycleOutcome.ERROR, errors={}, sleep_ms=self.config.error_sleep_ms)

            self.cycles += 1
            self.last_report = report
            if report.outcome == CycleOutcome.ERROR:
                self.consecutive_errors += 1
                if report.errors:
                    logger.warning("worker_cycle_error",
                                   errors={k.value: v for k, v in report.errors.items()},
                                   consecutive_errors=self.consecutive_errors,
                                   sleep_ms=report.sleep_ms)
            else:
                self.consecutive_errors = 0

            if max_cycles is not None and self.cycles >= max_cycles:
                break
            await self._sleep(report.sleep_ms)

        logger.info("notification_worker_stopped", cycles=self.cycles)

    async def run_cycle(self) -> CycleReport:
        """Run each runner once and classify the result. Never raises for runner errors."""
        results: dict[QueueKind, BatchResult] = {}
        errors: dict[QueueKind, str] = {}
        first_error: Optional[BaseException] = None

        for runner in self.runners:
            if self._stop.is_set():
                break
            try:
                results[runner.kind] = await runner.run_batch()
            except Exception as e:
                errors[runner.kind] = str(e)
                first_error = first_error or e
                logger.error("batch_runner_error",
                             queue=runner.kind.value,
                             error=str(e),
                             error_type=type(e).__name__)

        outcome = classify_cycle(results.values(), first_error)
        return CycleReport(
            outcome=outcome,
            results=results,
            errors=errors,
            sleep_ms=sleep_duration_ms(outcome, self.config),
        )

    async def _sleep(self, sleep_ms: int) -> None:
        if sleep_ms <= 0:
            # Still yield so signal handlers and other tasks get to run
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=sleep_ms / 1000)
        except asyncio.TimeoutError:
            pass
