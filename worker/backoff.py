"""
Backoff Policy — how long the loop sleeps after a cycle.

  BOTH_DISABLED, IDLE → idle_sleep_ms
  PRODUCTIVE          → 0 (go again immediately, there may be more)
  ERROR               → error_sleep_ms
"""
from __future__ import annotations

from typing import Iterable, Optional

from config.settings import WorkerConfig
from models.schemas import BatchResult, CycleOutcome


def classify_cycle(results: Iterable[BatchResult], error: Optional[BaseException] = None) -> CycleOutcome:
    """Derive a cycle's outcome from its batch results and any runner error."""
    if error is not None:
        return CycleOutcome.ERROR
    results = list(results)
    if results and all(r.disabled for r in results):
        return CycleOutcome.BOTH_DISABLED
    if any(r.processed > 0 for r in results):
        return CycleOutcome.PRODUCTIVE
    return CycleOutcome.IDLE


def sleep_duration_ms(outcome: CycleOutcome, config: WorkerConfig) -> int:
    if outcome == CycleOutcome.PRODUCTIVE:
        return 0
    if outcome == CycleOutcome.ERROR:
        return config.error_sleep_ms
    return config.idle_sleep_ms
