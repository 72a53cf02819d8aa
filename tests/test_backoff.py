"""Tests for cycle classification and sleep durations."""
import pytest

from config.settings import WorkerConfig
from models.schemas import BatchResult, CycleOutcome
from worker.backoff import classify_cycle, sleep_duration_ms


class TestClassifyCycle:

    def test_both_disabled(self):
        results = [BatchResult.disabled_result(), BatchResult.disabled_result()]
        assert classify_cycle(results) == CycleOutcome.BOTH_DISABLED

    def test_empty_enabled_queues_are_idle(self):
        assert classify_cycle([BatchResult(), BatchResult()]) == CycleOutcome.IDLE

    def test_one_disabled_one_empty_is_idle(self):
        assert classify_cycle([BatchResult.disabled_result(), BatchResult()]) == CycleOutcome.IDLE

    def test_any_processed_is_productive(self):
        assert classify_cycle([BatchResult(), BatchResult(processed=3)]) == CycleOutcome.PRODUCTIVE

    def test_only_failed_is_idle(self):
        assert classify_cycle([BatchResult(failed=4), BatchResult()]) == CycleOutcome.IDLE

    def test_error_wins(self):
        outcome = classify_cycle([BatchResult(processed=10)], RuntimeError("broker down"))
        assert outcome == CycleOutcome.ERROR

    def test_no_results_is_idle(self):
        assert classify_cycle([]) == CycleOutcome.IDLE


class TestSleepDuration:

    @pytest.fixture
    def config(self):
        return WorkerConfig(idle_sleep_ms=2000, error_sleep_ms=10000)

    @pytest.mark.parametrize("outcome,expected", [
        (CycleOutcome.BOTH_DISABLED, 2000),
        (CycleOutcome.IDLE, 2000),
        (CycleOutcome.PRODUCTIVE, 0),
        (CycleOutcome.ERROR, 10000),
    ])
    def test_policy(self, config, outcome, expected):
        assert sleep_duration_ms(outcome, config) == expected

    def test_zero_sleeps_allowed(self):
        config = WorkerConfig(idle_sleep_ms=0, error_sleep_ms=0)
        assert sleep_duration_ms(CycleOutcome.ERROR, config) == 0
