"""Unit tests for retry scheduling and the lifecycle state machine."""

import pytest

from lakehouse_cdc.common.config import RetryConfig
from lakehouse_cdc.pipeline.retry import RetryPolicy, RetryState
from lakehouse_cdc.pipeline.state import PipelineState, PipelineStatus, can_transition


@pytest.mark.unit
class TestRetryPolicy:
    """Test backoff delays."""

    def test_exponential_delays_capped(self):
        """Test delays double up to the maximum."""
        policy = RetryPolicy(initial_interval=1.0, max_interval=5.0, multiplier=2.0, jitter=False)

        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_bounds(self):
        """Test jitter stays within +/-25%."""
        policy = RetryPolicy(initial_interval=4.0, jitter=True)

        assert policy.delay(1, rng=lambda: 0.0) == 3.0
        assert policy.delay(1, rng=lambda: 0.5) == 4.0
        assert policy.delay(1, rng=lambda: 1.0) == 5.0

    def test_from_config(self):
        """Test policies are built from retry settings."""
        policy = RetryPolicy.from_config(RetryConfig(max_attempts=7, jitter=False))

        assert policy.max_attempts == 7
        assert not policy.jitter


@pytest.mark.unit
class TestRetryState:
    """Test retry bookkeeping."""

    def _state(self):
        return RetryState(RetryPolicy(max_attempts=3, initial_interval=1.0, jitter=False), stage="writer")

    def test_failures_schedule_retries(self):
        """Test each failure pushes the next attempt out."""
        state = self._state()

        assert state.record_failure("boom", now=100.0)
        assert state.next_attempt_at == 101.0
        assert not state.ready(100.5)
        assert state.ready(101.0)

        assert state.record_failure("boom", now=101.0)
        assert state.next_attempt_at == 103.0

    def test_exhausted_on_last_attempt(self):
        """Test the failure that uses up the attempts schedules nothing."""
        state = self._state()
        state.record_failure("a", now=0.0)
        state.record_failure("b", now=1.0)

        assert not state.record_failure("c", now=3.0)
        assert state.exhausted
        assert state.next_attempt_at is None
        assert state.last_error == "c"

    @pytest.mark.parametrize("max_attempts,retries", [(1, 0), (2, 1), (3, 2)])
    def test_max_attempts_includes_first_try(self, max_attempts, retries):
        """Test a stage is tried max_attempts times in total."""
        state = RetryState(RetryPolicy(max_attempts=max_attempts, jitter=False), stage="reader")

        scheduled = 0
        while state.record_failure("refused", now=0.0):
            scheduled += 1

        assert scheduled == retries
        assert state.attempts == max_attempts

    def test_success_resets(self):
        """Test success clears the failure count."""
        state = self._state()
        state.record_failure("a", now=0.0)

        state.record_success()

        assert state.attempts == 0
        assert state.ready(0.0)
        assert state.last_error is None


@pytest.mark.unit
class TestPipelineState:
    """Test lifecycle transitions."""

    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            (PipelineStatus.IDLE, PipelineStatus.RUNNING, True),
            (PipelineStatus.IDLE, PipelineStatus.PAUSED, False),
            (PipelineStatus.RUNNING, PipelineStatus.PAUSED, True),
            (PipelineStatus.RUNNING, PipelineStatus.FAILED, True),
            (PipelineStatus.PAUSED, PipelineStatus.RUNNING, True),
            (PipelineStatus.FAILED, PipelineStatus.RUNNING, False),
            (PipelineStatus.FAILED, PipelineStatus.IDLE, True),
        ],
    )
    def test_transitions(self, current, target, allowed):
        """Test the allowed transition table."""
        assert can_transition(current, target) is allowed

    def test_to_dict(self):
        """Test the state renders for status reports."""
        state = PipelineState().evolve(status=PipelineStatus.FAILED, last_error="SchemaError: narrowing")

        report = state.to_dict()

        assert report["status"] == "failed"
        assert report["last_error"] == "SchemaError: narrowing"
        assert report["last_commit_at"] is None
