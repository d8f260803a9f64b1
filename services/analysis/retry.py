"""
Job state machine.

    queued -> in_progress -> finished
                          -> queued      (failed, retries left; delayed by backoff)
                          -> failed      (retries exhausted, or no allowed model)

The transition out of in_progress is decided here as a pure function so each
edge can be tested without a database or a provider.
"""

from dataclasses import dataclass

from services.database import PhotoState, RunType


@dataclass(frozen=True)
class FailureDecision:
    next_state: PhotoState  # QUEUED or FAILED
    retry_count: int
    delay_seconds: float = 0.0
    run_type: RunType = RunType.RETRY

    @property
    def terminal(self) -> bool:
        return self.next_state is PhotoState.FAILED


def backoff_delay(retry_count: int, base: float, cap: float) -> float:
    """Exponential backoff: base * 2^retry_count, capped.

    retry_count is the counter as it stood when the failed run started, so the
    first retry waits `base`.
    """
    if retry_count < 0:
        raise ValueError("retry_count must be non-negative")
    return min(cap, base * (2**retry_count))


def decide_after_failure(
    retry_count: int,
    max_retries: int,
    backoff_base: float,
    backoff_cap: float,
    retryable: bool = True,
) -> FailureDecision:
    """Decide where a failed run goes.

    The counter is always incremented. The job is re-queued while the new
    count is within max_retries, so a job that keeps failing runs exactly
    max_retries + 1 times. Non-retryable failures (configuration errors) go
    straight to FAILED.
    """
    new_count = retry_count + 1
    if not retryable or new_count > max_retries:
        return FailureDecision(next_state=PhotoState.FAILED, retry_count=new_count)
    return FailureDecision(
        next_state=PhotoState.QUEUED,
        retry_count=new_count,
        delay_seconds=backoff_delay(retry_count, backoff_base, backoff_cap),
    )
