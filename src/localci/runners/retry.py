# retry.py
"""
Per-step retry handling.

A step moves through a small state machine:

    NOT_STARTED -> ATTEMPTING -> SUCCEEDED
                             +-> FAILED    -> ATTEMPTING (next attempt)
                             +-> TIMED_OUT -> ATTEMPTING (next attempt)
    NOT_STARTED -> SKIPPED

Every attempt is a fresh call of the attempt function; nothing from a
failed attempt is reused.
"""
from __future__ import annotations

import logging
import re
import time
from enum import Enum
from typing import Callable, Optional, TypeVar

from ..errors import RetryExhausted, StepError, StepFailure, StepStartError, StepTimeout
from ..model import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

# condition name -> failure kind it matches
_CONDITION_KINDS = {
    "script_failure": "script_failure",
    "job_execution_timeout": "timeout",
    "stuck_or_timeout_failure": "timeout",
    "timeout": "timeout",
    "runner_system_failure": "runner_system_failure",
    "unknown_failure": "runner_system_failure",
}


class StepState(str, Enum):
    NOT_STARTED = "not_started"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


_TRANSITIONS = {
    StepState.NOT_STARTED: {StepState.ATTEMPTING, StepState.SKIPPED},
    StepState.ATTEMPTING: {StepState.SUCCEEDED, StepState.FAILED, StepState.TIMED_OUT},
    StepState.FAILED: {StepState.ATTEMPTING},
    StepState.TIMED_OUT: {StepState.ATTEMPTING},
    StepState.SUCCEEDED: set(),
    StepState.SKIPPED: set(),
}


def parse_duration(text: str) -> float:
    """
    Parse a duration such as "500ms", "2s" or "1m30s" into seconds.

    A bare number is taken as seconds. Raises ValueError for anything else.
    """
    text = text.strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration: {text!r}")
    return total


def backoff_delay(policy: RetryPolicy, retry_number: int) -> float:
    """Seconds to wait before retry number `retry_number` (1 = first retry)."""
    try:
        base = parse_duration(policy.delay)
    except ValueError:
        logger.warning("ignoring invalid retry delay %r", policy.delay)
        return 0.0
    if policy.backoff == "linear":
        return base * retry_number
    if policy.backoff == "exponential":
        return base * (2 ** (retry_number - 1))
    return base


def failure_kind(error: BaseException) -> str:
    if isinstance(error, StepTimeout):
        return "timeout"
    if isinstance(error, StepStartError):
        return "runner_system_failure"
    if isinstance(error, StepFailure):
        return "script_failure"
    return "runner_system_failure"


def should_retry(policy: RetryPolicy, error: BaseException) -> bool:
    """
    Whether `error` is a failure the policy retries.

    No conditions and no exit codes: every failure is retried. Otherwise the
    failure must match a condition or, for script failures, one of the
    exit codes.
    """
    if not policy.conditions and not policy.exit_codes:
        return True

    kind = failure_kind(error)
    for condition in policy.conditions:
        condition = condition.strip().lower()
        if condition == "always" or _CONDITION_KINDS.get(condition) == kind:
            return True

    if policy.exit_codes and isinstance(error, StepFailure):
        return error.exit_code in policy.exit_codes
    return False


class StepAttempts:
    """
    Drives the attempts of one step.

    Args:
        policy: retry policy of the step; None means a single attempt
        job / step: names used in errors
        sleep: injectable for tests
        on_retry: called as on_retry(attempt, max_attempts, delay, error)
                  before waiting for the next attempt
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy],
        *,
        job: str | None,
        step: str,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Optional[Callable[[int, int, float, BaseException], None]] = None,
    ):
        self.policy = policy or RetryPolicy()
        self.job = job
        self.step = step
        self.state = StepState.NOT_STARTED
        self.attempts = 0
        self.last_error: Optional[StepError] = None
        self._sleep = sleep
        self._on_retry = on_retry

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    def _move(self, new: StepState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"step '{self.step}': illegal transition {self.state.value} -> {new.value}")
        self.state = new

    def skip(self) -> None:
        self._move(StepState.SKIPPED)

    def begin(self) -> int:
        self._move(StepState.ATTEMPTING)
        self.attempts += 1
        return self.attempts

    def succeed(self) -> None:
        self._move(StepState.SUCCEEDED)

    def fail(self, error: StepError) -> bool:
        """Record a failed attempt; True if another attempt will follow."""
        self._move(StepState.TIMED_OUT if isinstance(error, StepTimeout) else StepState.FAILED)
        self.last_error = error
        if self.attempts >= self.policy.max_attempts:
            return False
        return should_retry(self.policy, error)

    def run(self, attempt: Callable[[int], T]) -> T:
        """
        Call `attempt(n)` until it succeeds or the policy gives up.

        Raises the attempt's own error when no retry happened (or the failure
        kind is not retried), RetryExhausted when every allowed attempt failed.
        """
        while True:
            number = self.begin()
            try:
                result = attempt(number)
            except StepError as e:
                if self.fail(e):
                    delay = backoff_delay(self.policy, number)
                    logger.debug(
                        "step %r attempt %d/%d failed (%s), retrying in %.2fs",
                        self.step, number, self.policy.max_attempts, e.kind, delay,
                    )
                    if self._on_retry is not None:
                        self._on_retry(number, self.policy.max_attempts, delay, e)
                    if delay > 0:
                        self._sleep(delay)
                    continue
                if number > 1 and number >= self.policy.max_attempts:
                    raise RetryExhausted(self.job, self.step, number, e) from e
                raise
            self.succeed()
            return result
