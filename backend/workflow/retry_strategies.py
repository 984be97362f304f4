"""Step retry strategies.

A step opts into retries with a ``retry`` block in its configuration:

    {"retry": {"policy": "exponential", "max_retries": 3, "base_delay": 1.0}}

Without one, a step runs at most once per execution. Only transient
failures are retried (timeouts, connection errors, and causes whose
message looks temporary); domain failures such as a condition not being
met or a missing assignee are final.
"""

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from core.exceptions import HandlerFailureError, StepHandlerError, StepTimeoutError
from steps.base_step import StepResult

logger = structlog.get_logger(__name__)


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


TIMEOUT_ERRORS = {"TimeoutError", "StepTimeoutError", "ConnectTimeout", "ReadTimeout", "PoolTimeout"}
CONNECTION_ERRORS = {"ConnectionError", "ConnectionRefusedError", "ConnectionResetError", "ConnectError", "OSError", "SMTPServerDisconnected"}
TRANSIENT_INDICATORS = ("timeout", "timed out", "connection", "temporar", "503", "429", "502", "504")


@dataclass
class RetryStrategy:
    """Retry policy for one step."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 300.0
    jitter: bool = True
    jitter_range: float = 0.5
    retryable_errors: list[str] = field(default_factory=list)

    @classmethod
    def none(cls) -> "RetryStrategy":
        """No retries; fail immediately."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def from_dict(cls, config: Optional[dict]) -> "RetryStrategy":
        """Create a strategy from a step's ``retry`` block; missing block means no retry."""
        if not config:
            return cls.none()
        if not isinstance(config, dict):
            raise ValueError(f"retry must be a mapping, got {type(config).__name__}")
        return cls(
            policy=RetryPolicy(config.get("policy", "exponential")),
            max_retries=int(config.get("max_retries", 3)),
            base_delay=float(config.get("base_delay", 1.0)),
            max_delay=float(config.get("max_delay", 300.0)),
            jitter=bool(config.get("jitter", True)),
            jitter_range=float(config.get("jitter_range", 0.5)),
            retryable_errors=list(config.get("retryable_errors", [])),
        )

    def to_dict(self) -> dict:
        return {
            "policy": self.policy.value,
            "max_retries": self.max_retries,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "jitter": self.jitter,
            "jitter_range": self.jitter_range,
            "retryable_errors": self.retryable_errors,
        }

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay before retry number ``attempt`` (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return round(delay, 3)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Whether a failure on retry number ``attempt`` deserves another try."""
        if self.policy == RetryPolicy.NONE or attempt > self.max_retries:
            return False
        if error is None:
            return True

        # Unwrap handler failures to classify the underlying cause
        if isinstance(error, HandlerFailureError) and error.cause is not None:
            error = error.cause
        elif isinstance(error, StepHandlerError) and not isinstance(error, StepTimeoutError):
            return False

        error_name = type(error).__name__
        if self.retryable_errors:
            return error_name in self.retryable_errors
        if error_name in TIMEOUT_ERRORS or error_name in CONNECTION_ERRORS:
            return True

        error_str = str(error).lower()
        return any(indicator in error_str for indicator in TRANSIENT_INDICATORS)


async def run_with_retry(
    attempt_fn: Callable[[], Awaitable[StepResult]],
    strategy: RetryStrategy,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
) -> tuple[StepResult, int]:
    """Run ``attempt_fn`` until it succeeds or the strategy gives up.

    Returns:
        The last StepResult and the number of invocations.
    """
    attempts = 0
    while True:
        attempts += 1
        result = await attempt_fn()
        if result.success or not strategy.should_retry(attempts, result.error):
            return result, attempts

        delay = strategy.compute_delay(attempts)
        if on_retry:
            on_retry(attempts, result.error, delay)
        logger.info("Retrying step", attempt=attempts, delay=delay, error=result.error_message)
        await asyncio.sleep(delay)
