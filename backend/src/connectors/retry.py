"""Retry decisions and exponential backoff for failed transport calls."""

from typing import Optional

from .definitions import EndpointDefinition, RetryPolicy


class RetryEvaluator:
    """
    Decides whether a failed attempt is retried and how long to wait.

    An endpoint's `response.error_handling.non_retryable_errors` always wins
    over the policy's `retryable_errors`; `error_handling.retryable_errors`
    extends them.

    Example:
        evaluator = RetryEvaluator(policy, endpoint)
        if evaluator.should_retry("timeout", retry_count):
            await asyncio.sleep(evaluator.delay_for(retry_count) / 1000)
    """

    def __init__(self, policy: RetryPolicy, endpoint: Optional[EndpointDefinition] = None):
        self.policy = policy
        self._retryable = set(policy.retryable_errors)
        self._non_retryable: set[str] = set()
        if endpoint is not None:
            handling = endpoint.response.error_handling
            self._retryable.update(handling.retryable_errors)
            self._non_retryable.update(handling.non_retryable_errors)

    def is_retryable(self, classification: str) -> bool:
        if classification in self._non_retryable:
            return False
        return classification in self._retryable

    def should_retry(self, classification: str, retry_count: int) -> bool:
        """
        Args:
            classification: Error class of the failed attempt
            retry_count: Retries already performed (0 after the first attempt)
        """
        if not self.policy.enabled:
            return False
        return self.is_retryable(classification) and retry_count < self.policy.max_retries

    def delay_for(self, retry_count: int) -> float:
        """Backoff in milliseconds before retry number `retry_count + 1`."""
        try:
            delay = self.policy.base_delay * (self.policy.backoff_multiplier ** retry_count)
        except OverflowError:
            delay = self.policy.max_delay
        return float(min(delay, self.policy.max_delay))
