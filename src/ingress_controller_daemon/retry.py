"""
Cancellable Exponential Backoff

Retry helper for background work that talks to the control plane. Unlike a
plain sleep-based retry, every wait observes the execution context so a
shutdown interrupts the backoff immediately.

Retry Strategy:
    - First retry: initial_delay seconds
    - Second retry: initial_delay * backoff_factor seconds
    - ... capped at max_delay
"""

import logging
import os
from typing import Any, Callable

logger = logging.getLogger(os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER"))


class RetryCancelled(Exception):
    """The execution context was canceled while waiting to retry."""


def backoff_delay(attempt: int, initial_delay: float, max_delay: float,
                  backoff_factor: float = 2.0) -> float:
    """Delay before retry number `attempt` (0-based)."""
    return min(initial_delay * (backoff_factor ** attempt), max_delay)


def exponential_backoff_retry(ctx,
                              func: Callable[[], Any],
                              max_retries: int = 3,
                              initial_delay: float = 1.0,
                              max_delay: float = 60.0,
                              backoff_factor: float = 2.0) -> Any:
    """
    Call func until it succeeds, waiting exponentially longer between attempts.

    Args:
        ctx (ExecutionContext): Context whose cancellation aborts the waits.
        func (Callable): Zero-argument callable to retry.
        max_retries (int): Retries after the first attempt. Must be >= 0.
        initial_delay (float): Delay before the first retry. Must be > 0.
        max_delay (float): Upper bound for any delay.
        backoff_factor (float): Multiplier per retry. Must be >= 1.0.

    Returns:
        Any: The return value of func.

    Raises:
        Exception: The last exception raised by func when retries are exhausted.
        RetryCancelled: If ctx is canceled before the next attempt.
        ValueError: If parameters are invalid.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    if initial_delay <= 0:
        raise ValueError("initial_delay must be > 0")
    if max_delay < initial_delay:
        raise ValueError("max_delay must be >= initial_delay")
    if backoff_factor < 1.0:
        raise ValueError("backoff_factor must be >= 1.0")

    func_name = getattr(func, '__name__', 'anonymous_function')

    for attempt in range(max_retries + 1):
        try:
            logger.debug(f"Attempting call to {func_name} (attempt {attempt + 1}/{max_retries + 1})")
            return func()
        except Exception as e:
            if attempt == max_retries:
                logger.error(f"All {max_retries + 1} attempts failed for {func_name}: {e}")
                raise

            delay = backoff_delay(attempt, initial_delay, max_delay, backoff_factor)
            logger.warning(f"Attempt {attempt + 1}/{max_retries + 1} failed for {func_name}: {e}. "
                           f"Retrying in {delay:.2f}s...")
            if ctx.wait(delay):
                raise RetryCancelled(f"{func_name} retry canceled") from e
