# retry_utils.py
# Retry decorator and utilities for eliminating time.sleep() based polling

import time
from functools import wraps
from typing import Callable, Any, Tuple, Type, Optional


def retry_with_backoff(
    max_attempts: int = 5,
    initial_delay: float = 0.1,
    backoff_factor: float = 1.5,
    max_delay: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
):
    """
    Decorator that retries a function with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (first call included)
        initial_delay: Initial delay in seconds (default: 0.1s)
        backoff_factor: Multiplier for delay after each retry (default: 1.5x)
        max_delay: Maximum delay between retries (default: 2.0s)
        exceptions: Tuple of exception types to catch and retry
        on_retry: Optional callback function(attempt, exception) called on each retry

    Example:
        @retry_with_backoff(max_attempts=3, initial_delay=0.05)
        def insert():
            frame.execute(payload)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            return call_with_retry(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                initial_delay=initial_delay,
                backoff_factor=backoff_factor,
                max_delay=max_delay,
                exceptions=exceptions,
                on_retry=on_retry,
            )
        return wrapper
    return decorator


def call_with_retry(
    func: Callable[[], Any],
    max_attempts: int = 5,
    initial_delay: float = 0.1,
    backoff_factor: float = 1.5,
    max_delay: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call func until it succeeds or max_attempts is exhausted.

    The last exception is re-raised once every attempt has failed.
    """
    delay = initial_delay
    max_attempts = max(1, max_attempts)

    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except exceptions as e:
            if attempt == max_attempts:
                raise

            if on_retry:
                on_retry(attempt, e)

            if delay > 0:
                time.sleep(delay)
            delay = min(delay * backoff_factor, max_delay)


def poll_until_true(
    condition: Callable[[], bool],
    timeout: float = 5.0,
    interval: float = 0.1,
    error_message: str = "Condition not met within timeout"
) -> bool:
    """
    Poll a condition until it returns True or timeout is reached.

    Args:
        condition: Callable that returns bool
        timeout: Maximum time to wait in seconds
        interval: Time between checks in seconds
        error_message: Error message if timeout is reached

    Returns:
        True if condition was met, raises TimeoutError if not

    Example:
        poll_until_true(lambda: frame.ready_state() == "complete", timeout=10.0)
    """
    start_time = time.time()

    while time.time() - start_time < timeout:
        if condition():
            return True
        time.sleep(interval)

    raise TimeoutError(f"{error_message} (timeout: {timeout}s)")
