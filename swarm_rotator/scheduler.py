"""
Cooperative cancellation and bounded retry for the trading loop.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .utils import TransactionFailureError, logger, sanitize_error_message


class CancellationToken:
    """
    Shutdown signal shared by the supervisor, the orchestrator and every
    sleep they perform. Cancelling wakes any pending sleep immediately.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep for up to `seconds`.

        Returns:
            True if the token was cancelled before or during the sleep
        """
        if self._event.is_set():
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class RetryPolicy:
    """
    Run an async action up to `max_attempts` times with a fixed delay.

    Only exceptions listed in `retry_on` are retried; anything else, and
    the last retryable failure, propagates to the caller.
    """
    max_attempts: int = 3
    delay: float = 5.0
    retry_on: Tuple[Type[BaseException], ...] = (TransactionFailureError,)
    sleep: Callable[[float], Awaitable] = asyncio.sleep

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Attempt {retry_state.attempt_number}/{self.max_attempts} failed: "
            f"{sanitize_error_message(error)}. Retrying in {self.delay:g}s..."
        )

    async def run(self, action: Callable[..., Awaitable], *args, **kwargs):
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.delay),
            retry=retry_if_exception_type(self.retry_on),
            sleep=self.sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )
        result = None
        async for attempt in retrying:
            with attempt:
                result = await action(*args, **kwargs)
        return result
