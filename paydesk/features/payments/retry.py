"""
Retry policy for payment operations.

Exponential backoff with jitter: the delay before retry n is
min(base * 2**(n-1), max) plus up to ``jitter`` seconds. Only errors whose
normalized form is retryable are retried.
"""
from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from paydesk.core.config import settings
from paydesk.core.logging import log_event
from paydesk.features.payments.error_log import PaymentErrorLog
from paydesk.features.payments.errors import PaymentError, handle_stripe_error

T = TypeVar("T")

MISSING = object()


class PaymentRetryHandler:
    def __init__(
        self,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        jitter: Optional[float] = None,
        error_log: Optional[PaymentErrorLog] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        random_fn: Callable[[], float] = random.random,
    ):
        self.max_retries = max_retries if max_retries is not None else settings.RETRY_MAX_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else settings.RETRY_BASE_DELAY_SECONDS
        self.max_delay = max_delay if max_delay is not None else settings.RETRY_MAX_DELAY_SECONDS
        self.jitter = jitter if jitter is not None else settings.RETRY_JITTER_SECONDS
        self.error_log = error_log
        self._sleep = sleep
        self._random = random_fn

    def compute_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + self._random() * self.jitter

    async def execute(self, operation: Callable[[], Awaitable[T]], context: Optional[str] = None) -> T:
        """
        Run ``operation`` until it succeeds or the attempts run out.

        Non-retryable errors are raised at once. When every attempt fails,
        the normalized error of the last attempt is raised.
        """
        last_error: Optional[PaymentError] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await operation()
            except Exception as exc:
                payment_error = handle_stripe_error(exc)
                last_error = payment_error

                if not payment_error.retryable:
                    if payment_error is exc:
                        raise
                    raise payment_error from exc
                if attempt == self.max_retries:
                    break

                delay = self.compute_delay(attempt)
                if self.error_log is not None:
                    self.error_log.record(
                        payment_error,
                        {"context": context, "attempt": attempt, "retry_after": delay},
                    )
                log_event(
                    "warning",
                    "payment.retry",
                    event_type=context,
                    error_code=payment_error.type.value,
                    extra={"attempt": attempt, "delay_seconds": round(delay, 3)},
                )
                await self._sleep(delay)

        if last_error is None:
            raise PaymentError("unknown_error", "Operation was not attempted")
        raise last_error


async def safe_payment_operation(
    operation: Callable[[], Awaitable[T]],
    context: Optional[str] = None,
    retries: int = 0,
    on_error: Optional[Callable[[PaymentError], Any]] = None,
    fallback: Any = MISSING,
    error_log: Optional[PaymentErrorLog] = None,
):
    """
    Run a payment operation with normalized error handling.

    Errors are recorded and passed to ``on_error``; the fallback is returned
    if one was given, otherwise the normalized PaymentError is raised.
    """
    try:
        if retries > 0:
            handler = PaymentRetryHandler(max_retries=retries, error_log=error_log)
            return await handler.execute(operation, context)
        return await operation()
    except Exception as exc:
        payment_error = handle_stripe_error(exc)
        if error_log is not None:
            error_log.record(payment_error, {"context": context})
        if on_error is not None:
            on_error(payment_error)
        if fallback is not MISSING:
            return fallback
        if payment_error is exc:
            raise
        raise payment_error from exc
