"""Bounded in-memory log of recent payment errors."""
import logging
from collections import deque
from typing import Any, Dict, List, Optional

from paydesk.core.config import settings
from paydesk.core.logging import log_event
from paydesk.features.payments.errors import PaymentError


class PaymentErrorLog:
    """
    Keeps the most recent payment errors, oldest evicted first.

    Passed explicitly to the services that record into it. Recording is
    best effort and never raises into the caller.
    """

    def __init__(self, capacity: Optional[int] = None, logger: Optional[logging.Logger] = None):
        self.capacity = capacity if capacity is not None else settings.ERROR_LOG_CAPACITY
        self._entries: deque = deque(maxlen=self.capacity)
        self._logger = logger

    def record(self, error: PaymentError, context: Optional[Dict[str, Any]] = None) -> None:
        try:
            entry = error.to_dict()
            entry["context"] = dict(context or {})
            self._entries.append(entry)
            self._emit(error, entry["context"])
        except Exception as exc:  # pragma: no cover
            logging.getLogger("paydesk").debug("payment_error_log.record_failed: %s", exc)

    def _emit(self, error: PaymentError, context: Dict[str, Any]) -> None:
        if self._logger is not None:
            self._logger.error(
                "payment.error",
                extra={"error_code": error.type.value, "event_type": context.get("operation")},
            )
            return
        log_event(
            "error",
            "payment.error",
            error_code=error.type.value,
            event_type=context.get("operation"),
            extra={"detail": error.message, "retryable": error.retryable, "context": context},
        )

    def entries(self) -> List[Dict[str, Any]]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
