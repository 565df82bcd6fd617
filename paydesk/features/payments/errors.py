"""
Payment error taxonomy.

Every failure that leaves the billing core is a PaymentError carrying a
machine-readable type, a user-facing message and a retryability flag.

Raw provider failures (SDK exceptions, error payloads, transport errors) are
first classified into a tagged ProviderFault, then mapped to a PaymentError
by handle_stripe_error.
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

import stripe
from pydantic import BaseModel, Field, TypeAdapter

from paydesk.core.errors import AppError
from paydesk.features.billing.provider import BillingProviderError


class PaymentErrorType(str, Enum):
    CARD_DECLINED = "card_declined"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    EXPIRED_CARD = "expired_card"
    INCORRECT_CVC = "incorrect_cvc"
    PROCESSING_ERROR = "processing_error"

    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PLAN_NOT_FOUND = "plan_not_found"
    INVALID_PLAN_CHANGE = "invalid_plan_change"

    INVALID_AMOUNT = "invalid_amount"
    INVALID_CURRENCY = "invalid_currency"
    INVALID_EMAIL = "invalid_email"
    MISSING_REQUIRED_FIELD = "missing_required_field"

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    SESSION_EXPIRED = "session_expired"

    NETWORK_ERROR = "network_error"
    API_ERROR = "api_error"
    TIMEOUT_ERROR = "timeout_error"

    UNKNOWN_ERROR = "unknown_error"
    CONFIGURATION_ERROR = "configuration_error"


GENERIC_USER_MESSAGE = "An unexpected error occurred. Please try again or contact support."
RATE_LIMIT_USER_MESSAGE = "Too many requests. Please wait a moment and try again."

DEFAULT_USER_MESSAGES: Dict[PaymentErrorType, str] = {
    PaymentErrorType.CARD_DECLINED: "Your card was declined. Please try a different payment method.",
    PaymentErrorType.INSUFFICIENT_FUNDS: "Your card has insufficient funds. Please try a different payment method.",
    PaymentErrorType.EXPIRED_CARD: "Your card has expired. Please update your payment information.",
    PaymentErrorType.INCORRECT_CVC: "The security code (CVC) is incorrect. Please check and try again.",
    PaymentErrorType.PROCESSING_ERROR: "There was an error processing your payment. Please try again.",
    PaymentErrorType.SUBSCRIPTION_NOT_FOUND: "Subscription not found. Please contact support if this continues.",
    PaymentErrorType.SUBSCRIPTION_CANCELED: "This subscription has been canceled and cannot be modified.",
    PaymentErrorType.PLAN_NOT_FOUND: "The selected plan is no longer available. Please choose a different plan.",
    PaymentErrorType.INVALID_PLAN_CHANGE: "This plan change is not allowed. Please contact support for assistance.",
    PaymentErrorType.INVALID_AMOUNT: "The payment amount is invalid. Please check and try again.",
    PaymentErrorType.INVALID_CURRENCY: "The selected currency is not supported.",
    PaymentErrorType.INVALID_EMAIL: "Please enter a valid email address.",
    PaymentErrorType.MISSING_REQUIRED_FIELD: "Please fill in all required fields.",
    PaymentErrorType.UNAUTHORIZED: "You need to log in to access this feature.",
    PaymentErrorType.FORBIDDEN: "You do not have permission to perform this action.",
    PaymentErrorType.SESSION_EXPIRED: "Your session has expired. Please log in again.",
    PaymentErrorType.NETWORK_ERROR: "Network connection error. Please check your internet connection and try again.",
    PaymentErrorType.API_ERROR: "Service temporarily unavailable. Please try again in a few moments.",
    PaymentErrorType.TIMEOUT_ERROR: "Request timed out. Please try again.",
    PaymentErrorType.UNKNOWN_ERROR: GENERIC_USER_MESSAGE,
    PaymentErrorType.CONFIGURATION_ERROR: "Service configuration error. Please contact support.",
}

RETRYABLE_BY_DEFAULT = frozenset({
    PaymentErrorType.NETWORK_ERROR,
    PaymentErrorType.API_ERROR,
    PaymentErrorType.TIMEOUT_ERROR,
    PaymentErrorType.PROCESSING_ERROR,
})


class PaymentError(AppError):
    """
    Normalized payment failure.

    ``code`` is the provider's error code when there is one. ``retryable``
    defaults from the error type unless given explicitly.
    """
    code: Optional[str] = None

    def __init__(
        self,
        type: PaymentErrorType,
        message: str,
        *,
        code: Optional[str] = None,
        user_message: Optional[str] = None,
        original_error: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message, code=code)
        self.type = PaymentErrorType(type)
        self.user_message = user_message or DEFAULT_USER_MESSAGES.get(self.type, GENERIC_USER_MESSAGE)
        self.original_error = original_error
        self.metadata = dict(metadata or {})
        self.timestamp = datetime.now(timezone.utc)
        self.retryable = retryable if retryable is not None else self.type in RETRYABLE_BY_DEFAULT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "type": self.type.value,
            "message": self.message,
            "user_message": self.user_message,
            "code": self.code,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    def __repr__(self) -> str:
        return f"PaymentError(type={self.type.value!r}, message={self.message!r}, retryable={self.retryable})"


# Provider fault classification

class _Fault(BaseModel):
    message: Optional[str] = None
    code: Optional[str] = None


class CardFault(_Fault):
    kind: Literal["card_error"] = "card_error"
    decline_code: Optional[str] = None
    card_brand: Optional[str] = None


class ValidationFault(_Fault):
    kind: Literal["validation_error"] = "validation_error"
    param: Optional[str] = None


class ApiFault(_Fault):
    kind: Literal["api_error"] = "api_error"


class AuthenticationFault(_Fault):
    kind: Literal["authentication_error"] = "authentication_error"


class RateLimitFault(_Fault):
    kind: Literal["rate_limit_error"] = "rate_limit_error"


class NetworkFault(_Fault):
    kind: Literal["network"] = "network"


class TimeoutFault(_Fault):
    kind: Literal["timeout"] = "timeout"


class UnknownFault(_Fault):
    kind: Literal["unknown"] = "unknown"


ProviderFault = Annotated[
    Union[
        CardFault,
        ValidationFault,
        ApiFault,
        AuthenticationFault,
        RateLimitFault,
        NetworkFault,
        TimeoutFault,
        UnknownFault,
    ],
    Field(discriminator="kind"),
]

_fault_adapter = TypeAdapter(ProviderFault)

_PAYLOAD_KINDS = frozenset({
    "card_error",
    "validation_error",
    "api_error",
    "authentication_error",
    "rate_limit_error",
})


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def stripe_error_payload(exc: "stripe.StripeError") -> Dict[str, Any]:
    """Flatten a Stripe SDK exception into a raw error payload."""
    if isinstance(exc, stripe.CardError):
        kind = "card_error"
    elif isinstance(exc, stripe.RateLimitError):
        kind = "rate_limit_error"
    elif isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        kind = "authentication_error"
    elif isinstance(exc, stripe.InvalidRequestError):
        kind = "validation_error"
    elif isinstance(exc, stripe.APIConnectionError):
        kind = "network"
    else:
        kind = "api_error"

    detail = getattr(exc, "error", None)
    return {
        "type": kind,
        "code": getattr(exc, "code", None),
        "decline_code": getattr(detail, "decline_code", None) if detail is not None else None,
        "param": getattr(exc, "param", None),
        "message": getattr(exc, "user_message", None) or str(exc) or None,
    }


def _classify_payload(payload: Mapping) -> ProviderFault:
    kind = payload.get("type")
    code = _as_str(payload.get("code"))
    name = payload.get("name")
    message = _as_str(payload.get("message"))

    if kind in _PAYLOAD_KINDS:
        payment_method = payload.get("payment_method")
        card = payment_method.get("card") if isinstance(payment_method, Mapping) else None
        if not isinstance(card, Mapping):
            card = {}
        return _fault_adapter.validate_python({
            "kind": kind,
            "message": message,
            "code": code,
            "decline_code": _as_str(payload.get("decline_code")),
            "param": _as_str(payload.get("param")),
            "card_brand": _as_str(card.get("brand")),
        })
    if kind == "network" or name == "NetworkError" or code == "NETWORK_ERROR":
        return NetworkFault(message=message, code=code)
    if kind == "timeout" or name == "TimeoutError" or code == "TIMEOUT":
        return TimeoutFault(message=message, code=code)
    return UnknownFault(message=message, code=code)


def classify_provider_error(error: Any) -> ProviderFault:
    """Inspect a raw failure once and tag it with its fault kind."""
    if error is None:
        return UnknownFault()
    if isinstance(error, BillingProviderError):
        fault = _classify_payload(error.payload)
        if fault.message is None:
            fault = fault.model_copy(update={"message": str(error) or None})
        return fault
    if isinstance(error, stripe.StripeError):
        return _classify_payload(stripe_error_payload(error))
    if isinstance(error, TimeoutError):
        return TimeoutFault(message=str(error) or None)
    if isinstance(error, ConnectionError):
        return NetworkFault(message=str(error) or None)
    if isinstance(error, Mapping):
        return _classify_payload(error)
    return UnknownFault(
        message=str(error) or None,
        code=_as_str(getattr(error, "code", None)),
    )


def _card_error(fault: CardFault, original: Any) -> PaymentError:
    if fault.decline_code == "insufficient_funds" or fault.code == "insufficient_funds":
        return PaymentError(
            PaymentErrorType.INSUFFICIENT_FUNDS,
            fault.message or "Insufficient funds",
            code=fault.code,
            original_error=original,
        )
    if fault.decline_code == "expired_card" or fault.code == "expired_card":
        return PaymentError(
            PaymentErrorType.EXPIRED_CARD,
            fault.message or "Card expired",
            code=fault.code,
            original_error=original,
        )
    if fault.code == "incorrect_cvc":
        return PaymentError(
            PaymentErrorType.INCORRECT_CVC,
            fault.message or "Incorrect CVC",
            code=fault.code,
            original_error=original,
        )
    return PaymentError(
        PaymentErrorType.CARD_DECLINED,
        fault.message or "Card declined",
        code=fault.code,
        original_error=original,
        metadata={"decline_code": fault.decline_code, "card_type": fault.card_brand},
    )


def handle_stripe_error(error: Any) -> PaymentError:
    """Map any provider failure to a PaymentError. PaymentErrors pass through."""
    if isinstance(error, PaymentError):
        return error
    if error is None:
        return PaymentError(PaymentErrorType.UNKNOWN_ERROR, "Unknown error occurred")

    fault = classify_provider_error(error)

    if isinstance(fault, CardFault):
        return _card_error(fault, error)
    if isinstance(fault, ValidationFault):
        return PaymentError(
            PaymentErrorType.MISSING_REQUIRED_FIELD,
            fault.message or "Validation error",
            code=fault.code,
            original_error=error,
            user_message=fault.message or "Please check your payment information and try again.",
        )
    if isinstance(fault, ApiFault):
        return PaymentError(
            PaymentErrorType.API_ERROR,
            fault.message or "API error",
            code=fault.code,
            original_error=error,
            retryable=True,
        )
    if isinstance(fault, AuthenticationFault):
        return PaymentError(
            PaymentErrorType.CONFIGURATION_ERROR,
            fault.message or "Authentication error",
            code=fault.code,
            original_error=error,
            retryable=False,
        )
    if isinstance(fault, RateLimitFault):
        return PaymentError(
            PaymentErrorType.API_ERROR,
            fault.message or "Rate limit exceeded",
            code=fault.code,
            original_error=error,
            retryable=True,
            user_message=RATE_LIMIT_USER_MESSAGE,
        )
    if isinstance(fault, NetworkFault):
        return PaymentError(
            PaymentErrorType.NETWORK_ERROR,
            fault.message or "Network error",
            original_error=error,
            retryable=True,
        )
    if isinstance(fault, TimeoutFault):
        return PaymentError(
            PaymentErrorType.TIMEOUT_ERROR,
            fault.message or "Request timeout",
            original_error=error,
            retryable=True,
        )
    return PaymentError(
        PaymentErrorType.UNKNOWN_ERROR,
        fault.message or "Unknown error occurred",
        code=fault.code,
        original_error=error,
    )


def handle_subscription_error(error: Any, context: Optional[str] = None) -> PaymentError:
    """Map a generic subscription failure to a PaymentError by its message."""
    if isinstance(error, PaymentError):
        return error

    message = str(error) if error is not None else ""
    message = message or "Subscription error"
    lowered = message.lower()
    metadata = {"context": context}

    if "plan" in lowered and "not found" in lowered:
        error_type = PaymentErrorType.PLAN_NOT_FOUND
    elif "not found" in lowered or "does not exist" in lowered:
        error_type = PaymentErrorType.SUBSCRIPTION_NOT_FOUND
    elif "canceled" in lowered or "cancelled" in lowered:
        error_type = PaymentErrorType.SUBSCRIPTION_CANCELED
    else:
        error_type = PaymentErrorType.UNKNOWN_ERROR

    return PaymentError(error_type, message, original_error=error, metadata=metadata)


def get_display_error_message(error: Any) -> str:
    if isinstance(error, PaymentError):
        return error.user_message
    if error is None:
        return GENERIC_USER_MESSAGE
    return handle_stripe_error(error).user_message


def is_retryable_error(error: Any) -> bool:
    return handle_stripe_error(error).retryable


def format_error_response(error: Any) -> Dict[str, Any]:
    """Client-facing error body."""
    payment_error = handle_stripe_error(error)
    return {
        "error": payment_error.type.value,
        "message": payment_error.user_message,
        "code": payment_error.code,
        "retryable": payment_error.retryable,
        "timestamp": payment_error.timestamp.isoformat(),
    }
