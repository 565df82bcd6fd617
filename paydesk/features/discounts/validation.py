"""
Input validation for payment and checkout parameters.

Validators return a ValidationResult instead of raising: bad input here is an
expected, recoverable condition the caller reports back to the user.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Pattern
from urllib.parse import urlparse


SUPPORTED_CURRENCIES = (
    "USD", "EUR", "GBP", "CAD", "AUD", "JPY", "CHF", "SEK", "NOK", "DKK",
    "PLN", "CZK", "HUF", "BGN", "RON", "HRK", "ISK", "MXN", "BRL", "SGD",
    "HKD", "NZD", "KRW", "INR", "MYR", "THB", "PHP", "IDR", "VND", "TWD",
)

MIN_PAYMENT_AMOUNT = 50
MAX_PAYMENT_AMOUNT = 99_999_999
MAX_URL_LENGTH = 2048
MAX_EMAIL_LENGTH = 254
MAX_PROMO_CODE_LENGTH = 50
MAX_METADATA_KEYS = 50
MAX_METADATA_KEY_LENGTH = 40
MAX_METADATA_VALUE_LENGTH = 500

PROMO_CODE_PATTERN = re.compile(r"^[A-Za-z0-9\-_]+$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PRICE_ID_PATTERN = re.compile(r"^price_[a-zA-Z0-9_]+$")
CUSTOMER_ID_PATTERN = re.compile(r"^cus_[a-zA-Z0-9_]+$")


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    sanitized: Any = None


def _invalid(error: str) -> ValidationResult:
    return ValidationResult(valid=False, error=error)


def validate_promo_code_format(code: Any) -> ValidationResult:
    if not code or not isinstance(code, str):
        return _invalid("Promo code is required")

    trimmed = code.strip()
    if not trimmed:
        return _invalid("Promo code cannot be empty")
    if len(trimmed) > MAX_PROMO_CODE_LENGTH:
        return _invalid("Promo code is too long")
    if not PROMO_CODE_PATTERN.match(trimmed):
        return _invalid("Promo code contains invalid characters")

    return ValidationResult(valid=True, sanitized=trimmed)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = re.sub(r"[^\d.-]", "", value)
        try:
            return float(cleaned)
        except ValueError:
            return math.nan
    return None


def validate_payment_amount(amount: Any) -> ValidationResult:
    """Amounts are minor units: positive, within limits, at most 2 decimals off an integer."""
    if amount is None:
        return _invalid("Payment amount is required")

    numeric = _to_number(amount)
    if numeric is None:
        return _invalid("Payment amount must be a number")
    if math.isnan(numeric) or math.isinf(numeric):
        return _invalid("Invalid payment amount format")
    if numeric <= 0:
        return _invalid("Payment amount must be greater than zero")
    if numeric < MIN_PAYMENT_AMOUNT:
        return _invalid("Payment amount must be at least $0.50")
    if numeric > MAX_PAYMENT_AMOUNT:
        return _invalid("Payment amount exceeds maximum limit")

    rounded = int(math.floor(numeric + 0.5))
    if abs(numeric - rounded) > 0.01:
        return _invalid("Payment amount cannot have more than 2 decimal places")

    return ValidationResult(valid=True, sanitized=rounded)


def validate_currency(currency: Any) -> ValidationResult:
    if not currency:
        return ValidationResult(valid=True, sanitized="USD")
    if not isinstance(currency, str):
        return _invalid("Currency must be a string")

    upper = currency.strip().upper()
    if upper not in SUPPORTED_CURRENCIES:
        return _invalid(
            f"Unsupported currency: {currency}. Supported currencies: {', '.join(SUPPORTED_CURRENCIES)}"
        )

    return ValidationResult(valid=True, sanitized=upper)


def _to_whole_number(value: Any, label: str) -> ValidationResult:
    if isinstance(value, bool):
        return _invalid(f"{label} must be a number")
    if isinstance(value, str):
        match = re.match(r"^\s*([+-]?\d+)", value)
        if not match:
            return _invalid(f"Invalid {label.lower()} format")
        return ValidationResult(valid=True, sanitized=int(match.group(1)))
    if isinstance(value, (int, float)):
        if math.isnan(value) or math.isinf(value):
            return _invalid(f"Invalid {label.lower()} format")
        return ValidationResult(valid=True, sanitized=math.floor(value))
    return _invalid(f"{label} must be a number")


def validate_quantity(quantity: Any) -> ValidationResult:
    if quantity is None:
        return ValidationResult(valid=True, sanitized=1)

    parsed = _to_whole_number(quantity, "Quantity")
    if not parsed.valid:
        return parsed
    if parsed.sanitized < 1:
        return _invalid("Quantity must be at least 1")
    if parsed.sanitized > 100:
        return _invalid("Quantity cannot exceed 100")
    return parsed


def validate_trial_days(trial_days: Any) -> ValidationResult:
    if trial_days is None:
        return ValidationResult(valid=True, sanitized=0)

    parsed = _to_whole_number(trial_days, "Trial days")
    if not parsed.valid:
        return parsed
    if parsed.sanitized < 0:
        return _invalid("Trial days cannot be negative")
    if parsed.sanitized > 365:
        return _invalid("Trial period cannot exceed 365 days")
    return parsed


def validate_url(url: Any, field_name: str) -> ValidationResult:
    if not url or not isinstance(url, str):
        return _invalid(f"{field_name} is required and must be a string")

    trimmed = url.strip()
    if not trimmed:
        return _invalid(f"{field_name} cannot be empty")

    parsed = urlparse(trimmed)
    if not parsed.scheme or not parsed.netloc:
        return _invalid(f"{field_name} must be a valid URL")
    if parsed.scheme not in ("http", "https"):
        return _invalid(f"{field_name} must use HTTP or HTTPS protocol")
    if len(trimmed) > MAX_URL_LENGTH:
        return _invalid(f"{field_name} is too long")

    return ValidationResult(valid=True, sanitized=trimmed)


def validate_email(email: Any) -> ValidationResult:
    if not email or not isinstance(email, str):
        return _invalid("Email is required and must be a string")

    trimmed = email.strip().lower()
    if not trimmed:
        return _invalid("Email cannot be empty")
    if not EMAIL_PATTERN.match(trimmed):
        return _invalid("Invalid email format")
    if len(trimmed) > MAX_EMAIL_LENGTH:
        return _invalid("Email address is too long")

    return ValidationResult(valid=True, sanitized=trimmed)


def validate_string(
    value: Any,
    field_name: str,
    *,
    required: bool = False,
    min_length: int = 0,
    max_length: int = 255,
    pattern: Optional[Pattern[str]] = None,
    allow_empty: bool = True,
) -> ValidationResult:
    if value is None:
        if required:
            return _invalid(f"{field_name} is required")
        return ValidationResult(valid=True, sanitized="")
    if not isinstance(value, str):
        return _invalid(f"{field_name} must be a string")

    trimmed = value.strip()
    if not allow_empty and not trimmed:
        return _invalid(f"{field_name} cannot be empty")
    if len(trimmed) < min_length:
        return _invalid(f"{field_name} must be at least {min_length} characters long")
    if len(trimmed) > max_length:
        return _invalid(f"{field_name} cannot exceed {max_length} characters")
    if pattern is not None and not pattern.match(trimmed):
        return _invalid(f"{field_name} contains invalid characters")

    return ValidationResult(valid=True, sanitized=trimmed)


def validate_metadata(metadata: Any) -> ValidationResult:
    """Provider metadata: string keys up to 40 chars, values up to 500, at most 50 pairs."""
    if metadata is None:
        return ValidationResult(valid=True, sanitized={})
    if not isinstance(metadata, Mapping):
        return _invalid("Metadata must be an object")

    sanitized = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or not key.strip():
            return _invalid("Metadata keys must be non-empty strings")
        if len(key) > MAX_METADATA_KEY_LENGTH:
            return _invalid(f"Metadata keys cannot exceed {MAX_METADATA_KEY_LENGTH} characters")
        if value is None:
            continue
        text = str(value).strip()
        if len(text) > MAX_METADATA_VALUE_LENGTH:
            return _invalid(f"Metadata values cannot exceed {MAX_METADATA_VALUE_LENGTH} characters")
        sanitized[key.strip()] = text

    if len(sanitized) > MAX_METADATA_KEYS:
        return _invalid(f"Metadata cannot have more than {MAX_METADATA_KEYS} key-value pairs")

    return ValidationResult(valid=True, sanitized=sanitized)


def validate_checkout_session(params: Any) -> ValidationResult:
    """Validate every checkout parameter and report all problems at once."""
    if not isinstance(params, Mapping):
        return _invalid("Checkout parameters must be an object")

    errors = []
    sanitized = {}

    def check(key: str, result: ValidationResult, transform=None) -> None:
        if not result.valid:
            errors.append(result.error)
        else:
            sanitized[key] = transform(result.sanitized) if transform else result.sanitized

    check("success_url", validate_url(params.get("success_url"), "Success URL"))
    check("cancel_url", validate_url(params.get("cancel_url"), "Cancel URL"))

    if params.get("mode") is not None:
        if params["mode"] not in ("payment", "subscription"):
            errors.append('Mode must be either "payment" or "subscription"')
        else:
            sanitized["mode"] = params["mode"]

    optional_checks = {
        "amount": validate_payment_amount,
        "currency": validate_currency,
        "quantity": validate_quantity,
        "customer_email": validate_email,
        "trial_days": validate_trial_days,
        "metadata": validate_metadata,
        "price_id": lambda v: validate_string(
            v, "Price ID", min_length=1, pattern=PRICE_ID_PATTERN
        ),
        "customer_id": lambda v: validate_string(
            v, "Customer ID", min_length=1, pattern=CUSTOMER_ID_PATTERN
        ),
    }
    for key, validator in optional_checks.items():
        if params.get(key) is not None:
            check(key, validator(params[key]))

    if params.get("promo_code") is not None:
        check(
            "promo_code",
            validate_string(
                params["promo_code"], "Promo code",
                min_length=1, max_length=MAX_PROMO_CODE_LENGTH, pattern=PROMO_CODE_PATTERN,
            ),
            transform=str.upper,
        )

    for flag, label in (
        ("allow_promotion_codes", "Allow promotion codes"),
        ("collect_billing_address", "Collect billing address"),
        ("collect_shipping_address", "Collect shipping address"),
    ):
        if params.get(flag) is not None:
            if not isinstance(params[flag], bool):
                errors.append(f"{label} must be a boolean")
            else:
                sanitized[flag] = params[flag]

    if errors:
        return _invalid("; ".join(errors))

    return ValidationResult(valid=True, sanitized=sanitized)
