"""Tests for payment and checkout input validation."""

import pytest

from paydesk.features.discounts.validation import (
    validate_checkout_session,
    validate_currency,
    validate_email,
    validate_metadata,
    validate_payment_amount,
    validate_promo_code_format,
    validate_quantity,
    validate_trial_days,
    validate_url,
)


def test_promo_code_format():
    assert validate_promo_code_format("  SAVE_20-X ").sanitized == "SAVE_20-X"
    assert validate_promo_code_format("").valid is False
    assert validate_promo_code_format("   ").error == "Promo code cannot be empty"
    assert validate_promo_code_format("SAVE 20").error == "Promo code contains invalid characters"
    assert validate_promo_code_format("X" * 51).error == "Promo code is too long"
    assert validate_promo_code_format(20).valid is False


@pytest.mark.parametrize("amount,sanitized", [
    (50, 50),
    (99_999_999, 99_999_999),
    ("1,250", 1250),
    (1000.004, 1000),
])
def test_payment_amount_valid(amount, sanitized):
    result = validate_payment_amount(amount)
    assert result.valid
    assert result.sanitized == sanitized


@pytest.mark.parametrize("amount,error", [
    (None, "Payment amount is required"),
    (0, "Payment amount must be greater than zero"),
    (49, "Payment amount must be at least $0.50"),
    (100_000_000, "Payment amount exceeds maximum limit"),
    (100.5, "Payment amount cannot have more than 2 decimal places"),
    ("abc", "Invalid payment amount format"),
    (True, "Payment amount must be a number"),
])
def test_payment_amount_invalid(amount, error):
    result = validate_payment_amount(amount)
    assert result.valid is False
    assert result.error == error


def test_currency():
    assert validate_currency(None).sanitized == "USD"
    assert validate_currency(" eur ").sanitized == "EUR"
    assert validate_currency("XYZ").valid is False


def test_quantity_and_trial_days():
    assert validate_quantity(None).sanitized == 1
    assert validate_quantity("3").sanitized == 3
    assert validate_quantity(0).error == "Quantity must be at least 1"
    assert validate_quantity(101).error == "Quantity cannot exceed 100"
    assert validate_trial_days(None).sanitized == 0
    assert validate_trial_days(-1).valid is False
    assert validate_trial_days(366).error == "Trial period cannot exceed 365 days"


def test_url():
    assert validate_url("https://example.com/ok", "Success URL").valid
    assert validate_url("ftp://example.com", "Success URL").error == "Success URL must use HTTP or HTTPS protocol"
    assert validate_url("not a url", "Success URL").error == "Success URL must be a valid URL"
    long_url = "https://example.com/" + "a" * 2048
    assert validate_url(long_url, "Success URL").error == "Success URL is too long"


def test_email():
    assert validate_email(" Alice@Example.COM ").sanitized == "alice@example.com"
    assert validate_email("alice@").valid is False


def test_metadata_limits():
    assert validate_metadata(None).sanitized == {}
    assert validate_metadata({"plan": 3}).sanitized == {"plan": "3"}
    assert validate_metadata({"k" * 41: "v"}).valid is False
    assert validate_metadata({"k": "v" * 501}).valid is False
    assert validate_metadata({f"k{i}": "v" for i in range(51)}).valid is False
    assert validate_metadata({f"k{i}": "v" for i in range(50)}).valid
    assert validate_metadata(["not", "a", "dict"]).error == "Metadata must be an object"


def test_checkout_session_collects_all_errors():
    result = validate_checkout_session({
        "success_url": "ftp://example.com",
        "cancel_url": "https://example.com/cancel",
        "mode": "gift",
        "amount": 10,
    })
    assert result.valid is False
    assert result.error.count("; ") == 2


def test_checkout_session_sanitizes():
    result = validate_checkout_session({
        "success_url": "https://example.com/success",
        "cancel_url": "https://example.com/cancel",
        "mode": "subscription",
        "currency": "usd",
        "price_id": "price_123",
        "promo_code": "save20",
        "allow_promotion_codes": True,
    })
    assert result.valid
    assert result.sanitized["currency"] == "USD"
    assert result.sanitized["promo_code"] == "SAVE20"
    assert result.sanitized["allow_promotion_codes"] is True
