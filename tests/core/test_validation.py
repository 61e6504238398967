import pytest

from cvpay.core.validation import is_valid_phone, normalize_phone, validate_payload
from cvpay.core.state_machine import (
    AWAITING_CONFIRMATION,
    AWAITING_GATEWAY_REDIRECT,
    CANCELLED,
    CONFIRMED,
    IDLE,
    INITIATING,
    TIMED_OUT,
    can_transition,
    is_terminal,
)
from cvpay.errors import ValidationError


@pytest.mark.parametrize("phone", ["0977123456", "+260977123456", "260977123456", "977123456", "097 712 3456"])
def test_accepts_zambian_numbers(phone):
    assert is_valid_phone(phone)


@pytest.mark.parametrize("phone", ["abc", "12345", "+1 555 0100", "09771234567890", ""])
def test_rejects_other_numbers(phone):
    assert not is_valid_phone(phone)


def test_normalize_strips_whitespace():
    assert normalize_phone(" 097 712\t3456 ") == "0977123456"


@pytest.mark.parametrize(
    "info, field",
    [
        ({"email": "a@b.co", "phone": "0977123456"}, "fullName"),
        ({"fullName": "Jane", "phone": "0977123456"}, "email"),
        ({"fullName": "Jane", "email": "not-an-email", "phone": "0977123456"}, "email"),
        ({"fullName": "Jane", "email": "a@b.co"}, "phone"),
        ({"fullName": "Jane", "email": "a@b.co", "phone": "abc"}, "phone"),
    ],
)
def test_first_invalid_field_is_reported(info, field):
    with pytest.raises(ValidationError) as exc:
        validate_payload({"personalInfo": info})
    assert exc.value.field == field


def test_flat_payload_is_accepted():
    validate_payload({"fullName": "Jane Mwape", "email": "jane@x.com", "phone": "0977123456"})


def test_non_mapping_payload_rejected():
    with pytest.raises(ValidationError):
        validate_payload(None)


def test_transition_table():
    assert can_transition(IDLE, INITIATING)
    assert can_transition(INITIATING, AWAITING_GATEWAY_REDIRECT)
    assert can_transition(AWAITING_GATEWAY_REDIRECT, AWAITING_CONFIRMATION)
    assert can_transition(AWAITING_CONFIRMATION, TIMED_OUT)
    assert not can_transition(IDLE, CONFIRMED)
    assert not can_transition(CONFIRMED, CANCELLED)
    assert is_terminal(CANCELLED) and not is_terminal(INITIATING)
