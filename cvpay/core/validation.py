import re
from typing import Any, Mapping

from cvpay.errors import ValidationError

# Zambian numbers: optional +260 / 260 / 0 prefix, then 9-10 digits
PHONE_PATTERN = re.compile(r"^(\+?260|0)?[0-9]{9,10}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def personal_info(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    """Form snapshots nest payer details under personalInfo; flat payloads are accepted too."""
    info = payload.get("personalInfo")
    return info if isinstance(info, Mapping) else payload


def normalize_phone(phone: str) -> str:
    return re.sub(r"\s", "", phone or "")


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(normalize_phone(phone)))


def validate_payload(payload: Mapping[str, Any]) -> None:
    """Raise ValidationError for the first missing or malformed payer field."""
    if not isinstance(payload, Mapping):
        raise ValidationError("payload", "CV data is missing.")

    info = personal_info(payload)
    full_name = str(info.get("fullName") or "").strip()
    email = str(info.get("email") or "").strip()
    phone = str(info.get("phone") or "").strip()

    if not full_name:
        raise ValidationError("fullName", "Please fill in at least your name and email before downloading.")
    if not email:
        raise ValidationError("email", "Please fill in at least your name and email before downloading.")
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("email", "Please enter a valid email address.")
    if not phone:
        raise ValidationError("phone", "Please fill in your phone number in the CV form.")
    if not is_valid_phone(phone):
        raise ValidationError("phone", "Please enter a valid Zambian phone number in the CV form.")
