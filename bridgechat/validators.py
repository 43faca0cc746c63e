"""
Phone number and message content validation.

E.164 is the international phone number format used everywhere in the
system: a leading '+', a country code, and the subscriber number, 8-15
digits in total, never starting with 0.

Message helpers prepare app-origin text for narrow carrier character sets
and estimate how many carrier segments a body will occupy.
"""

import math
import re

from bridgechat.errors import InvalidInputError


E164_REGEX = re.compile(r"^\+[1-9]\d{7,14}$")

MAX_MESSAGE_LENGTH = 1600

# Smart punctuation that narrow carrier character sets cannot carry
PROBLEMATIC_CHARS = {
    "‘": "'",  # left single quote
    "’": "'",  # right single quote
    "“": '"',  # left double quote
    "”": '"',  # right double quote
    "–": "-",  # en dash
    "—": "-",  # em dash
    "…": "...",  # ellipsis
}

# Control characters except \n (0x0A) and \r (0x0D)
CONTROL_CHARS_REGEX = re.compile(r"[\x00-\x09\x0b\x0c\x0e-\x1f\x7f]")

GSM7_BASIC_CHARS = (
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞ ÆæßÉ"
    "!\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§"
    "¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
GSM7_EXTENSION_CHARS = "^{}\\[~]|€"

GSM7_SINGLE_SEGMENT = 160
GSM7_MULTI_SEGMENT = 153
UCS2_SINGLE_SEGMENT = 70
UCS2_MULTI_SEGMENT = 67


# =============================================================================
# Phone Numbers
# =============================================================================

def validate_phone_number(raw: str) -> str:
    """
    Validate a strict E.164 phone number.

    Args:
        raw: Candidate phone number; surrounding whitespace is ignored

    Returns:
        The trimmed E.164 number

    Raises:
        InvalidInputError: if the number is empty, lacks a leading '+',
            or does not match +[1-9] followed by 7-14 digits
    """
    trimmed = (raw or "").strip()

    if not trimmed:
        raise InvalidInputError("Phone number is required")

    if not trimmed.startswith("+"):
        raise InvalidInputError("Phone number must start with + (E.164 format)")

    if not E164_REGEX.match(trimmed):
        raise InvalidInputError(
            "Invalid phone number format. Expected E.164 format (e.g., +14155551234)"
        )

    return trimmed


def normalize_to_e164(raw: str, default_country_code: str = "1") -> str:
    """
    Normalize common phone number spellings to E.164.

    Supported inputs:
        - already E.164 (formatting characters are stripped): +1 415-555-1234
        - 10 digits when the default country is "1": (415) 555-1234
        - 11 digits starting with 1: 1-415-555-1234
        - anything else gets the default country code prefixed

    The result is always re-checked with validate_phone_number.
    """
    raw = raw or ""
    has_plus = raw.strip().startswith("+")
    digits = re.sub(r"\D", "", raw)

    if not digits:
        raise InvalidInputError("Phone number contains no digits")

    if has_plus:
        normalized = f"+{digits}"
    elif len(digits) == 10 and default_country_code == "1":
        normalized = f"+1{digits}"
    elif len(digits) == 11 and digits.startswith("1"):
        normalized = f"+{digits}"
    else:
        normalized = f"+{default_country_code}{digits}"

    return validate_phone_number(normalized)


def mask_phone_number(phone: str) -> str:
    """Mask every digit but the last four, for log output."""
    if not phone or len(phone) < 8:
        return phone
    return re.sub(r"\d", "*", phone[:-4]) + phone[-4:]


# =============================================================================
# Message Content
# =============================================================================

def validate_message_content(raw: str) -> str:
    """
    Validate outbound message content and return it trimmed.

    Raises:
        InvalidInputError: if the content is empty or whitespace-only, or
            longer than MAX_MESSAGE_LENGTH once trimmed
    """
    if not raw or not raw.strip():
        raise InvalidInputError("Message cannot be empty")

    trimmed = raw.strip()

    if len(trimmed) > MAX_MESSAGE_LENGTH:
        raise InvalidInputError(
            f"Message exceeds maximum length of {MAX_MESSAGE_LENGTH} characters"
        )

    return trimmed


def sanitize_for_sms(text: str) -> str:
    """Replace smart punctuation with ASCII and strip control characters."""
    sanitized = text
    for unicode_char, ascii_char in PROBLEMATIC_CHARS.items():
        sanitized = sanitized.replace(unicode_char, ascii_char)
    return CONTROL_CHARS_REGEX.sub("", sanitized)


def is_gsm7_compatible(text: str) -> bool:
    """True if every character is in the GSM-7 basic or extension table."""
    return all(
        char in GSM7_BASIC_CHARS or char in GSM7_EXTENSION_CHARS
        for char in text
    )


def estimate_sms_segments(text: str) -> int:
    """
    Estimate the carrier segment count for a body.

    GSM-7: 160 chars in a single segment, 153 per segment when concatenated.
    UCS-2: 70 chars in a single segment, 67 per segment when concatenated.
    """
    length = len(text)
    if is_gsm7_compatible(text):
        if length <= GSM7_SINGLE_SEGMENT:
            return 1
        return math.ceil(length / GSM7_MULTI_SEGMENT)

    if length <= UCS2_SINGLE_SEGMENT:
        return 1
    return math.ceil(length / UCS2_MULTI_SEGMENT)


def truncate_message(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def get_message_preview(text: str, max_length: int = 50) -> str:
    """Single-line preview of a message, truncated with an ellipsis."""
    single_line = re.sub(r"\n+", " ", text).strip()
    return truncate_message(single_line, max_length)
