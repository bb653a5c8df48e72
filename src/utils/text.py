"""Input checks for user-supplied text.

Every helper returns the normalized value or raises ValidationError before
anything is written.
"""

import re

from src.errors.domain import ValidationError

MAX_MESSAGE_LENGTH = 2000
MAX_REASON_LENGTH = 500
MAX_OFFER_TEXT_LENGTH = 500
MAX_ITEM_NAME_LENGTH = 100
TRANSFER_CODE_MIN_LENGTH = 5
TRANSFER_CODE_MAX_LENGTH = 32

_TRANSFER_CODE_RE = re.compile(
    rf"^[A-Z0-9]{{{TRANSFER_CODE_MIN_LENGTH},{TRANSFER_CODE_MAX_LENGTH}}}$"
)


def require_text(value: str | None, field: str, max_length: int) -> str:
    """Strip value and require 1..max_length characters.

    Args:
        value: Raw input.
        field: Display name used in the error message.
        max_length: Inclusive upper bound after stripping.

    Returns:
        The stripped text.

    Raises:
        ValidationError: If the text is empty, whitespace-only or too long.
    """
    text = (value or "").strip()
    if not text or len(text) > max_length:
        raise ValidationError.from_code("E-2002", field=field, max_length=max_length)
    return text


def optional_text(value: str | None, field: str, max_length: int) -> str:
    """Like require_text but an empty value is allowed and returned as ""."""
    text = (value or "").strip()
    if len(text) > max_length:
        raise ValidationError.from_code("E-2002", field=field, max_length=max_length)
    return text


def normalize_transfer_code(code: str | None) -> str:
    """Uppercase and validate an out-of-band transfer code.

    Raises:
        ValidationError: Unless the code is 5-32 letters or digits.
    """
    normalized = (code or "").strip().upper()
    if not _TRANSFER_CODE_RE.match(normalized):
        raise ValidationError.from_code(
            "E-2001",
            min_length=TRANSFER_CODE_MIN_LENGTH,
            max_length=TRANSFER_CODE_MAX_LENGTH,
        )
    return normalized
