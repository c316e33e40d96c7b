"""
Registered name validation.

A registered name is the in-game character name a member submits. It is
trimmed, must be 2 to 16 characters long, and may not contain control,
separator (including spaces), combining mark or punctuation characters.
"""

import unicodedata
from dataclasses import dataclass
from typing import Any, Optional

MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 16

# Unicode general category prefixes: Other, Separator, Mark, Punctuation
_FORBIDDEN_CATEGORIES = frozenset("CZMP")

@dataclass(frozen=True)
class NameValidation:
    """Outcome of validating a candidate name."""

    valid: bool
    value: Optional[str] = None
    error: Optional[str] = None

def _has_forbidden_character(name: str) -> bool:
    return any(unicodedata.category(ch)[0] in _FORBIDDEN_CATEGORIES for ch in name)

def validate_registered_name(name: Any) -> NameValidation:
    """
    Validate and normalize a candidate registered name.

    Args:
        name: Raw user input

    Returns:
        NameValidation with the trimmed value when valid, or a human-readable
        error when rejected
    """
    if not name or not isinstance(name, str):
        return NameValidation(False, error="Invalid input type")

    trimmed = name.strip()

    if len(trimmed) < MIN_NAME_LENGTH:
        return NameValidation(
            False, error=f"Name must be at least {MIN_NAME_LENGTH} characters long"
        )

    if len(trimmed) > MAX_NAME_LENGTH:
        return NameValidation(
            False, error=f"Name cannot be longer than {MAX_NAME_LENGTH} characters"
        )

    if _has_forbidden_character(trimmed):
        return NameValidation(
            False,
            error="Name cannot contain spaces, punctuation marks, or certain special characters.",
        )

    return NameValidation(True, value=trimmed)
