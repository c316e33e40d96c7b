"""
Registered name validation tests.
"""

import pytest

from rosterbot.core.name_validator import (
    MAX_NAME_LENGTH,
    MIN_NAME_LENGTH,
    NameValidation,
    validate_registered_name,
)

class TestValidateRegisteredName:
    """Length bounds and the strict character-class rule."""

    def test_two_characters_is_valid(self):
        result = validate_registered_name("Al")
        assert result == NameValidation(True, value="Al")

    def test_single_character_is_too_short(self):
        result = validate_registered_name("A")
        assert not result.valid
        assert str(MIN_NAME_LENGTH) in result.error

    def test_sixteen_characters_is_valid(self):
        assert validate_registered_name("A" * MAX_NAME_LENGTH).valid

    def test_seventeen_characters_is_too_long(self):
        result = validate_registered_name("A" * 17)
        assert not result.valid
        assert "longer" in result.error

    def test_input_is_trimmed(self):
        result = validate_registered_name("  Aria  ")
        assert result.valid
        assert result.value == "Aria"

    def test_whitespace_only_is_too_short(self):
        assert not validate_registered_name("   ").valid

    @pytest.mark.parametrize("name", ["Ar ia", "Aria!", "Ari.a", "A-ria", "Aria\u0301", "Ar\u200bia"])
    def test_spaces_punctuation_and_marks_are_rejected(self, name):
        result = validate_registered_name(name)
        assert not result.valid
        assert "spaces" in result.error

    @pytest.mark.parametrize("name", ["\u00c1ria", "J\u00f6rmun", "\u0245ria", "Aria42", "\u540d\u524d"])
    def test_letters_and_digits_from_any_script_are_accepted(self, name):
        assert validate_registered_name(name).valid

    @pytest.mark.parametrize("value", [None, "", 42, ["Aria"]])
    def test_non_string_input_is_rejected(self, value):
        result = validate_registered_name(value)
        assert not result.valid
        assert result.error == "Invalid input type"
