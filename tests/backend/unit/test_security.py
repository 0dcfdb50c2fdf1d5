from marblegame.backend.security import (
    generate_session_code,
    generate_token,
    normalize_language_tag,
    sanitize_display_name,
)


def test_generate_token_returns_non_empty_random_value() -> None:
    first = generate_token()
    second = generate_token()

    assert first
    assert second
    assert first != second


def test_generate_session_code_is_eight_lowercase_hex_characters() -> None:
    code = generate_session_code()

    assert len(code) == 8
    assert all(char in "0123456789abcdef" for char in code)


def test_sanitize_display_name_trims_and_caps_length() -> None:
    assert sanitize_display_name("  Alice  ") == "Alice"
    assert sanitize_display_name("x" * 50) == "x" * 30


def test_sanitize_display_name_falls_back_to_default() -> None:
    assert sanitize_display_name(None) == "Player"
    assert sanitize_display_name("   ") == "Player"


def test_normalize_language_tag_keeps_two_letter_prefix() -> None:
    assert normalize_language_tag("de-AT") == "de"
    assert normalize_language_tag("FR") == "fr"
    assert normalize_language_tag("") == "en"
    assert normalize_language_tag("1x") == "en"
