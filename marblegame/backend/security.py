"""Token helpers and sanitizers for untrusted client input."""

from __future__ import annotations

import secrets


TOKEN_BYTES = 24
SESSION_CODE_LENGTH = 8
MAX_NAME_LENGTH = 30
DEFAULT_NAME = "Player"
DEFAULT_LANGUAGE = "en"


def generate_token() -> str:
    """Generate a URL-safe participant token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def generate_session_code() -> str:
    """Generate a short shareable session code (8 lowercase hex characters)."""
    return secrets.token_hex(SESSION_CODE_LENGTH // 2)


def sanitize_display_name(raw_name: str | None) -> str:
    """Trim and cap a user-supplied name; empty input falls back to a default."""
    name = (raw_name or "").strip()[:MAX_NAME_LENGTH]
    return name or DEFAULT_NAME


def normalize_language_tag(raw_tag: str | None) -> str:
    """Reduce a locale hint such as ``de-AT`` to its two-letter language."""
    tag = (raw_tag or "").strip().lower()[:2]
    if len(tag) != 2 or not tag.isalpha():
        return DEFAULT_LANGUAGE
    return tag
