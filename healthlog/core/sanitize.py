from __future__ import annotations

import re

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_HTML_TAG = re.compile(r"<[^>]+>")

MAX_TEXT_LENGTH = 5000
MAX_FOOD_LENGTH = 200


class InputValidationError(ValueError):
    pass


def sanitize_string(raw: object) -> str:
    if not isinstance(raw, str):
        return ""
    cleaned = _SCRIPT_BLOCK.sub("", raw.strip())
    cleaned = _HTML_TAG.sub("", cleaned)
    return cleaned.strip()[:MAX_TEXT_LENGTH]


def sanitize_food(raw: object) -> str:
    return sanitize_string(raw)[:MAX_FOOD_LENGTH]


def sanitize_message(raw: object, *, max_length: int = 2000) -> str:
    sanitized = sanitize_string(raw)
    if len(sanitized) < 1 or len(sanitized) > max_length:
        raise InputValidationError(f"Message must be 1-{max_length} characters")
    return sanitized
