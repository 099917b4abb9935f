from __future__ import annotations

import re

E164_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
CHAT_ID_RE = re.compile(r"^[0-9][0-9-]{4,40}@(c|g)\.us$")
_SEPARATORS_RE = re.compile(r"[\s\-().]")


def normalize_recipient(raw: str, default_country_code: str = "972") -> str | None:
    """Return the canonical form of a recipient, or None when it is not addressable.

    Explicit chat ids (``...@c.us`` / ``...@g.us``) pass through untouched. Phone numbers
    lose separators; local numbers (leading 0 or no country code) get the default
    country code; the result is ``+<digits>``.
    """
    text = (raw or "").strip()
    if not text:
        return None
    if "@" in text:
        return text.lower() if CHAT_ID_RE.match(text.lower()) else None
    cleaned = _SEPARATORS_RE.sub("", text)
    if not re.fullmatch(r"\+?\d+", cleaned):
        return None
    explicit_international = cleaned.startswith("+")
    digits = cleaned.lstrip("+")
    if not explicit_international:
        if digits.startswith("0"):
            digits = default_country_code + digits[1:]
        elif not digits.startswith(default_country_code):
            digits = default_country_code + digits
    candidate = f"+{digits}"
    return candidate if E164_RE.match(candidate) else None


def split_recipients(raw: list[str], default_country_code: str = "972") -> tuple[list[str], list[str]]:
    """Partition into (valid normalized, rejected raw); duplicates collapse in order."""
    accepted: list[str] = []
    rejected: list[str] = []
    seen: set[str] = set()
    for item in raw:
        normalized = normalize_recipient(item, default_country_code)
        if normalized is None:
            rejected.append(item)
            continue
        if normalized in seen:
            continue
        seen.add(normalized)
        accepted.append(normalized)
    return accepted, rejected
