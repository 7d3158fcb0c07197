"""Phone number parsing and matching helpers.

Accounts store a phone as a ``(phone, country_code)`` pair, while users type
identifiers in whatever shape they like: ``+11234567890``, ``11234567890``
or the bare local number. These helpers decide when such an input refers
to a stored pair.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_COUNTRY_CODE_RE = re.compile(r"^(\+\d{1,4})(.+)$")
_DIGITS_RE = re.compile(r"^\d+$")


@dataclass(frozen=True)
class ParsedPhone:
    country_code: str
    phone_number: str
    full_phone: str


def parse_phone_number(phone_input: str) -> ParsedPhone:
    """Split ``+<1-4 digit country code><rest>``.

    The country-code group is greedy, so ``+11234567890`` splits as
    ``+1123`` / ``4567890``; callers that need the exact stored split go
    through :func:`phone_match_keys` instead.
    """
    sanitized = phone_input.strip()
    if sanitized.startswith("+"):
        match = _COUNTRY_CODE_RE.match(sanitized)
        if match:
            return ParsedPhone(match.group(1), match.group(2), sanitized)
    return ParsedPhone("", sanitized, sanitized)


def search_formats(phone_input: str) -> list[str]:
    """Literal phone values worth trying against the stored ``phone`` column.

    The input as typed, without a leading ``+``, and the local part after a
    parsed country code; duplicates removed, order kept.
    """
    sanitized = phone_input.strip()
    formats = [sanitized]
    if sanitized.startswith("+"):
        formats.append(sanitized[1:])
    parsed = parse_phone_number(sanitized)
    if parsed.country_code and parsed.phone_number:
        formats.append(parsed.phone_number)
    return list(dict.fromkeys(formats))


def looks_like_phone(identifier: str) -> bool:
    """True for ``+``-prefixed or all-digit identifiers."""
    value = identifier.strip()
    return value.startswith("+") or bool(_DIGITS_RE.match(value))


def phone_match_keys(phone: str, country_code: str) -> frozenset[str]:
    """Every input string that :func:`is_phone_match` accepts for a stored pair.

    Storage adapters index these so the equivalence fallback is a keyed
    lookup rather than a scan over all accounts.
    """
    stored = phone.strip()
    code = (country_code or "").strip()
    full = f"{code}{stored}"
    keys = {
        stored,
        full,
        full.lstrip("+"),
        "+" + full.lstrip("+"),
        "+" + stored.lstrip("+"),
    }
    keys.discard("")
    keys.discard("+")
    return frozenset(keys)


def is_phone_match(input_phone: str, stored_phone: str, stored_country_code: str) -> bool:
    """Whether ``input_phone`` denotes the stored phone/country-code pair.

    Accepts the literal stored number, the ``country_code + phone``
    concatenation, and either of those with or without a leading ``+``.
    """
    value = input_phone.strip()
    if not value:
        return False
    if value in phone_match_keys(stored_phone, stored_country_code):
        return True
    parsed = parse_phone_number(value)
    return (
        bool(parsed.country_code)
        and parsed.country_code == (stored_country_code or "").strip()
        and parsed.phone_number == stored_phone.strip()
    )


def normalize_for_storage(phone_input: str, country_code_input: str) -> tuple[str, str]:
    """Return ``(phone, country_code)`` the way registration stores them.

    The country code is removed from the front of the phone if present, the
    phone loses any leading ``+``, and the country code gains one.
    """
    phone = phone_input.strip()
    country_code = (country_code_input or "").strip()

    if country_code and phone.startswith(country_code):
        phone = phone[len(country_code) :]
    if phone.startswith("+"):
        phone = phone[1:]
    if country_code and not country_code.startswith("+"):
        country_code = "+" + country_code
    return phone, country_code


def format_for_display(phone: str, country_code: str) -> str:
    normalized_phone, normalized_code = normalize_for_storage(phone, country_code)
    return f"{normalized_code}{normalized_phone}"


__all__: list[str] = [
    "ParsedPhone",
    "parse_phone_number",
    "search_formats",
    "looks_like_phone",
    "phone_match_keys",
    "is_phone_match",
    "normalize_for_storage",
    "format_for_display",
]
