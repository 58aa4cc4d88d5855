"""
Indonesian WhatsApp number helpers.

Numbers are stored and sent in the gateway's canonical form: digits only,
``62`` country prefix, no ``+``.
"""

import re

_NON_DIGITS = re.compile(r"\D")


def format_whatsapp_number(phone: str) -> str:
    """``0812…`` / ``812…`` / ``+62 812…`` -> ``62812…``."""
    cleaned = _NON_DIGITS.sub("", phone or "")
    if not cleaned:
        return ""
    if cleaned.startswith("08"):
        return "628" + cleaned[2:]
    if cleaned.startswith("8") and len(cleaned) >= 9:
        return "62" + cleaned
    if not cleaned.startswith("62"):
        return "62" + cleaned
    return cleaned


def phone_alternatives(phone: str) -> list[str]:
    """Canonical form first, then the local ``0…`` form used by older rows."""
    canonical = format_whatsapp_number(phone)
    if not canonical:
        return []
    alternatives = [canonical, "0" + canonical[2:], "+" + canonical]
    return list(dict.fromkeys(alternatives))


def mask_phone(phone: str | None) -> str:
    """Keep only the last four digits, for log lines."""
    if not phone:
        return "<none>"
    digits = _NON_DIGITS.sub("", phone)
    if len(digits) <= 4:
        return "****"
    return "*" * (len(digits) - 4) + digits[-4:]
