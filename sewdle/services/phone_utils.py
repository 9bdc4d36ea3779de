from __future__ import annotations

import re

DELIVERY_CODE_RE = re.compile(r'c[oó]digo[:\s]*\s*([a-zA-Z0-9]+)', re.IGNORECASE)
NON_DIGITS_RE = re.compile(r'\D')


def extract_delivery_code(note: str | None) -> str | None:
    if not note:
        return None
    match = DELIVERY_CODE_RE.search(note)
    return match.group(1) if match else None


def normalize_colombian_phone(raw: str | None) -> str | None:
    """Return the phone as ``57`` + national number, or None when too short."""
    digits = NON_DIGITS_RE.sub('', raw or '')
    if len(digits) == 12 and digits.startswith('57'):
        return digits
    # mobile (3xx) and landline national numbers both get the country code
    if len(digits) == 10:
        return '57' + digits
    if len(digits) >= 10:
        return digits
    return None
