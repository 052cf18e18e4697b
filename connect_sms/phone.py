"""
Phone number normalization for inbound and outbound SMS.

Numbers arriving without a leading "+" are assumed to be US numbers.
"""

import re

US_PREFIX = "+1"

_NON_DIGITS = re.compile(r"\D", re.ASCII)


def normalize_phone(raw: str) -> str:
    """
    Canonicalize a phone string into E.164-like form.

    "+44 20 7946 0958" is returned as-is; "(703) 555-1234" becomes
    "+17035551234". Empty input yields "+1".
    """
    if raw.startswith("+"):
        return raw
    return US_PREFIX + _NON_DIGITS.sub("", raw)


def local_phone(normalized: str) -> str:
    """Strip a leading +1, giving the form member and visitor phones are stored in."""
    if normalized.startswith(US_PREFIX):
        return normalized[len(US_PREFIX):]
    return normalized
