"""
app/loyalty/phone.py
--------------------
Phone canonicalisation. Members are keyed by the 10-digit string;
anything typed by an operator passes through normalize_phone() first.
"""
import re

_NON_DIGITS = re.compile(r'\D')


def normalize_phone(text: str) -> str:
    """Strip every non-digit character. '' → ''."""
    return _NON_DIGITS.sub('', text or '')


def format_phone(text: str) -> str:
    """
    Render as (XXX) XXX-XXXX when the input holds exactly 10 digits,
    otherwise return the input unchanged.
    """
    digits = normalize_phone(text)
    if len(digits) == 10:
        return f'({digits[:3]}) {digits[3:6]}-{digits[6:]}'
    return text


def is_valid_phone(text: str) -> bool:
    return len(normalize_phone(text)) == 10
