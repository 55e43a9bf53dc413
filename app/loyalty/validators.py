"""
app/loyalty/validators.py
-------------------------
Pure-Python validation for loyalty request data.
Each validate_* returns a dict of field -> error_message.
An empty dict means all fields are valid.
"""
import re

from app.loyalty.phone import normalize_phone, is_valid_phone

_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Ledger notes are String(255); removal notes add a "Removed N punches (a → b): " prefix
NOTE_MAX_LENGTH = 200


def validate_member_form(data: dict) -> dict:
    """Validate raw JSON for a new member."""
    errors = {}

    # ── name ─────────────────────────────────────────────────────
    name = (data.get('name') or '').strip()
    if not name:
        errors['name'] = 'Name is required.'
    elif len(name) > 120:
        errors['name'] = 'Name must be 120 characters or fewer.'

    # ── phone ────────────────────────────────────────────────────
    phone_error = _phone_error(data.get('phone'))
    if phone_error:
        errors['phone'] = phone_error

    # ── email (optional) ─────────────────────────────────────────
    email_error = _email_error(data.get('email'))
    if email_error:
        errors['email'] = email_error

    return errors


def parse_member_form(data: dict) -> dict:
    """
    Convert validated raw values to what the service expects.
    Call only after validate_member_form returns no errors.
    """
    email = (data.get('email') or '').strip()
    return {
        'phone': normalize_phone(data.get('phone') or ''),
        'name':  data.get('name').strip(),
        'email': email or None,
    }


def validate_phone(raw) -> dict:
    error = _phone_error(raw)
    return {'phone': error} if error else {}


def validate_email(raw) -> dict:
    error = _email_error(raw)
    return {'email': error} if error else {}


def validate_count(data: dict, field: str, minimum: int = 0, maximum: int = None) -> dict:
    """
    A whole number in [minimum, maximum]. JSON booleans are rejected
    (True would otherwise pass as 1).
    """
    value = data.get(field)
    if value is None or isinstance(value, bool):
        return {field: f'{field} is required.'}
    try:
        number = int(value)
    except (TypeError, ValueError):
        return {field: f'{field} must be a whole number.'}
    if str(number) != str(value).strip():
        return {field: f'{field} must be a whole number.'}
    if number < minimum:
        return {field: f'{field} must be at least {minimum}.'}
    if maximum is not None and number > maximum:
        return {field: f'{field} must be {maximum} or fewer.'}
    return {}


def validate_note(data: dict, field: str, maximum: int = NOTE_MAX_LENGTH) -> dict:
    """Optional free text stored on a ledger row."""
    value = data.get(field)
    if value is None:
        return {}
    if not isinstance(value, str):
        return {field: f'{field} must be text.'}
    if len(value.strip()) > maximum:
        return {field: f'{field} must be {maximum} characters or fewer.'}
    return {}


# ── Field helpers ─────────────────────────────────────────────────

def _phone_error(raw):
    if not raw or not str(raw).strip():
        return 'Phone is required.'
    if not is_valid_phone(str(raw)):
        return 'Phone must have exactly 10 digits.'
    return None


def _email_error(raw):
    email = (raw or '').strip()
    if not email:
        return None
    if len(email) > 120:
        return 'Email must be 120 characters or fewer.'
    if not _EMAIL_RE.match(email):
        return 'Email address is not valid.'
    return None
