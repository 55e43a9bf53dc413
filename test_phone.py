from hypothesis import given, strategies as st

from app.loyalty.phone import normalize_phone, format_phone, is_valid_phone


def test_normalize_strips_formatting():
    assert normalize_phone('(817) 401-6310') == '8174016310'
    assert normalize_phone('817-401-6310') == '8174016310'
    assert normalize_phone('817.401.6310') == '8174016310'
    assert normalize_phone('8174016310') == '8174016310'


def test_normalize_empty():
    assert normalize_phone('') == ''
    assert normalize_phone(None) == ''


def test_format_ten_digits():
    assert format_phone('8174016310') == '(817) 401-6310'
    assert format_phone('817.401.6310') == '(817) 401-6310'


def test_format_leaves_other_lengths_alone():
    assert format_phone('123') == '123'
    assert format_phone('12345678901') == '12345678901'
    assert format_phone('') == ''


def test_format_already_formatted():
    assert format_phone('(817) 401-6310') == '(817) 401-6310'


def test_is_valid_phone():
    assert is_valid_phone('(817) 401-6310')
    assert not is_valid_phone('401-6310')
    assert not is_valid_phone('1-817-401-6310')


@given(st.text())
def test_normalize_is_idempotent(text):
    once = normalize_phone(text)
    assert normalize_phone(once) == once


@given(st.text(alphabet='0123456789', min_size=10, max_size=10))
def test_format_round_trips_through_normalize(digits):
    assert normalize_phone(format_phone(digits)) == digits
