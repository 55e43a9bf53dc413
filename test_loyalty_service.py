from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app import create_app, db
from app.loyalty import errors
from app.loyalty.errors import ServiceError
from app.loyalty.models import LoyaltyMember, LoyaltyHistory
from app.loyalty.service import LoyaltyService

NOW = datetime(2026, 3, 10, 12, 0, 0)

# ── Fixtures ──────────────────────────────────────────────────────

@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def service(app):
    return LoyaltyService(clock=lambda: NOW)


@pytest.fixture
def member(service):
    return service.create('8175551234', 'Jane', None)


def _history(member_id):
    return (
        LoyaltyHistory.query
        .filter_by(member_id=member_id)
        .order_by(LoyaltyHistory.id)
        .all()
    )


def _set_card(member_id, punches, total_punches=None):
    m = db.session.get(LoyaltyMember, member_id)
    m.punches = punches
    if total_punches is not None:
        m.total_punches = total_punches
    db.session.commit()
    return m


# ── Lifecycle ─────────────────────────────────────────────────────

def test_create_starts_with_one_punch(member):
    assert member.phone == '8175551234'
    assert member.punches == 1
    assert member.total_punches == 1
    assert member.total_redeemed == 0
    assert member.last_visit == NOW

    history = _history(member.id)
    assert len(history) == 1
    assert history[0].action == 'punch'
    assert history[0].punch_count == 1


def test_create_normalises_phone(service):
    m = service.create('(817) 555-9999', '  Sam  ', 'sam@example.com')
    assert m.phone == '8175559999'
    assert m.name == 'Sam'


def test_duplicate_phone_is_rejected_without_partial_writes(service, member):
    with pytest.raises(ServiceError) as exc:
        service.create('8175551234', 'Jane', None)

    assert exc.value.code == errors.UNIQUE_VIOLATION
    assert exc.value.details['db_message']
    assert LoyaltyMember.query.count() == 1
    assert LoyaltyHistory.query.count() == 1


def test_update_phone_and_email(service, member):
    service.update_phone(member.id, '8170000000')
    service.update_email(member.id, 'jane@example.com')

    m = db.session.get(LoyaltyMember, member.id)
    assert m.phone == '8170000000'
    assert m.email == 'jane@example.com'

    service.update_email(member.id, '')
    assert db.session.get(LoyaltyMember, member.id).email is None


def test_update_phone_to_existing_number_conflicts(service, member):
    other = service.create('8171112222', 'Other', None)
    with pytest.raises(ServiceError) as exc:
        service.update_phone(other.id, '8175551234')
    assert exc.value.code == errors.UNIQUE_VIOLATION


def test_delete_removes_member_and_history(service, member):
    service.add_punches(member.id, 1, 1, 2)
    member_id = member.id

    service.delete(member_id)

    assert db.session.get(LoyaltyMember, member_id) is None
    assert LoyaltyHistory.query.filter_by(member_id=member_id).count() == 0


def test_operations_on_deleted_member_are_not_found(service, member):
    member_id = member.id
    service.delete(member_id)

    for call in (
        lambda: service.get(member_id),
        lambda: service.add_punches(member_id, 1, 1, 1),
        lambda: service.remove_punches(member_id, 1, 1),
        lambda: service.redeem(member_id, 0),
        lambda: service.update_email(member_id, None),
        lambda: service.delete(member_id),
    ):
        with pytest.raises(ServiceError) as exc:
            call()
        assert exc.value.code == errors.NOT_FOUND


# ── Punches ───────────────────────────────────────────────────────

def test_add_punches_caps_and_records_actual_amount(service, member):
    _set_card(member.id, 7, 20)

    result = service.add_punches(member.id, 7, 20, 5)

    assert result.new_balance == 9
    assert result.actual_added == 2
    assert result.reward_ready
    m = db.session.get(LoyaltyMember, member.id)
    assert m.punches == 9
    assert m.total_punches == 22
    assert m.total_redeemed == 0     # reaching 9 does not redeem by itself
    assert _history(member.id)[-1].punch_count == 2


def test_full_card_then_redeem(service, member):
    _set_card(member.id, 7, 20)
    service.add_punches(member.id, 7, 20, 5)

    service.redeem(member.id, 0)

    m = db.session.get(LoyaltyMember, member.id)
    assert m.punches == 0
    assert m.total_redeemed == 1
    last = _history(member.id)[-1]
    assert last.action == 'redeem'
    assert last.punch_count is None


def test_remove_punches_floors_and_logs_requested_amount(service, member):
    _set_card(member.id, 3, 3)

    result = service.remove_punches(member.id, 3, 10, 'wrong customer')

    assert result.new_balance == 0
    m = db.session.get(LoyaltyMember, member.id)
    assert m.punches == 0
    assert m.total_punches == 3     # lifetime totals untouched
    last = _history(member.id)[-1]
    assert last.action == 'adjustment'
    assert last.punch_count == -10
    assert 'wrong customer' in last.note


def test_carry_over_writes_punch_and_redeem_together(service, member):
    _set_card(member.id, 7, 20)
    before = len(_history(member.id))

    result = service.punch_with_carry_over(member.id, 7, 20, 5)

    assert result.redeemed
    assert result.new_balance == 3
    m = db.session.get(LoyaltyMember, member.id)
    assert m.punches == 3
    assert m.total_punches == 25
    assert m.total_redeemed == 1

    added = _history(member.id)[before:]
    assert [h.action for h in added] == ['punch', 'redeem']
    assert added[0].punch_count == 5
    assert added[1].punch_count is None
    assert '3 punches carried over' in added[1].note


def test_carry_over_without_overshoot_is_a_plain_add(service, member):
    result = service.punch_with_carry_over(member.id, 1, 1, 3)
    assert not result.redeemed
    assert db.session.get(LoyaltyMember, member.id).punches == 4
    assert len(_history(member.id)) == 2


@pytest.mark.parametrize('delta', [0, -1, True, 1.5])
def test_non_positive_or_fractional_delta_is_rejected(service, member, delta):
    with pytest.raises(ServiceError) as exc:
        service.add_punches(member.id, 1, 1, delta)
    assert exc.value.code == errors.VALIDATION_ERROR
    assert len(_history(member.id)) == 1


def test_each_operation_appends_exactly_one_entry(service, member):
    counts = [len(_history(member.id))]
    service.add_punches(member.id, 1, 1, 2)
    counts.append(len(_history(member.id)))
    service.remove_punches(member.id, 3, 1)
    counts.append(len(_history(member.id)))
    service.redeem(member.id, 0)
    counts.append(len(_history(member.id)))
    assert counts == [1, 2, 3, 4]


# ── Optimistic concurrency ────────────────────────────────────────

def test_stale_punch_count_is_rejected(service, member):
    service.add_punches(member.id, 1, 1, 2)       # another operator

    with pytest.raises(ServiceError) as exc:
        service.add_punches(member.id, 1, 1, 2)   # still sees 1 punch

    assert exc.value.code == errors.STALE_WRITE
    assert exc.value.details == {'field': 'punches', 'expected': 1, 'actual': 3}
    m = db.session.get(LoyaltyMember, member.id)
    assert m.punches == 3
    assert len(_history(member.id)) == 2


def test_stale_redeem_is_rejected(service, member):
    service.redeem(member.id, 0)
    with pytest.raises(ServiceError) as exc:
        service.redeem(member.id, 0)
    assert exc.value.code == errors.STALE_WRITE
    assert db.session.get(LoyaltyMember, member.id).total_redeemed == 1


def test_redeem_compares_punches_on_the_locked_row(service, member):
    _set_card(member.id, 9)
    service.remove_punches(member.id, 9, 9)       # another operator empties the card

    with pytest.raises(ServiceError) as exc:
        service.redeem(member.id, 0, current_punches=9, require_full=True)

    assert exc.value.code == errors.STALE_WRITE
    assert exc.value.details == {'field': 'punches', 'expected': 9, 'actual': 0}
    m = db.session.get(LoyaltyMember, member.id)
    assert m.total_redeemed == 0
    assert [h.action for h in _history(member.id)] == ['punch', 'adjustment']


def test_redeem_can_require_a_full_card(service, member):
    _set_card(member.id, 8)
    with pytest.raises(ServiceError) as exc:
        service.redeem(member.id, 0, require_full=True)
    assert exc.value.code == errors.NOT_ENOUGH_PUNCHES
    assert exc.value.details == {'punches': 8, 'required': 9}
    assert db.session.get(LoyaltyMember, member.id).total_redeemed == 0

    _set_card(member.id, 9)
    service.redeem(member.id, 0, current_punches=9, require_full=True)
    m = db.session.get(LoyaltyMember, member.id)
    assert (m.punches, m.total_redeemed) == (0, 1)


def test_version_increments_on_update(service, member):
    v1 = db.session.get(LoyaltyMember, member.id).version
    service.add_punches(member.id, 1, 1, 1)
    assert db.session.get(LoyaltyMember, member.id).version == v1 + 1


# ── Lookup ────────────────────────────────────────────────────────

def test_search_by_phone_fragment_and_name(service, member):
    service.create('2145550000', 'Johnny 999', None)

    assert [m.name for m in service.search('555-12')] == ['Jane']
    assert {m.name for m in service.search('555')} == {'Jane', 'Johnny 999'}
    assert [m.name for m in service.search('johnny 999')] == ['Johnny 999']


def test_search_treats_like_wildcards_literally(service):
    service.create('2140000001', 'Bob 555', None)
    service.create('2140000002', 'Bob_555', None)
    service.create('2140000003', '100% Bob', None)

    assert [m.name for m in service.search('bob_555')] == ['Bob_555']
    assert [m.name for m in service.search('100% bob')] == ['100% Bob']
    assert service.search('100%%') == []


def test_search_is_capped_at_ten(service):
    for i in range(12):
        service.create(f'81755500{i:02d}', f'Member {i}', None)
    assert len(service.search('8175550')) == 10


def test_short_search_does_not_query_the_store():
    session = MagicMock()
    service = LoyaltyService(db_session=session)

    assert service.search('81') == []
    assert service.search('ab') == []
    assert service.search('') == []
    session.query.assert_not_called()


def test_list_all_orders_by_last_visit(app):
    times = iter([datetime(2026, 1, 1), datetime(2026, 2, 1)])
    service = LoyaltyService(clock=lambda: next(times))
    service.create('8170000001', 'Older', None)
    service.create('8170000002', 'Newer', None)

    assert [m.name for m in service.list_all()] == ['Newer', 'Older']


def test_recent_history_newest_first_with_limit(service, member):
    service.add_punches(member.id, 1, 1, 1)
    service.add_punches(member.id, 2, 2, 1)

    entries = service.recent_history(2)
    assert len(entries) == 2
    assert entries[0].id > entries[1].id
    assert entries[0].to_dict()['member_name'] == 'Jane'
    assert len(service.recent_history(limit=None)) == 3


# ── Transient failures ────────────────────────────────────────────

def _flaky_session(*outcomes):
    session = MagicMock()
    chain = session.query.return_value.filter.return_value.limit.return_value
    chain.all.side_effect = list(outcomes)
    return session


def test_connection_errors_are_retried_with_backoff():
    dropped = OperationalError('SELECT', {}, Exception('server closed the connection'))
    session = _flaky_session(dropped, dropped, ['ok'])
    sleep = MagicMock()
    service = LoyaltyService(db_session=session, retries=2, retry_delay=0.5, sleep=sleep)

    assert service.search('817') == ['ok']
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]
    assert session.rollback.call_count == 2


def test_connection_error_surfaces_after_retries():
    dropped = OperationalError('SELECT', {}, Exception('server closed the connection'))
    session = _flaky_session(dropped, dropped)
    service = LoyaltyService(db_session=session, retries=1, retry_delay=0, sleep=MagicMock())

    with pytest.raises(ServiceError) as exc:
        service.search('817')
    assert exc.value.code == errors.CONNECTION_ERROR
    assert exc.value.is_retryable


# ── Reconciliation ────────────────────────────────────────────────

def test_ledger_reconciles_after_mixed_operations(service, member):
    service.add_punches(member.id, 1, 1, 6)
    service.remove_punches(member.id, 7, 2)
    service.punch_with_carry_over(member.id, 5, 7, 8)
    service.add_punches(member.id, 4, 15, 20)
    service.redeem(member.id, 1)

    result = service.reconcile(member.id)
    assert result.consistent
    assert result.cached == result.replayed == 0


def test_reconcile_flags_a_tampered_balance(service, member):
    _set_card(member.id, 6)

    results = service.reconcile_all()
    assert len(results) == 1
    assert not results[0].consistent
    assert results[0].cached == 6
    assert results[0].replayed == 1
