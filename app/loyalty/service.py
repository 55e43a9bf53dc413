"""
app/loyalty/service.py
----------------------
Loyalty operations against the database.

Unit of work
────────────
Every mutating call runs as ONE transaction on the SQLAlchemy session:

    1. SELECT … FOR UPDATE the member row (blocks concurrent writers on PG)
    2. Compare the caller's view (current punches / totals) with the row;
       a mismatch means another operator got there first → STALE_WRITE
    3. Ask app.loyalty.engine for the new numbers
    4. UPDATE the member, INSERT the ledger row(s)
    5. COMMIT  (or ROLLBACK on any failure, so member and ledger never diverge)

The member row also carries a version counter (see models.py), so a
flush from a session holding an outdated copy fails instead of
overwriting.

All failures leave as ServiceError. Connection failures are retried
with exponential backoff; nothing else is retried.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload

from app.loyalty import engine
from app.loyalty.errors import (
    ServiceError, NOT_ENOUGH_PUNCHES, STALE_WRITE, VALIDATION_ERROR, log_service_error,
)
from app.loyalty.models import LoyaltyMember, LoyaltyHistory, HistoryAction
from app.loyalty.phone import normalize_phone

logger = logging.getLogger(__name__)

SEARCH_MIN_DIGITS = 3
SEARCH_LIMIT      = 10


def _escape_like(value: str) -> str:
    """Make % and _ match literally in a LIKE pattern (escape char: backslash)."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class ReconcileResult:
    """Cached balance vs the balance rebuilt from the ledger."""
    member_id:  int
    name:       str
    cached:     int
    replayed:   int
    entries:    int

    @property
    def consistent(self) -> bool:
        return self.cached == self.replayed


class LoyaltyService:
    """
    Punch-card operations for staff.

    Args:
        db_session:   SQLAlchemy session (defaults to Flask-SQLAlchemy's db.session)
        retries:      extra attempts after a connection failure
        retry_delay:  first backoff delay in seconds (doubles each retry)
    """

    def __init__(self, db_session=None, retries: int = 0, retry_delay: float = 0.0,
                 clock: Callable[[], datetime] = datetime.utcnow,
                 sleep: Callable[[float], None] = time.sleep):
        if db_session is None:
            from app import db
            db_session = db.session
        self.session     = db_session
        self.retries     = retries
        self.retry_delay = retry_delay
        self._clock      = clock
        self._sleep      = sleep

    @classmethod
    def from_config(cls, config) -> 'LoyaltyService':
        """Build a service using the app's LOYALTY_* settings."""
        return cls(
            retries=config.get('LOYALTY_DB_RETRIES', 0),
            retry_delay=config.get('LOYALTY_RETRY_DELAY', 0.0),
        )

    # ── Transaction plumbing ──────────────────────────────────────

    def _run(self, context: str, work: Callable, write: bool = True):
        """
        Execute `work()` as one transaction.
        Commits on success, rolls back on failure, retries connection errors.
        """
        attempt = 0
        while True:
            try:
                result = work()
                if write:
                    self.session.commit()
                return result
            except ServiceError as err:
                self.session.rollback()
                log_service_error(logger, context, err)
                raise
            except SQLAlchemyError as exc:
                self.session.rollback()
                err = ServiceError.from_db_error(exc)
                if err.is_retryable and attempt < self.retries:
                    delay = self.retry_delay * (2 ** attempt)
                    attempt += 1
                    logger.warning("[%s] %s, retrying in %.2fs (attempt %d/%d)",
                                   context, err.message, delay, attempt, self.retries)
                    self._sleep(delay)
                    continue
                log_service_error(logger, context, err)
                raise err from exc

    def _lock_member(self, member_id) -> LoyaltyMember:
        """SELECT … FOR UPDATE the member row, refreshing any cached copy."""
        member = (
            self.session.query(LoyaltyMember)
            .filter(LoyaltyMember.id == member_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if member is None:
            raise ServiceError.not_found(member_id)
        return member

    @staticmethod
    def _expect(member: LoyaltyMember, **expected) -> None:
        """Compare-and-swap guard: the caller's view must match the locked row."""
        for field, value in expected.items():
            actual = getattr(member, field)
            if actual != value:
                raise ServiceError(
                    'This member was changed by someone else. Reload and try again.',
                    STALE_WRITE,
                    {'field': field, 'expected': value, 'actual': actual},
                )

    @staticmethod
    def _require_positive(delta, label: str = 'delta') -> int:
        if isinstance(delta, bool) or not isinstance(delta, int) or delta < 1:
            raise ServiceError(f'{label} must be a whole number of at least 1.',
                               VALIDATION_ERROR, {'field': label, 'value': delta})
        return delta

    def _record(self, member_id, action: HistoryAction, punch_count: Optional[int],
                note: Optional[str], when: datetime) -> LoyaltyHistory:
        entry = LoyaltyHistory(
            member_id=member_id,
            action=action.value,
            punch_count=punch_count,
            note=note,
            created_at=when,
        )
        self.session.add(entry)
        return entry

    # ── Queries ───────────────────────────────────────────────────

    def list_all(self) -> List[LoyaltyMember]:
        """Every member, most recent visit first."""
        return self._run('list_all', lambda: (
            self.session.query(LoyaltyMember)
            .order_by(LoyaltyMember.last_visit.desc())
            .all()
        ), write=False)

    def get(self, member_id) -> LoyaltyMember:
        def work():
            member = self.session.get(LoyaltyMember, member_id)
            if member is None:
                raise ServiceError.not_found(member_id)
            return member
        return self._run('get', work, write=False)

    def recent_history(self, limit: Optional[int] = 50) -> List[LoyaltyHistory]:
        """Ledger entries, newest first. limit=None returns everything."""
        def work():
            q = (
                self.session.query(LoyaltyHistory)
                .options(joinedload(LoyaltyHistory.member))
                .order_by(LoyaltyHistory.created_at.desc(), LoyaltyHistory.id.desc())
            )
            if limit is not None:
                q = q.limit(limit)
            return q.all()
        return self._run('recent_history', work, write=False)

    def member_history(self, member_id, limit: Optional[int] = 50) -> List[LoyaltyHistory]:
        def work():
            q = (
                self.session.query(LoyaltyHistory)
                .filter(LoyaltyHistory.member_id == member_id)
                .order_by(LoyaltyHistory.created_at.desc(), LoyaltyHistory.id.desc())
            )
            if limit is not None:
                q = q.limit(limit)
            return q.all()
        return self._run('member_history', work, write=False)

    def search(self, query: str) -> List[LoyaltyMember]:
        """
        Phone-digit OR name substring match, case-insensitive, max 10 rows.
        Fewer than 3 digits in the query → [] without touching the database.
        """
        query  = (query or '').strip()
        digits = normalize_phone(query)
        if len(digits) < SEARCH_MIN_DIGITS:
            return []

        return self._run('search', lambda: (
            self.session.query(LoyaltyMember)
            .filter(or_(
                LoyaltyMember.phone.ilike(f'%{digits}%'),
                LoyaltyMember.name.ilike(f'%{_escape_like(query)}%', escape='\\'),
            ))
            .limit(SEARCH_LIMIT)
            .all()
        ), write=False)

    # ── Lifecycle ─────────────────────────────────────────────────

    def create(self, phone: str, name: str, email: Optional[str] = None) -> LoyaltyMember:
        """
        Sign up a customer on their first visit: the card starts with one punch,
        recorded in the ledger. Duplicate phone → UNIQUE_VIOLATION, nothing saved.
        """
        def work():
            now = self._clock()
            member = LoyaltyMember(
                phone=normalize_phone(phone),
                name=name.strip(),
                email=email or None,
                punches=1,
                total_punches=1,
                total_redeemed=0,
                created_at=now,
                last_visit=now,
            )
            self.session.add(member)
            self.session.flush()    # assigns member.id; raises on duplicate phone
            self._record(member.id, HistoryAction.punch, 1, None, now)
            return member

        member = self._run('create', work)
        logger.info("Loyalty member %s created (%s)", member.id, member.phone)
        return member

    def update_phone(self, member_id, phone: str) -> LoyaltyMember:
        """Phone must already be normalised by the caller."""
        def work():
            member = self._lock_member(member_id)
            member.phone = phone
            self.session.flush()
            return member
        return self._run('update_phone', work)

    def update_email(self, member_id, email: Optional[str]) -> LoyaltyMember:
        def work():
            member = self._lock_member(member_id)
            member.email = email or None
            self.session.flush()
            return member
        return self._run('update_email', work)

    def delete(self, member_id) -> None:
        """Irreversible. The member's ledger goes with it."""
        def work():
            member = self._lock_member(member_id)
            self.session.delete(member)
        self._run('delete', work)
        logger.info("Loyalty member %s deleted", member_id)

    # ── Punches ───────────────────────────────────────────────────

    def add_punches(self, member_id, current_punches: int, current_total: int,
                    delta: int) -> engine.PunchResult:
        """
        Grant punches, capped at a full card. Excess is discarded.
        Reaching 9 does not redeem; check result.reward_ready.
        """
        self._require_positive(delta)

        def work():
            member = self._lock_member(member_id)
            self._expect(member, punches=current_punches, total_punches=current_total)

            result = engine.add_punches(member.punches, delta)
            now = self._clock()
            member.punches       = result.new_balance
            member.total_punches = member.total_punches + result.actual_added
            member.last_visit    = now
            self._record(member.id, HistoryAction.punch, result.actual_added, None, now)
            return result

        result = self._run('add_punches', work)
        logger.info("Member %s +%d punch(es) → %d", member_id, result.actual_added, result.new_balance)
        return result

    def punch_with_carry_over(self, member_id, current_punches: int, current_total: int,
                              delta: int) -> engine.CarryOverResult:
        """
        Grant punches; on overshoot redeem the full card and carry the excess
        onto the next one. Writes a punch entry and a redeem entry together.
        """
        self._require_positive(delta)

        def work():
            member = self._lock_member(member_id)
            self._expect(member, punches=current_punches, total_punches=current_total)

            result = engine.add_with_carry_over(member.punches, delta)
            now = self._clock()
            member.punches       = result.new_balance
            member.total_punches = member.total_punches + result.punches_added
            member.last_visit    = now
            self._record(member.id, HistoryAction.punch, result.punches_added, None, now)
            if result.redeemed:
                member.total_redeemed = member.total_redeemed + 1
                self._record(member.id, HistoryAction.redeem, None,
                             engine.carry_over_note(result.carried_over), now)
            return result

        result = self._run('punch_with_carry_over', work)
        if result.redeemed:
            logger.info("Member %s reward redeemed on overshoot, %d carried over",
                        member_id, result.carried_over)
        return result

    def remove_punches(self, member_id, current_punches: int, delta: int,
                       reason: Optional[str] = None) -> engine.RemovalResult:
        """
        Manual correction. Floors at zero; lifetime totals are untouched.
        The ledger records the amount requested, as a negative delta.
        """
        self._require_positive(delta)

        def work():
            member = self._lock_member(member_id)
            self._expect(member, punches=current_punches)

            result = engine.remove_punches(member.punches, delta)
            note = engine.removal_note(member.punches, delta, reason)
            member.punches = result.new_balance
            self._record(member.id, HistoryAction.adjustment, -delta, note, self._clock())
            return result

        result = self._run('remove_punches', work)
        logger.info("Member %s -%d punch(es) → %d", member_id, delta, result.new_balance)
        return result

    def redeem(self, member_id, current_total_redeemed: int, note: Optional[str] = None,
               current_punches: Optional[int] = None, require_full: bool = False) -> None:
        """
        Hand out a reward: balance → 0, lifetime redeemed +1.

        current_punches is compared with the locked row like the other views.
        require_full refuses anything short of a full card (NOT_ENOUGH_PUNCHES);
        without it the redemption is unconditional.
        """
        def work():
            member = self._lock_member(member_id)
            expected = {}
            if current_punches is not None:
                expected['punches'] = current_punches
            expected['total_redeemed'] = current_total_redeemed
            self._expect(member, **expected)

            if require_full and not engine.reward_ready(member.punches):
                raise ServiceError(
                    f'{member.name} has {member.punches} of {engine.MAX_PUNCHES} punches; '
                    f'a full card is required to redeem.',
                    NOT_ENOUGH_PUNCHES,
                    {'punches': member.punches, 'required': engine.MAX_PUNCHES},
                )

            now = self._clock()
            member.punches        = 0
            member.total_redeemed = member.total_redeemed + 1
            member.last_visit     = now
            self._record(member.id, HistoryAction.redeem, None, note, now)

        self._run('redeem', work)
        logger.info("Member %s redeemed a reward", member_id)

    # ── Audit ─────────────────────────────────────────────────────

    def reconcile(self, member_id) -> ReconcileResult:
        """Rebuild the balance from the ledger and compare with the cached one."""
        def work():
            member = self.session.get(LoyaltyMember, member_id)
            if member is None:
                raise ServiceError.not_found(member_id)
            return self._reconcile_member(member)
        return self._run('reconcile', work, write=False)

    def reconcile_all(self) -> List[ReconcileResult]:
        def work():
            members = self.session.query(LoyaltyMember).order_by(LoyaltyMember.id).all()
            return [self._reconcile_member(m) for m in members]
        return self._run('reconcile_all', work, write=False)

    def _reconcile_member(self, member: LoyaltyMember) -> ReconcileResult:
        entries = (
            self.session.query(LoyaltyHistory)
            .filter(LoyaltyHistory.member_id == member.id)
            .order_by(LoyaltyHistory.created_at, LoyaltyHistory.id)
            .all()
        )
        return ReconcileResult(
            member_id=member.id,
            name=member.name,
            cached=member.punches,
            replayed=engine.replay_balance(entries),
            entries=len(entries),
        )
