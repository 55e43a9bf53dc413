import enum
from datetime import datetime

from app import db
from app.loyalty.engine import MAX_PUNCHES
from app.loyalty.phone import format_phone


class HistoryAction(str, enum.Enum):
    punch      = "punch"
    redeem     = "redeem"
    adjustment = "adjustment"


class LoyaltyMember(db.Model):
    """One customer's punch card. The cached current state; the ledger is the audit trail."""
    __tablename__ = 'loyalty_members'

    id             = db.Column(db.Integer, primary_key=True)
    phone          = db.Column(db.String(10), unique=True, nullable=False, index=True)   # 10 digits, normalised
    name           = db.Column(db.String(120), nullable=False, index=True)
    email          = db.Column(db.String(120), nullable=True)
    punches        = db.Column(db.Integer, nullable=False, default=0)
    total_punches  = db.Column(db.Integer, nullable=False, default=0)
    total_redeemed = db.Column(db.Integer, nullable=False, default=0)
    created_at     = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    last_visit     = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    # Bumped on every UPDATE; a flush against an outdated version raises StaleDataError
    version        = db.Column(db.Integer, nullable=False, default=1)

    # Deleting a member deletes its ledger (ORM cascade + ON DELETE CASCADE in PG)
    history = db.relationship(
        'LoyaltyHistory',
        back_populates='member',
        cascade='all, delete-orphan',
        order_by='LoyaltyHistory.id',
        lazy='select',
    )

    __mapper_args__ = {'version_id_col': version}

    __table_args__ = (
        db.CheckConstraint(f'punches >= 0 AND punches <= {MAX_PUNCHES}', name='check_punches_range'),
        db.CheckConstraint('total_punches >= 0', name='check_total_punches_non_negative'),
        db.CheckConstraint('total_redeemed >= 0', name='check_total_redeemed_non_negative'),
    )

    @property
    def display_phone(self) -> str:
        return format_phone(self.phone)

    def to_dict(self) -> dict:
        return {
            'id':             self.id,
            'phone':          self.phone,
            'display_phone':  self.display_phone,
            'name':           self.name,
            'email':          self.email,
            'punches':        self.punches,
            'total_punches':  self.total_punches,
            'total_redeemed': self.total_redeemed,
            'created_at':     self.created_at.isoformat() if self.created_at else None,
            'last_visit':     self.last_visit.isoformat() if self.last_visit else None,
        }

    def __repr__(self):
        return f"<LoyaltyMember {self.name!r} ({self.phone}) {self.punches}/{MAX_PUNCHES}>"


class LoyaltyHistory(db.Model):
    """
    Append-only ledger entry.
    punch_count: +n for punches, -n for adjustments, NULL for redemptions.
    """
    __tablename__ = 'loyalty_history'

    id          = db.Column(db.Integer, primary_key=True)
    member_id   = db.Column(
        db.Integer,
        db.ForeignKey('loyalty_members.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    action      = db.Column(db.String(20), nullable=False)
    punch_count = db.Column(db.Integer, nullable=True)
    note        = db.Column(db.String(255), nullable=True)
    created_at  = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    member = db.relationship('LoyaltyMember', back_populates='history')

    __table_args__ = (
        db.CheckConstraint(
            "action IN ('punch', 'redeem', 'adjustment')", name='check_history_action'
        ),
    )

    def to_dict(self) -> dict:
        return {
            'id':          self.id,
            'member_id':   self.member_id,
            'member_name': self.member.name if self.member else None,
            'action':      self.action,
            'punch_count': self.punch_count,
            'note':        self.note,
            'created_at':  self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<LoyaltyHistory M:{self.member_id} {self.action} {self.punch_count}>"
