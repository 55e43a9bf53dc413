"""
app/loyalty/stats.py
--------------------
Read-only rollups for the loyalty dashboard.

Works purely on objects the caller already loaded (members + ledger),
no aggregate queries. Fine for a few hundred members.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

TOP_MEMBERS_LIMIT     = 10
RECENT_ACTIVITY_LIMIT = 15


@dataclass
class ActivityEntry:
    """One ledger row joined with its member's display name."""
    member_id:   int
    member_name: str
    action:      str
    punch_count: Optional[int]
    note:        Optional[str]
    created_at:  datetime
    when:        str          # "5 min ago"

    def to_dict(self) -> dict:
        return {
            'member_id':   self.member_id,
            'member_name': self.member_name,
            'action':      self.action,
            'punch_count': self.punch_count,
            'note':        self.note,
            'created_at':  self.created_at.isoformat(),
            'when':        self.when,
        }


@dataclass
class LoyaltyStats:
    total_members:          int = 0
    punches_this_month:     int = 0
    redemptions_this_month: int = 0
    top_members:            list = field(default_factory=list)
    recent_activity:        List[ActivityEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'total_members':          self.total_members,
            'punches_this_month':     self.punches_this_month,
            'redemptions_this_month': self.redemptions_this_month,
            'top_members':            [m.to_dict() for m in self.top_members],
            'recent_activity':        [a.to_dict() for a in self.recent_activity],
        }


def format_relative_time(when: datetime, now: Optional[datetime] = None) -> str:
    """'just now', '12 min ago', '3 hours ago', '2 days ago', else MM/DD/YYYY."""
    now = now or datetime.utcnow()
    seconds = (now - when).total_seconds()
    minutes = int(seconds // 60)
    hours   = int(seconds // 3600)
    days    = int(seconds // 86400)

    if minutes < 1:
        return 'just now'
    if minutes < 60:
        return f'{minutes} min ago'
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    if days < 7:
        return f"{days} day{'s' if days > 1 else ''} ago"
    return when.strftime('%m/%d/%Y')


def _in_month(when: datetime, now: datetime) -> bool:
    return when.year == now.year and when.month == now.month


def compute_loyalty_stats(members: Iterable, history: Iterable,
                          now: Optional[datetime] = None) -> LoyaltyStats:
    """
    Build the dashboard numbers.

    Args:
        members: LoyaltyMember objects (all of them)
        history: LoyaltyHistory objects, at least the current month and
                 the latest RECENT_ACTIVITY_LIMIT entries
        now:     reference time (defaults to utcnow)
    """
    now     = now or datetime.utcnow()
    members = list(members)
    history = list(history)
    names   = {m.id: m.name for m in members}

    month_entries = [h for h in history if _in_month(h.created_at, now)]
    punches_this_month = sum(
        h.punch_count or 0 for h in month_entries if h.action == 'punch'
    )
    redemptions_this_month = sum(1 for h in month_entries if h.action == 'redeem')

    top_members = sorted(members, key=lambda m: m.total_punches, reverse=True)[:TOP_MEMBERS_LIMIT]

    newest = sorted(history, key=lambda h: (h.created_at, h.id), reverse=True)[:RECENT_ACTIVITY_LIMIT]
    recent_activity = [
        ActivityEntry(
            member_id=h.member_id,
            member_name=names.get(h.member_id, 'Unknown'),
            action=h.action,
            punch_count=h.punch_count,
            note=h.note,
            created_at=h.created_at,
            when=format_relative_time(h.created_at, now),
        )
        for h in newest
    ]

    return LoyaltyStats(
        total_members=len(members),
        punches_this_month=punches_this_month,
        redemptions_this_month=redemptions_this_month,
        top_members=top_members,
        recent_activity=recent_activity,
    )
