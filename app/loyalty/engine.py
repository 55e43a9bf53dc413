"""
app/loyalty/engine.py
---------------------
Pure-Python punch-card arithmetic.

A card holds 0–9 punches. Nine punches earn one free item.

No DB access happens here. The service layer locks the member row,
asks this module for the new numbers, then writes member + ledger
in a single transaction.

Two ways of crossing the threshold
──────────────────────────────────
add_punches()           caps at 9 and discards the excess. Reaching 9
                        is only *detected* (reward_ready); staff decide
                        when the reward is actually handed out.
add_with_carry_over()   fills the card, redeems it, and starts the next
                        card with the excess (itself capped at 9).
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional


MAX_PUNCHES = 9          # punches needed for one reward (and the card size)


@dataclass(frozen=True)
class PunchResult:
    """Outcome of a plain punch grant."""
    new_balance:  int
    actual_added: int

    @property
    def reward_ready(self) -> bool:
        return reward_ready(self.new_balance)


@dataclass(frozen=True)
class RemovalResult:
    """Outcome of a manual correction."""
    new_balance: int
    requested:   int      # what the ledger records (as a negative delta)
    removed:     int      # what actually came off the card


@dataclass(frozen=True)
class CarryOverResult:
    """Outcome of a grant that may roll over into a redemption."""
    new_balance:    int
    punches_added:  int   # credited to the lifetime total
    carried_over:   int   # balance of the fresh card after redemption
    redeemed:       bool


def reward_ready(balance: int) -> bool:
    """True once the card is full."""
    return balance >= MAX_PUNCHES


# ── Operations ────────────────────────────────────────────────────

def add_punches(current: int, delta: int) -> PunchResult:
    """
    Credit `delta` punches, capping the card at MAX_PUNCHES.
    The caller guarantees delta >= 1.
    """
    new_balance = min(current + delta, MAX_PUNCHES)
    return PunchResult(new_balance=new_balance, actual_added=new_balance - current)


def remove_punches(current: int, requested: int) -> RemovalResult:
    """Take punches off the card, flooring at zero. Over-removal is not an error."""
    new_balance = max(0, current - requested)
    return RemovalResult(
        new_balance=new_balance,
        requested=requested,
        removed=current - new_balance,
    )


def add_with_carry_over(current: int, delta: int) -> CarryOverResult:
    """
    Credit `delta` punches; if that overshoots a full card, redeem it and
    carry the excess onto the next card.

    Example: 7 punches + 5 → card filled (2), redeemed, 3 carried over.
    Exactly hitting 9 is *not* an overshoot; that card waits for staff.
    """
    if current + delta <= MAX_PUNCHES:
        plain = add_punches(current, delta)
        return CarryOverResult(
            new_balance=plain.new_balance,
            punches_added=plain.actual_added,
            carried_over=0,
            redeemed=False,
        )

    # One redemption per operation; anything past a second full card is dropped
    carried = min(current + delta - MAX_PUNCHES, MAX_PUNCHES)
    return CarryOverResult(
        new_balance=carried,
        punches_added=(MAX_PUNCHES - current) + carried,
        carried_over=carried,
        redeemed=True,
    )


# ── Ledger helpers ────────────────────────────────────────────────

def removal_note(current: int, requested: int, reason: Optional[str] = None) -> str:
    result = remove_punches(current, requested)
    note = f"Removed {requested} punch{'es' if requested != 1 else ''} ({current} → {result.new_balance})"
    if reason:
        note = f"{note}: {reason}"
    return note


def carry_over_note(carried: int) -> str:
    return f"Reward redeemed; {carried} punch{'es' if carried != 1 else ''} carried over"


def replay_balance(entries: Iterable) -> int:
    """
    Rebuild a card balance from its ledger, oldest entry first.

    Each entry needs `.action` and `.punch_count`:
        punch       +punch_count (not capped: an overshoot punch is
                    immediately followed by its redeem entry)
        adjustment  +punch_count (negative), floored at 0
        redeem      -MAX_PUNCHES, floored at 0
    """
    balance = 0
    for entry in entries:
        if entry.action == 'punch':
            balance += entry.punch_count or 0
        elif entry.action == 'adjustment':
            balance = max(0, balance + (entry.punch_count or 0))
        elif entry.action == 'redeem':
            balance = max(0, balance - MAX_PUNCHES)
    return balance
