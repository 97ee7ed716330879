"""
Ledger entries and the replay engine.

Every balance in the system is computed here: appending one transaction is a
one-entry replay seeded with the account's current due, rewriting a ledger
is a full replay from zero. Nothing in this module touches the database.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from khata.errors import MalformedEntry

AMOUNT_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")
# NUMERIC(14, 2) holds 12 integer digits
MAX_MAGNITUDE = Decimal("1e12")

AmountLike = Union[Decimal, int, float, str]


class EntryType(str, Enum):
    CREDIT = "credit"
    PAYMENT = "payment"

    @classmethod
    def parse(cls, value: Any, index: Optional[int] = None) -> "EntryType":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise MalformedEntry(f"type must be 'credit' or 'payment', got {value!r}", index)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value: AmountLike, index: Optional[int] = None) -> Decimal:
    """Convert caller input into a 2-place Decimal, rejecting non-finite or oversized values."""
    if isinstance(value, bool) or value is None:
        raise MalformedEntry(f"amount must be a number, got {value!r}", index)
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError):
        raise MalformedEntry(f"amount must be a number, got {value!r}", index) from None
    if not amount.is_finite():
        raise MalformedEntry(f"amount must be finite, got {value!r}", index)
    if abs(amount) >= MAX_MAGNITUDE:
        raise MalformedEntry(f"amount out of range: {value!r}", index)
    amount = amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)
    if abs(amount) >= MAX_MAGNITUDE:
        raise MalformedEntry(f"amount out of range: {value!r}", index)
    return amount


@dataclass(frozen=True)
class EntryInput:
    """One caller-supplied transaction, before it has a balance."""

    type: EntryType
    amount: Decimal
    note: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        type: Any,
        amount: AmountLike,
        note: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        index: Optional[int] = None,
    ) -> "EntryInput":
        if occurred_at is not None and not isinstance(occurred_at, datetime):
            raise MalformedEntry(f"occurred_at must be a datetime, got {occurred_at!r}", index)
        if note is not None and not isinstance(note, str):
            raise MalformedEntry(f"note must be text, got {note!r}", index)
        return cls(
            type=EntryType.parse(type, index),
            amount=to_money(amount, index),
            note=note,
            occurred_at=occurred_at,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], index: Optional[int] = None) -> "EntryInput":
        if "type" not in data or "amount" not in data:
            raise MalformedEntry("type and amount are required", index)
        return cls.build(
            data["type"],
            data["amount"],
            note=data.get("note"),
            occurred_at=data.get("occurred_at"),
            index=index,
        )


@dataclass(frozen=True)
class LedgerEntry:
    type: EntryType
    amount: Decimal
    note: Optional[str]
    occurred_at: datetime
    balance_after: Decimal

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "amount": str(self.amount),
            "note": self.note,
            "occurred_at": self.occurred_at.isoformat(),
            "balance_after": str(self.balance_after),
        }


def signed_amount(entry_type: EntryType, amount: Decimal) -> Decimal:
    magnitude = abs(amount)
    return magnitude if entry_type is EntryType.CREDIT else -magnitude


def make_entry(
    entry_type: EntryType,
    amount: Decimal,
    note: Optional[str],
    occurred_at: datetime,
    prior_balance: Decimal,
) -> tuple[LedgerEntry, Decimal]:
    signed = signed_amount(entry_type, amount)
    new_balance = prior_balance + signed
    entry = LedgerEntry(
        type=entry_type,
        amount=signed,
        note=note,
        occurred_at=occurred_at,
        balance_after=new_balance,
    )
    return entry, new_balance


def coerce_inputs(entries: Iterable[Union[EntryInput, Mapping[str, Any]]]) -> list[EntryInput]:
    """Validate a whole batch up front so a bad entry never leaves half a ledger behind."""
    coerced: list[EntryInput] = []
    for index, raw in enumerate(entries):
        if isinstance(raw, EntryInput):
            coerced.append(raw)
        elif isinstance(raw, Mapping):
            coerced.append(EntryInput.from_mapping(raw, index))
        else:
            raise MalformedEntry(f"expected a mapping, got {type(raw).__name__}", index)
    return coerced


def replay(
    entries: Iterable[Union[EntryInput, Mapping[str, Any]]],
    opening_balance: Decimal = ZERO,
    now: Optional[datetime] = None,
) -> tuple[tuple[LedgerEntry, ...], Decimal]:
    """Apply entries in the given order and return them with running balances.

    The order is taken as authoritative; entries are never re-sorted by
    timestamp. Entries without ``occurred_at`` are stamped with ``now``
    (one timestamp for the whole batch).
    """
    inputs = coerce_inputs(entries)
    stamp = now or _now()
    balance = opening_balance
    produced: list[LedgerEntry] = []
    for index, item in enumerate(inputs):
        entry, balance = make_entry(
            item.type,
            item.amount,
            item.note,
            item.occurred_at or stamp,
            balance,
        )
        if abs(balance) >= MAX_MAGNITUDE:
            raise MalformedEntry(f"running balance out of range: {balance}", index)
        produced.append(entry)
    return tuple(produced), balance
