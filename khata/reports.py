from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from khata.ledger import ZERO, EntryType, LedgerEntry


@dataclass(frozen=True)
class MonthlyTotal:
    month: str
    credit: Decimal
    paid: Decimal

    @property
    def net(self) -> Decimal:
        return self.credit - self.paid

    def to_dict(self) -> dict:
        return {
            "month": self.month,
            "credit": str(self.credit),
            "paid": str(self.paid),
            "net": str(self.net),
        }


def monthly_totals(entries: Iterable[LedgerEntry], year: Optional[int] = None) -> list[MonthlyTotal]:
    """Credit and payment totals per calendar month of ``occurred_at``, oldest first.

    Payments are signed negative in the ledger and reported here as positive
    amounts paid.
    """
    credits: dict[str, Decimal] = {}
    paid: dict[str, Decimal] = {}
    for entry in entries:
        if year is not None and entry.occurred_at.year != year:
            continue
        month = entry.occurred_at.strftime("%Y-%m")
        credits.setdefault(month, ZERO)
        paid.setdefault(month, ZERO)
        if entry.type is EntryType.CREDIT:
            credits[month] += entry.amount
        else:
            paid[month] += abs(entry.amount)

    return [
        MonthlyTotal(month=month, credit=credits[month], paid=paid[month])
        for month in sorted(credits)
    ]
