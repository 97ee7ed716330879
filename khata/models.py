from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Union

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from khata.db import Base
from khata.ledger import (
    ZERO,
    AmountLike,
    EntryInput,
    EntryType,
    LedgerEntry,
    replay,
)
from khata.phone import normalize

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
MONEY_TYPE = Numeric(14, 2)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Any) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(ZERO)


class CustomerAccount(Base):
    """One customer's khata inside one owner's shop.

    ``current_due`` always equals the ``balance_after`` of the last ledger
    entry (zero for an empty ledger); every method that changes the ledger
    goes through :func:`khata.ledger.replay` to keep it that way.
    """

    __tablename__ = "customer_account"
    __table_args__ = (
        # soft-deleted rows must not block a new active account for the same customer
        Index(
            "ux_customer_account_owner_phone_active",
            "owner_id",
            "phone",
            unique=True,
            postgresql_where=text("is_deleted = false"),
            sqlite_where=text("is_deleted = 0"),
        ),
        Index("ix_customer_account_phone", "phone"),
        CheckConstraint("length(phone) = 10", name="phone_ten_digits"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    phone: Mapped[str] = mapped_column(String(10), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    current_due: Mapped[Decimal] = mapped_column(MONEY_TYPE, nullable=False, default=ZERO)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    ledger_records: Mapped[list["LedgerEntryRecord"]] = relationship(
        order_by="LedgerEntryRecord.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<CustomerAccount id={self.id} owner={self.owner_id} phone={self.phone} "
            f"due={self.current_due}>"
        )

    @classmethod
    def open(cls, owner_id: str, name: str, phone: str) -> "CustomerAccount":
        now = _now()
        return cls(
            owner_id=owner_id,
            name=name,
            phone=phone,
            current_due=ZERO,
            is_deleted=False,
            deleted_at=None,
            created_at=now,
            updated_at=now,
            ledger_records=[],
        )

    @property
    def ledger(self) -> tuple[LedgerEntry, ...]:
        return tuple(record.to_entry() for record in self.ledger_records)

    @property
    def is_active(self) -> bool:
        return not self.is_deleted

    def _touch(self) -> None:
        self.updated_at = _now()

    def append_transaction(
        self,
        entry_type: Union[EntryType, str],
        amount: AmountLike,
        note: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> "CustomerAccount":
        item = EntryInput.build(entry_type, amount, note=note, occurred_at=occurred_at)
        produced, balance = replay([item], opening_balance=_money(self.current_due))
        self.ledger_records.append(
            LedgerEntryRecord.from_entry(produced[0], position=len(self.ledger_records))
        )
        self.current_due = balance
        self._touch()
        return self

    def rewrite_ledger(
        self, entries: Iterable[Union[EntryInput, Mapping[str, Any]]]
    ) -> "CustomerAccount":
        # replay validates every entry before anything on the account changes
        produced, balance = replay(entries)
        self.ledger_records = [
            LedgerEntryRecord.from_entry(entry, position=index)
            for index, entry in enumerate(produced)
        ]
        self.current_due = balance
        self._touch()
        return self

    def rename_or_renumber(
        self, new_name: Optional[str] = None, new_phone: Optional[str] = None
    ) -> "CustomerAccount":
        phone = normalize(new_phone) if new_phone is not None else None
        name = new_name.strip() if new_name else None
        if name:
            self.name = name
        if phone is not None:
            self.phone = phone
        self._touch()
        return self

    def soft_delete(self) -> "CustomerAccount":
        now = _now()
        self.is_deleted = True
        self.deleted_at = now
        self.updated_at = now
        return self

    def restore(self) -> "CustomerAccount":
        self.is_deleted = False
        self.deleted_at = None
        self._touch()
        return self

    def to_dict(self, include_ledger: bool = True) -> dict:
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "phone": self.phone,
            "current_due": str(_money(self.current_due)),
            "is_deleted": self.is_deleted,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_ledger:
            data["ledger"] = [entry.to_dict() for entry in self.ledger]
        return data


class LedgerEntryRecord(Base):
    __tablename__ = "ledger_entry"
    __table_args__ = (
        CheckConstraint("entry_type IN ('credit', 'payment')", name="ledger_entry_type"),
        Index("ix_ledger_entry_account_position", "account_id", "position"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("customer_account.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY_TYPE, nullable=False)
    note: Mapped[str | None] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MONEY_TYPE, nullable=False)

    @classmethod
    def from_entry(cls, entry: LedgerEntry, position: int) -> "LedgerEntryRecord":
        return cls(
            position=position,
            entry_type=entry.type.value,
            amount=entry.amount,
            note=entry.note,
            occurred_at=entry.occurred_at,
            balance_after=entry.balance_after,
        )

    def to_entry(self) -> LedgerEntry:
        return LedgerEntry(
            type=EntryType(self.entry_type),
            amount=_money(self.amount),
            note=self.note,
            occurred_at=self.occurred_at,
            balance_after=_money(self.balance_after),
        )
