from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Union

from sqlalchemy.orm import sessionmaker

from khata import phone as phones
from khata.errors import KhataError, MalformedEntry
from khata.ledger import AmountLike, EntryInput, EntryType, coerce_inputs
from khata.models import CustomerAccount
from khata.reports import MonthlyTotal, monthly_totals
from khata.repository import AccountRepository

logger = logging.getLogger(__name__)


class _Skipped(KhataError):
    """Account changed between the listing and the locked update."""


class LedgerService:
    """Operations the HTTP layer and the report generator call into.

    Callers pass an already-authenticated ``owner_id`` (shop side) or a
    verified phone (customer side); raw phone input is normalized here before
    it reaches the repository.
    """

    def __init__(self, repository: AccountRepository):
        self.repository = repository

    @classmethod
    def from_session_factory(cls, session_factory: sessionmaker) -> "LedgerService":
        return cls(AccountRepository(session_factory))

    @staticmethod
    def normalize(raw_phone: Optional[str]) -> str:
        return phones.normalize(raw_phone)

    def create_account(self, owner_id: str, name: str, raw_phone: str) -> CustomerAccount:
        name = (name or "").strip()
        if not name:
            raise MalformedEntry("customer name is required")
        return self.repository.create(owner_id, name, phones.normalize(raw_phone))

    def get_account(self, owner_id: str, phone: str) -> CustomerAccount:
        return self.repository.find_active(owner_id, phones.normalize(phone))

    def append_transaction(
        self,
        owner_id: str,
        phone: str,
        entry_type: Union[EntryType, str],
        amount: AmountLike,
        note: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> CustomerAccount:
        key = phones.normalize(phone)
        # reject bad input before taking the row lock
        item = EntryInput.build(entry_type, amount, note=note, occurred_at=occurred_at)
        return self.repository.mutate_active(
            owner_id,
            key,
            lambda account: account.append_transaction(
                item.type, item.amount, note=item.note, occurred_at=item.occurred_at
            ),
            operation="append",
        )

    def rewrite_ledger(
        self,
        owner_id: str,
        phone: str,
        entries: Iterable[Union[EntryInput, Mapping[str, Any]]],
    ) -> CustomerAccount:
        key = phones.normalize(phone)
        inputs = coerce_inputs(entries)
        return self.repository.mutate_active(
            owner_id,
            key,
            lambda account: account.rewrite_ledger(inputs),
            operation="rewrite",
        )

    def rename_account(
        self,
        owner_id: str,
        phone: str,
        new_name: Optional[str] = None,
        new_phone: Optional[str] = None,
    ) -> CustomerAccount:
        key = phones.normalize(phone)
        target = phones.normalize(new_phone) if new_phone is not None else None
        return self.repository.rename_or_renumber(owner_id, key, new_name=new_name, new_phone=target)

    def soft_delete_account(self, owner_id: str, phone: str) -> None:
        self.repository.mutate_active(
            owner_id, phones.normalize(phone), CustomerAccount.soft_delete, operation="soft_delete"
        )

    def restore_account(self, owner_id: str, account_id: int) -> CustomerAccount:
        return self.repository.restore(owner_id, account_id)

    def list_active_accounts(self, owner_id: str) -> list[CustomerAccount]:
        return self.repository.list_active(owner_id)

    def list_accounts_for_phone(self, phone: str) -> list[CustomerAccount]:
        return self.repository.find_any_by_phone(phones.normalize(phone))

    def list_deleted_accounts(self, owner_id: str) -> list[CustomerAccount]:
        return self.repository.list_deleted(owner_id)

    def update_customer_name(self, phone: str, name: str) -> int:
        """Rename every active khata registered under ``phone``, across all shops.

        Each account is updated in its own transaction. Accounts deleted or
        renumbered between the listing and the update are skipped.
        """
        name = (name or "").strip()
        if not name:
            raise MalformedEntry("customer name is required")
        key = phones.normalize(phone)
        updated = 0
        for account in self.repository.find_any_by_phone(key):
            try:
                self.repository.mutate_by_id(
                    account.owner_id,
                    account.id,
                    lambda row: _rename_if_still_active(row, key, name),
                    operation="profile_rename",
                )
            except _Skipped as exc:
                logger.info("skipped profile rename account=%s: %s", account.id, exc)
                continue
            updated += 1
        return updated

    def monthly_summary(self, owner_id: str, year: Optional[int] = None) -> list[MonthlyTotal]:
        rows = self.repository.ledger_rows_for_owner(owner_id)
        return monthly_totals((row.to_entry() for row in rows), year=year)


def _rename_if_still_active(account: CustomerAccount, phone: str, name: str) -> None:
    if account.is_deleted or account.phone != phone:
        raise _Skipped(f"account {account.id} no longer active under {phone}")
    account.rename_or_renumber(new_name=name)
