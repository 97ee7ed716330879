from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from khata.errors import (
    ActiveConflict,
    AlreadyExists,
    KhataError,
    NotFound,
    StorageError,
)
from khata.models import CustomerAccount, LedgerEntryRecord

logger = logging.getLogger(__name__)

AccountChange = Callable[[CustomerAccount], object]


class AccountRepository:
    """Persistence boundary for customer accounts.

    Every mutation runs in its own transaction that locks the account row,
    applies the change and commits; the optimistic ``version`` column catches
    writers on databases without row locks. Reads run without locks.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except KhataError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("storage failure during %s: %s", operation, exc)
            raise StorageError(operation) from exc
        finally:
            session.close()

    @staticmethod
    def _active_query(owner_id: str, phone: str):
        return select(CustomerAccount).where(
            CustomerAccount.owner_id == owner_id,
            CustomerAccount.phone == phone,
            CustomerAccount.is_deleted.is_(False),
        )

    @staticmethod
    def _has_active(
        session: Session, owner_id: str, phone: str, exclude_id: Optional[int] = None
    ) -> bool:
        query = select(CustomerAccount.id).where(
            CustomerAccount.owner_id == owner_id,
            CustomerAccount.phone == phone,
            CustomerAccount.is_deleted.is_(False),
        )
        if exclude_id is not None:
            query = query.where(CustomerAccount.id != exclude_id)
        return session.scalars(query.limit(1)).first() is not None

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def find_active(self, owner_id: str, phone: str) -> CustomerAccount:
        with self._session("find_active") as session:
            account = session.scalars(self._active_query(owner_id, phone)).first()
            if account is None:
                raise NotFound(owner_id, phone)
            return account

    def find_any_by_phone(self, phone: str) -> list[CustomerAccount]:
        with self._session("find_any_by_phone") as session:
            query = (
                select(CustomerAccount)
                .where(CustomerAccount.phone == phone, CustomerAccount.is_deleted.is_(False))
                .order_by(CustomerAccount.updated_at.desc(), CustomerAccount.id.desc())
            )
            return list(session.scalars(query))

    def list_active(self, owner_id: str) -> list[CustomerAccount]:
        with self._session("list_active") as session:
            query = (
                select(CustomerAccount)
                .where(CustomerAccount.owner_id == owner_id, CustomerAccount.is_deleted.is_(False))
                .order_by(CustomerAccount.created_at.desc(), CustomerAccount.id.desc())
            )
            return list(session.scalars(query))

    def list_deleted(self, owner_id: str) -> list[CustomerAccount]:
        with self._session("list_deleted") as session:
            query = (
                select(CustomerAccount)
                .where(CustomerAccount.owner_id == owner_id, CustomerAccount.is_deleted.is_(True))
                .order_by(CustomerAccount.deleted_at.desc(), CustomerAccount.id.desc())
            )
            return list(session.scalars(query))

    def ledger_rows_for_owner(self, owner_id: str) -> list[LedgerEntryRecord]:
        with self._session("ledger_rows_for_owner") as session:
            query = (
                select(LedgerEntryRecord)
                .join(CustomerAccount, LedgerEntryRecord.account_id == CustomerAccount.id)
                .where(CustomerAccount.owner_id == owner_id, CustomerAccount.is_deleted.is_(False))
                .order_by(LedgerEntryRecord.occurred_at, LedgerEntryRecord.id)
            )
            return list(session.scalars(query))

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def create(self, owner_id: str, name: str, phone: str) -> CustomerAccount:
        with self._session("create") as session:
            if self._has_active(session, owner_id, phone):
                logger.warning("duplicate customer owner=%s phone=%s", owner_id, phone)
                raise AlreadyExists(owner_id, phone)
            account = CustomerAccount.open(owner_id=owner_id, name=name, phone=phone)
            session.add(account)
            try:
                session.commit()
            except IntegrityError:
                # a concurrent create won the partial unique index
                session.rollback()
                logger.warning("duplicate customer owner=%s phone=%s (index)", owner_id, phone)
                raise AlreadyExists(owner_id, phone) from None
            logger.info("created customer id=%s owner=%s phone=%s", account.id, owner_id, phone)
            return account

    def _commit_change(
        self,
        session: Session,
        account: CustomerAccount,
        change: Optional[AccountChange],
        operation: str,
        on_conflict: Optional[Callable[[str, str, int], KhataError]] = None,
    ) -> CustomerAccount:
        if change is not None:
            change(account)
        owner_id, phone, account_id = account.owner_id, account.phone, account.id
        try:
            session.commit()
        except IntegrityError:
            # the partial unique index caught a racing writer on the same (owner, phone)
            session.rollback()
            if on_conflict is not None:
                raise on_conflict(owner_id, phone, account_id) from None
            raise AlreadyExists(owner_id, phone) from None
        logger.info(
            "%s customer id=%s owner=%s phone=%s due=%s",
            operation,
            account.id,
            account.owner_id,
            account.phone,
            account.current_due,
        )
        return account

    def mutate_active(
        self, owner_id: str, phone: str, change: AccountChange, operation: str = "mutate"
    ) -> CustomerAccount:
        """Lock the active account for (owner, phone), apply ``change`` and commit.

        ``change`` may raise; the transaction is then rolled back and nothing
        it did to the account reaches the store.
        """
        with self._session(operation) as session:
            account = session.scalars(
                self._active_query(owner_id, phone).with_for_update()
            ).first()
            if account is None:
                raise NotFound(owner_id, phone)
            return self._commit_change(session, account, change, operation)

    def mutate_by_id(
        self, owner_id: str, account_id: int, change: AccountChange, operation: str = "mutate"
    ) -> CustomerAccount:
        with self._session(operation) as session:
            account = session.scalars(
                select(CustomerAccount)
                .where(CustomerAccount.id == account_id, CustomerAccount.owner_id == owner_id)
                .with_for_update()
            ).first()
            if account is None:
                raise NotFound(owner_id, account_id)
            return self._commit_change(session, account, change, operation)

    def rename_or_renumber(
        self,
        owner_id: str,
        phone: str,
        new_name: Optional[str] = None,
        new_phone: Optional[str] = None,
    ) -> CustomerAccount:
        with self._session("rename") as session:
            account = session.scalars(
                self._active_query(owner_id, phone).with_for_update()
            ).first()
            if account is None:
                raise NotFound(owner_id, phone)
            account.rename_or_renumber(new_name=new_name, new_phone=new_phone)
            if account.phone != phone and self._has_active(
                session, owner_id, account.phone, exclude_id=account.id
            ):
                logger.warning(
                    "renumber collides owner=%s phone=%s->%s", owner_id, phone, account.phone
                )
                raise AlreadyExists(owner_id, account.phone)
            return self._commit_change(session, account, None, "rename")

    def restore(self, owner_id: str, account_id: int) -> CustomerAccount:
        with self._session("restore") as session:
            account = session.scalars(
                select(CustomerAccount)
                .where(CustomerAccount.id == account_id, CustomerAccount.owner_id == owner_id)
                .with_for_update()
            ).first()
            if account is None:
                raise NotFound(owner_id, account_id)
            if account.is_deleted and self._has_active(
                session, owner_id, account.phone, exclude_id=account.id
            ):
                logger.warning(
                    "restore blocked owner=%s phone=%s account=%s",
                    owner_id,
                    account.phone,
                    account_id,
                )
                raise ActiveConflict(owner_id, account.phone, account.id)
            return self._commit_change(
                session, account, CustomerAccount.restore, "restore", on_conflict=ActiveConflict
            )
