from datetime import datetime, timezone
from decimal import Decimal

import pytest

from khata.db import create_schema, make_engine, make_session_factory
from khata.errors import (
    ActiveConflict,
    AlreadyExists,
    InvalidPhone,
    MalformedEntry,
    NotFound,
    StorageError,
)
from khata.service import LedgerService

PHONE = "9876543210"


def _make_service() -> LedgerService:
    engine = make_engine("sqlite:///:memory:")
    create_schema(engine)
    return LedgerService.from_session_factory(make_session_factory(engine))


def _balances(account) -> list[Decimal]:
    return [entry.balance_after for entry in account.ledger]


def test_create_normalizes_phone() -> None:
    svc = _make_service()
    account = svc.create_account("O1", "  Ramesh  ", "+91 98765 43210")
    assert account.id > 0
    assert account.phone == PHONE
    assert account.name == "Ramesh"
    assert account.current_due == Decimal("0")
    assert account.ledger == ()
    assert not account.is_deleted


def test_create_rejects_bad_input() -> None:
    svc = _make_service()
    with pytest.raises(InvalidPhone):
        svc.create_account("O1", "Ramesh", "12345")
    with pytest.raises(MalformedEntry):
        svc.create_account("O1", "   ", PHONE)


def test_duplicate_create_fails_until_soft_deleted() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    with pytest.raises(AlreadyExists):
        svc.create_account("O1", "Ramesh again", "09876543210")

    svc.soft_delete_account("O1", PHONE)
    recreated = svc.create_account("O1", "Ramesh", PHONE)
    assert recreated.current_due == Decimal("0")


def test_same_phone_under_two_owners_is_allowed() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    svc.create_account("O2", "Ramesh", PHONE)
    assert len(svc.list_accounts_for_phone(PHONE)) == 2


def test_append_and_rewrite_scenario() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)

    account = svc.append_transaction("O1", PHONE, "credit", 500)
    assert account.current_due == Decimal("500")

    account = svc.append_transaction("O1", PHONE, "payment", 200, note="cash")
    assert account.current_due == Decimal("300")
    assert _balances(account) == [Decimal("500"), Decimal("300")]

    account = svc.rewrite_ledger(
        "O1",
        PHONE,
        [{"type": "payment", "amount": 100}, {"type": "credit", "amount": 50}],
    )
    assert _balances(account) == [Decimal("-100"), Decimal("-50")]
    assert account.current_due == Decimal("-50")

    stored = svc.get_account("O1", PHONE)
    assert _balances(stored) == [Decimal("-100"), Decimal("-50")]
    assert stored.current_due == Decimal("-50")


def test_current_due_tracks_signed_sum() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    applied = [("credit", "120.50"), ("payment", "-20"), ("credit", "0"), ("payment", "99.99"), ("credit", 3)]
    running = Decimal("0")
    for entry_type, amount in applied:
        account = svc.append_transaction("O1", PHONE, entry_type, amount)
        magnitude = abs(Decimal(str(amount)))
        running += magnitude if entry_type == "credit" else -magnitude
        assert account.current_due == running
        assert account.ledger[-1].balance_after == running

    stored = svc.get_account("O1", PHONE)
    assert len(stored.ledger) == len(applied)
    assert stored.current_due == running
    assert sum(entry.amount for entry in stored.ledger) == running


def test_append_keeps_explicit_timestamp() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    when = datetime(2024, 2, 14, 9, 30, tzinfo=timezone.utc)
    account = svc.append_transaction("O1", PHONE, "credit", 10, occurred_at=when)
    assert account.ledger[0].occurred_at == when


def test_append_to_missing_account() -> None:
    svc = _make_service()
    with pytest.raises(NotFound):
        svc.append_transaction("O1", PHONE, "credit", 10)


def test_append_rejects_unknown_type() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    with pytest.raises(MalformedEntry):
        svc.append_transaction("O1", PHONE, "refund", 10)
    assert svc.get_account("O1", PHONE).ledger == ()


def test_malformed_rewrite_leaves_ledger_untouched() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    svc.append_transaction("O1", PHONE, "credit", 500)

    with pytest.raises(MalformedEntry):
        svc.rewrite_ledger(
            "O1",
            PHONE,
            [{"type": "credit", "amount": 10}, {"type": "credit", "amount": "lots"}],
        )

    stored = svc.get_account("O1", PHONE)
    assert _balances(stored) == [Decimal("500")]
    assert stored.current_due == Decimal("500")


def test_rewrite_to_empty_ledger() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    svc.append_transaction("O1", PHONE, "credit", 500)
    account = svc.rewrite_ledger("O1", PHONE, [])
    assert account.ledger == ()
    assert account.current_due == Decimal("0")


def test_cross_owner_isolation() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    svc.create_account("O2", "Ramesh bhai", PHONE)

    svc.append_transaction("O1", PHONE, "credit", 250)
    svc.rewrite_ledger("O1", PHONE, [{"type": "credit", "amount": 900}])

    other = svc.get_account("O2", PHONE)
    assert other.ledger == ()
    assert other.current_due == Decimal("0")


def test_soft_delete_then_restore_keeps_history() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    svc.append_transaction("O1", PHONE, "credit", 500, note="rice")
    svc.append_transaction("O1", PHONE, "payment", 120)
    before = svc.get_account("O1", PHONE)

    svc.soft_delete_account("O1", PHONE)
    with pytest.raises(NotFound):
        svc.get_account("O1", PHONE)
    assert svc.list_active_accounts("O1") == []
    deleted = svc.list_deleted_accounts("O1")
    assert [account.id for account in deleted] == [before.id]
    assert deleted[0].deleted_at is not None

    restored = svc.restore_account("O1", before.id)
    assert not restored.is_deleted
    assert restored.deleted_at is None
    assert restored.ledger == before.ledger
    assert restored.current_due == before.current_due
    assert svc.list_deleted_accounts("O1") == []


def test_restore_conflicts_with_active_account() -> None:
    svc = _make_service()
    original = svc.create_account("O1", "Ramesh", PHONE)
    svc.append_transaction("O1", PHONE, "credit", 500)
    svc.soft_delete_account("O1", PHONE)
    replacement = svc.create_account("O1", "Ramesh", PHONE)
    svc.append_transaction("O1", PHONE, "credit", 40)

    with pytest.raises(ActiveConflict):
        svc.restore_account("O1", original.id)

    active = svc.get_account("O1", PHONE)
    assert active.id == replacement.id
    assert active.current_due == Decimal("40")
    assert [account.id for account in svc.list_deleted_accounts("O1")] == [original.id]


def test_restore_is_scoped_to_owner() -> None:
    svc = _make_service()
    account = svc.create_account("O1", "Ramesh", PHONE)
    svc.soft_delete_account("O1", PHONE)
    with pytest.raises(NotFound):
        svc.restore_account("O2", account.id)


def test_rename_and_renumber() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    svc.append_transaction("O1", PHONE, "credit", 75)

    account = svc.rename_account("O1", PHONE, new_name="Ramesh Kumar", new_phone="+91 91234 56789")
    assert account.name == "Ramesh Kumar"
    assert account.phone == "9123456789"
    assert account.current_due == Decimal("75")

    with pytest.raises(NotFound):
        svc.get_account("O1", PHONE)
    moved = svc.get_account("O1", "9123456789")
    assert _balances(moved) == [Decimal("75")]


def test_rename_rejects_invalid_phone() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    with pytest.raises(InvalidPhone):
        svc.rename_account("O1", PHONE, new_phone="555")
    assert svc.get_account("O1", PHONE).name == "Ramesh"


def test_renumber_onto_another_active_account_fails() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    svc.create_account("O1", "Suresh", "9123456789")
    with pytest.raises(AlreadyExists):
        svc.rename_account("O1", PHONE, new_phone="9123456789")
    assert svc.get_account("O1", PHONE).name == "Ramesh"


def test_list_active_newest_first() -> None:
    svc = _make_service()
    svc.create_account("O1", "First", "9000000001")
    svc.create_account("O1", "Second", "9000000002")
    svc.create_account("O2", "Elsewhere", "9000000003")
    names = [account.name for account in svc.list_active_accounts("O1")]
    assert names == ["Second", "First"]


def test_accounts_for_phone_most_recently_updated_first() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    svc.create_account("O2", "Ramesh", PHONE)
    svc.create_account("O3", "Ramesh", PHONE)
    svc.append_transaction("O1", PHONE, "credit", 10)
    svc.soft_delete_account("O3", PHONE)

    owners = [account.owner_id for account in svc.list_accounts_for_phone("+91 98765 43210")]
    assert owners == ["O1", "O2"]


def test_update_customer_name_across_shops() -> None:
    svc = _make_service()
    svc.create_account("O1", "ramesh", PHONE)
    svc.create_account("O2", "Ramesh ji", PHONE)
    svc.create_account("O3", "R", PHONE)
    svc.soft_delete_account("O3", PHONE)
    svc.create_account("O1", "Someone else", "9000000001")

    assert svc.update_customer_name(PHONE, "Ramesh Kumar") == 2
    assert {account.name for account in svc.list_accounts_for_phone(PHONE)} == {"Ramesh Kumar"}
    assert svc.list_deleted_accounts("O3")[0].name == "R"
    assert svc.get_account("O1", "9000000001").name == "Someone else"


def test_monthly_summary() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    svc.create_account("O1", "Suresh", "9000000001")
    svc.create_account("O2", "Ramesh", PHONE)
    jan = datetime(2024, 1, 10, tzinfo=timezone.utc)
    feb = datetime(2024, 2, 3, tzinfo=timezone.utc)
    svc.append_transaction("O1", PHONE, "credit", 500, occurred_at=jan)
    svc.append_transaction("O1", PHONE, "payment", 200, occurred_at=feb)
    svc.append_transaction("O1", "9000000001", "credit", 50, occurred_at=feb)
    svc.append_transaction("O2", PHONE, "credit", 999, occurred_at=jan)

    totals = svc.monthly_summary("O1")
    assert [(t.month, t.credit, t.paid) for t in totals] == [
        ("2024-01", Decimal("500"), Decimal("0")),
        ("2024-02", Decimal("50"), Decimal("200")),
    ]
    assert svc.monthly_summary("O1", year=2023) == []


def test_storage_failures_surface_as_storage_error() -> None:
    engine = make_engine("sqlite:///:memory:")
    svc = LedgerService.from_session_factory(make_session_factory(engine))
    with pytest.raises(StorageError) as excinfo:
        svc.list_active_accounts("O1")
    assert excinfo.value.__cause__ is not None


def test_stale_concurrent_write_is_rejected(tmp_path) -> None:
    engine = make_engine(f"sqlite:///{tmp_path / 'khata.db'}")
    create_schema(engine)
    svc = LedgerService.from_session_factory(make_session_factory(engine))
    svc.create_account("O1", "Ramesh", PHONE)

    def append_after_another_writer(account) -> None:
        svc.append_transaction("O1", PHONE, "credit", 100)
        account.append_transaction("credit", 50)

    with pytest.raises(StorageError):
        svc.repository.mutate_active("O1", PHONE, append_after_another_writer, operation="append")

    stored = svc.get_account("O1", PHONE)
    assert [entry.amount for entry in stored.ledger] == [Decimal("100")]
    assert stored.current_due == sum(entry.amount for entry in stored.ledger)


def test_oversized_amount_is_malformed_not_a_storage_failure() -> None:
    svc = _make_service()
    svc.create_account("O1", "Ramesh", PHONE)
    with pytest.raises(MalformedEntry):
        svc.append_transaction("O1", PHONE, "credit", "1e20")
    svc.append_transaction("O1", PHONE, "credit", "999999999999")
    with pytest.raises(MalformedEntry):
        svc.append_transaction("O1", PHONE, "credit", 1)
    assert svc.get_account("O1", PHONE).current_due == Decimal("999999999999")
