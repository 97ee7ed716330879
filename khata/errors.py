"""
Typed failures raised by the ledger core.

The HTTP layer maps these onto status codes; nothing in the core catches
and discards them.
"""

from __future__ import annotations

from typing import Optional


class KhataError(Exception):
    """Base error for every ledger core failure."""


class InvalidPhone(KhataError):
    def __init__(self, raw: Optional[str]):
        self.raw = raw
        super().__init__(
            f"invalid phone number {raw!r}: expected a 10-digit mobile number "
            f"(e.g. 9876543210)"
        )


class NotFound(KhataError):
    def __init__(self, owner_id: Optional[str], key: object):
        self.owner_id = owner_id
        self.key = key
        super().__init__(f"no active customer {key} for owner {owner_id}")


class AlreadyExists(KhataError):
    def __init__(self, owner_id: str, phone: str):
        self.owner_id = owner_id
        self.phone = phone
        super().__init__(f"customer with phone {phone} already exists for owner {owner_id}")


class ActiveConflict(KhataError):
    """Restore would put a second active ledger on the same (owner, phone)."""

    def __init__(self, owner_id: str, phone: str, account_id: int):
        self.owner_id = owner_id
        self.phone = phone
        self.account_id = account_id
        super().__init__(
            f"cannot restore customer {account_id}: an active customer with phone "
            f"{phone} already exists for owner {owner_id}"
        )


class MalformedEntry(KhataError):
    def __init__(self, detail: str, index: Optional[int] = None):
        self.detail = detail
        self.index = index
        where = f"entry {index}: " if index is not None else ""
        super().__init__(f"malformed ledger entry: {where}{detail}")


class StorageError(KhataError):
    """Opaque wrapper around store failures; the original is chained as __cause__."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"storage failure during {operation}")
