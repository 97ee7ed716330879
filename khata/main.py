from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Literal, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from khata.config import settings
from khata.db import make_engine, make_session_factory
from khata.errors import (
    ActiveConflict,
    AlreadyExists,
    InvalidPhone,
    KhataError,
    MalformedEntry,
    NotFound,
    StorageError,
)
from khata.service import LedgerService

logger = logging.getLogger(__name__)
logging.getLogger("khata").setLevel(settings.log_level.upper())

app = FastAPI(title="Khata Ledger")

ERROR_STATUS = {
    InvalidPhone: 400,
    MalformedEntry: 400,
    NotFound: 404,
    AlreadyExists: 409,
    ActiveConflict: 409,
    StorageError: 503,
}


class Meta(BaseModel):
    request_id: str
    warnings: list[str]


class Envelope(BaseModel):
    data: Any
    meta: Meta


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


@lru_cache()
def _default_service() -> LedgerService:
    engine = make_engine(settings.database_url, echo=settings.database_echo)
    return LedgerService.from_session_factory(make_session_factory(engine))


def get_service() -> LedgerService:
    return _default_service()


class CustomerCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"name": "Ramesh Kumar", "phone": "+91 98765 43210"}}}
    name: str = Field(min_length=1)
    phone: str


class TransactionCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"type": "credit", "amount": "500.00", "note": "rice 10kg"}}}
    type: Literal["credit", "payment"]
    amount: Decimal
    note: Optional[str] = None
    occurred_at: Optional[datetime] = None


class LedgerRewrite(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"entries": [{"type": "payment", "amount": "100"}, {"type": "credit", "amount": "50"}]}
        }
    }
    entries: list[TransactionCreate]


class CustomerUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"name": "Ramesh K.", "phone": "9876500000"}}}
    name: Optional[str] = None
    phone: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: str = Field(min_length=1)


@app.exception_handler(KhataError)
async def khata_error_handler(request: Request, exc: KhataError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), 400)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.get("/api/v1/phone:normalize", tags=["Phone"], response_model=Envelope)
def normalize_phone(raw: str = Query(...), svc: LedgerService = Depends(get_service)) -> dict:
    return {"data": {"raw": raw, "phone": svc.normalize(raw)}, "meta": _meta()}


@app.post("/api/v1/customers", tags=["Customers"], response_model=Envelope, status_code=201)
def create_customer(
    payload: CustomerCreate,
    owner_id: str = Header(..., alias="X-Owner-Id"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    account = svc.create_account(owner_id, payload.name, payload.phone)
    return {"data": account.to_dict(), "meta": _meta()}


@app.get("/api/v1/customers", tags=["Customers"], response_model=Envelope)
def list_customers(
    owner_id: str = Header(..., alias="X-Owner-Id"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    accounts = svc.list_active_accounts(owner_id)
    return {"data": [account.to_dict(include_ledger=False) for account in accounts], "meta": _meta()}


@app.get("/api/v1/customers/deleted", tags=["Customers"], response_model=Envelope)
def list_deleted_customers(
    owner_id: str = Header(..., alias="X-Owner-Id"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    accounts = svc.list_deleted_accounts(owner_id)
    return {"data": [account.to_dict(include_ledger=False) for account in accounts], "meta": _meta()}


@app.get("/api/v1/customers/{phone}", tags=["Customers"], response_model=Envelope)
def get_customer(
    phone: str,
    owner_id: str = Header(..., alias="X-Owner-Id"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    return {"data": svc.get_account(owner_id, phone).to_dict(), "meta": _meta()}


@app.post("/api/v1/customers/{phone}/transactions", tags=["Ledger"], response_model=Envelope)
def add_transaction(
    phone: str,
    payload: TransactionCreate,
    owner_id: str = Header(..., alias="X-Owner-Id"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    account = svc.append_transaction(
        owner_id,
        phone,
        payload.type,
        payload.amount,
        note=payload.note,
        occurred_at=payload.occurred_at,
    )
    return {"data": account.to_dict(), "meta": _meta()}


@app.put("/api/v1/customers/{phone}/ledger", tags=["Ledger"], response_model=Envelope)
def rewrite_ledger(
    phone: str,
    payload: LedgerRewrite,
    owner_id: str = Header(..., alias="X-Owner-Id"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    entries = [entry.model_dump() for entry in payload.entries]
    account = svc.rewrite_ledger(owner_id, phone, entries)
    return {"data": account.to_dict(), "meta": _meta()}


@app.patch("/api/v1/customers/{phone}", tags=["Customers"], response_model=Envelope)
def update_customer(
    phone: str,
    payload: CustomerUpdate,
    owner_id: str = Header(..., alias="X-Owner-Id"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    account = svc.rename_account(owner_id, phone, new_name=payload.name, new_phone=payload.phone)
    return {"data": account.to_dict(include_ledger=False), "meta": _meta()}


@app.delete("/api/v1/customers/{phone}", tags=["Customers"], response_model=Envelope)
def delete_customer(
    phone: str,
    owner_id: str = Header(..., alias="X-Owner-Id"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    svc.soft_delete_account(owner_id, phone)
    return {"data": {"deleted": True}, "meta": _meta()}


@app.post("/api/v1/accounts/{account_id}:restore", tags=["Customers"], response_model=Envelope)
def restore_customer(
    account_id: int,
    owner_id: str = Header(..., alias="X-Owner-Id"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    account = svc.restore_account(owner_id, account_id)
    return {"data": account.to_dict(), "meta": _meta()}


@app.get("/api/v1/reports/monthly-summary", tags=["Reports"], response_model=Envelope)
def monthly_summary(
    year: Optional[int] = Query(default=None),
    owner_id: str = Header(..., alias="X-Owner-Id"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    totals = svc.monthly_summary(owner_id, year=year)
    return {"data": [total.to_dict() for total in totals], "meta": _meta()}


@app.get("/api/v1/my-khatas", tags=["Customer View"], response_model=Envelope)
def my_khatas(
    customer_phone: str = Header(..., alias="X-Customer-Phone"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    accounts = svc.list_accounts_for_phone(customer_phone)
    return {"data": [account.to_dict() for account in accounts], "meta": _meta()}


@app.patch("/api/v1/my-profile", tags=["Customer View"], response_model=Envelope)
def update_my_profile(
    payload: ProfileUpdate,
    customer_phone: str = Header(..., alias="X-Customer-Phone"),
    svc: LedgerService = Depends(get_service),
) -> dict:
    updated = svc.update_customer_name(customer_phone, payload.name)
    return {"data": {"updated": updated}, "meta": _meta()}

