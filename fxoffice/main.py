from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from fxoffice import alerts, aml, audit, currencies, customers, ledger, rates, tills, transactions, users
from fxoffice.authz import Capability, authorize, require_capability
from fxoffice.bootstrap import initialize_system
from fxoffice.clock import as_utc, utcnow
from fxoffice.config import settings
from fxoffice.db import SessionLocal
from fxoffice.errors import FxOfficeError, InputValidationError
from fxoffice.logging_config import configure_logging
from fxoffice.models import (
    AuditLogEntry,
    ComplianceAlert,
    Currency,
    Customer,
    Denomination,
    SanctionEntry,
    Till,
    TillReconciliation,
    TillSession,
    TillTransaction,
    Transaction,
    User,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(level=settings.log_level, json_output=settings.log_json)
    yield


app = FastAPI(title="FX Office", lifespan=lifespan)


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


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    return users.resolve_subject(db, x_user_id)


@app.exception_handler(FxOfficeError)
async def fxoffice_error_handler(request: Request, exc: FxOfficeError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={**exc.to_dict(), "meta": _meta()})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _currency_out(currency: Currency) -> dict:
    return {
        "code": currency.code,
        "name": currency.name,
        "symbol": currency.symbol,
        "country": currency.country,
        "flag": currency.flag,
        "market_rate": _money(currency.market_rate),
        "buy_rate": _money(currency.buy_rate),
        "sell_rate": _money(currency.sell_rate),
        "discount_percent": _money(currency.discount_percent),
        "markup_percent": _money(currency.markup_percent),
        "manual_buy_rate": currency.manual_buy_rate,
        "manual_sell_rate": currency.manual_sell_rate,
        "is_active": currency.is_active,
        "last_updated": _iso(currency.last_updated),
    }


def _customer_out(customer: Customer) -> dict:
    return {
        "customer_id": customer.customer_id,
        "type": customer.type,
        "first_name": customer.first_name,
        "last_name": customer.last_name,
        "full_name": customer.full_name,
        "date_of_birth": customer.date_of_birth,
        "occupation": customer.occupation,
        "business_name": customer.business_name,
        "incorporation_number": customer.incorporation_number,
        "business_type": customer.business_type,
        "is_msb": customer.is_msb,
        "email": customer.email,
        "phone": customer.phone,
        "address": customer.address,
        "city": customer.city,
        "province": customer.province,
        "postal_code": customer.postal_code,
        "country": customer.country,
        "status": customer.status,
        "risk_level": customer.risk_level,
        "risk_score": customer.risk_score,
        "aml_status": customer.aml_status,
        "sanctions_screening_status": customer.sanctions_screening_status,
        "sanction_screening_date": _iso(customer.sanction_screening_date),
        "sanction_false_positive": customer.sanction_false_positive,
        "false_positive_basis": customer.false_positive_basis,
        "is_whitelisted": customer.is_whitelisted,
        "whitelist_expiry": _iso(customer.whitelist_expiry),
        "is_pep": customer.is_pep,
        "pep_details": customer.pep_details,
        "is_suspicious": customer.is_suspicious,
        "suspicious_reason": customer.suspicious_reason,
        "notes": customer.notes,
        "created_at": _iso(customer.created_at),
        "updated_at": _iso(customer.updated_at),
    }


def _till_out(till: Till) -> dict:
    return {
        "till_id": till.till_id,
        "till_name": till.till_name,
        "reserve_for_admin": till.reserve_for_admin,
        "share_till": till.share_till,
        "is_active": till.is_active,
        "current_user_id": till.current_user_id,
        "sign_in_time": _iso(till.sign_in_time),
        "created_at": _iso(till.created_at),
        "last_updated": _iso(till.last_updated),
    }


def _account_out(account) -> dict:
    return {
        "account_name": account.account_name,
        "till_id": account.till_id,
        "currency_code": account.currency_code,
        "balance": _money(account.balance),
        "is_active": account.is_active,
        "last_updated": _iso(account.last_updated),
    }


def _session_out(session: TillSession) -> dict:
    return {
        "session_id": session.id,
        "till_id": session.till_id,
        "user_id": session.user_id,
        "sign_in_time": _iso(session.sign_in_time),
        "sign_out_time": _iso(session.sign_out_time),
        "session_duration_seconds": session.session_duration_seconds,
        "is_active": session.is_active,
    }


def _till_entry_out(entry: TillTransaction) -> dict:
    return {
        "entry_id": entry.id,
        "till_id": entry.till_id,
        "user_id": entry.user_id,
        "type": entry.type,
        "currency": entry.currency,
        "amount": _money(entry.amount),
        "balance_before": _money(entry.balance_before),
        "balance_after": _money(entry.balance_after),
        "status": entry.status,
        "reference": entry.reference,
        "notes": entry.notes,
        "created_at": _iso(entry.created_at),
    }


def _reconciliation_out(row: TillReconciliation) -> dict:
    return {
        "reconciliation_id": row.id,
        "till_id": row.till_id,
        "currency_code": row.currency_code,
        "expected_balance": _money(row.expected_balance),
        "counted_balance": _money(row.counted_balance),
        "variance": _money(row.variance),
        "adjusted": row.adjusted,
        "counted_at": _iso(row.counted_at),
        "user_id": row.user_id,
        "notes": row.notes,
    }


def _transaction_out(transaction: Transaction) -> dict:
    return {
        "transaction_id": transaction.transaction_id,
        "type": transaction.type,
        "category": transaction.category,
        "from_currency": transaction.from_currency,
        "from_amount": _money(transaction.from_amount),
        "to_currency": transaction.to_currency,
        "to_amount": _money(transaction.to_amount),
        "exchange_rate": _money(transaction.exchange_rate),
        "service_fee": _money(transaction.service_fee),
        "service_fee_type": transaction.service_fee_type,
        "payment_method": transaction.payment_method,
        "customer_id": transaction.customer_id,
        "customer_name": transaction.customer_name,
        "customer_email": transaction.customer_email,
        "customer_phone": transaction.customer_phone,
        "user_id": transaction.user_id,
        "till_id": transaction.till_id,
        "status": transaction.status,
        "requires_aml": transaction.requires_aml,
        "requires_compliance": transaction.requires_compliance,
        "warnings": transaction.warnings or [],
        "notes": transaction.notes,
        "created_at": _iso(transaction.created_at),
        "updated_at": _iso(transaction.updated_at),
        "completed_at": _iso(transaction.completed_at),
    }


def _alert_out(alert: ComplianceAlert, db: Session) -> dict:
    customer = db.get(Customer, alert.customer_id) if alert.customer_id is not None else None
    transaction = db.get(Transaction, alert.transaction_id) if alert.transaction_id is not None else None
    return {
        "alert_id": alert.id,
        "alert_type": alert.alert_type,
        "severity": alert.severity,
        "customer_id": customer.customer_id if customer is not None else None,
        "transaction_id": transaction.transaction_id if transaction is not None else None,
        "description": alert.description,
        "status": alert.status,
        "reviewed_at": _iso(alert.reviewed_at),
        "reviewed_by": alert.reviewed_by,
        "resolution_notes": alert.resolution_notes,
        "created_at": _iso(alert.created_at),
    }


def _user_out(user: User) -> dict:
    return {
        "user_id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "is_active": user.is_active,
        "is_manager": user.is_manager,
        "is_compliance_officer": user.is_compliance_officer,
        "is_template": user.is_template,
        "can_modify_exchange_rates": user.can_modify_exchange_rates,
        "can_edit_fees_commissions": user.can_edit_fees_commissions,
        "can_transfer_between_accounts": user.can_transfer_between_accounts,
        "can_reconcile_accounts": user.can_reconcile_accounts,
        "max_modification_individual": _money(user.max_modification_individual),
        "max_modification_corporate": _money(user.max_modification_corporate),
        "invitation_status": user.invitation_status,
        "invitation_expires_at": _iso(user.invitation_expires_at),
        "accepted_at": _iso(user.accepted_at),
        "created_at": _iso(user.created_at),
    }


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class SystemInitialize(BaseModel):
    model_config = {"json_schema_extra": {"example": {"email": "owner@example.com", "first_name": "Ada", "last_name": "Moss"}}}
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@app.post("/api/v1/system:initialize", tags=["System"])
def initialize(
    payload: SystemInitialize,
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> dict:
    summary = initialize_system(
        db,
        subject=x_user_id,
        email=payload.email,
        base_currency=settings.base_currency,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    db.commit()
    return {"data": summary, "meta": _meta()}


# Users


class UserFlags(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_manager: Optional[bool] = None
    is_compliance_officer: Optional[bool] = None
    is_template: Optional[bool] = None
    can_modify_exchange_rates: Optional[bool] = None
    can_edit_fees_commissions: Optional[bool] = None
    can_transfer_between_accounts: Optional[bool] = None
    can_reconcile_accounts: Optional[bool] = None
    max_modification_individual: Optional[Decimal] = None
    max_modification_corporate: Optional[Decimal] = None


class UserInvite(UserFlags):
    model_config = {
        "json_schema_extra": {
            "example": {
                "email": "teller@example.com",
                "first_name": "Sam",
                "last_name": "Lee",
                "can_modify_exchange_rates": True,
                "max_modification_individual": 2500,
            }
        }
    }
    email: str


class UserUpdate(UserFlags):
    is_active: Optional[bool] = None


class InvitationAccept(BaseModel):
    model_config = {"json_schema_extra": {"example": {"token": "kq3...Zp"}}}
    token: str


@app.get("/api/v1/users/me", tags=["Users"])
def read_current_user(user: User = Depends(get_current_user)) -> dict:
    return {
        "data": {
            **_user_out(user),
            "capabilities": sorted(cap.value for cap in Capability if authorize(user, cap)),
        },
        "meta": _meta(),
    }


@app.get("/api/v1/users", tags=["Users"])
def list_users(
    is_active: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_USERS)
    query = db.query(User)
    if is_active is not None:
        query = query.filter(User.is_active == is_active)
    rows, next_cursor = _paginate_by_id(query, User, limit, cursor)
    return {"data": [_user_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/api/v1/users/invitations", tags=["Users"])
def invite_user(
    payload: UserInvite,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_USERS)
    fields = payload.model_dump(exclude={"email"}, exclude_unset=True)
    invited = users.invite_user(
        db,
        email=payload.email,
        invited_by=user,
        expiry_days=settings.invitation_expiry_days,
        **fields,
    )
    db.commit()
    return {
        "data": {**_user_out(invited), "invitation_token": invited.invitation_token},
        "meta": _meta(),
    }


@app.post("/api/v1/invitations:accept", tags=["Users"])
def accept_invitation(
    payload: InvitationAccept,
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> dict:
    accepted = users.accept_invitation(db, payload.token, x_user_id)
    db.commit()
    return {"data": _user_out(accepted), "meta": _meta()}


@app.patch("/api/v1/users/{user_id}", tags=["Users"])
def update_user(
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_USERS)
    target = users.get_user(db, user_id)
    updated = users.update_user(db, target, payload.model_dump(exclude_unset=True), user)
    db.commit()
    return {"data": _user_out(updated), "meta": _meta()}


@app.delete("/api/v1/users/{user_id}", tags=["Users"])
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_USERS)
    target = users.get_user(db, user_id)
    users.delete_user(db, target, user)
    db.commit()
    return {"data": {"user_id": user_id, "is_active": False}, "meta": _meta()}


# AML settings and sanction lists


@app.get("/api/v1/aml-settings", tags=["AML Settings"])
def read_aml_settings(db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    config = aml.load_aml_config(db)
    return {
        "data": {**config.model_dump(mode="json"), "available_sanction_lists": aml.SANCTION_LISTS},
        "meta": _meta(),
    }


@app.put("/api/v1/aml-settings", tags=["AML Settings"])
def save_aml_settings(
    payload: aml.AMLConfig,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_AML_SETTINGS)
    config = aml.save_aml_config(db, payload, user)
    db.commit()
    return {"data": config.model_dump(mode="json"), "meta": _meta()}


class SanctionEntryCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"list_id": "OFAC_SDN", "name": "Ivan Petrov", "date_of_birth": "1970-01-01", "reference": "SDN-12345"}}}
    list_id: str
    name: str = Field(min_length=1)
    date_of_birth: Optional[str] = None
    reference: Optional[str] = None


@app.post("/api/v1/sanction-entries", tags=["AML Settings"])
def create_sanction_entry(
    payload: SanctionEntryCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_AML_SETTINGS)
    if payload.list_id not in aml.SANCTION_LISTS:
        raise InputValidationError(f"Unknown sanction list {payload.list_id}", list_id=payload.list_id)
    entry = SanctionEntry(
        list_id=payload.list_id,
        name=payload.name.strip(),
        date_of_birth=payload.date_of_birth,
        reference=payload.reference,
        created_at=utcnow(),
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return {
        "data": {
            "sanction_entry_id": entry.id,
            "list_id": entry.list_id,
            "name": entry.name,
            "date_of_birth": entry.date_of_birth,
            "reference": entry.reference,
        },
        "meta": _meta(),
    }


@app.get("/api/v1/sanction-entries", tags=["AML Settings"])
def list_sanction_entries(
    list_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    query = db.query(SanctionEntry)
    if list_id is not None:
        query = query.filter(SanctionEntry.list_id == list_id)
    rows, next_cursor = _paginate_by_id(query, SanctionEntry, limit, cursor)
    data = [
        {
            "sanction_entry_id": row.id,
            "list_id": row.list_id,
            "name": row.name,
            "date_of_birth": row.date_of_birth,
            "reference": row.reference,
        }
        for row in rows
    ]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.delete("/api/v1/sanction-entries/{sanction_entry_id}", tags=["AML Settings"])
def delete_sanction_entry(
    sanction_entry_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_AML_SETTINGS)
    entry = db.get(SanctionEntry, sanction_entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="sanction entry not found")
    db.delete(entry)
    db.commit()
    return {"data": {"sanction_entry_id": sanction_entry_id, "deleted": True}, "meta": _meta()}


# Currencies, rates and denominations


class CurrencyCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "code": "EUR",
                "name": "Euro",
                "symbol": "€",
                "country": "European Union",
                "market_rate": 0.92,
                "discount_percent": 2.5,
                "markup_percent": 3.5,
            }
        }
    }
    code: str
    name: str
    symbol: Optional[str] = None
    country: Optional[str] = None
    flag: Optional[str] = None
    market_rate: Optional[Decimal] = Field(default=None, gt=0)
    discount_percent: Optional[Decimal] = None
    markup_percent: Optional[Decimal] = None
    manual_buy_rate: bool = False
    manual_sell_rate: bool = False
    buy_rate: Optional[Decimal] = Field(default=None, gt=0)
    sell_rate: Optional[Decimal] = Field(default=None, gt=0)
    is_active: bool = True


class CurrencyUpdate(BaseModel):
    name: Optional[str] = None
    symbol: Optional[str] = None
    country: Optional[str] = None
    flag: Optional[str] = None
    market_rate: Optional[Decimal] = Field(default=None, gt=0)
    discount_percent: Optional[Decimal] = None
    markup_percent: Optional[Decimal] = None
    manual_buy_rate: Optional[bool] = None
    manual_sell_rate: Optional[bool] = None
    buy_rate: Optional[Decimal] = None
    sell_rate: Optional[Decimal] = None
    is_active: Optional[bool] = None


class MarketRateUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"market_rate": 1.3625}}}
    market_rate: Decimal = Field(gt=0)


class DenominationCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"value": 20, "is_coin": False}}}
    value: Decimal = Field(gt=0)
    is_coin: bool = False
    image_url: Optional[str] = None


_RATE_FIELDS = {"market_rate", "buy_rate", "sell_rate", "discount_percent", "markup_percent", "manual_buy_rate", "manual_sell_rate"}


@app.post("/api/v1/currencies", tags=["Currencies"])
def create_currency(
    payload: CurrencyCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_CURRENCIES)
    currency, provisioned = currencies.create_currency(db, payload.model_dump())
    db.commit()
    return {"data": {**_currency_out(currency), "tills_provisioned": provisioned}, "meta": _meta()}


@app.get("/api/v1/currencies", tags=["Currencies"])
def list_currencies(
    is_active: Optional[bool] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    query = db.query(Currency)
    if is_active is not None:
        query = query.filter(Currency.is_active == is_active)
    rows, next_cursor = _paginate_by_id(query, Currency, limit, cursor)
    return {"data": [_currency_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/currencies/quote", tags=["Currencies"])
def quote_exchange(
    from_currency: str = Query(...),
    to_currency: str = Query(...),
    amount: Decimal = Query(..., gt=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    data = transactions.quote(db, from_currency, to_currency, amount, settings.base_currency)
    for key in ("from_amount", "exchange_rate", "to_amount"):
        data[key] = _money(data[key])
    return {"data": data, "meta": _meta()}


@app.post("/api/v1/currencies/rates:refresh", tags=["Currencies"])
def refresh_rates(db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    require_capability(user, Capability.MODIFY_EXCHANGE_RATES)
    result = rates.bulk_update_rates(db, settings.base_currency)
    db.commit()
    return {"data": result, "meta": _meta(warnings=result["errors"])}


@app.get("/api/v1/currencies/{code}", tags=["Currencies"])
def get_currency(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    return {"data": _currency_out(currencies.get_currency(db, code)), "meta": _meta()}


@app.patch("/api/v1/currencies/{code}", tags=["Currencies"])
def update_currency(
    code: str,
    payload: CurrencyUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    if set(changes) - _RATE_FIELDS:
        require_capability(user, Capability.MANAGE_CURRENCIES)
    if set(changes) & _RATE_FIELDS:
        require_capability(user, Capability.MODIFY_EXCHANGE_RATES)
    currency = currencies.update_currency(db, currencies.get_currency(db, code), changes)
    db.commit()
    return {"data": _currency_out(currency), "meta": _meta()}


@app.put("/api/v1/currencies/{code}/market-rate", tags=["Currencies"])
def update_market_rate(
    code: str,
    payload: MarketRateUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MODIFY_EXCHANGE_RATES)
    currency = rates.apply_market_rate(currencies.get_currency(db, code), payload.market_rate)
    db.commit()
    return {"data": _currency_out(currency), "meta": _meta()}


@app.delete("/api/v1/currencies/{code}", tags=["Currencies"])
def delete_currency(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    require_capability(user, Capability.MANAGE_CURRENCIES)
    currency = currencies.get_currency(db, code)
    currencies.delete_currency(db, currency)
    db.commit()
    return {"data": {"code": code.upper(), "deleted": True}, "meta": _meta()}


@app.post("/api/v1/currencies/{code}/denominations", tags=["Denominations"])
def create_denomination(
    code: str,
    payload: DenominationCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_CURRENCIES)
    denomination = currencies.add_denomination(db, code, payload.value, payload.is_coin, payload.image_url)
    db.commit()
    db.refresh(denomination)
    return {
        "data": {
            "denomination_id": denomination.id,
            "currency_code": denomination.currency_code,
            "value": _money(denomination.value),
            "is_coin": denomination.is_coin,
            "image_url": denomination.image_url,
        },
        "meta": _meta(),
    }


@app.get("/api/v1/currencies/{code}/denominations", tags=["Denominations"])
def list_denominations(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    data = [
        {
            "denomination_id": row.id,
            "currency_code": row.currency_code,
            "value": _money(row.value),
            "is_coin": row.is_coin,
            "image_url": row.image_url,
        }
        for row in currencies.list_denominations(db, code)
    ]
    return {"data": data, "meta": _meta()}


@app.delete("/api/v1/denominations/{denomination_id}", tags=["Denominations"])
def delete_denomination(
    denomination_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_CURRENCIES)
    denomination = db.get(Denomination, denomination_id)
    if not denomination:
        raise HTTPException(status_code=404, detail="denomination not found")
    db.delete(denomination)
    db.commit()
    return {"data": {"denomination_id": denomination_id, "deleted": True}, "meta": _meta()}


# Customers


class CustomerFields(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    occupation: Optional[str] = None
    business_name: Optional[str] = None
    incorporation_number: Optional[str] = None
    business_type: Optional[str] = None
    is_msb: bool = False
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    notes: Optional[str] = None


class CustomerCreate(CustomerFields):
    model_config = {
        "json_schema_extra": {
            "example": {
                "type": "individual",
                "first_name": "Maria",
                "last_name": "Gomez",
                "date_of_birth": "1985-04-12",
                "phone": "+1 416 555 0100",
                "address": "12 King St W",
                "city": "Toronto",
                "country": "CA",
            }
        }
    }
    type: str


class CustomerUpdate(CustomerFields):
    type: Optional[str] = None
    is_msb: Optional[bool] = None


class FalsePositiveRecord(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "basis": "Date of birth and nationality differ from the listed person.",
                "whitelist": True,
                "whitelist_expiry": "2027-01-01T00:00:00Z",
            }
        }
    }
    basis: str
    whitelist: bool = False
    whitelist_expiry: Optional[datetime] = None


class KycUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"is_pep": True, "pep_details": "Former deputy minister"}}}
    is_pep: Optional[bool] = None
    pep_details: Optional[str] = None
    is_suspicious: Optional[bool] = None
    suspicious_reason: Optional[str] = None
    aml_status: Optional[str] = None


class StatusUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"status": "active"}}}
    status: str
    notes: Optional[str] = None


@app.post("/api/v1/customers", tags=["Customers"])
def create_customer(
    payload: CustomerCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    config = aml.load_aml_config(db)
    customer, screening = customers.create_customer(db, payload.model_dump(), config, user)
    db.commit()
    warnings = [f"Sanction screening {screening.status}"] if screening and screening.status != "clear" else []
    return {"data": _customer_out(customer), "meta": _meta(warnings=warnings)}


@app.get("/api/v1/customers", tags=["Customers"])
def list_customers(
    status: Optional[str] = Query(default=None),
    type: Optional[str] = Query(default=None),
    risk_level: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    query = db.query(Customer)
    if status is not None:
        query = query.filter(Customer.status == status)
    if type is not None:
        query = query.filter(Customer.type == type)
    if risk_level is not None:
        query = query.filter(Customer.risk_level == risk_level)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                Customer.customer_id.ilike(pattern),
                Customer.full_name.ilike(pattern),
                Customer.business_name.ilike(pattern),
                Customer.email.ilike(pattern),
                Customer.phone.ilike(pattern),
            )
        )
    rows, next_cursor = _paginate_by_id(query, Customer, limit, cursor)
    return {"data": [_customer_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/customers/stats", tags=["Customers"])
def customer_stats(db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    rows = db.execute(select(Customer)).scalars().all()
    return {
        "data": {
            "total": len(rows),
            "by_status": {status: sum(1 for r in rows if r.status == status) for status in customers.CUSTOMER_STATUSES},
            "by_type": {kind: sum(1 for r in rows if r.type == kind) for kind in customers.CUSTOMER_TYPES},
            "by_risk_level": {level: sum(1 for r in rows if r.risk_level == level) for level in ("low", "medium", "high")},
            "sanctions_flagged": sum(1 for r in rows if r.sanctions_screening_status == "flagged"),
            "pep": sum(1 for r in rows if r.is_pep),
        },
        "meta": _meta(),
    }


@app.get("/api/v1/customers/{customer_id}", tags=["Customers"])
def get_customer(customer_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    return {"data": _customer_out(customers.get_customer(db, customer_id)), "meta": _meta()}


@app.patch("/api/v1/customers/{customer_id}", tags=["Customers"])
def update_customer(
    customer_id: str,
    payload: CustomerUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    config = aml.load_aml_config(db)
    customer = customers.update_customer(
        db, customers.get_customer(db, customer_id), payload.model_dump(exclude_unset=True), config
    )
    db.commit()
    return {"data": _customer_out(customer), "meta": _meta()}


@app.delete("/api/v1/customers/{customer_id}", tags=["Customers"])
def delete_customer(customer_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    customers.delete_customer(db, customers.get_customer(db, customer_id))
    db.commit()
    return {"data": {"customer_id": customer_id, "deleted": True}, "meta": _meta()}


@app.post("/api/v1/customers/{customer_id}/screenings", tags=["Customers"])
def rescreen_customer(customer_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    config = aml.load_aml_config(db)
    customer = customers.get_customer(db, customer_id)
    result = customers.screen_customer(db, customer, config)
    db.commit()
    return {
        "data": {
            "customer_id": customer.customer_id,
            "status": result.status,
            "lists_checked": list(result.lists_checked),
            "matches": [
                {"list_id": m.list_id, "name": m.name, "date_of_birth": m.date_of_birth, "reference": m.reference}
                for m in result.matches
            ],
            "reason": result.reason,
        },
        "meta": _meta(),
    }


@app.post("/api/v1/customers/{customer_id}/false-positive", tags=["Customers"])
def record_false_positive(
    customer_id: str,
    payload: FalsePositiveRecord,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    config = aml.load_aml_config(db)
    customer = customers.record_false_positive(
        db,
        customers.get_customer(db, customer_id),
        config,
        basis=payload.basis,
        whitelist=payload.whitelist,
        whitelist_expiry=payload.whitelist_expiry,
        user=user,
    )
    db.commit()
    return {"data": _customer_out(customer), "meta": _meta()}


@app.put("/api/v1/customers/{customer_id}/kyc", tags=["Customers"])
def update_kyc(
    customer_id: str,
    payload: KycUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    config = aml.load_aml_config(db)
    customer = customers.update_kyc(db, customers.get_customer(db, customer_id), config, **payload.model_dump())
    db.commit()
    return {"data": _customer_out(customer), "meta": _meta()}


@app.put("/api/v1/customers/{customer_id}/status", tags=["Customers"])
def update_customer_status(
    customer_id: str,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    customer = customers.set_status(
        db, customers.get_customer(db, customer_id), payload.status, payload.notes, user
    )
    db.commit()
    return {"data": _customer_out(customer), "meta": _meta()}


# Tills


class TillCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"till_id": "T1", "till_name": "Front Counter", "reserve_for_admin": False, "share_till": False}}}
    till_id: str
    till_name: str
    reserve_for_admin: bool = False
    share_till: bool = False


class TillUpdate(BaseModel):
    till_name: Optional[str] = None
    reserve_for_admin: Optional[bool] = None
    share_till: Optional[bool] = None
    is_active: Optional[bool] = None


class CashMovement(BaseModel):
    model_config = {"json_schema_extra": {"example": {"type": "cash_in", "currency_code": "USD", "amount": 500, "notes": "Opening float"}}}
    type: str
    currency_code: str
    amount: Decimal
    notes: Optional[str] = None


class TillTransfer(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "source_till_id": "T1",
                "destination_till_id": "T2",
                "amounts": {"USD": 500, "EUR": 200},
                "notes": "Midday rebalance",
            }
        }
    }
    source_till_id: str
    destination_till_id: str
    amounts: dict[str, Decimal]
    notes: Optional[str] = None


class ReconciliationCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"counted": {"USD": 1480, "EUR": 200}, "apply_adjustments": True}}}
    counted: dict[str, Decimal]
    apply_adjustments: bool = False
    notes: Optional[str] = None


@app.post("/api/v1/tills", tags=["Tills"])
def create_till(payload: TillCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    require_capability(user, Capability.MANAGE_TILLS)
    till, accounts = tills.create_till(
        db,
        till_id=payload.till_id,
        till_name=payload.till_name,
        reserve_for_admin=payload.reserve_for_admin,
        share_till=payload.share_till,
        user=user,
    )
    db.commit()
    return {
        "data": {**_till_out(till), "accounts": [_account_out(account) for account in accounts]},
        "meta": _meta(),
    }


@app.get("/api/v1/tills", tags=["Tills"])
def list_tills(
    is_active: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    query = db.query(Till)
    if is_active is not None:
        query = query.filter(Till.is_active == is_active)
    rows, next_cursor = _paginate_by_id(query, Till, limit, cursor)
    return {"data": [_till_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/tills/current-session", tags=["Till Sessions"])
def current_session(db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    session = tills.active_session(db, user.id)
    return {"data": _session_out(session) if session is not None else None, "meta": _meta()}


@app.post("/api/v1/tills/sign-out", tags=["Till Sessions"])
def sign_out(db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    session = tills.sign_out(db, user)
    db.commit()
    return {"data": _session_out(session), "meta": _meta()}


@app.post("/api/v1/tills/sessions:cleanup", tags=["Till Sessions"])
def cleanup_sessions(db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    require_capability(user, Capability.MANAGE_TILLS)
    closed = tills.cleanup_stale_sessions(db, settings.stale_session_hours)
    db.commit()
    return {"data": {"closed": closed}, "meta": _meta()}


@app.post("/api/v1/till-transfers", tags=["Tills"])
def transfer_between_tills(
    payload: TillTransfer,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.TRANSFER_BETWEEN_TILLS)
    source = tills.get_till(db, payload.source_till_id)
    destination = tills.get_till(db, payload.destination_till_id)
    amounts = {code.strip().upper(): amount for code, amount in payload.amounts.items()}
    reference, entries = ledger.transfer(
        db,
        source.till_id,
        destination.till_id,
        amounts,
        user_id=user.id,
        notes=payload.notes,
    )
    db.commit()
    return {
        "data": {"reference": reference, "entries": [_till_entry_out(entry) for entry in entries]},
        "meta": _meta(),
    }


@app.get("/api/v1/tills/{till_id}", tags=["Tills"])
def get_till(till_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    return {"data": _till_out(tills.get_till(db, till_id)), "meta": _meta()}


@app.patch("/api/v1/tills/{till_id}", tags=["Tills"])
def update_till(
    till_id: str,
    payload: TillUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.MANAGE_TILLS)
    till = tills.update_till(db, tills.get_till(db, till_id), **payload.model_dump())
    db.commit()
    return {"data": _till_out(till), "meta": _meta()}


@app.delete("/api/v1/tills/{till_id}", tags=["Tills"])
def delete_till(till_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    require_capability(user, Capability.MANAGE_TILLS)
    till = tills.get_till(db, till_id)
    tills.delete_till(db, till)
    db.commit()
    return {"data": {"till_id": till.till_id, "deleted": True}, "meta": _meta()}


@app.post("/api/v1/tills/{till_id}/sign-in", tags=["Till Sessions"])
def sign_in(till_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    session = tills.sign_in(db, till_id, user)
    db.commit()
    return {"data": _session_out(session), "meta": _meta()}


@app.get("/api/v1/tills/{till_id}/sessions", tags=["Till Sessions"])
def list_till_sessions(till_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    tills.get_till(db, till_id)
    return {"data": [_session_out(row) for row in tills.list_sessions(db, till_id)], "meta": _meta()}


@app.get("/api/v1/tills/{till_id}/balances", tags=["Tills"])
def till_balances(till_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    till = tills.get_till(db, till_id)
    return {"data": [_account_out(account) for account in ledger.balances(db, till.till_id)], "meta": _meta()}


@app.post("/api/v1/tills/{till_id}/cash-movements", tags=["Tills"])
def record_cash_movement(
    till_id: str,
    payload: CashMovement,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    till = tills.get_till(db, till_id)
    currency = payload.currency_code.strip().upper()
    if payload.type == "adjustment":
        require_capability(user, Capability.RECONCILE_TILLS)
        entry = ledger.adjust(db, till.till_id, currency, payload.amount, user_id=user.id, notes=payload.notes)
    elif payload.type in ("cash_in", "cash_out"):
        tills.require_session(db, user.id, till.till_id)
        move = ledger.cash_in if payload.type == "cash_in" else ledger.cash_out
        entry = move(db, till.till_id, currency, payload.amount, user_id=user.id, notes=payload.notes)
    else:
        raise InputValidationError("Movement type must be cash_in, cash_out or adjustment", type=payload.type)
    db.commit()
    return {"data": _till_entry_out(entry), "meta": _meta()}


@app.get("/api/v1/tills/{till_id}/transactions", tags=["Tills"])
def list_till_transactions(
    till_id: str,
    currency: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    till = tills.get_till(db, till_id)
    query = db.query(TillTransaction).filter(TillTransaction.till_id == till.till_id)
    if currency is not None:
        query = query.filter(TillTransaction.currency == currency.upper())
    rows, next_cursor = _paginate_by_id(query, TillTransaction, limit, cursor)
    return {"data": [_till_entry_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/api/v1/tills/{till_id}/reconciliations", tags=["Tills"])
def reconcile_till(
    till_id: str,
    payload: ReconciliationCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.RECONCILE_TILLS)
    till = tills.get_till(db, till_id)
    counted = {code.strip().upper(): amount for code, amount in payload.counted.items()}
    rows = ledger.reconcile(
        db,
        till.till_id,
        counted,
        user_id=user.id,
        apply_adjustments=payload.apply_adjustments,
        notes=payload.notes,
    )
    db.commit()
    warnings = [f"{row.currency_code} variance {row.variance}" for row in rows if row.variance != 0]
    return {"data": [_reconciliation_out(row) for row in rows], "meta": _meta(warnings=warnings)}


@app.get("/api/v1/tills/{till_id}/reconciliations", tags=["Tills"])
def list_reconciliations(
    till_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.RECONCILE_TILLS)
    till = tills.get_till(db, till_id)
    query = db.query(TillReconciliation).filter(TillReconciliation.till_id == till.till_id)
    rows, next_cursor = _paginate_by_id(query, TillReconciliation, limit, cursor)
    return {"data": [_reconciliation_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


# Transactions


class TransactionCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "from_currency": "EUR",
                "from_amount": 500,
                "to_currency": "USD",
                "to_amount": 540,
                "exchange_rate": 1.08,
                "customer_id": "CUST-123456789",
                "payment_method": "cash",
            }
        }
    }
    from_currency: str
    from_amount: Decimal = Field(gt=0)
    to_currency: str
    to_amount: Decimal = Field(gt=0)
    exchange_rate: Decimal = Field(gt=0)
    type: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    service_fee: Optional[Decimal] = None
    service_fee_type: Optional[str] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    override_warnings: bool = False
    override_reason: Optional[str] = None


class TransactionUpdate(BaseModel):
    from_amount: Optional[Decimal] = None
    to_amount: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    service_fee: Optional[Decimal] = None
    service_fee_type: Optional[str] = None
    payment_method: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None


def _visible_transaction(db: Session, transaction_id: str, user: User) -> Transaction:
    transaction = transactions.get_transaction(db, transaction_id)
    if transaction.user_id != user.id and not authorize(user, Capability.VIEW_ALL_TRANSACTIONS):
        raise HTTPException(status_code=404, detail="transaction not found")
    return transaction


@app.post("/api/v1/transactions", tags=["Transactions"])
def create_transaction(
    payload: TransactionCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    config = aml.load_aml_config(db)
    transaction, evaluation = transactions.create_transaction(
        db,
        config,
        user,
        base_currency=settings.base_currency,
        **payload.model_dump(),
    )
    db.commit()
    return {"data": _transaction_out(transaction), "meta": _meta(warnings=evaluation.warnings)}


@app.get("/api/v1/transactions", tags=["Transactions"])
def list_transactions(
    status: Optional[str] = Query(default=None),
    type: Optional[str] = Query(default=None),
    customer_id: Optional[str] = Query(default=None),
    till_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    query = db.query(Transaction)
    if not authorize(user, Capability.VIEW_ALL_TRANSACTIONS):
        query = query.filter(Transaction.user_id == user.id)
    if status is not None:
        query = query.filter(Transaction.status == status)
    if type is not None:
        query = query.filter(Transaction.type == type)
    if customer_id is not None:
        query = query.filter(Transaction.customer_id == customer_id)
    if till_id is not None:
        query = query.filter(Transaction.till_id == till_id.upper())
    rows, next_cursor = _paginate_by_id(query, Transaction, limit, cursor)
    return {"data": [_transaction_out(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/transactions/stats", tags=["Transactions"])
def transaction_stats(db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    scope = None if authorize(user, Capability.VIEW_ALL_TRANSACTIONS) else user.id
    data = transactions.stats(db, scope)
    data["completed_volume"] = {code: _money(amount) for code, amount in data["completed_volume"].items()}
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/transactions/{transaction_id}", tags=["Transactions"])
def get_transaction(transaction_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    return {"data": _transaction_out(_visible_transaction(db, transaction_id, user)), "meta": _meta()}


@app.patch("/api/v1/transactions/{transaction_id}", tags=["Transactions"])
def update_transaction(
    transaction_id: str,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    config = aml.load_aml_config(db)
    transaction = transactions.update_transaction(
        db,
        _visible_transaction(db, transaction_id, user),
        payload.model_dump(exclude_unset=True),
        user,
        config,
    )
    db.commit()
    return {"data": _transaction_out(transaction), "meta": _meta(warnings=transaction.warnings or [])}


@app.put("/api/v1/transactions/{transaction_id}/status", tags=["Transactions"])
def update_transaction_status(
    transaction_id: str,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    transaction = transactions.change_status(db, _visible_transaction(db, transaction_id, user), payload.status, user)
    db.commit()
    return {"data": _transaction_out(transaction), "meta": _meta()}


@app.delete("/api/v1/transactions/{transaction_id}", tags=["Transactions"])
def delete_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    transactions.delete_transaction(db, _visible_transaction(db, transaction_id, user))
    db.commit()
    return {"data": {"transaction_id": transaction_id, "deleted": True}, "meta": _meta()}


# Compliance alerts and reports


class AlertCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "alert_type": "suspicious_activity",
                "severity": "high",
                "description": "Customer split a large exchange across three visits.",
                "customer_id": "CUST-123456789",
            }
        }
    }
    alert_type: str
    severity: str
    description: str
    customer_id: Optional[str] = None
    transaction_id: Optional[str] = None


class AlertStatusUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"status": "resolved", "resolution_notes": "Verified identity documents."}}}
    status: str
    resolution_notes: Optional[str] = None


@app.post("/api/v1/alerts", tags=["Compliance Alerts"])
def create_alert(payload: AlertCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    customer = customers.get_customer(db, payload.customer_id) if payload.customer_id else None
    transaction = transactions.get_transaction(db, payload.transaction_id) if payload.transaction_id else None
    alert = alerts.raise_alert(
        db,
        alert_type=payload.alert_type,
        severity=payload.severity,
        description=payload.description,
        customer=customer,
        transaction=transaction,
    )
    db.commit()
    return {"data": _alert_out(alert, db), "meta": _meta()}


@app.get("/api/v1/alerts", tags=["Compliance Alerts"])
def list_alerts(
    status: Optional[str] = Query(default=None),
    severity: Optional[str] = Query(default=None),
    alert_type: Optional[str] = Query(default=None),
    customer_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    query = db.query(ComplianceAlert)
    if status is not None:
        query = query.filter(ComplianceAlert.status == status)
    if severity is not None:
        query = query.filter(ComplianceAlert.severity == severity)
    if alert_type is not None:
        query = query.filter(ComplianceAlert.alert_type == alert_type)
    if customer_id is not None:
        query = query.filter(ComplianceAlert.customer_id == customers.get_customer(db, customer_id).id)
    rows, next_cursor = _paginate_by_id(query, ComplianceAlert, limit, cursor)
    return {"data": [_alert_out(row, db) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/alerts/stats", tags=["Compliance Alerts"])
def alert_stats(db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    return {"data": alerts.alert_stats(db), "meta": _meta()}


@app.get("/api/v1/alerts/{alert_id}", tags=["Compliance Alerts"])
def get_alert(alert_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    alert = db.get(ComplianceAlert, alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="alert not found")
    return {"data": _alert_out(alert, db), "meta": _meta()}


@app.put("/api/v1/alerts/{alert_id}/status", tags=["Compliance Alerts"])
def update_alert_status(
    alert_id: int,
    payload: AlertStatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    alert = db.get(ComplianceAlert, alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="alert not found")
    alerts.transition_alert(db, alert, payload.status, user, payload.resolution_notes)
    db.commit()
    return {"data": _alert_out(alert, db), "meta": _meta()}


@app.get("/api/v1/reports/sar", tags=["Compliance Reports"])
def sar_report(
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    rows = alerts.sar_alerts(db, as_utc(date_from), as_utc(date_to), status)
    return {"data": [_alert_out(row, db) for row in rows], "meta": _meta()}


@app.get("/api/v1/reports/ctr", tags=["Compliance Reports"])
def ctr_report(
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    customer_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    config = aml.load_aml_config(db)
    rows = alerts.ctr_transactions(db, config.lct_threshold, as_utc(date_from), as_utc(date_to), customer_id)
    return {
        "data": {
            "threshold": _money(config.lct_threshold),
            "transactions": [_transaction_out(row) for row in rows],
        },
        "meta": _meta(),
    }


def _audit_out(entry: AuditLogEntry, db: Session) -> dict:
    actor = db.get(User, entry.user_id) if entry.user_id is not None else None
    return {
        "audit_id": entry.id,
        "user_id": entry.user_id,
        "user_email": actor.email if actor is not None else None,
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "details": entry.details,
        "created_at": _iso(entry.created_at),
    }


@app.get("/api/v1/audit-log", tags=["Audit"])
def list_audit_log(
    user_id: Optional[int] = Query(default=None),
    entity_type: Optional[str] = Query(default=None),
    entity_id: Optional[str] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    rows = audit.list_entries(
        db,
        user_id=user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
    )
    return {"data": [_audit_out(row, db) for row in rows], "meta": _meta()}


@app.get("/api/v1/audit-log/stats", tags=["Audit"])
def audit_stats(db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    require_capability(user, Capability.REVIEW_COMPLIANCE)
    return {"data": audit.stats(db), "meta": _meta()}
