from __future__ import annotations

import math
from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import (
    AgentType,
    Currency,
    PaymentType,
    SettlementType,
    SupplierTransactionType,
    UserRole,
)
from .timezone_utils import parse_business_date


def _normalize_currency(value):
    if value is None or isinstance(value, Currency):
        return value
    if isinstance(value, str):
        text = value.strip().upper()
        return text or None
    return value


def _normalize_choice(value):
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _normalize_date(value):
    if value in (None, ""):
        return None
    try:
        return parse_business_date(value)
    except ValueError as exc:
        raise ValueError("date must be YYYY-MM-DD or an ISO 8601 datetime") from exc


def _ensure_finite(value: Optional[float], field_name: str) -> Optional[float]:
    if value is None:
        return value
    if not math.isfinite(value):
        raise ValueError(f"{field_name} must be a finite number")
    return value


def _ensure_non_negative(value: Optional[float], field_name: str) -> Optional[float]:
    value = _ensure_finite(value, field_name)
    if value is not None and value < 0:
        raise ValueError(f"{field_name} must be non-negative")
    return value


def _ensure_positive(value: Optional[float], field_name: str) -> Optional[float]:
    value = _ensure_finite(value, field_name)
    if value is not None and value <= 0:
        raise ValueError(f"{field_name} must be positive")
    return value


def _ensure_positive_id(value: Optional[int], field_name: str) -> Optional[int]:
    if value is not None and value <= 0:
        raise ValueError(f"{field_name} must be a positive integer")
    return value


# ---------------------------------------------------------------- customers


class CustomerCreate(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class CustomerRead(CustomerCreate):
    id: int
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------- agents


class AgentCreate(BaseModel):
    name: str = Field(min_length=1)
    type: AgentType
    usdt_rate: Optional[float] = None
    dhs_rate: Optional[float] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _normalize_choice(value)

    @field_validator("usdt_rate", "dhs_rate")
    @classmethod
    def validate_rates(cls, value: Optional[float], info) -> Optional[float]:
        return _ensure_positive(value, info.field_name)


class AgentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    type: Optional[AgentType] = None
    usdt_rate: Optional[float] = None
    dhs_rate: Optional[float] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _normalize_choice(value)

    @field_validator("usdt_rate", "dhs_rate")
    @classmethod
    def validate_rates(cls, value: Optional[float], info) -> Optional[float]:
        return _ensure_positive(value, info.field_name)


class AgentRead(BaseModel):
    id: int
    name: str
    type: AgentType
    usdt_rate: float
    dhs_rate: float
    phone: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------- suppliers


class SupplierCreate(BaseModel):
    name: str = Field(min_length=1)
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    rmb_to_usdt_rate: Optional[float] = None

    @field_validator("rmb_to_usdt_rate")
    @classmethod
    def validate_rate(cls, value: Optional[float]) -> Optional[float]:
        return _ensure_positive(value, "rmb_to_usdt_rate")


class SupplierUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    rmb_to_usdt_rate: Optional[float] = None

    @field_validator("rmb_to_usdt_rate")
    @classmethod
    def validate_rate(cls, value: Optional[float]) -> Optional[float]:
        return _ensure_positive(value, "rmb_to_usdt_rate")


class SupplierRead(BaseModel):
    id: int
    name: str
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    rmb_to_usdt_rate: float
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------- bank accounts


class BankAccountCreate(BaseModel):
    account_name: str = Field(min_length=1)
    bank_name: str = Field(min_length=1)
    account_number: Optional[str] = None
    currency: Currency
    balance: float = 0.0

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value):
        return _normalize_currency(value)

    @field_validator("balance")
    @classmethod
    def validate_balance(cls, value: float) -> float:
        return _ensure_finite(value, "balance")


class BankAccountUpdate(BaseModel):
    account_name: Optional[str] = Field(default=None, min_length=1)
    bank_name: Optional[str] = Field(default=None, min_length=1)
    account_number: Optional[str] = None
    currency: Optional[Currency] = None
    balance: Optional[float] = None

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value):
        return _normalize_currency(value)

    @field_validator("balance")
    @classmethod
    def validate_balance(cls, value: Optional[float]) -> Optional[float]:
        return _ensure_finite(value, "balance")


class BankAccountRead(BaseModel):
    id: int
    account_name: str
    bank_name: str
    account_number: Optional[str] = None
    currency: Currency
    balance: float
    opening_balance: float
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class BankReconciliation(BaseModel):
    bank_account_id: int
    stored_balance: float
    opening_balance: float
    payments_total: float
    payment_count: int
    expected_balance: float
    drift: float
    applied: bool = False


# ---------------------------------------------------------------- bills


class BillCreate(BaseModel):
    customer_id: int
    agent_id: Optional[int] = None
    bill_date: Optional[date] = None
    amount: float = 0.0
    selling_price: float = 0.0
    total_bill: float

    @field_validator("customer_id", "agent_id")
    @classmethod
    def validate_ids(cls, value: Optional[int], info) -> Optional[int]:
        return _ensure_positive_id(value, info.field_name)

    @field_validator("bill_date", mode="before")
    @classmethod
    def normalize_bill_date(cls, value):
        return _normalize_date(value)

    @field_validator("amount", "selling_price", "total_bill")
    @classmethod
    def validate_figures(cls, value: float, info) -> float:
        return _ensure_non_negative(value, info.field_name)


class BillUpdate(BaseModel):
    agent_id: Optional[int] = None
    bill_date: Optional[date] = None
    amount: Optional[float] = None
    selling_price: Optional[float] = None
    total_bill: Optional[float] = None

    @field_validator("agent_id")
    @classmethod
    def validate_agent_id(cls, value: Optional[int]) -> Optional[int]:
        return _ensure_positive_id(value, "agent_id")

    @field_validator("bill_date", mode="before")
    @classmethod
    def normalize_bill_date(cls, value):
        return _normalize_date(value)

    @field_validator("amount", "selling_price", "total_bill")
    @classmethod
    def validate_figures(cls, value: Optional[float], info) -> Optional[float]:
        return _ensure_non_negative(value, info.field_name)


class BillRead(BaseModel):
    id: int
    customer_id: Optional[int] = None
    agent_id: Optional[int] = None
    bill_date: date
    amount: float
    selling_price: float
    total_bill: float
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------- payments


class PaymentCreate(BaseModel):
    customer_id: Optional[int] = None
    agent_id: Optional[int] = None
    supplier_id: Optional[int] = None
    bank_account_id: Optional[int] = None
    payment_date: Optional[date] = None
    amount: float
    currency: Currency = Currency.AED
    type: PaymentType = PaymentType.CUSTOMER_PAYMENT
    agent_rate: Optional[float] = None
    notes: Optional[str] = None

    @field_validator("customer_id", "agent_id", "supplier_id", "bank_account_id")
    @classmethod
    def validate_ids(cls, value: Optional[int], info) -> Optional[int]:
        return _ensure_positive_id(value, info.field_name)

    @field_validator("payment_date", mode="before")
    @classmethod
    def normalize_payment_date(cls, value):
        return _normalize_date(value)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value):
        return _normalize_currency(value) or Currency.AED

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        if value in (None, ""):
            return PaymentType.CUSTOMER_PAYMENT
        return _normalize_choice(value)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: float) -> float:
        return _ensure_finite(value, "amount")

    @field_validator("agent_rate")
    @classmethod
    def validate_agent_rate(cls, value: Optional[float]) -> Optional[float]:
        # not compared against the agent's configured rate
        return _ensure_positive(value, "agent_rate")


class PaymentUpdate(BaseModel):
    customer_id: Optional[int] = None
    agent_id: Optional[int] = None
    supplier_id: Optional[int] = None
    bank_account_id: Optional[int] = None
    payment_date: Optional[date] = None
    amount: Optional[float] = None
    currency: Optional[Currency] = None
    type: Optional[PaymentType] = None
    agent_rate: Optional[float] = None
    notes: Optional[str] = None
    # what the caller believes the stored row held; checked against the row, never trusted
    old_bank_account_id: Optional[int] = None
    old_amount: Optional[float] = None

    @field_validator("customer_id", "agent_id", "supplier_id", "bank_account_id", "old_bank_account_id")
    @classmethod
    def validate_ids(cls, value: Optional[int], info) -> Optional[int]:
        return _ensure_positive_id(value, info.field_name)

    @field_validator("payment_date", mode="before")
    @classmethod
    def normalize_payment_date(cls, value):
        return _normalize_date(value)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value):
        return _normalize_currency(value)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _normalize_choice(value)

    @field_validator("amount", "old_amount")
    @classmethod
    def validate_amounts(cls, value: Optional[float], info) -> Optional[float]:
        return _ensure_finite(value, info.field_name)

    @field_validator("agent_rate")
    @classmethod
    def validate_agent_rate(cls, value: Optional[float]) -> Optional[float]:
        return _ensure_positive(value, "agent_rate")


class PaymentRead(BaseModel):
    id: int
    customer_id: Optional[int] = None
    agent_id: Optional[int] = None
    supplier_id: Optional[int] = None
    bank_account_id: Optional[int] = None
    payment_date: date
    amount: float
    currency: Currency
    type: PaymentType
    agent_rate: Optional[float] = None
    notes: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class PaymentDetail(PaymentRead):
    customer_name: Optional[str] = None
    agent_name: Optional[str] = None
    agent_type: Optional[AgentType] = None
    bank_account_name: Optional[str] = None
    bank_name: Optional[str] = None
    bank_currency: Optional[Currency] = None


class PaymentWriteResponse(BaseModel):
    id: Optional[int] = None
    message: str
    affected: int
    balance_adjusted: bool
    reversal_applied: Optional[bool] = None
    adjustment_applied: Optional[bool] = None
    payment: Optional[PaymentRead] = None


# ---------------------------------------------------------------- supplier transactions


class SupplierTransactionCreate(BaseModel):
    supplier_id: int
    customer_id: Optional[int] = None
    transaction_date: Optional[date] = None
    rmb_amount: float
    usdt_rate: float
    # stored as given; not recomputed from rmb_amount / usdt_rate
    calculated_usdt: float
    type: SupplierTransactionType
    notes: Optional[str] = None

    @field_validator("supplier_id", "customer_id")
    @classmethod
    def validate_ids(cls, value: Optional[int], info) -> Optional[int]:
        return _ensure_positive_id(value, info.field_name)

    @field_validator("transaction_date", mode="before")
    @classmethod
    def normalize_transaction_date(cls, value):
        return _normalize_date(value)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _normalize_choice(value)

    @field_validator("rmb_amount", "calculated_usdt")
    @classmethod
    def validate_amounts(cls, value: float, info) -> float:
        return _ensure_non_negative(value, info.field_name)

    @field_validator("usdt_rate")
    @classmethod
    def validate_rate(cls, value: float) -> float:
        return _ensure_positive(value, "usdt_rate")


class SupplierTransactionUpdate(BaseModel):
    supplier_id: Optional[int] = None
    customer_id: Optional[int] = None
    transaction_date: Optional[date] = None
    rmb_amount: Optional[float] = None
    usdt_rate: Optional[float] = None
    calculated_usdt: Optional[float] = None
    type: Optional[SupplierTransactionType] = None
    notes: Optional[str] = None

    @field_validator("supplier_id", "customer_id")
    @classmethod
    def validate_ids(cls, value: Optional[int], info) -> Optional[int]:
        return _ensure_positive_id(value, info.field_name)

    @field_validator("transaction_date", mode="before")
    @classmethod
    def normalize_transaction_date(cls, value):
        return _normalize_date(value)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _normalize_choice(value)

    @field_validator("rmb_amount", "calculated_usdt")
    @classmethod
    def validate_amounts(cls, value: Optional[float], info) -> Optional[float]:
        return _ensure_non_negative(value, info.field_name)

    @field_validator("usdt_rate")
    @classmethod
    def validate_rate(cls, value: Optional[float]) -> Optional[float]:
        return _ensure_positive(value, "usdt_rate")


class SupplierTransactionRead(BaseModel):
    id: int
    supplier_id: Optional[int] = None
    customer_id: Optional[int] = None
    transaction_date: date
    rmb_amount: float
    usdt_rate: float
    calculated_usdt: float
    type: SupplierTransactionType
    notes: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class SupplierTransactionDetail(SupplierTransactionRead):
    supplier_name: Optional[str] = None
    customer_name: Optional[str] = None


# ---------------------------------------------------------------- agent settlements


class AgentSettlementCreate(BaseModel):
    agent_id: int
    settlement_date: Optional[date] = None
    amount: float
    currency: Currency = Currency.AED
    type: SettlementType
    notes: Optional[str] = None

    @field_validator("agent_id")
    @classmethod
    def validate_agent_id(cls, value: int) -> int:
        return _ensure_positive_id(value, "agent_id")

    @field_validator("settlement_date", mode="before")
    @classmethod
    def normalize_settlement_date(cls, value):
        return _normalize_date(value)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value):
        return _normalize_currency(value) or Currency.AED

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _normalize_choice(value)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: float) -> float:
        return _ensure_non_negative(value, "amount")


class AgentSettlementUpdate(BaseModel):
    settlement_date: Optional[date] = None
    amount: Optional[float] = None
    currency: Optional[Currency] = None
    type: Optional[SettlementType] = None
    notes: Optional[str] = None

    @field_validator("settlement_date", mode="before")
    @classmethod
    def normalize_settlement_date(cls, value):
        return _normalize_date(value)

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, value):
        return _normalize_currency(value)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _normalize_choice(value)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: Optional[float]) -> Optional[float]:
        return _ensure_non_negative(value, "amount")


class AgentSettlementRead(BaseModel):
    id: int
    agent_id: Optional[int] = None
    settlement_date: date
    amount: float
    currency: Currency
    type: SettlementType
    notes: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------- write results


class MutationResult(BaseModel):
    id: Optional[int] = None
    message: str
    affected: int = 1


# ---------------------------------------------------------------- balances


class CustomerBalanceEntry(CustomerRead):
    total_billed: float = 0.0
    total_paid: float = 0.0
    supplier_paid: float = 0.0
    balance: float = 0.0


class CustomerSummary(BaseModel):
    total_billed: float = 0.0
    total_paid: float = 0.0
    supplier_paid: float = 0.0
    balance: float = 0.0


class CustomerStatement(BaseModel):
    customer: CustomerRead
    bills: List[BillRead]
    payments: List[PaymentDetail]
    supplier_transactions: List[SupplierTransactionDetail]
    summary: CustomerSummary


class AgentBalanceEntry(AgentRead):
    total_received: float = 0.0
    total_settled: float = 0.0
    pending_balance: float = 0.0


class AgentSummary(BaseModel):
    total_received: float = 0.0
    total_settled: float = 0.0
    total_paid_out: float = 0.0
    pending_balance: float = 0.0


class AgentStatement(BaseModel):
    agent: AgentRead
    payments: List[PaymentDetail]
    settlements: List[AgentSettlementRead]
    summary: AgentSummary


class SupplierBalanceEntry(SupplierRead):
    total_received_usdt: float = 0.0
    total_paid_usdt: float = 0.0
    net_balance: float = 0.0


class SupplierSummary(BaseModel):
    total_received_usdt: float = 0.0
    total_paid_usdt: float = 0.0
    total_rmb_received: float = 0.0
    net_balance: float = 0.0


class SupplierStatement(BaseModel):
    supplier: SupplierRead
    transactions: List[SupplierTransactionDetail]
    summary: SupplierSummary


class BankAccountStatement(BaseModel):
    bank_account: BankAccountRead
    payments: List[PaymentDetail]
    reconciliation: BankReconciliation


class PartyOverview(BaseModel):
    count: int = 0
    total_balance: float = 0.0


class BankOverview(BaseModel):
    count: int = 0
    total_balance: float = 0.0
    currencies: List[Currency] = Field(default_factory=list)


class SystemOverview(BaseModel):
    customers: PartyOverview
    agents: PartyOverview
    suppliers: PartyOverview
    bank_accounts: BankOverview


# ---------------------------------------------------------------- staff access


class LoginRequest(BaseModel):
    username: str
    password: str


class UserRead(BaseModel):
    id: int
    username: str
    role: UserRole
    is_active: bool
    permissions: Dict[str, bool] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    username: str
    password: str = Field(min_length=6)
    role: UserRole
    permissions: Optional[Dict[str, bool]] = None


class PasswordResetRequest(BaseModel):
    password: str = Field(min_length=6)


class UserStatusUpdate(BaseModel):
    is_active: bool


class PermissionDefinitionSchema(BaseModel):
    key: str
    label: str
    category: str
    action: str
    description: Optional[str] = None


class PermissionCatalog(BaseModel):
    permissions: List[PermissionDefinitionSchema]
