from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from .timezone_utils import now_gst, today_gst


class Currency(str, Enum):
    AED = "AED"
    USD = "USD"
    USDT = "USDT"
    RMB = "RMB"


class AgentType(str, Enum):
    USDT = "usdt"
    DHS = "dhs"


class PaymentType(str, Enum):
    CUSTOMER_PAYMENT = "customer_payment"
    OTHER = "other"


class SupplierTransactionType(str, Enum):
    SUPPLIER_TO_ME = "supplier_to_me"
    ME_TO_SUPPLIER = "me_to_supplier"


class SettlementType(str, Enum):
    RECEIVED = "received"
    PAID = "paid"


class UserRole(str, Enum):
    ADMIN = "admin"
    ACCOUNTANT = "accountant"
    CLERK = "clerk"


DEFAULT_AGENT_USDT_RATE = 3.67
DEFAULT_AGENT_DHS_RATE = 1.0
DEFAULT_SUPPLIER_RMB_TO_USDT_RATE = 7.2


class Customer(SQLModel, table=True):
    __tablename__ = "customers"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: datetime = Field(default_factory=now_gst, index=True)


class Agent(SQLModel, table=True):
    __tablename__ = "agents"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    type: AgentType
    usdt_rate: float = Field(default=DEFAULT_AGENT_USDT_RATE)
    dhs_rate: float = Field(default=DEFAULT_AGENT_DHS_RATE)
    phone: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime = Field(default_factory=now_gst, index=True)


class Supplier(SQLModel, table=True):
    __tablename__ = "suppliers"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    rmb_to_usdt_rate: float = Field(default=DEFAULT_SUPPLIER_RMB_TO_USDT_RATE)
    created_at: datetime = Field(default_factory=now_gst, index=True)


class BankAccount(SQLModel, table=True):
    __tablename__ = "bank_accounts"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_name: str
    bank_name: str
    account_number: Optional[str] = None
    currency: Currency
    # cached: opening_balance + sum of routed payment amounts
    balance: float = Field(default=0.0)
    opening_balance: float = Field(default=0.0)
    created_at: datetime = Field(default_factory=now_gst, index=True)


class SupplierTransaction(SQLModel, table=True):
    __tablename__ = "supplier_transactions"

    id: Optional[int] = Field(default=None, primary_key=True)
    supplier_id: Optional[int] = Field(default=None, foreign_key="suppliers.id", index=True)
    customer_id: Optional[int] = Field(default=None, foreign_key="customers.id", index=True)
    transaction_date: date = Field(default_factory=today_gst, index=True)
    rmb_amount: float = 0.0
    usdt_rate: float = Field(default=DEFAULT_SUPPLIER_RMB_TO_USDT_RATE)
    calculated_usdt: float = 0.0
    type: SupplierTransactionType
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=now_gst)


class Bill(SQLModel, table=True):
    __tablename__ = "bills"

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: Optional[int] = Field(default=None, foreign_key="customers.id", index=True)
    agent_id: Optional[int] = Field(default=None, foreign_key="agents.id", index=True)
    bill_date: date = Field(default_factory=today_gst, index=True)
    amount: float = 0.0
    selling_price: float = 0.0
    total_bill: float = 0.0
    created_at: datetime = Field(default_factory=now_gst)


class Payment(SQLModel, table=True):
    __tablename__ = "payments"

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: Optional[int] = Field(default=None, foreign_key="customers.id", index=True)
    agent_id: Optional[int] = Field(default=None, foreign_key="agents.id", index=True)
    supplier_id: Optional[int] = Field(default=None, foreign_key="suppliers.id", index=True)
    bank_account_id: Optional[int] = Field(default=None, foreign_key="bank_accounts.id", index=True)
    payment_date: date = Field(default_factory=today_gst, index=True)
    amount: float = 0.0
    currency: Currency = Field(default=Currency.AED)
    type: PaymentType = Field(default=PaymentType.CUSTOMER_PAYMENT)
    agent_rate: Optional[float] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=now_gst)


class AgentSettlement(SQLModel, table=True):
    __tablename__ = "agent_settlements"

    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: Optional[int] = Field(default=None, foreign_key="agents.id", index=True)
    settlement_date: date = Field(default_factory=today_gst, index=True)
    amount: float = 0.0
    currency: Currency = Field(default=Currency.AED)
    type: SettlementType
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=now_gst)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    password_hash: str
    role: UserRole = Field(default=UserRole.CLERK)
    is_active: bool = Field(default=True)
    permissions_json: Optional[str] = None
    created_at: datetime = Field(default_factory=now_gst)
    updated_at: datetime = Field(default_factory=now_gst)


class SessionToken(SQLModel, table=True):
    __tablename__ = "session_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    token_hash: str = Field(index=True, unique=True)
    user_id: int = Field(foreign_key="users.id")
    expires_at: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=now_gst)
    revoked: bool = Field(default=False)
