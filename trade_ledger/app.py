from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Generator, List, Optional

from fastapi import (
    Cookie,
    Depends,
    FastAPI,
    HTTPException,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

from . import auth, balances, crud, payments
from .database import engine, init_db, missing_tables
from .errors import register_error_handlers
from .logging_config import setup_logging
from .models import (
    Agent,
    AgentSettlement,
    AgentType,
    BankAccount,
    Bill,
    Currency,
    Customer,
    Payment,
    PaymentType,
    SettlementType,
    Supplier,
    SupplierTransaction,
    SupplierTransactionType,
    User,
    UserRole,
)
from .schemas import (
    AgentBalanceEntry,
    AgentCreate,
    AgentRead,
    AgentSettlementCreate,
    AgentSettlementRead,
    AgentSettlementUpdate,
    AgentStatement,
    AgentUpdate,
    BankAccountCreate,
    BankAccountRead,
    BankAccountStatement,
    BankAccountUpdate,
    BankReconciliation,
    BillCreate,
    BillRead,
    BillUpdate,
    CustomerBalanceEntry,
    CustomerCreate,
    CustomerRead,
    CustomerStatement,
    CustomerUpdate,
    LoginRequest,
    MutationResult,
    PasswordResetRequest,
    PaymentCreate,
    PaymentDetail,
    PaymentRead,
    PaymentUpdate,
    PaymentWriteResponse,
    PermissionCatalog,
    PermissionDefinitionSchema,
    SupplierBalanceEntry,
    SupplierCreate,
    SupplierRead,
    SupplierStatement,
    SupplierTransactionCreate,
    SupplierTransactionDetail,
    SupplierTransactionRead,
    SupplierTransactionUpdate,
    SupplierUpdate,
    SystemOverview,
    UserCreate,
    UserRead,
    UserStatusUpdate,
)

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = os.getenv("LEDGER_SESSION_COOKIE", "ledger_session")
SESSION_COOKIE_MAX_AGE = int(os.getenv("LEDGER_SESSION_MAX_AGE", str(12 * 60 * 60)))
SESSION_COOKIE_SECURE = os.getenv("LEDGER_SESSION_COOKIE_SECURE", "false").lower() == "true"
SESSION_COOKIE_SAMESITE = os.getenv("LEDGER_SESSION_COOKIE_SAMESITE", "lax").lower()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    init_db()
    with Session(engine) as session:
        auth.ensure_default_admin(session)
    logger.info("Trade ledger backend started")
    yield


app = FastAPI(title="Trade Ledger Backend", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)


class ConnectionManager:
    def __init__(self) -> None:
        self.connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.connections:
            self.connections.remove(websocket)

    async def send(self, websocket: WebSocket, message: Any) -> None:
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError):
            self.disconnect(websocket)

    async def broadcast(self, message: Any) -> None:
        for websocket in list(self.connections):
            await self.send(websocket, message)


manager = ConnectionManager()


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@dataclass
class StaffContext:
    session: Session
    user: User
    permissions: Dict[str, bool]


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=SESSION_COOKIE_MAX_AGE,
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite=SESSION_COOKIE_SAMESITE,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME)


def _user_to_schema(user: User) -> UserRead:
    payload = UserRead.model_validate(user, from_attributes=True)
    payload.permissions = auth.get_effective_permissions(user)
    return payload


def _get_user_from_cookie(session: Session, token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    return auth.get_user_by_session_token(session, token)


def require_staff_context(
    session: Session = Depends(get_session),
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> StaffContext:
    user = _get_user_from_cookie(session, session_token)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    if user.role not in auth.STAFF_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
    permissions = auth.get_effective_permissions(user)
    return StaffContext(session=session, user=user, permissions=permissions)


def require_admin_context(ctx: StaffContext = Depends(require_staff_context)) -> StaffContext:
    if ctx.user.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    return ctx


def ensure_permission(ctx: StaffContext, key: str) -> None:
    if not ctx.permissions.get(key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {key}")


def build_overview_payload(overview: SystemOverview) -> dict[str, Any]:
    return {"type": "overview", "data": jsonable_encoder(overview)}


async def broadcast_overview(session: Session) -> None:
    if not manager.connections:
        return
    overview = balances.get_overview(session)
    await manager.broadcast(build_overview_payload(overview))


def _mutation(entity_id: Optional[int], label: str, action: str, affected: int = 1) -> MutationResult:
    if affected:
        message = f"{label} {action} successfully"
    else:
        message = f"{label} not found; nothing {action}"
    return MutationResult(id=entity_id, message=message, affected=affected)


def _payment_response(result: payments.PaymentWriteResult, action: str) -> PaymentWriteResponse:
    if not result.affected:
        message = f"Payment not found; nothing {action}"
    elif result.balance_adjusted:
        message = f"Payment {action} successfully"
    else:
        message = f"Payment {action}, but the bank balance could not be adjusted"
    return PaymentWriteResponse(
        id=result.payment_id,
        message=message,
        affected=result.affected,
        balance_adjusted=result.balance_adjusted,
        reversal_applied=result.reversal_applied,
        adjustment_applied=result.adjustment_applied,
        payment=PaymentRead.model_validate(result.payment) if result.payment is not None else None,
    )


# ---------------------------------------------------------------- auth


@app.post("/auth/login", response_model=UserRead)
def login(payload: LoginRequest, response: Response, session: Session = Depends(get_session)):
    user = auth.authenticate_user(session, username=payload.username, password=payload.password)
    if not user:
        logger.warning("Failed login for '%s'", payload.username)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid username or password")
    token = auth.create_session_token(session, user)
    set_session_cookie(response, token)
    logger.info("User '%s' logged in", user.username)
    return _user_to_schema(user)


@app.post("/auth/logout")
def logout(
    response: Response,
    session: Session = Depends(get_session),
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE_NAME),
):
    if session_token:
        auth.revoke_session_token(session, session_token)
    clear_session_cookie(response)
    return {"message": "Logged out"}


@app.get("/api/auth/me", response_model=UserRead)
def current_user(ctx: StaffContext = Depends(require_staff_context)):
    return _user_to_schema(ctx.user)


@app.get("/api/admin/users", response_model=List[UserRead])
def api_list_users(ctx: StaffContext = Depends(require_admin_context)):
    users = auth.list_users(ctx.session)
    return [_user_to_schema(user) for user in users]


@app.get("/api/admin/permissions", response_model=PermissionCatalog)
def api_list_permissions(ctx: StaffContext = Depends(require_admin_context)):
    permission_defs = auth.list_permission_definitions()
    schema = [
        PermissionDefinitionSchema(
            key=item.key,
            label=item.label,
            category=item.category,
            action=item.action,
            description=item.description,
        )
        for item in permission_defs
    ]
    return PermissionCatalog(permissions=schema)


@app.post("/api/admin/users", response_model=UserRead, status_code=201)
def api_create_user(payload: UserCreate, ctx: StaffContext = Depends(require_admin_context)):
    user = auth.create_user(
        ctx.session,
        username=payload.username,
        password=payload.password,
        role=payload.role,
        permissions=payload.permissions,
    )
    return _user_to_schema(user)


@app.post("/api/admin/users/{user_id}/status", response_model=UserRead)
def api_set_user_status(
    user_id: int,
    body: UserStatusUpdate,
    ctx: StaffContext = Depends(require_admin_context),
):
    if user_id == ctx.user.id and not body.is_active:
        raise HTTPException(status_code=400, detail="Cannot disable yourself")
    user = auth.set_user_active(ctx.session, user_id, body.is_active)
    return _user_to_schema(user)


@app.post("/api/admin/users/{user_id}/reset-password", response_model=UserRead)
def api_reset_password(
    user_id: int,
    body: PasswordResetRequest,
    ctx: StaffContext = Depends(require_admin_context),
):
    user = auth.reset_user_password(ctx.session, user_id, body.password)
    return _user_to_schema(user)


# ---------------------------------------------------------------- customers


@app.get("/api/customers", response_model=List[CustomerRead])
def list_customers_api(search: Optional[str] = None, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "customer.view")
    return crud.list_customers(ctx.session, search=search)


@app.get("/api/customers/balances", response_model=List[CustomerBalanceEntry])
def customer_balances_api(ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "customer.view")
    return balances.list_customer_balances(ctx.session)


@app.post("/api/customers", response_model=MutationResult, status_code=201)
async def create_customer_api(payload: CustomerCreate, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "customer.manage")
    customer = crud.create_customer(ctx.session, Customer(**payload.model_dump()))
    await broadcast_overview(ctx.session)
    return _mutation(customer.id, "Customer", "created")


@app.get("/api/customers/{customer_id}", response_model=CustomerStatement)
def get_customer_api(customer_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "customer.view")
    return balances.get_customer_statement(ctx.session, customer_id)


@app.put("/api/customers/{customer_id}", response_model=MutationResult)
async def update_customer_api(
    customer_id: int,
    payload: CustomerUpdate,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "customer.manage")
    customer = crud.update_customer(ctx.session, customer_id, payload.model_dump(exclude_unset=True))
    return _mutation(customer_id, "Customer", "updated", affected=1 if customer else 0)


@app.delete("/api/customers/{customer_id}", response_model=MutationResult)
async def delete_customer_api(customer_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "customer.manage")
    affected = crud.delete_customer(ctx.session, customer_id)
    await broadcast_overview(ctx.session)
    return _mutation(customer_id, "Customer", "deleted", affected=affected)


# ---------------------------------------------------------------- agents


@app.get("/api/agents", response_model=List[AgentRead])
def list_agents_api(agent_type: Optional[AgentType] = None, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "agent.view")
    return crud.list_agents(ctx.session, agent_type=agent_type)


@app.get("/api/agents/balances", response_model=List[AgentBalanceEntry])
def agent_balances_api(ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "agent.view")
    return balances.list_agent_balances(ctx.session)


@app.post("/api/agents", response_model=MutationResult, status_code=201)
async def create_agent_api(payload: AgentCreate, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "agent.manage")
    # unset rates fall back to the column defaults
    agent = crud.create_agent(ctx.session, Agent(**payload.model_dump(exclude_none=True)))
    await broadcast_overview(ctx.session)
    return _mutation(agent.id, "Agent", "created")


@app.get("/api/agents/{agent_id}", response_model=AgentStatement)
def get_agent_api(agent_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "agent.view")
    return balances.get_agent_statement(ctx.session, agent_id)


@app.put("/api/agents/{agent_id}", response_model=MutationResult)
async def update_agent_api(agent_id: int, payload: AgentUpdate, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "agent.manage")
    agent = crud.update_agent(ctx.session, agent_id, payload.model_dump(exclude_unset=True))
    return _mutation(agent_id, "Agent", "updated", affected=1 if agent else 0)


@app.delete("/api/agents/{agent_id}", response_model=MutationResult)
async def delete_agent_api(agent_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "agent.manage")
    affected = crud.delete_agent(ctx.session, agent_id)
    await broadcast_overview(ctx.session)
    return _mutation(agent_id, "Agent", "deleted", affected=affected)


# ---------------------------------------------------------------- suppliers


@app.get("/api/suppliers", response_model=List[SupplierRead])
def list_suppliers_api(ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "supplier.view")
    return crud.list_suppliers(ctx.session)


@app.get("/api/suppliers/balances", response_model=List[SupplierBalanceEntry])
def supplier_balances_api(ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "supplier.view")
    return balances.list_supplier_balances(ctx.session)


@app.post("/api/suppliers", response_model=MutationResult, status_code=201)
async def create_supplier_api(payload: SupplierCreate, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "supplier.manage")
    supplier = crud.create_supplier(ctx.session, Supplier(**payload.model_dump(exclude_none=True)))
    await broadcast_overview(ctx.session)
    return _mutation(supplier.id, "Supplier", "created")


@app.get("/api/suppliers/{supplier_id}", response_model=SupplierStatement)
def get_supplier_api(supplier_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "supplier.view")
    return balances.get_supplier_statement(ctx.session, supplier_id)


@app.put("/api/suppliers/{supplier_id}", response_model=MutationResult)
async def update_supplier_api(
    supplier_id: int,
    payload: SupplierUpdate,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "supplier.manage")
    supplier = crud.update_supplier(ctx.session, supplier_id, payload.model_dump(exclude_unset=True))
    return _mutation(supplier_id, "Supplier", "updated", affected=1 if supplier else 0)


@app.delete("/api/suppliers/{supplier_id}", response_model=MutationResult)
async def delete_supplier_api(supplier_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "supplier.manage")
    affected = crud.delete_supplier(ctx.session, supplier_id)
    await broadcast_overview(ctx.session)
    return _mutation(supplier_id, "Supplier", "deleted", affected=affected)


# ---------------------------------------------------------------- bank accounts


@app.get("/api/bank-accounts", response_model=List[BankAccountRead])
def list_bank_accounts_api(currency: Optional[Currency] = None, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "bank.view")
    return crud.list_bank_accounts(ctx.session, currency=currency)


@app.post("/api/bank-accounts", response_model=MutationResult, status_code=201)
async def create_bank_account_api(payload: BankAccountCreate, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "bank.manage")
    account = crud.create_bank_account(ctx.session, BankAccount(**payload.model_dump()))
    await broadcast_overview(ctx.session)
    return _mutation(account.id, "Bank account", "created")


@app.get("/api/bank-accounts/{account_id}", response_model=BankAccountStatement)
def get_bank_account_api(account_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "bank.view")
    return balances.get_bank_account_statement(ctx.session, account_id)


@app.put("/api/bank-accounts/{account_id}", response_model=MutationResult)
async def update_bank_account_api(
    account_id: int,
    payload: BankAccountUpdate,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "bank.manage")
    account = crud.update_bank_account(ctx.session, account_id, payload.model_dump(exclude_unset=True))
    await broadcast_overview(ctx.session)
    return _mutation(account_id, "Bank account", "updated", affected=1 if account else 0)


@app.delete("/api/bank-accounts/{account_id}", response_model=MutationResult)
async def delete_bank_account_api(account_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "bank.manage")
    affected = crud.delete_bank_account(ctx.session, account_id)
    await broadcast_overview(ctx.session)
    return _mutation(account_id, "Bank account", "deleted", affected=affected)


@app.get("/api/bank-accounts/{account_id}/reconciliation", response_model=BankReconciliation)
def check_bank_account_api(account_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "bank.view")
    return payments.check_bank_account(ctx.session, account_id)


@app.post("/api/bank-accounts/{account_id}/reconciliation", response_model=BankReconciliation)
async def reconcile_bank_account_api(account_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "bank.manage")
    result = payments.reconcile_bank_account(ctx.session, account_id, apply=True)
    if result.applied:
        await broadcast_overview(ctx.session)
    return result


# ---------------------------------------------------------------- bills


@app.get("/api/bills", response_model=List[BillRead])
def list_bills_api(
    customer_id: Optional[int] = None,
    agent_id: Optional[int] = None,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "customer.view")
    return crud.list_bills(ctx.session, customer_id=customer_id, agent_id=agent_id)


@app.get("/api/bills/{bill_id}", response_model=BillRead)
def get_bill_api(bill_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "customer.view")
    return crud.get_bill(ctx.session, bill_id)


@app.post("/api/bills", response_model=MutationResult, status_code=201)
async def create_bill_api(payload: BillCreate, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "ledger.manage")
    bill = crud.create_bill(ctx.session, Bill(**payload.model_dump(exclude_none=True)))
    await broadcast_overview(ctx.session)
    return _mutation(bill.id, "Bill", "created")


@app.put("/api/bills/{bill_id}", response_model=MutationResult)
async def update_bill_api(bill_id: int, payload: BillUpdate, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "ledger.manage")
    bill = crud.update_bill(ctx.session, bill_id, payload.model_dump(exclude_unset=True))
    await broadcast_overview(ctx.session)
    return _mutation(bill_id, "Bill", "updated", affected=1 if bill else 0)


@app.delete("/api/bills/{bill_id}", response_model=MutationResult)
async def delete_bill_api(bill_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "ledger.manage")
    affected = crud.delete_bill(ctx.session, bill_id)
    await broadcast_overview(ctx.session)
    return _mutation(bill_id, "Bill", "deleted", affected=affected)


# ---------------------------------------------------------------- payments


@app.get("/api/payments", response_model=List[PaymentDetail])
def list_payments_api(
    customer_id: Optional[int] = None,
    agent_id: Optional[int] = None,
    supplier_id: Optional[int] = None,
    bank_account_id: Optional[int] = None,
    payment_type: Optional[PaymentType] = None,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "customer.view")
    return balances.list_payment_details(
        ctx.session,
        customer_id=customer_id,
        agent_id=agent_id,
        supplier_id=supplier_id,
        bank_account_id=bank_account_id,
        payment_type=payment_type,
    )


@app.get("/api/payments/{payment_id}", response_model=PaymentRead)
def get_payment_api(payment_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "customer.view")
    return payments.get_payment(ctx.session, payment_id)


@app.post("/api/payments", response_model=PaymentWriteResponse, status_code=201)
async def create_payment_api(payload: PaymentCreate, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "ledger.manage")
    result = payments.create_payment(ctx.session, Payment(**payload.model_dump(exclude_none=True)))
    await broadcast_overview(ctx.session)
    return _payment_response(result, "created")


@app.put("/api/payments/{payment_id}", response_model=PaymentWriteResponse)
async def update_payment_api(
    payment_id: int,
    payload: PaymentUpdate,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "ledger.manage")
    updates = payload.model_dump(exclude_unset=True)
    claimed_account_id = updates.pop("old_bank_account_id", None)
    claimed_amount = updates.pop("old_amount", None)
    result = payments.update_payment(
        ctx.session,
        payment_id,
        updates,
        claimed_account_id=claimed_account_id,
        claimed_amount=claimed_amount,
    )
    await broadcast_overview(ctx.session)
    return _payment_response(result, "updated")


@app.delete("/api/payments/{payment_id}", response_model=PaymentWriteResponse)
async def delete_payment_api(payment_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "ledger.manage")
    result = payments.delete_payment(ctx.session, payment_id)
    await broadcast_overview(ctx.session)
    return _payment_response(result, "deleted")


# ---------------------------------------------------------------- agent settlements


@app.get("/api/agent-settlements", response_model=List[AgentSettlementRead])
def list_agent_settlements_api(
    agent_id: Optional[int] = None,
    settlement_type: Optional[SettlementType] = None,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "agent.view")
    return crud.list_agent_settlements(ctx.session, agent_id=agent_id, settlement_type=settlement_type)


@app.get("/api/agent-settlements/{settlement_id}", response_model=AgentSettlementRead)
def get_agent_settlement_api(settlement_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "agent.view")
    return crud.get_agent_settlement(ctx.session, settlement_id)


@app.post("/api/agent-settlements", response_model=MutationResult, status_code=201)
async def create_agent_settlement_api(
    payload: AgentSettlementCreate,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "ledger.manage")
    settlement = crud.create_agent_settlement(ctx.session, AgentSettlement(**payload.model_dump(exclude_none=True)))
    await broadcast_overview(ctx.session)
    return _mutation(settlement.id, "Agent settlement", "created")


@app.put("/api/agent-settlements/{settlement_id}", response_model=MutationResult)
async def update_agent_settlement_api(
    settlement_id: int,
    payload: AgentSettlementUpdate,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "ledger.manage")
    settlement = crud.update_agent_settlement(ctx.session, settlement_id, payload.model_dump(exclude_unset=True))
    await broadcast_overview(ctx.session)
    return _mutation(settlement_id, "Agent settlement", "updated", affected=1 if settlement else 0)


@app.delete("/api/agent-settlements/{settlement_id}", response_model=MutationResult)
async def delete_agent_settlement_api(settlement_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "ledger.manage")
    affected = crud.delete_agent_settlement(ctx.session, settlement_id)
    await broadcast_overview(ctx.session)
    return _mutation(settlement_id, "Agent settlement", "deleted", affected=affected)


# ---------------------------------------------------------------- supplier transactions


@app.get("/api/supplier-transactions", response_model=List[SupplierTransactionDetail])
def list_supplier_transactions_api(
    supplier_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    transaction_type: Optional[SupplierTransactionType] = None,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "supplier.view")
    return balances.list_supplier_transaction_details(
        ctx.session,
        supplier_id=supplier_id,
        customer_id=customer_id,
        transaction_type=transaction_type,
    )


@app.get("/api/supplier-transactions/{transaction_id}", response_model=SupplierTransactionRead)
def get_supplier_transaction_api(transaction_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "supplier.view")
    return crud.get_supplier_transaction(ctx.session, transaction_id)


@app.post("/api/supplier-transactions", response_model=MutationResult, status_code=201)
async def create_supplier_transaction_api(
    payload: SupplierTransactionCreate,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "ledger.manage")
    transaction = crud.create_supplier_transaction(
        ctx.session, SupplierTransaction(**payload.model_dump(exclude_none=True))
    )
    await broadcast_overview(ctx.session)
    return _mutation(transaction.id, "Supplier transaction", "created")


@app.put("/api/supplier-transactions/{transaction_id}", response_model=MutationResult)
async def update_supplier_transaction_api(
    transaction_id: int,
    payload: SupplierTransactionUpdate,
    ctx: StaffContext = Depends(require_staff_context),
):
    ensure_permission(ctx, "ledger.manage")
    transaction = crud.update_supplier_transaction(
        ctx.session, transaction_id, payload.model_dump(exclude_unset=True)
    )
    await broadcast_overview(ctx.session)
    return _mutation(transaction_id, "Supplier transaction", "updated", affected=1 if transaction else 0)


@app.delete("/api/supplier-transactions/{transaction_id}", response_model=MutationResult)
async def delete_supplier_transaction_api(transaction_id: int, ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "ledger.manage")
    affected = crud.delete_supplier_transaction(ctx.session, transaction_id)
    await broadcast_overview(ctx.session)
    return _mutation(transaction_id, "Supplier transaction", "deleted", affected=affected)


# ---------------------------------------------------------------- overview


@app.get("/api/overview", response_model=SystemOverview)
def overview_api(ctx: StaffContext = Depends(require_staff_context)):
    ensure_permission(ctx, "overview.view")
    return balances.get_overview(ctx.session)


@app.websocket("/ws/overview")
async def overview_ws(websocket: WebSocket):
    session_token = websocket.cookies.get(SESSION_COOKIE_NAME)
    with Session(engine) as session:
        user = _get_user_from_cookie(session, session_token)
        if not user or user.role not in auth.STAFF_ROLES:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        permissions = auth.get_effective_permissions(user)
        if not permissions.get("overview.view"):
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
    await manager.connect(websocket)
    try:
        with Session(engine) as session:
            overview = balances.get_overview(session)
        await manager.send(websocket, build_overview_payload(overview))
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


# ---------------------------------------------------------------- service


@app.get("/api/health")
def health_api(session: Session = Depends(get_session)):
    missing = missing_tables(session.get_bind())
    if missing:
        logger.error("Health check failed; missing tables: %s", ", ".join(missing))
        return JSONResponse(status_code=500, content={"status": "unhealthy", "missing_tables": missing})
    return {"status": "healthy", "database": "connected"}


@app.get("/api/test")
def test_api():
    return {
        "message": "Trade ledger backend is running",
        "endpoints": {
            "customers": "/api/customers",
            "agents": "/api/agents",
            "suppliers": "/api/suppliers",
            "bank_accounts": "/api/bank-accounts",
            "bills": "/api/bills",
            "payments": "/api/payments",
            "agent_settlements": "/api/agent-settlements",
            "supplier_transactions": "/api/supplier-transactions",
            "overview": "/api/overview",
        },
    }
