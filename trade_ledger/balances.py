"""
Derived balances.

Customer, agent and supplier balances are never stored. They are computed at read time
from bills, payments, settlements and supplier transactions:

* customer: total billed - customer payments - USDT the customer's suppliers paid in
* agent: payments routed to the agent - settlements marked ``received``
* supplier: USDT received from the supplier - USDT paid to the supplier

List views aggregate each event table in its own grouped subquery before joining, so a
customer with several bills and several payments is not double counted.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from fastapi import HTTPException
from sqlalchemy import func
from sqlmodel import Session, select

from .models import (
    Agent,
    AgentSettlement,
    BankAccount,
    Bill,
    Customer,
    Payment,
    PaymentType,
    SettlementType,
    Supplier,
    SupplierTransaction,
    SupplierTransactionType,
)
from .payments import check_bank_account
from .schemas import (
    AgentBalanceEntry,
    AgentRead,
    AgentSettlementRead,
    AgentStatement,
    AgentSummary,
    BankAccountRead,
    BankAccountStatement,
    BankOverview,
    BillRead,
    CustomerBalanceEntry,
    CustomerRead,
    CustomerStatement,
    CustomerSummary,
    PartyOverview,
    PaymentDetail,
    SupplierBalanceEntry,
    SupplierRead,
    SupplierStatement,
    SupplierSummary,
    SupplierTransactionDetail,
    SystemOverview,
)


def _round_amount(value: Optional[float]) -> float:
    return round(float(value or 0.0), 2)


def _customer_balance(total_billed: float, total_paid: float, supplier_paid: float) -> float:
    return total_billed - total_paid - supplier_paid


def _payment_details(session: Session, *criteria) -> List[PaymentDetail]:
    statement = (
        select(
            Payment,
            Customer.name,
            Agent.name,
            Agent.type,
            BankAccount.account_name,
            BankAccount.bank_name,
            BankAccount.currency,
        )
        .select_from(Payment)
        .outerjoin(Customer, Payment.customer_id == Customer.id)
        .outerjoin(Agent, Payment.agent_id == Agent.id)
        .outerjoin(BankAccount, Payment.bank_account_id == BankAccount.id)
        .where(*criteria)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
    )
    details = []
    for payment, customer_name, agent_name, agent_type, account_name, bank_name, bank_currency in session.exec(
        statement
    ).all():
        details.append(
            PaymentDetail(
                **payment.model_dump(),
                customer_name=customer_name,
                agent_name=agent_name,
                agent_type=agent_type,
                bank_account_name=account_name,
                bank_name=bank_name,
                bank_currency=bank_currency,
            )
        )
    return details


def _supplier_transaction_details(session: Session, *criteria) -> List[SupplierTransactionDetail]:
    statement = (
        select(SupplierTransaction, Supplier.name, Customer.name)
        .select_from(SupplierTransaction)
        .outerjoin(Supplier, SupplierTransaction.supplier_id == Supplier.id)
        .outerjoin(Customer, SupplierTransaction.customer_id == Customer.id)
        .where(*criteria)
        .order_by(SupplierTransaction.transaction_date.desc(), SupplierTransaction.id.desc())
    )
    return [
        SupplierTransactionDetail(**transaction.model_dump(), supplier_name=supplier_name, customer_name=customer_name)
        for transaction, supplier_name, customer_name in session.exec(statement).all()
    ]


def list_payment_details(
    session: Session,
    customer_id: Optional[int] = None,
    agent_id: Optional[int] = None,
    supplier_id: Optional[int] = None,
    bank_account_id: Optional[int] = None,
    payment_type: Optional[PaymentType] = None,
) -> List[PaymentDetail]:
    criteria = []
    if customer_id is not None:
        criteria.append(Payment.customer_id == customer_id)
    if agent_id is not None:
        criteria.append(Payment.agent_id == agent_id)
    if supplier_id is not None:
        criteria.append(Payment.supplier_id == supplier_id)
    if bank_account_id is not None:
        criteria.append(Payment.bank_account_id == bank_account_id)
    if payment_type is not None:
        criteria.append(Payment.type == payment_type)
    return _payment_details(session, *criteria)


def list_supplier_transaction_details(
    session: Session,
    supplier_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    transaction_type: Optional[SupplierTransactionType] = None,
) -> List[SupplierTransactionDetail]:
    criteria = []
    if supplier_id is not None:
        criteria.append(SupplierTransaction.supplier_id == supplier_id)
    if customer_id is not None:
        criteria.append(SupplierTransaction.customer_id == customer_id)
    if transaction_type is not None:
        criteria.append(SupplierTransaction.type == transaction_type)
    return _supplier_transaction_details(session, *criteria)


# ---------------------------------------------------------------- customers


def list_customer_balances(session: Session) -> List[CustomerBalanceEntry]:
    billed = (
        select(Bill.customer_id.label("customer_id"), func.sum(Bill.total_bill).label("total"))
        .group_by(Bill.customer_id)
        .subquery()
    )
    paid = (
        select(Payment.customer_id.label("customer_id"), func.sum(Payment.amount).label("total"))
        .where(Payment.type == PaymentType.CUSTOMER_PAYMENT)
        .group_by(Payment.customer_id)
        .subquery()
    )
    supplier_paid = (
        select(
            SupplierTransaction.customer_id.label("customer_id"),
            func.sum(SupplierTransaction.calculated_usdt).label("total"),
        )
        .where(SupplierTransaction.type == SupplierTransactionType.SUPPLIER_TO_ME)
        .group_by(SupplierTransaction.customer_id)
        .subquery()
    )
    statement = (
        select(
            Customer,
            func.coalesce(billed.c.total, 0),
            func.coalesce(paid.c.total, 0),
            func.coalesce(supplier_paid.c.total, 0),
        )
        .outerjoin(billed, billed.c.customer_id == Customer.id)
        .outerjoin(paid, paid.c.customer_id == Customer.id)
        .outerjoin(supplier_paid, supplier_paid.c.customer_id == Customer.id)
        .order_by(Customer.created_at.desc(), Customer.id.desc())
    )
    entries = []
    for customer, total_billed, total_paid, supplier_total in session.exec(statement).all():
        entries.append(
            CustomerBalanceEntry(
                **customer.model_dump(),
                total_billed=_round_amount(total_billed),
                total_paid=_round_amount(total_paid),
                supplier_paid=_round_amount(supplier_total),
                balance=_round_amount(_customer_balance(total_billed or 0, total_paid or 0, supplier_total or 0)),
            )
        )
    return entries


def get_customer_statement(session: Session, customer_id: int) -> CustomerStatement:
    customer = session.get(Customer, customer_id)
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    bills = session.exec(
        select(Bill).where(Bill.customer_id == customer_id).order_by(Bill.bill_date.desc(), Bill.id.desc())
    ).all()
    payment_rows = _payment_details(session, Payment.customer_id == customer_id)
    transactions = _supplier_transaction_details(session, SupplierTransaction.customer_id == customer_id)

    total_billed = sum(bill.total_bill or 0.0 for bill in bills)
    total_paid = sum(p.amount for p in payment_rows if p.type == PaymentType.CUSTOMER_PAYMENT)
    supplier_paid = sum(
        t.calculated_usdt for t in transactions if t.type == SupplierTransactionType.SUPPLIER_TO_ME
    )
    return CustomerStatement(
        customer=CustomerRead.model_validate(customer),
        bills=[BillRead.model_validate(bill) for bill in bills],
        payments=payment_rows,
        supplier_transactions=transactions,
        summary=CustomerSummary(
            total_billed=_round_amount(total_billed),
            total_paid=_round_amount(total_paid),
            supplier_paid=_round_amount(supplier_paid),
            balance=_round_amount(_customer_balance(total_billed, total_paid, supplier_paid)),
        ),
    )


# ---------------------------------------------------------------- agents


def list_agent_balances(session: Session) -> List[AgentBalanceEntry]:
    received = (
        select(Payment.agent_id.label("agent_id"), func.sum(Payment.amount).label("total"))
        .group_by(Payment.agent_id)
        .subquery()
    )
    settled = (
        select(AgentSettlement.agent_id.label("agent_id"), func.sum(AgentSettlement.amount).label("total"))
        .where(AgentSettlement.type == SettlementType.RECEIVED)
        .group_by(AgentSettlement.agent_id)
        .subquery()
    )
    statement = (
        select(Agent, func.coalesce(received.c.total, 0), func.coalesce(settled.c.total, 0))
        .outerjoin(received, received.c.agent_id == Agent.id)
        .outerjoin(settled, settled.c.agent_id == Agent.id)
        .order_by(Agent.created_at.desc(), Agent.id.desc())
    )
    return [
        AgentBalanceEntry(
            **agent.model_dump(),
            total_received=_round_amount(total_received),
            total_settled=_round_amount(total_settled),
            pending_balance=_round_amount((total_received or 0) - (total_settled or 0)),
        )
        for agent, total_received, total_settled in session.exec(statement).all()
    ]


def get_agent_statement(session: Session, agent_id: int) -> AgentStatement:
    agent = session.get(Agent, agent_id)
    if not agent:
        raise HTTPException(status_code=404, detail="Agent not found")
    payment_rows = _payment_details(session, Payment.agent_id == agent_id)
    settlements = session.exec(
        select(AgentSettlement)
        .where(AgentSettlement.agent_id == agent_id)
        .order_by(AgentSettlement.settlement_date.desc(), AgentSettlement.id.desc())
    ).all()

    total_received = sum(p.amount for p in payment_rows)
    # only settlements the business received reduce what the agent holds
    total_settled = sum(s.amount for s in settlements if s.type == SettlementType.RECEIVED)
    total_paid_out = sum(s.amount for s in settlements if s.type == SettlementType.PAID)
    return AgentStatement(
        agent=AgentRead.model_validate(agent),
        payments=payment_rows,
        settlements=[AgentSettlementRead.model_validate(s) for s in settlements],
        summary=AgentSummary(
            total_received=_round_amount(total_received),
            total_settled=_round_amount(total_settled),
            total_paid_out=_round_amount(total_paid_out),
            pending_balance=_round_amount(total_received - total_settled),
        ),
    )


# ---------------------------------------------------------------- suppliers


def list_supplier_balances(session: Session) -> List[SupplierBalanceEntry]:
    received = (
        select(
            SupplierTransaction.supplier_id.label("supplier_id"),
            func.sum(SupplierTransaction.calculated_usdt).label("total"),
        )
        .where(SupplierTransaction.type == SupplierTransactionType.SUPPLIER_TO_ME)
        .group_by(SupplierTransaction.supplier_id)
        .subquery()
    )
    paid = (
        select(
            SupplierTransaction.supplier_id.label("supplier_id"),
            func.sum(SupplierTransaction.calculated_usdt).label("total"),
        )
        .where(SupplierTransaction.type == SupplierTransactionType.ME_TO_SUPPLIER)
        .group_by(SupplierTransaction.supplier_id)
        .subquery()
    )
    statement = (
        select(Supplier, func.coalesce(received.c.total, 0), func.coalesce(paid.c.total, 0))
        .outerjoin(received, received.c.supplier_id == Supplier.id)
        .outerjoin(paid, paid.c.supplier_id == Supplier.id)
        .order_by(Supplier.created_at.desc(), Supplier.id.desc())
    )
    return [
        SupplierBalanceEntry(
            **supplier.model_dump(),
            total_received_usdt=_round_amount(total_received),
            total_paid_usdt=_round_amount(total_paid),
            net_balance=_round_amount((total_received or 0) - (total_paid or 0)),
        )
        for supplier, total_received, total_paid in session.exec(statement).all()
    ]


def get_supplier_statement(session: Session, supplier_id: int) -> SupplierStatement:
    supplier = session.get(Supplier, supplier_id)
    if not supplier:
        raise HTTPException(status_code=404, detail="Supplier not found")
    transactions = _supplier_transaction_details(session, SupplierTransaction.supplier_id == supplier_id)

    received = [t for t in transactions if t.type == SupplierTransactionType.SUPPLIER_TO_ME]
    paid = [t for t in transactions if t.type == SupplierTransactionType.ME_TO_SUPPLIER]
    total_received_usdt = sum(t.calculated_usdt for t in received)
    total_paid_usdt = sum(t.calculated_usdt for t in paid)
    return SupplierStatement(
        supplier=SupplierRead.model_validate(supplier),
        transactions=transactions,
        summary=SupplierSummary(
            total_received_usdt=_round_amount(total_received_usdt),
            total_paid_usdt=_round_amount(total_paid_usdt),
            total_rmb_received=_round_amount(sum(t.rmb_amount for t in received)),
            net_balance=_round_amount(total_received_usdt - total_paid_usdt),
        ),
    )


# ---------------------------------------------------------------- bank accounts


def get_bank_account_statement(session: Session, account_id: int) -> BankAccountStatement:
    account = session.get(BankAccount, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Bank account not found")
    return BankAccountStatement(
        bank_account=BankAccountRead.model_validate(account),
        payments=_payment_details(session, Payment.bank_account_id == account_id),
        reconciliation=check_bank_account(session, account_id),
    )


# ---------------------------------------------------------------- overview


def _party_overview(balances: Iterable[float]) -> PartyOverview:
    values = list(balances)
    return PartyOverview(count=len(values), total_balance=_round_amount(sum(values)))


def get_overview(session: Session) -> SystemOverview:
    accounts = session.exec(select(BankAccount)).all()
    currencies = sorted({account.currency for account in accounts}, key=lambda currency: currency.value)
    return SystemOverview(
        customers=_party_overview(entry.balance for entry in list_customer_balances(session)),
        agents=_party_overview(entry.pending_balance for entry in list_agent_balances(session)),
        suppliers=_party_overview(entry.net_balance for entry in list_supplier_balances(session)),
        bank_accounts=BankOverview(
            count=len(accounts),
            total_balance=_round_amount(sum(account.balance or 0.0 for account in accounts)),
            currencies=currencies,
        ),
    )
