from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type

from fastapi import HTTPException
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, delete, select

from . import payments
from .models import (
    Agent,
    AgentSettlement,
    AgentType,
    BankAccount,
    Bill,
    Currency,
    Customer,
    Payment,
    SettlementType,
    Supplier,
    SupplierTransaction,
)

logger = logging.getLogger(__name__)

# fields an update may explicitly set to null
CUSTOMER_NULLABLE = {"email", "phone", "address"}
AGENT_NULLABLE = {"phone", "email"}
SUPPLIER_NULLABLE = {"contact_person", "phone", "email"}
BANK_ACCOUNT_NULLABLE = {"account_number"}
BILL_NULLABLE = {"agent_id"}
SETTLEMENT_NULLABLE = {"notes"}
SUPPLIER_TRANSACTION_NULLABLE = {"customer_id", "notes"}


def _commit(session: Session, description: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to %s", description)
        raise


def _apply_updates(instance: SQLModel, payload: Dict[str, Any], nullable: set) -> None:
    for key, value in payload.items():
        if value is None and key not in nullable:
            continue
        setattr(instance, key, value)


def _get_or_404(session: Session, model: Type[SQLModel], entity_id: int, label: str):
    instance = session.get(model, entity_id)
    if not instance:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return instance


def _ensure_reference(session: Session, model: Type[SQLModel], entity_id: Optional[int], label: str) -> None:
    if entity_id is None:
        return
    if session.get(model, entity_id) is None:
        raise HTTPException(status_code=400, detail=f"{label} {entity_id} does not exist")


def _save(session: Session, instance: SQLModel, description: str):
    session.add(instance)
    _commit(session, description)
    session.refresh(instance)
    return instance


# ---------------------------------------------------------------- customers


def list_customers(session: Session, search: Optional[str] = None) -> List[Customer]:
    statement = select(Customer)
    if search:
        pattern = f"%{search.strip()}%"
        statement = statement.where(
            or_(Customer.name.ilike(pattern), Customer.email.ilike(pattern), Customer.phone.ilike(pattern))
        )
    return session.exec(statement.order_by(Customer.created_at.desc(), Customer.id.desc())).all()


def get_customer(session: Session, customer_id: int) -> Customer:
    return _get_or_404(session, Customer, customer_id, "Customer")


def create_customer(session: Session, data: Customer) -> Customer:
    customer = _save(session, data, "create customer")
    logger.info("Created customer %s (%s)", customer.id, customer.name)
    return customer


def update_customer(session: Session, customer_id: int, payload: Dict[str, Any]) -> Optional[Customer]:
    customer = session.get(Customer, customer_id)
    if customer is None:
        return None
    _apply_updates(customer, payload, CUSTOMER_NULLABLE)
    return _save(session, customer, f"update customer {customer_id}")


def delete_customer(session: Session, customer_id: int) -> int:
    """Delete a customer with its bills and payments; supplier transactions are unlinked."""
    with payments.BALANCE_LOCK:
        customer = session.get(Customer, customer_id)
        if customer is None:
            return 0
        try:
            session.exec(delete(Bill).where(Bill.customer_id == customer_id))
            removed_payments = payments.remove_customer_payments(session, customer_id)
            session.exec(
                update(SupplierTransaction)
                .where(SupplierTransaction.customer_id == customer_id)
                .values(customer_id=None)
            )
            session.delete(customer)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to delete customer %s; nothing was removed", customer_id)
            raise
    logger.info("Deleted customer %s with %s payment(s)", customer_id, removed_payments)
    return 1


# ---------------------------------------------------------------- agents


def list_agents(session: Session, agent_type: Optional[AgentType] = None) -> List[Agent]:
    statement = select(Agent)
    if agent_type is not None:
        statement = statement.where(Agent.type == agent_type)
    return session.exec(statement.order_by(Agent.created_at.desc(), Agent.id.desc())).all()


def get_agent(session: Session, agent_id: int) -> Agent:
    return _get_or_404(session, Agent, agent_id, "Agent")


def create_agent(session: Session, data: Agent) -> Agent:
    agent = _save(session, data, "create agent")
    logger.info("Created %s agent %s (%s)", agent.type.value, agent.id, agent.name)
    return agent


def update_agent(session: Session, agent_id: int, payload: Dict[str, Any]) -> Optional[Agent]:
    agent = session.get(Agent, agent_id)
    if agent is None:
        return None
    _apply_updates(agent, payload, AGENT_NULLABLE)
    return _save(session, agent, f"update agent {agent_id}")


def delete_agent(session: Session, agent_id: int) -> int:
    agent = session.get(Agent, agent_id)
    if agent is None:
        return 0
    try:
        session.exec(update(Payment).where(Payment.agent_id == agent_id).values(agent_id=None))
        session.exec(update(Bill).where(Bill.agent_id == agent_id).values(agent_id=None))
        session.exec(delete(AgentSettlement).where(AgentSettlement.agent_id == agent_id))
        session.delete(agent)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to delete agent %s", agent_id)
        raise
    logger.info("Deleted agent %s", agent_id)
    return 1


# ---------------------------------------------------------------- suppliers


def list_suppliers(session: Session) -> List[Supplier]:
    return session.exec(select(Supplier).order_by(Supplier.created_at.desc(), Supplier.id.desc())).all()


def get_supplier(session: Session, supplier_id: int) -> Supplier:
    return _get_or_404(session, Supplier, supplier_id, "Supplier")


def create_supplier(session: Session, data: Supplier) -> Supplier:
    supplier = _save(session, data, "create supplier")
    logger.info("Created supplier %s (%s)", supplier.id, supplier.name)
    return supplier


def update_supplier(session: Session, supplier_id: int, payload: Dict[str, Any]) -> Optional[Supplier]:
    supplier = session.get(Supplier, supplier_id)
    if supplier is None:
        return None
    _apply_updates(supplier, payload, SUPPLIER_NULLABLE)
    return _save(session, supplier, f"update supplier {supplier_id}")


def delete_supplier(session: Session, supplier_id: int) -> int:
    supplier = session.get(Supplier, supplier_id)
    if supplier is None:
        return 0
    try:
        session.exec(delete(SupplierTransaction).where(SupplierTransaction.supplier_id == supplier_id))
        session.exec(update(Payment).where(Payment.supplier_id == supplier_id).values(supplier_id=None))
        session.delete(supplier)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to delete supplier %s", supplier_id)
        raise
    logger.info("Deleted supplier %s", supplier_id)
    return 1


# ---------------------------------------------------------------- bank accounts


def list_bank_accounts(session: Session, currency: Optional[Currency] = None) -> List[BankAccount]:
    statement = select(BankAccount)
    if currency is not None:
        statement = statement.where(BankAccount.currency == currency)
    return session.exec(statement.order_by(BankAccount.created_at.desc(), BankAccount.id.desc())).all()


def get_bank_account(session: Session, account_id: int) -> BankAccount:
    return _get_or_404(session, BankAccount, account_id, "Bank account")


def create_bank_account(session: Session, data: BankAccount) -> BankAccount:
    data.opening_balance = data.balance or 0.0
    account = _save(session, data, "create bank account")
    logger.info(
        "Created %s bank account %s (%s) with balance %.2f",
        account.currency.value,
        account.id,
        account.account_name,
        account.balance,
    )
    return account


def update_bank_account(session: Session, account_id: int, payload: Dict[str, Any]) -> Optional[BankAccount]:
    """Update account details; a supplied balance is an administrative override."""
    with payments.BALANCE_LOCK:
        account = session.get(BankAccount, account_id)
        if account is None:
            return None
        payload = dict(payload)
        new_balance = payload.pop("balance", None)
        _apply_updates(account, payload, BANK_ACCOUNT_NULLABLE)
        if new_balance is not None:
            previous = account.balance or 0.0
            routed_total, _ = payments.routed_payments_total(session, account_id)
            account.balance = new_balance
            # override becomes the new baseline for reconciliation
            account.opening_balance = new_balance - routed_total
            logger.warning(
                "Bank account %s balance overridden from %.2f to %.2f", account_id, previous, new_balance
            )
        return _save(session, account, f"update bank account {account_id}")


def delete_bank_account(session: Session, account_id: int) -> int:
    with payments.BALANCE_LOCK:
        account = session.get(BankAccount, account_id)
        if account is None:
            return 0
        try:
            session.exec(
                update(Payment).where(Payment.bank_account_id == account_id).values(bank_account_id=None)
            )
            session.delete(account)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to delete bank account %s", account_id)
            raise
    logger.info("Deleted bank account %s; its payments are now unrouted", account_id)
    return 1


# ---------------------------------------------------------------- bills


def list_bills(
    session: Session,
    customer_id: Optional[int] = None,
    agent_id: Optional[int] = None,
) -> List[Bill]:
    statement = select(Bill)
    if customer_id is not None:
        statement = statement.where(Bill.customer_id == customer_id)
    if agent_id is not None:
        statement = statement.where(Bill.agent_id == agent_id)
    return session.exec(statement.order_by(Bill.bill_date.desc(), Bill.id.desc())).all()


def get_bill(session: Session, bill_id: int) -> Bill:
    return _get_or_404(session, Bill, bill_id, "Bill")


def create_bill(session: Session, data: Bill) -> Bill:
    _ensure_reference(session, Customer, data.customer_id, "Customer")
    _ensure_reference(session, Agent, data.agent_id, "Agent")
    return _save(session, data, "create bill")


def update_bill(session: Session, bill_id: int, payload: Dict[str, Any]) -> Optional[Bill]:
    bill = session.get(Bill, bill_id)
    if bill is None:
        return None
    _ensure_reference(session, Agent, payload.get("agent_id"), "Agent")
    _apply_updates(bill, payload, BILL_NULLABLE)
    return _save(session, bill, f"update bill {bill_id}")


def delete_bill(session: Session, bill_id: int) -> int:
    bill = session.get(Bill, bill_id)
    if bill is None:
        return 0
    session.delete(bill)
    _commit(session, f"delete bill {bill_id}")
    return 1


# ---------------------------------------------------------------- agent settlements


def list_agent_settlements(
    session: Session,
    agent_id: Optional[int] = None,
    settlement_type: Optional[SettlementType] = None,
) -> List[AgentSettlement]:
    statement = select(AgentSettlement)
    if agent_id is not None:
        statement = statement.where(AgentSettlement.agent_id == agent_id)
    if settlement_type is not None:
        statement = statement.where(AgentSettlement.type == settlement_type)
    return session.exec(
        statement.order_by(AgentSettlement.settlement_date.desc(), AgentSettlement.id.desc())
    ).all()


def get_agent_settlement(session: Session, settlement_id: int) -> AgentSettlement:
    return _get_or_404(session, AgentSettlement, settlement_id, "Agent settlement")


def create_agent_settlement(session: Session, data: AgentSettlement) -> AgentSettlement:
    _ensure_reference(session, Agent, data.agent_id, "Agent")
    return _save(session, data, "create agent settlement")


def update_agent_settlement(
    session: Session, settlement_id: int, payload: Dict[str, Any]
) -> Optional[AgentSettlement]:
    settlement = session.get(AgentSettlement, settlement_id)
    if settlement is None:
        return None
    _apply_updates(settlement, payload, SETTLEMENT_NULLABLE)
    return _save(session, settlement, f"update agent settlement {settlement_id}")


def delete_agent_settlement(session: Session, settlement_id: int) -> int:
    settlement = session.get(AgentSettlement, settlement_id)
    if settlement is None:
        return 0
    session.delete(settlement)
    _commit(session, f"delete agent settlement {settlement_id}")
    return 1


# ---------------------------------------------------------------- supplier transactions


def get_supplier_transaction(session: Session, transaction_id: int) -> SupplierTransaction:
    return _get_or_404(session, SupplierTransaction, transaction_id, "Supplier transaction")


def create_supplier_transaction(session: Session, data: SupplierTransaction) -> SupplierTransaction:
    _ensure_reference(session, Supplier, data.supplier_id, "Supplier")
    _ensure_reference(session, Customer, data.customer_id, "Customer")
    return _save(session, data, "create supplier transaction")


def update_supplier_transaction(
    session: Session, transaction_id: int, payload: Dict[str, Any]
) -> Optional[SupplierTransaction]:
    transaction = session.get(SupplierTransaction, transaction_id)
    if transaction is None:
        return None
    _ensure_reference(session, Supplier, payload.get("supplier_id"), "Supplier")
    _ensure_reference(session, Customer, payload.get("customer_id"), "Customer")
    _apply_updates(transaction, payload, SUPPLIER_TRANSACTION_NULLABLE)
    return _save(session, transaction, f"update supplier transaction {transaction_id}")


def delete_supplier_transaction(session: Session, transaction_id: int) -> int:
    transaction = session.get(SupplierTransaction, transaction_id)
    if transaction is None:
        return 0
    session.delete(transaction)
    _commit(session, f"delete supplier transaction {transaction_id}")
    return 1
