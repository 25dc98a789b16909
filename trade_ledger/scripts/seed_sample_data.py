"""Insert a small set of sample agents, customers, suppliers and bank accounts.

Each entity kind is seeded only when its table is empty, so the script is safe to rerun.

    python -m trade_ledger.scripts.seed_sample_data
"""

from __future__ import annotations

import argparse
import logging
from typing import Iterable, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from .. import crud
from ..database import engine, init_db
from ..logging_config import setup_logging
from ..models import Agent, AgentType, BankAccount, Currency, Customer, Supplier

logger = logging.getLogger(__name__)

SAMPLE_AGENTS = [
    ("Ali USDT Agent", AgentType.USDT, 3.67, 1.0, "123-456-7890", "ali@usdt.com"),
    ("Ahmed DHS Agent", AgentType.DHS, 3.67, 1.0, "123-456-7891", "ahmed@dhs.com"),
    ("USDT Exchange", AgentType.USDT, 3.68, 1.0, "123-456-7892", "exchange@usdt.com"),
]

SAMPLE_CUSTOMERS = [
    ("John Doe", "john@example.com", "123-456-7890", "123 Main St"),
    ("Jane Smith", "jane@example.com", "123-456-7891", "456 Oak Ave"),
    ("Bob Johnson", "bob@example.com", "123-456-7892", "789 Pine Rd"),
]

SAMPLE_SUPPLIERS = [
    ("China Trading Co.", "Mr. Zhang", "+86-138-0011-2233", "zhang@china-trading.com", 7.2),
    ("Global Suppliers Ltd.", "Ms. Li", "+86-139-0055-6677", "li@global-suppliers.com", 7.15),
    ("Eastern Imports", "Mr. Wang", "+86-137-0088-9944", "wang@eastern-imports.com", 7.25),
]

SAMPLE_BANK_ACCOUNTS = [
    ("Main AED Account", "Emirates NBD", "1234567890", Currency.AED, 50000.0),
    ("USD Business Account", "HSBC", "9876543210", Currency.USD, 15000.0),
    ("USDT Wallet", "Binance", "USDTWALLET123", Currency.USDT, 12000.0),
    ("RMB Account", "ICBC", "1122334455", Currency.RMB, 80000.0),
]


def _is_empty(session: Session, model) -> bool:
    return session.exec(select(func.count()).select_from(model)).one() == 0


def seed(session: Session) -> dict:
    inserted = {"agents": 0, "customers": 0, "suppliers": 0, "bank_accounts": 0}

    if _is_empty(session, Agent):
        for name, agent_type, usdt_rate, dhs_rate, phone, email in SAMPLE_AGENTS:
            crud.create_agent(
                session,
                Agent(name=name, type=agent_type, usdt_rate=usdt_rate, dhs_rate=dhs_rate, phone=phone, email=email),
            )
            inserted["agents"] += 1

    if _is_empty(session, Customer):
        for name, email, phone, address in SAMPLE_CUSTOMERS:
            crud.create_customer(session, Customer(name=name, email=email, phone=phone, address=address))
            inserted["customers"] += 1

    if _is_empty(session, Supplier):
        for name, contact_person, phone, email, rate in SAMPLE_SUPPLIERS:
            crud.create_supplier(
                session,
                Supplier(
                    name=name,
                    contact_person=contact_person,
                    phone=phone,
                    email=email,
                    rmb_to_usdt_rate=rate,
                ),
            )
            inserted["suppliers"] += 1

    if _is_empty(session, BankAccount):
        for account_name, bank_name, account_number, currency, balance in SAMPLE_BANK_ACCOUNTS:
            crud.create_bank_account(
                session,
                BankAccount(
                    account_name=account_name,
                    bank_name=bank_name,
                    account_number=account_number,
                    currency=currency,
                    balance=balance,
                ),
            )
            inserted["bank_accounts"] += 1

    return inserted


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed sample reference data into empty ledger tables")
    return parser.parse_args(list(argv) if argv is not None else None)


def main(argv: Optional[Iterable[str]] = None) -> int:
    parse_args(argv)
    setup_logging()
    init_db()
    with Session(engine) as session:
        inserted = seed(session)
    logger.info(
        "Seeded agents=%(agents)s customers=%(customers)s suppliers=%(suppliers)s bank_accounts=%(bank_accounts)s",
        inserted,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
