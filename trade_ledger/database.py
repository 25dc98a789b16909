import os
from pathlib import Path
from typing import List

from sqlalchemy import inspect
from sqlmodel import SQLModel, create_engine

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)

DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{DATA_DIR / 'ledger.db'}"
SQL_ECHO = os.getenv("LEDGER_SQL_ECHO", "false").lower() == "true"

LEDGER_TABLES = (
    "customers",
    "agents",
    "suppliers",
    "bank_accounts",
    "supplier_transactions",
    "bills",
    "payments",
    "agent_settlements",
)

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    DATABASE_URL,
    echo=SQL_ECHO,
    connect_args=connect_args,
)


def init_db() -> None:
    """Create database tables if they do not exist."""
    # the table classes register themselves on SQLModel.metadata when imported
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def missing_tables(bind=None) -> List[str]:
    inspector = inspect(bind if bind is not None else engine)
    existing = set(inspector.get_table_names())
    return [name for name in LEDGER_TABLES if name not in existing]
