import pytest
from sqlmodel import Session, select

from conftest import build_engine
from trade_ledger import crud, payments
from trade_ledger.models import Agent, AgentType, BankAccount, Bill, Currency, Customer, Payment, Supplier
from trade_ledger.scripts.reconcile_balances import format_issue, run_audit
from trade_ledger.scripts.seed_sample_data import SAMPLE_BANK_ACCOUNTS, seed


@pytest.fixture
def session():
    engine = build_engine()
    with Session(engine) as session:
        yield session


def _drift_account(session: Session, account_id: int, balance: float) -> None:
    account = session.get(BankAccount, account_id)
    account.balance = balance
    session.add(account)
    session.commit()


def _create_account(session: Session, balance: float = 100) -> BankAccount:
    return crud.create_bank_account(
        session,
        BankAccount(account_name="Main", bank_name="HSBC", currency=Currency.USD, balance=balance),
    )


def test_clean_ledger_has_no_issues(session):
    seed(session)
    account = session.exec(select(BankAccount).where(BankAccount.currency == Currency.AED)).first()
    payments.create_payment(session, Payment(bank_account_id=account.id, amount=500))

    report = run_audit(session)
    assert report.issues == []
    assert report.stats["bank_accounts"] == len(SAMPLE_BANK_ACCOUNTS)
    assert report.totals["bank_balance"] == pytest.approx(50000 + 15000 + 12000 + 80000 + 500)


def test_drifted_balance_is_reported_and_left_alone(session):
    account = _create_account(session)
    _drift_account(session, account.id, 160)

    report = run_audit(session)
    assert len(report.issues) == 1
    issue = report.issues[0]
    assert issue.severity == "error"
    assert issue.category == "bank_balance"
    assert issue.details["drift"] == pytest.approx(60)
    assert report.fixed_accounts == []
    assert "bank_account#" in format_issue(issue)

    session.refresh(account)
    assert account.balance == pytest.approx(160)


def test_fix_rewrites_drifted_balance(session):
    account = _create_account(session)
    payments.create_payment(session, Payment(bank_account_id=account.id, amount=40))
    _drift_account(session, account.id, 10)

    report = run_audit(session, fix=True)
    assert report.fixed_accounts == [account.id]
    assert [issue.severity for issue in report.issues] == ["warning"]

    session.refresh(account)
    assert account.balance == pytest.approx(140)
    assert run_audit(session).issues == []


def test_drift_within_tolerance_is_ignored(session):
    account = _create_account(session)
    _drift_account(session, account.id, 100.004)
    assert run_audit(session, tolerance=0.01).issues == []


def test_fix_honours_tolerance_below_default(session):
    account = _create_account(session)
    _drift_account(session, account.id, 100.004)

    # the default tolerance treats a 0.004 drift as clean
    assert payments.reconcile_bank_account(session, account.id, apply=True).applied is False

    report = run_audit(session, tolerance=0.001, fix=True)
    assert report.fixed_accounts == [account.id]
    assert report.issues[0].severity == "warning"
    assert report.issues[0].details["fixed"] is True
    session.refresh(account)
    assert account.balance == pytest.approx(100)


def test_orphaned_references_are_reported(session):
    customer = crud.create_customer(session, Customer(name="Kept"))
    session.add(Bill(customer_id=customer.id, agent_id=404, total_bill=10))
    session.add(Payment(customer_id=405, amount=5))
    session.commit()

    report = run_audit(session)
    fields = sorted(next(iter(issue.details)) for issue in report.issues)
    assert fields == ["agent_id", "customer_id"]
    assert {issue.entity for issue in report.issues} == {"bill", "payment"}


def test_seed_only_fills_empty_tables(session):
    crud.create_agent(session, Agent(name="Existing Agent", type=AgentType.DHS))

    inserted = seed(session)
    assert inserted["agents"] == 0
    assert inserted["customers"] == 3
    assert inserted["suppliers"] == 3
    assert inserted["bank_accounts"] == len(SAMPLE_BANK_ACCOUNTS)

    again = seed(session)
    assert again == {"agents": 0, "customers": 0, "suppliers": 0, "bank_accounts": 0}
    assert len(session.exec(select(Supplier)).all()) == 3

    wallet = session.exec(select(BankAccount).where(BankAccount.currency == Currency.USDT)).one()
    assert wallet.opening_balance == pytest.approx(12000)
