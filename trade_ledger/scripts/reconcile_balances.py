from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import Session, select

from .. import balances, payments
from ..database import engine, init_db
from ..logging_config import setup_logging
from ..models import (
    Agent,
    AgentSettlement,
    BankAccount,
    Bill,
    Customer,
    Payment,
    Supplier,
    SupplierTransaction,
)

logger = logging.getLogger(__name__)


@dataclass
class AuditIssue:
    severity: str
    category: str
    entity: str
    entity_id: Optional[int]
    message: str
    details: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "severity": self.severity,
            "category": self.category,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass
class AuditReport:
    stats: Dict[str, int]
    totals: Dict[str, float]
    issues: List[AuditIssue]
    fixed_accounts: List[int]

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stats": self.stats,
            "totals": self.totals,
            "issue_count": self.issue_count,
            "issues": [issue.as_dict() for issue in self.issues],
            "fixed_accounts": self.fixed_accounts,
        }


def _reference_issue(entity: str, entity_id: Optional[int], field: str, value: int) -> AuditIssue:
    return AuditIssue(
        severity="error",
        category="reference",
        entity=entity,
        entity_id=entity_id,
        message=f"{field} does not point to an existing row",
        details={field: value},
    )


def _check_references(session: Session) -> List[AuditIssue]:
    customer_ids = set(session.exec(select(Customer.id)).all())
    agent_ids = set(session.exec(select(Agent.id)).all())
    supplier_ids = set(session.exec(select(Supplier.id)).all())
    account_ids = set(session.exec(select(BankAccount.id)).all())

    issues: List[AuditIssue] = []
    for bill in session.exec(select(Bill)).all():
        if bill.customer_id is None or bill.customer_id not in customer_ids:
            issues.append(_reference_issue("bill", bill.id, "customer_id", bill.customer_id))
        if bill.agent_id is not None and bill.agent_id not in agent_ids:
            issues.append(_reference_issue("bill", bill.id, "agent_id", bill.agent_id))

    for payment in session.exec(select(Payment)).all():
        if payment.customer_id is not None and payment.customer_id not in customer_ids:
            issues.append(_reference_issue("payment", payment.id, "customer_id", payment.customer_id))
        if payment.agent_id is not None and payment.agent_id not in agent_ids:
            issues.append(_reference_issue("payment", payment.id, "agent_id", payment.agent_id))
        if payment.supplier_id is not None and payment.supplier_id not in supplier_ids:
            issues.append(_reference_issue("payment", payment.id, "supplier_id", payment.supplier_id))
        if payment.bank_account_id is not None and payment.bank_account_id not in account_ids:
            issues.append(_reference_issue("payment", payment.id, "bank_account_id", payment.bank_account_id))

    for settlement in session.exec(select(AgentSettlement)).all():
        if settlement.agent_id is None or settlement.agent_id not in agent_ids:
            issues.append(_reference_issue("agent_settlement", settlement.id, "agent_id", settlement.agent_id))

    for transaction in session.exec(select(SupplierTransaction)).all():
        if transaction.supplier_id is None or transaction.supplier_id not in supplier_ids:
            issues.append(
                _reference_issue("supplier_transaction", transaction.id, "supplier_id", transaction.supplier_id)
            )
        if transaction.customer_id is not None and transaction.customer_id not in customer_ids:
            issues.append(
                _reference_issue("supplier_transaction", transaction.id, "customer_id", transaction.customer_id)
            )
    return issues


def run_audit(session: Session, *, tolerance: float = 0.01, fix: bool = False) -> AuditReport:
    tolerance = max(tolerance, 0.0)
    accounts = session.exec(select(BankAccount).order_by(BankAccount.id)).all()

    issues: List[AuditIssue] = []
    fixed_accounts: List[int] = []
    for account in accounts:
        result = payments.check_bank_account(session, account.id)
        if abs(result.drift) <= tolerance:
            continue
        fixed = False
        if fix:
            fixed = payments.reconcile_bank_account(session, account.id, apply=True, tolerance=tolerance).applied
            if fixed:
                fixed_accounts.append(account.id)
        issues.append(
            AuditIssue(
                severity="warning" if fixed else "error",
                category="bank_balance",
                entity="bank_account",
                entity_id=account.id,
                message="stored balance deviates from opening balance plus routed payments",
                details={
                    "stored": result.stored_balance,
                    "expected": result.expected_balance,
                    "drift": result.drift,
                    "fixed": fixed,
                },
            )
        )

    issues.extend(_check_references(session))

    overview = balances.get_overview(session)
    stats = {
        "customers": overview.customers.count,
        "agents": overview.agents.count,
        "suppliers": overview.suppliers.count,
        "bank_accounts": overview.bank_accounts.count,
    }
    totals = {
        "customer_balance": overview.customers.total_balance,
        "agent_pending_balance": overview.agents.total_balance,
        "supplier_net_balance": overview.suppliers.total_balance,
        "bank_balance": overview.bank_accounts.total_balance,
    }
    return AuditReport(stats=stats, totals=totals, issues=issues, fixed_accounts=fixed_accounts)


def format_issue(issue: AuditIssue) -> str:
    prefix = f"[{issue.severity.upper()}] {issue.entity}#{issue.entity_id or '-'} {issue.category}"
    if issue.details:
        return f"{prefix}: {issue.message} | {json.dumps(issue.details, ensure_ascii=False)}"
    return f"{prefix}: {issue.message}"


def print_report(report: AuditReport) -> None:
    print(
        "Checked customers={customers}, agents={agents}, suppliers={suppliers}, "
        "bank_accounts={bank_accounts}".format(**report.stats)
    )
    print(
        "Totals: customers owe {customer_balance:.2f}, agents hold {agent_pending_balance:.2f}, "
        "suppliers net {supplier_net_balance:.2f}, banks hold {bank_balance:.2f}".format(**report.totals)
    )
    if not report.issues:
        print("No consistency issues detected.")
        return
    print(f"Found {report.issue_count} issues:")
    for idx, issue in enumerate(report.issues, start=1):
        print(f"{idx:02d}. {format_issue(issue)}")
    if report.fixed_accounts:
        print(f"Corrected bank accounts: {', '.join(str(i) for i in report.fixed_accounts)}")


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile cached bank balances and check ledger references")
    parser.add_argument(
        "--tolerance",
        type=float,
        default=0.01,
        help="Allowed rounding difference when comparing balances (default: 0.01)",
    )
    parser.add_argument(
        "--fix",
        action="store_true",
        help="Rewrite drifted bank balances to opening balance plus routed payments",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON",
    )
    return parser.parse_args(list(argv) if argv is not None else None)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(log_level="ERROR" if args.json else None)
    init_db()
    with Session(engine) as session:
        report = run_audit(session, tolerance=args.tolerance, fix=args.fix)
    if args.json:
        print(json.dumps(report.as_dict(), ensure_ascii=False, indent=2))
    else:
        print_report(report)
    unresolved = [issue for issue in report.issues if issue.severity == "error"]
    logger.info("Reconciliation finished with %s issue(s), %s unresolved", report.issue_count, len(unresolved))
    return 1 if unresolved else 0


if __name__ == "__main__":
    raise SystemExit(main())
