"""
Payment lifecycle.

``BankAccount.balance`` is a cached aggregate: ``opening_balance`` plus the amount of
every payment currently routed through the account. Every create, update and delete of
a payment goes through this module so the cache receives exactly one matching
adjustment, and every operation runs under ``BALANCE_LOCK`` so no other payment write
interleaves between reading prior state and writing the adjusted balance.

The payment row is the primary record. Bank adjustments are secondary: when one cannot
be applied it is logged and reported on the returned ``PaymentWriteResult`` instead of
failing the request, and the drift can be repaired with ``reconcile_bank_account``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .models import BankAccount, Payment
from .schemas import BankReconciliation

logger = logging.getLogger(__name__)

# re-entrant: the customer cascade holds it while removing that customer's payments
BALANCE_LOCK = threading.RLock()

DRIFT_TOLERANCE = 0.005

PAYMENT_NULLABLE_FIELDS = {
    "customer_id",
    "agent_id",
    "supplier_id",
    "bank_account_id",
    "agent_rate",
    "notes",
}


class BalanceAdjustmentError(RuntimeError):
    """Raised when a bank balance adjustment cannot be applied."""


@dataclass
class PaymentWriteResult:
    payment_id: Optional[int]
    affected: int
    payment: Optional[Payment] = None
    # None: no bank account involved; True/False: adjustment applied or not
    reversal_applied: Optional[bool] = None
    adjustment_applied: Optional[bool] = None

    @property
    def balance_adjusted(self) -> bool:
        return self.reversal_applied is not False and self.adjustment_applied is not False


def _shift_balance(session: Session, account_id: int, delta: float) -> BankAccount:
    account = session.get(BankAccount, account_id)
    if account is None:
        raise BalanceAdjustmentError(f"bank account {account_id} does not exist")
    account.balance = (account.balance or 0.0) + delta
    session.add(account)
    session.flush()
    return account


def _stage_reversal(
    session: Session,
    payment_id: Optional[int],
    account_id: Optional[int],
    amount: float,
) -> Optional[bool]:
    """Subtract a payment's effect from its account without committing."""
    if not account_id:
        return None
    try:
        account = _shift_balance(session, account_id, -amount)
    except BalanceAdjustmentError as exc:
        logger.error("Skipped reversing payment %s: %s", payment_id, exc)
        return False
    logger.info(
        "Reversed %.2f out of bank account %s for payment %s (balance %.2f)",
        amount,
        account_id,
        payment_id,
        account.balance,
    )
    return True


def _stage_reversal_best_effort(
    session: Session,
    payment_id: Optional[int],
    account_id: Optional[int],
    amount: float,
) -> Optional[bool]:
    try:
        return _stage_reversal(session, payment_id, account_id, amount)
    except SQLAlchemyError:
        # nothing else is staged yet, so the rollback only discards the reversal
        session.rollback()
        logger.exception("Could not reverse payment %s out of bank account %s", payment_id, account_id)
        return False


def _apply_and_commit(
    session: Session,
    payment_id: Optional[int],
    account_id: Optional[int],
    amount: float,
    action: str,
) -> Optional[bool]:
    if not account_id:
        return None
    try:
        account = _shift_balance(session, account_id, amount)
        new_balance = account.balance
        session.commit()
    except BalanceAdjustmentError as exc:
        logger.error("Payment %s %s but bank balance was not adjusted: %s", payment_id, action, exc)
        return False
    except SQLAlchemyError:
        session.rollback()
        logger.exception(
            "Payment %s %s but bank account %s could not be adjusted", payment_id, action, account_id
        )
        return False
    logger.info(
        "Applied %.2f to bank account %s for payment %s (balance %.2f)",
        amount,
        account_id,
        payment_id,
        new_balance,
    )
    return True


def _commit_primary(session: Session, description: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to %s", description)
        raise


def _warn_on_stale_claim(
    payment_id: int,
    stored_account_id: Optional[int],
    stored_amount: float,
    claimed_account_id: Optional[int],
    claimed_amount: Optional[float],
) -> None:
    stale = False
    if claimed_account_id is not None and claimed_account_id != stored_account_id:
        stale = True
    if claimed_amount is not None and abs(claimed_amount - stored_amount) > 1e-9:
        stale = True
    if stale:
        logger.warning(
            "Payment %s: caller reported previous state account=%s amount=%s but stored row has "
            "account=%s amount=%s; using the stored row",
            payment_id,
            claimed_account_id,
            claimed_amount,
            stored_account_id,
            stored_amount,
        )


def _ensure_account_exists(session: Session, account_id: Optional[int]) -> None:
    # a dangling id would later be reversed out of an account it never credited
    if account_id is not None and session.get(BankAccount, account_id) is None:
        raise HTTPException(status_code=400, detail=f"Bank account {account_id} does not exist")


def get_payment(session: Session, payment_id: int) -> Payment:
    payment = session.get(Payment, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment


def create_payment(session: Session, payment: Payment) -> PaymentWriteResult:
    with BALANCE_LOCK:
        _ensure_account_exists(session, payment.bank_account_id)
        session.add(payment)
        _commit_primary(session, "record payment")
        session.refresh(payment)
        adjusted = _apply_and_commit(
            session, payment.id, payment.bank_account_id, payment.amount or 0.0, "recorded"
        )
        session.refresh(payment)
    return PaymentWriteResult(
        payment_id=payment.id,
        affected=1,
        payment=payment,
        adjustment_applied=adjusted,
    )


def update_payment(
    session: Session,
    payment_id: int,
    updates: Dict[str, Any],
    *,
    claimed_account_id: Optional[int] = None,
    claimed_amount: Optional[float] = None,
) -> PaymentWriteResult:
    """
    Overwrite a payment and move its bank effect.

    Runs three steps in a fixed order, even when the account does not change:
    reverse the stored amount out of the stored account, overwrite the row, then
    apply the new amount to the new account. The reversal and the overwrite commit
    together; the final adjustment commits on its own.
    """
    with BALANCE_LOCK:
        payment = session.get(Payment, payment_id)
        if payment is None:
            logger.info("Payment %s not found; update skipped", payment_id)
            return PaymentWriteResult(payment_id=payment_id, affected=0)
        _ensure_account_exists(session, updates.get("bank_account_id"))

        previous_account_id = payment.bank_account_id
        previous_amount = payment.amount or 0.0
        _warn_on_stale_claim(
            payment_id, previous_account_id, previous_amount, claimed_account_id, claimed_amount
        )

        reversal = _stage_reversal_best_effort(session, payment_id, previous_account_id, previous_amount)

        for key, value in updates.items():
            if value is None and key not in PAYMENT_NULLABLE_FIELDS:
                continue
            setattr(payment, key, value)
        session.add(payment)
        _commit_primary(session, f"update payment {payment_id}")
        session.refresh(payment)

        adjusted = _apply_and_commit(
            session, payment.id, payment.bank_account_id, payment.amount or 0.0, "updated"
        )
        session.refresh(payment)
    return PaymentWriteResult(
        payment_id=payment.id,
        affected=1,
        payment=payment,
        reversal_applied=reversal,
        adjustment_applied=adjusted,
    )


def delete_payment(session: Session, payment_id: int) -> PaymentWriteResult:
    with BALANCE_LOCK:
        payment = session.get(Payment, payment_id)
        if payment is None:
            logger.info("Payment %s not found; nothing to reverse or delete", payment_id)
            return PaymentWriteResult(payment_id=payment_id, affected=0)

        account_id = payment.bank_account_id
        amount = payment.amount or 0.0
        reversal = _stage_reversal_best_effort(session, payment_id, account_id, amount)
        session.delete(payment)
        _commit_primary(session, f"delete payment {payment_id}")
    return PaymentWriteResult(payment_id=payment_id, affected=1, reversal_applied=reversal)


def remove_customer_payments(session: Session, customer_id: int) -> int:
    """Stage removal of a customer's payments, reversing each out of its account.

    Nothing is committed; the caller owns the transaction.
    """
    with BALANCE_LOCK:
        rows = session.exec(select(Payment).where(Payment.customer_id == customer_id)).all()
        for payment in rows:
            _stage_reversal(session, payment.id, payment.bank_account_id, payment.amount or 0.0)
            session.delete(payment)
        session.flush()
    return len(rows)


def routed_payments_total(session: Session, account_id: int) -> Tuple[float, int]:
    row = session.exec(
        select(func.coalesce(func.sum(Payment.amount), 0), func.count(Payment.id)).where(
            Payment.bank_account_id == account_id
        )
    ).one()
    return float(row[0] or 0.0), int(row[1] or 0)


def _measure(session: Session, account: BankAccount, applied: bool = False) -> BankReconciliation:
    payments_total, payment_count = routed_payments_total(session, account.id)
    opening = account.opening_balance or 0.0
    stored = account.balance or 0.0
    expected = opening + payments_total
    return BankReconciliation(
        bank_account_id=account.id,
        stored_balance=round(stored, 2),
        opening_balance=round(opening, 2),
        payments_total=round(payments_total, 2),
        payment_count=payment_count,
        expected_balance=round(expected, 2),
        # sub-cent precision so tolerances below a cent still apply
        drift=round(stored - expected, 6),
        applied=applied,
    )


def check_bank_account(session: Session, account_id: int) -> BankReconciliation:
    """Compare the cached balance with opening balance plus routed payments. Takes no lock."""
    account = session.get(BankAccount, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Bank account not found")
    return _measure(session, account)


def reconcile_bank_account(
    session: Session,
    account_id: int,
    *,
    apply: bool = False,
    tolerance: float = DRIFT_TOLERANCE,
) -> BankReconciliation:
    """Recompute an account balance from its payments and optionally repair the cache."""
    if not apply:
        return check_bank_account(session, account_id)
    with BALANCE_LOCK:
        result = check_bank_account(session, account_id)
        if abs(result.drift) <= tolerance:
            return result
        account = session.get(BankAccount, account_id)
        stored = account.balance or 0.0
        expected = (account.opening_balance or 0.0) + routed_payments_total(session, account_id)[0]
        account.balance = expected
        session.add(account)
        _commit_primary(session, f"reconcile bank account {account_id}")
        session.refresh(account)
        logger.warning(
            "Bank account %s balance corrected from %.2f to %.2f (drift %.2f)",
            account_id,
            stored,
            expected,
            stored - expected,
        )
        return _measure(session, account, applied=True)
