import logging
import threading
import warnings

import pytest
from sqlalchemy.exc import OperationalError, SADeprecationWarning
from sqlmodel import Session, select

from conftest import account_balance, build_engine, create_bank_account, create_customer, create_supplier
from trade_ledger import crud, payments
from trade_ledger.models import BankAccount, Bill, Currency, Customer, Payment, SupplierTransaction


def test_create_then_delete_restores_account_balance(client):
    account_id = create_bank_account(client, balance=1000)
    customer_id = create_customer(client)

    response = client.post(
        "/api/payments",
        json={"customer_id": customer_id, "bank_account_id": account_id, "amount": 250},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["balance_adjusted"] is True
    assert body["adjustment_applied"] is True
    assert body["reversal_applied"] is None
    assert account_balance(client, account_id) == pytest.approx(1250)

    response = client.delete(f"/api/payments/{body['id']}")
    assert response.status_code == 200
    assert response.json()["affected"] == 1
    assert response.json()["reversal_applied"] is True
    assert account_balance(client, account_id) == pytest.approx(1000)


def test_negative_payment_reduces_account_balance(client):
    account_id = create_bank_account(client, balance=1000)
    response = client.post("/api/payments", json={"bank_account_id": account_id, "amount": -400, "type": "other"})
    assert response.status_code == 201
    assert account_balance(client, account_id) == pytest.approx(600)


def test_update_moves_amount_between_accounts(client):
    account_a = create_bank_account(client, "Account A", balance=1000)
    account_b = create_bank_account(client, "Account B", balance=1000)
    payment_id = client.post("/api/payments", json={"bank_account_id": account_a, "amount": 100}).json()["id"]
    assert account_balance(client, account_a) == pytest.approx(1100)

    response = client.put(f"/api/payments/{payment_id}", json={"bank_account_id": account_b, "amount": 60})
    assert response.status_code == 200
    body = response.json()
    assert body["affected"] == 1
    assert body["reversal_applied"] is True
    assert body["adjustment_applied"] is True
    assert body["payment"]["bank_account_id"] == account_b

    # A loses the old 100, B gains the new 60
    assert account_balance(client, account_a) == pytest.approx(1000)
    assert account_balance(client, account_b) == pytest.approx(1060)


def test_update_on_same_account_applies_difference(client):
    account_id = create_bank_account(client, balance=500)
    payment_id = client.post("/api/payments", json={"bank_account_id": account_id, "amount": 100}).json()["id"]

    client.put(f"/api/payments/{payment_id}", json={"amount": 130})
    assert account_balance(client, account_id) == pytest.approx(630)

    client.put(f"/api/payments/{payment_id}", json={"notes": "wire reference 42"})
    assert account_balance(client, account_id) == pytest.approx(630)

    client.delete(f"/api/payments/{payment_id}")
    assert account_balance(client, account_id) == pytest.approx(500)


def test_update_unroutes_payment_when_account_cleared(client):
    account_id = create_bank_account(client, balance=500)
    payment_id = client.post("/api/payments", json={"bank_account_id": account_id, "amount": 100}).json()["id"]

    body = client.put(f"/api/payments/{payment_id}", json={"bank_account_id": None}).json()
    assert body["reversal_applied"] is True
    assert body["adjustment_applied"] is None
    assert body["payment"]["bank_account_id"] is None
    assert account_balance(client, account_id) == pytest.approx(500)


def test_update_uses_stored_state_over_caller_claims(client, caplog):
    account_a = create_bank_account(client, "Account A", balance=1000)
    account_b = create_bank_account(client, "Account B", balance=1000)
    payment_id = client.post("/api/payments", json={"bank_account_id": account_a, "amount": 100}).json()["id"]

    with caplog.at_level(logging.WARNING, logger="trade_ledger.payments"):
        response = client.put(
            f"/api/payments/{payment_id}",
            json={"amount": 80, "old_bank_account_id": account_b, "old_amount": 999},
        )
    assert response.status_code == 200
    assert account_balance(client, account_a) == pytest.approx(1080)
    assert account_balance(client, account_b) == pytest.approx(1000)
    assert any("using the stored row" in record.getMessage() for record in caplog.records)


def test_update_of_missing_payment_adjusts_nothing(client):
    account_id = create_bank_account(client, balance=1000)
    response = client.put(
        "/api/payments/999",
        json={"bank_account_id": account_id, "amount": 50, "old_bank_account_id": account_id, "old_amount": 50},
    )
    assert response.status_code == 200
    assert response.json()["affected"] == 0
    assert account_balance(client, account_id) == pytest.approx(1000)


def test_delete_of_missing_payment_is_graceful(client):
    response = client.delete("/api/payments/999")
    assert response.status_code == 200
    body = response.json()
    assert body["affected"] == 0
    assert body["balance_adjusted"] is True
    assert body["message"] == "Payment not found; nothing deleted"


def test_payment_against_unknown_account_is_rejected(client):
    response = client.post("/api/payments", json={"bank_account_id": 1, "amount": 100})
    assert response.status_code == 400
    assert response.json() == {"error": "Bank account 1 does not exist"}
    assert client.get("/api/payments").json() == []

    # the id becomes valid later; nothing may have been credited or debited against it
    account_id = create_bank_account(client, balance=500)
    assert account_id == 1
    reconciliation = client.get(f"/api/bank-accounts/{account_id}/reconciliation").json()
    assert reconciliation["drift"] == 0
    assert reconciliation["payment_count"] == 0

    payment_id = client.post("/api/payments", json={"bank_account_id": account_id, "amount": 100}).json()["id"]
    response = client.put(f"/api/payments/{payment_id}", json={"bank_account_id": 999, "amount": 40})
    assert response.status_code == 400
    assert response.json() == {"error": "Bank account 999 does not exist"}
    payment = client.get(f"/api/payments/{payment_id}").json()
    assert payment["bank_account_id"] == account_id
    assert payment["amount"] == pytest.approx(100)
    assert account_balance(client, account_id) == pytest.approx(600)

    client.delete(f"/api/payments/{payment_id}")
    assert account_balance(client, account_id) == pytest.approx(500)


def _store_failure(*args, **kwargs):
    raise OperationalError("UPDATE bank_accounts SET balance=?", {}, Exception("database is locked"))


def test_store_failure_during_adjustment_keeps_the_payment(client, monkeypatch, caplog):
    account_id = create_bank_account(client, balance=1000)
    monkeypatch.setattr(payments, "_shift_balance", _store_failure)

    with caplog.at_level(logging.ERROR, logger="trade_ledger.payments"):
        response = client.post("/api/payments", json={"bank_account_id": account_id, "amount": 100})
    assert response.status_code == 201
    body = response.json()
    assert body["adjustment_applied"] is False
    assert body["balance_adjusted"] is False
    assert "could not be adjusted" in body["message"]
    assert any(record.levelno == logging.ERROR for record in caplog.records)

    monkeypatch.undo()
    assert client.get(f"/api/payments/{body['id']}").status_code == 200
    assert account_balance(client, account_id) == pytest.approx(1000)

    # the missed credit shows up as drift and can be repaired
    assert client.get(f"/api/bank-accounts/{account_id}/reconciliation").json()["drift"] == pytest.approx(-100)
    assert client.post(f"/api/bank-accounts/{account_id}/reconciliation").json()["applied"] is True
    assert account_balance(client, account_id) == pytest.approx(1100)


def test_failed_reversal_does_not_block_the_update(client, monkeypatch):
    account_id = create_bank_account(client, balance=1000)
    payment_id = client.post("/api/payments", json={"bank_account_id": account_id, "amount": 100}).json()["id"]

    real_shift = payments._shift_balance
    deltas = []

    def fail_first_shift(session, target_account_id, delta):
        deltas.append(delta)
        if len(deltas) == 1:
            _store_failure()
        return real_shift(session, target_account_id, delta)

    monkeypatch.setattr(payments, "_shift_balance", fail_first_shift)
    response = client.put(f"/api/payments/{payment_id}", json={"amount": 60})
    assert response.status_code == 200
    body = response.json()
    assert body["affected"] == 1
    assert body["reversal_applied"] is False
    assert body["adjustment_applied"] is True
    assert body["balance_adjusted"] is False
    assert body["payment"]["amount"] == pytest.approx(60)
    assert deltas == [-100, 60]

    monkeypatch.undo()
    # old 100 was never reversed
    assert account_balance(client, account_id) == pytest.approx(1160)
    assert client.get(f"/api/bank-accounts/{account_id}/reconciliation").json()["drift"] == pytest.approx(100)


def test_bank_account_reads_do_not_wait_for_payment_writes(client):
    account_id = create_bank_account(client, balance=1000)
    lock_held = threading.Event()
    release = threading.Event()
    responses = []

    def hold_lock():
        with payments.BALANCE_LOCK:
            lock_held.set()
            release.wait(5)

    def read_account():
        responses.append(client.get(f"/api/bank-accounts/{account_id}"))
        responses.append(client.get(f"/api/bank-accounts/{account_id}/reconciliation"))

    holder = threading.Thread(target=hold_lock)
    holder.start()
    assert lock_held.wait(5)
    reader = threading.Thread(target=read_account)
    try:
        reader.start()
        reader.join(timeout=2)
        finished_while_locked = not reader.is_alive()
    finally:
        release.set()
        holder.join()
        reader.join()

    assert finished_while_locked
    assert [response.status_code for response in responses] == [200, 200]
    assert responses[1].json()["drift"] == 0


def test_customer_delete_cascades_and_reverses_bank_balance(client):
    account_id = create_bank_account(client, balance=1000)
    customer_id = create_customer(client)
    other_customer = create_customer(client, "Other Customer")
    supplier_id = create_supplier(client)
    client.post("/api/bills", json={"customer_id": customer_id, "total_bill": 900})
    client.post("/api/payments", json={"customer_id": customer_id, "bank_account_id": account_id, "amount": 300})
    client.post("/api/payments", json={"customer_id": customer_id, "bank_account_id": account_id, "amount": 200})
    client.post("/api/payments", json={"customer_id": other_customer, "bank_account_id": account_id, "amount": 50})
    client.post(
        "/api/supplier-transactions",
        json={
            "supplier_id": supplier_id,
            "customer_id": customer_id,
            "rmb_amount": 72,
            "usdt_rate": 7.2,
            "calculated_usdt": 10,
            "type": "supplier_to_me",
        },
    )
    assert account_balance(client, account_id) == pytest.approx(1550)

    response = client.delete(f"/api/customers/{customer_id}")
    assert response.json()["affected"] == 1

    with Session(client._engine) as session:
        assert session.get(Customer, customer_id) is None
        assert session.exec(select(Bill).where(Bill.customer_id == customer_id)).all() == []
        remaining = session.exec(select(Payment)).all()
        assert [p.customer_id for p in remaining] == [other_customer]
        transactions = session.exec(select(SupplierTransaction)).all()
        assert len(transactions) == 1
        assert transactions[0].customer_id is None

    assert account_balance(client, account_id) == pytest.approx(1050)
    reconciliation = client.get(f"/api/bank-accounts/{account_id}/reconciliation").json()
    assert reconciliation["drift"] == 0


def test_bank_account_delete_unroutes_payments(client):
    account_id = create_bank_account(client, balance=100)
    payment_id = client.post("/api/payments", json={"bank_account_id": account_id, "amount": 10}).json()["id"]

    assert client.delete(f"/api/bank-accounts/{account_id}").json()["affected"] == 1
    payment = client.get(f"/api/payments/{payment_id}").json()
    assert payment["bank_account_id"] is None

    response = client.delete(f"/api/payments/{payment_id}")
    assert response.json()["reversal_applied"] is None


def test_balance_override_then_reconcile_reports_no_drift(client):
    account_id = create_bank_account(client, balance=1000)
    client.post("/api/payments", json={"bank_account_id": account_id, "amount": 200})

    response = client.put(f"/api/bank-accounts/{account_id}", json={"balance": 5000, "bank_name": "HSBC"})
    assert response.json()["affected"] == 1

    statement = client.get(f"/api/bank-accounts/{account_id}").json()
    assert statement["bank_account"]["balance"] == pytest.approx(5000)
    assert statement["bank_account"]["opening_balance"] == pytest.approx(4800)
    assert statement["bank_account"]["bank_name"] == "HSBC"
    assert statement["reconciliation"]["drift"] == 0
    assert statement["reconciliation"]["payment_count"] == 1


def test_reconcile_repairs_drifted_balance(client):
    account_id = create_bank_account(client, balance=1000)
    client.post("/api/payments", json={"bank_account_id": account_id, "amount": 200})

    with Session(client._engine) as session:
        account = session.get(BankAccount, account_id)
        account.balance = 1234.0
        session.add(account)
        session.commit()

    check = client.get(f"/api/bank-accounts/{account_id}/reconciliation").json()
    assert check["stored_balance"] == pytest.approx(1234)
    assert check["expected_balance"] == pytest.approx(1200)
    assert check["drift"] == pytest.approx(34)
    assert check["applied"] is False

    applied = client.post(f"/api/bank-accounts/{account_id}/reconciliation").json()
    assert applied["applied"] is True
    assert account_balance(client, account_id) == pytest.approx(1200)

    again = client.post(f"/api/bank-accounts/{account_id}/reconciliation").json()
    assert again["applied"] is False
    assert again["drift"] == 0


def test_payment_sequence_is_zero_sum_at_service_level():
    engine = build_engine()
    with Session(engine) as session:
        account = crud.create_bank_account(
            session,
            BankAccount(account_name="Wallet", bank_name="Binance", currency=Currency.USDT, balance=12000),
        )
        created = payments.create_payment(
            session, Payment(bank_account_id=account.id, amount=150.25, currency=Currency.USDT)
        )
        assert created.balance_adjusted
        for amount in (99.5, 310.0, 0.0, 42.42):
            result = payments.update_payment(session, created.payment_id, {"amount": amount})
            assert result.affected == 1
            assert result.balance_adjusted
        deleted = payments.delete_payment(session, created.payment_id)
        assert deleted.affected == 1

        session.refresh(account)
        assert account.balance == pytest.approx(12000)
        assert payments.routed_payments_total(session, account.id) == (0.0, 0)


def test_payment_write_result_flags():
    assert payments.PaymentWriteResult(payment_id=1, affected=1).balance_adjusted is True
    assert payments.PaymentWriteResult(payment_id=1, affected=1, reversal_applied=False).balance_adjusted is False
    assert (
        payments.PaymentWriteResult(
            payment_id=1, affected=1, reversal_applied=True, adjustment_applied=False
        ).balance_adjusted
        is False
    )


def test_balance_adjustments_use_current_session_api():
    engine = build_engine()
    with Session(engine) as session, warnings.catch_warnings():
        warnings.simplefilter("error", SADeprecationWarning)
        account = crud.create_bank_account(
            session,
            BankAccount(account_name="Main", bank_name="HSBC", currency=Currency.USD, balance=100),
        )
        created = payments.create_payment(session, Payment(bank_account_id=account.id, amount=25))
        payments.update_payment(session, created.payment_id, {"amount": 30})
        payments.delete_payment(session, created.payment_id)
        session.refresh(account)
        assert account.balance == pytest.approx(100)
