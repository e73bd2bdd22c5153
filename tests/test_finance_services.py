from datetime import date

import pytest
from sqlalchemy import func, select

from campus_admin import db
from campus_admin.errors import (
    AlreadyDeletedError,
    ConflictError,
    NotFoundError,
    PermissionDenied,
    RecordLockedError,
    RootPrivilegeRequired,
    ValidationError,
)
from campus_admin.finance import ledger, services
from campus_admin.models import AuditLog, Expense, FeePayment, FeeStructure, Salary


def _audit_count(**filters):
    return db.session.scalar(select(func.count(AuditLog.log_id)).filter_by(**filters))


def _expense(actor, **overrides):
    data = {
        "title": "Electricity bill",
        "amount": 4200,
        "category": "utilities",
        "paid_on": "2025-03-10",
        "paid_to": "State Power Co",
    }
    data.update(overrides)
    return services.create_expense(actor, data)


def _salary(actor, employee_id, **overrides):
    data = {"employee": employee_id, "month": "2025-03", "base_amount": 50000, "deductions": 2000}
    data.update(overrides)
    return services.create_salary(actor, data)


def _pay(actor, student_id, structure_id, amount, paid_on):
    return ledger.record_payment(actor, student_id, {
        "fee_structure_id": structure_id,
        "amount": amount,
        "mode": "online",
        "receipt_no": f"RCPT-{paid_on}",
        "paid_on": paid_on,
    })


# Fee structures

def test_create_fee_structure(actors, seed):
    fs = services.create_fee_structure(actors.admin, {
        "program": seed.program_id,
        "session": seed.session_id,
        "semester": 2,
        "total_amount": "40000",
        "due_date": "2026-01-15",
    })
    assert fs.total_amount == 40000
    assert fs.due_date == date(2026, 1, 15)
    assert _audit_count(entity_type="FeeStructure", action="CREATE") == 1


@pytest.mark.parametrize("overrides,error", [
    ({"semester": 0}, ValidationError),
    ({"total_amount": 0}, ValidationError),
    ({"total_amount": "Infinity"}, ValidationError),
    ({"total_amount": "NaN"}, ValidationError),
    ({"total_amount": "1e30"}, ValidationError),
    ({"due_date": ""}, ValidationError),
    ({"program": 9999}, NotFoundError),
    ({"session": 9999}, NotFoundError),
])
def test_create_fee_structure_rejects_bad_input(actors, seed, overrides, error):
    data = {"program": seed.program_id, "session": seed.session_id, "semester": 1,
            "total_amount": 1000, "due_date": "2026-01-15"}
    data.update(overrides)
    with pytest.raises(error):
        services.create_fee_structure(actors.admin, data)


def test_total_amount_frozen_once_referenced(actors, seed):
    services.update_fee_structure(actors.admin, seed.structure_id, {"total_amount": 36000})
    _pay(actors.admin, seed.user_ids["student"], seed.structure_id, 1000, "2025-06-01")

    with pytest.raises(ConflictError):
        services.update_fee_structure(actors.admin, seed.structure_id, {"total_amount": 30000})
    db.session.rollback()

    fs = services.update_fee_structure(actors.admin, seed.structure_id, {"description": "Revised"})
    assert fs.total_amount == 36000
    assert fs.description == "Revised"


def test_delete_fee_structure_deactivates_when_referenced(actors, seed):
    _pay(actors.admin, seed.user_ids["student"], seed.structure_id, 1000, "2025-06-01")
    assert services.delete_fee_structure(actors.admin, seed.structure_id) == "deactivated"
    assert db.session.get(FeeStructure, seed.structure_id).is_active is False
    assert services.list_fee_structures(actors.admin) == []

    spare = services.create_fee_structure(actors.admin, {
        "program": seed.program_id, "session": seed.session_id, "semester": 3,
        "total_amount": 100, "due_date": "2026-06-01",
    })
    spare_id = spare.structure_id
    assert services.delete_fee_structure(actors.admin, spare_id) == "deleted"
    assert db.session.get(FeeStructure, spare_id) is None
    assert _audit_count(entity_type="FeeStructure", action="DELETE") == 1


# Expenses

def test_expense_lifecycle(actors, seed):
    e = _expense(actors.admin)
    assert e.recorded_by_fk == actors.admin.user_id

    e = services.update_expense(actors.admin, e.expense_id, {"amount": 4500, "remarks": "Revised bill"})
    assert e.amount == 4500
    log = db.session.execute(select(AuditLog).filter_by(entity_type="Expense", action="UPDATE")).scalars().one()
    assert {c["field"] for c in log.changes} == {"amount", "remarks"}

    with pytest.raises(RootPrivilegeRequired):
        services.delete_expense(actors.admin, e.expense_id)
    assert db.session.get(Expense, e.expense_id).is_deleted is False

    services.delete_expense(actors.root, e.expense_id, reason="Entered twice")
    with pytest.raises(AlreadyDeletedError):
        services.delete_expense(actors.root, e.expense_id)
    with pytest.raises(AlreadyDeletedError):
        services.update_expense(actors.admin, e.expense_id, {"amount": 1})

    rows, total = services.list_expenses(actors.admin)
    assert rows == []
    assert total == 0
    assert _audit_count(entity_type="Expense") == 3


@pytest.mark.parametrize("overrides", [
    {"amount": 0},
    {"amount": "12.75"},
    {"category": "travel"},
    {"paid_to": ""},
])
def test_expense_validation(actors, seed, overrides):
    with pytest.raises(ValidationError):
        _expense(actors.admin, **overrides)


def test_expense_filters(actors, seed):
    _expense(actors.admin, paid_on="2025-03-10")
    _expense(actors.admin, paid_on="2025-04-02", category="maintenance", amount=800)
    rows, total = services.list_expenses(actors.admin, month="2025-04")
    assert [r.category for r in rows] == ["maintenance"]
    assert total == 800
    rows, total = services.list_expenses(actors.admin, category="utilities")
    assert total == 4200


def test_expenses_require_admin(actors, seed):
    with pytest.raises(PermissionDenied):
        _expense(actors.clerk)


# Salary

def test_salary_net_amount_is_a_snapshot(actors, seed):
    s = _salary(actors.admin, seed.user_ids["clerk"])
    assert s.net_amount == 48000
    assert s.status == "pending"

    # Deductions changed outside the API do not touch the stored net amount
    s.deductions = 5000
    db.session.commit()
    s = services.update_salary(actors.admin, s.salary_id, {"remarks": "Adjusted"})
    assert s.net_amount == 48000


def test_salary_validation(actors, seed):
    with pytest.raises(ValidationError):
        _salary(actors.admin, seed.user_ids["clerk"], deductions=60000)
    with pytest.raises(ValidationError):
        _salary(actors.admin, seed.user_ids["clerk"], month="03-2025")
    with pytest.raises(ValidationError):
        _salary(actors.admin, seed.user_ids["clerk"], base_amount=0)
    with pytest.raises(NotFoundError):
        _salary(actors.admin, 9999)


def test_duplicate_salary_month_conflicts(actors, seed):
    _salary(actors.admin, seed.user_ids["clerk"])
    with pytest.raises(ConflictError):
        _salary(actors.admin, seed.user_ids["clerk"])
    assert db.session.scalar(select(func.count(Salary.salary_id))) == 1


def test_mark_salary_paid(actors, seed):
    s = _salary(actors.admin, seed.user_ids["clerk"])
    s = services.update_salary(actors.admin, s.salary_id, {"action": "mark_paid", "paid_on": "2025-03-31"})
    assert s.status == "paid"
    assert s.paid_on == date(2025, 3, 31)
    assert s.paid_by_fk == actors.admin.user_id
    with pytest.raises(ValidationError):
        services.update_salary(actors.admin, s.salary_id, {"action": "mark_paid"})

    rows, total_pending = services.list_salaries(actors.admin, month="2025-03")
    assert len(rows) == 1
    assert total_pending == 0


def test_salary_delete_requires_root(actors, seed):
    s = _salary(actors.admin, seed.user_ids["clerk"])
    with pytest.raises(RootPrivilegeRequired):
        services.delete_salary(actors.admin, s.salary_id)
    services.delete_salary(actors.root, s.salary_id)
    with pytest.raises(AlreadyDeletedError):
        services.update_salary(actors.admin, s.salary_id, {"remarks": "x"})
    assert services.list_salaries(actors.admin)[0] == []


# Period locking

def test_lock_period_freezes_records_up_to_cutoff(actors, seed):
    old_expense = _expense(actors.admin, paid_on="2025-03-10")
    new_expense = _expense(actors.admin, paid_on="2025-05-10")
    paid_salary = _salary(actors.admin, seed.user_ids["clerk"])
    services.update_salary(actors.admin, paid_salary.salary_id, {"action": "mark_paid", "paid_on": "2025-03-25"})
    pending_salary = _salary(actors.admin, seed.user_ids["admin"], month="2025-04")
    old_fp = _pay(actors.admin, seed.user_ids["student"], seed.structure_id, 1000, "2025-03-15")
    new_fp = _pay(actors.admin, seed.user_ids["student2"], seed.structure_id, 1000, "2025-04-15")

    cutoff, counts = services.lock_period(actors.root, "2025-03-31")
    assert cutoff == date(2025, 3, 31)
    assert counts == {"expenses": 1, "salaries": 1, "fee_payments": 1}

    assert db.session.get(Expense, old_expense.expense_id).is_locked is True
    assert db.session.get(Expense, new_expense.expense_id).is_locked is False
    assert db.session.get(Salary, paid_salary.salary_id).is_locked is True
    assert db.session.get(Salary, pending_salary.salary_id).is_locked is False
    assert db.session.get(FeePayment, old_fp.payment_id).is_locked is True
    assert db.session.get(FeePayment, new_fp.payment_id).is_locked is False

    log = db.session.execute(select(AuditLog).filter_by(action="LOCK")).scalars().one()
    assert log.entity_type == "FinancialPeriod"
    assert log.performed_by_fk == actors.root.user_id

    # Already-locked rows keep their lock; a repeat lock touches nothing
    _, again = services.lock_period(actors.root, "2025-03-31")
    assert again == {"expenses": 0, "salaries": 0, "fee_payments": 0}


def test_locked_records_reject_edits_and_deletes(actors, seed):
    e = _expense(actors.admin, paid_on="2025-03-10")
    fp = _pay(actors.admin, seed.user_ids["student"], seed.structure_id, 1000, "2025-03-15")
    txn_id = fp.transactions[0].transaction_id
    services.lock_period(actors.root, "2025-03-31")

    with pytest.raises(RecordLockedError):
        services.delete_expense(actors.root, e.expense_id)
    with pytest.raises(RecordLockedError):
        services.update_expense(actors.admin, e.expense_id, {"amount": 1})
    with pytest.raises(RecordLockedError):
        ledger.cancel_payment(actors.root, fp.payment_id, txn_id)
    with pytest.raises(RecordLockedError):
        ledger.soft_delete_fee_payment(actors.root, fp.payment_id)
    assert db.session.get(Expense, e.expense_id).is_deleted is False

    # New-period payments are still accepted on a locked ledger
    fp = _pay(actors.admin, seed.user_ids["student"], seed.structure_id, 500, "2025-04-05")
    assert fp.amount_paid == 1500


def test_lock_period_requires_root(actors, seed):
    with pytest.raises(RootPrivilegeRequired):
        services.lock_period(actors.admin, "2025-03-31")
    with pytest.raises(ValidationError):
        services.lock_period(actors.root, "31/03/2025")
    assert _audit_count(action="LOCK") == 0


# Dashboard

def test_finance_dashboard_totals(actors, seed):
    _pay(actors.admin, seed.user_ids["student"], seed.structure_id, 21000, "2025-06-01")
    _pay(actors.admin, seed.user_ids["student2"], seed.structure_id, 35000, "2025-06-02")
    _expense(actors.admin, amount=4000)
    s = _salary(actors.admin, seed.user_ids["clerk"])
    services.update_salary(actors.admin, s.salary_id, {"action": "mark_paid"})
    _salary(actors.admin, seed.user_ids["admin"], base_amount=30000, deductions=0)

    data = services.finance_dashboard()
    stats = data["stats"]
    assert stats["total_revenue"] == 56000
    assert stats["total_pending_fees"] == 14000
    assert stats["total_expenses"] == 4000
    assert stats["total_salary_paid"] == 48000
    assert stats["total_salary_pending"] == 30000
    assert stats["total_spend"] == 52000
    assert stats["net_balance"] == 4000
    assert [p["remaining"] for p in data["pending_top5"]] == [14000]
