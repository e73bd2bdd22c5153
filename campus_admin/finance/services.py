import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy import select, func, update, or_, exists

from .. import db, cache
from ..audit import change, diff_changes, record_audit
from ..decorators import require_admin, require_root
from ..errors import (
    AlreadyDeletedError,
    ConflictError,
    NotFoundError,
    RecordLockedError,
    ValidationError,
)
from ..models import (
    AcademicSession,
    EXPENSE_CATEGORIES,
    Expense,
    FeePayment,
    FeeStructure,
    PaymentTransaction,
    Program,
    Salary,
    User,
    utc_now,
)
from ..utils import (
    is_blank,
    month_bounds,
    parse_amount,
    parse_bool,
    parse_date,
    parse_int,
    parse_month,
    require_fields,
)

logger = logging.getLogger(__name__)

DASHBOARD_CACHE_KEY = "finance_dashboard"


def invalidate_dashboard():
    cache.delete(DASHBOARD_CACHE_KEY)


def _iso(value):
    return value.isoformat() if value else None


# ==========================================
# FEE STRUCTURES
# ==========================================

def fee_structure_to_dict(fs):
    program = fs.program
    session = fs.session
    return {
        "structure_id": fs.structure_id,
        "program": {
            "program_id": fs.program_id_fk,
            "name": getattr(program, "program_name", None),
            "code": getattr(program, "program_code", None),
        },
        "session": {
            "session_id": fs.session_id_fk,
            "name": getattr(session, "session_name", None),
        },
        "semester": fs.semester,
        "total_amount": fs.total_amount,
        "due_date": _iso(fs.due_date),
        "description": fs.description or "",
        "is_active": bool(fs.is_active),
        "created_at": _iso(fs.created_at),
    }


def get_fee_structure(structure_id):
    fs = db.session.get(FeeStructure, parse_int(structure_id, "fee_structure_id"))
    if not fs:
        raise NotFoundError("Fee structure not found")
    return fs


def _has_payments(structure_id):
    return db.session.scalar(select(exists().where(FeePayment.structure_id_fk == structure_id)))


def list_fee_structures(actor, include_inactive=False):
    require_admin(actor)
    q = select(FeeStructure)
    if not include_inactive:
        q = q.filter(FeeStructure.is_active.is_(True))
    q = q.order_by(FeeStructure.created_at.desc(), FeeStructure.structure_id.desc())
    return db.session.execute(q).scalars().all()


def create_fee_structure(actor, data, ip_address=None):
    require_admin(actor)
    require_fields(data, "program", "session", "semester", "total_amount", "due_date",
                   message="All required fields must be provided")
    semester = parse_int(data.get("semester"), "semester")
    if semester < 1:
        raise ValidationError("semester must be 1 or greater")
    total_amount = parse_amount(data.get("total_amount"), "total_amount")
    due_date = parse_date(data.get("due_date"), "due_date")

    program = db.session.get(Program, parse_int(data.get("program"), "program"))
    if not program:
        raise NotFoundError("Program not found")
    session = db.session.get(AcademicSession, parse_int(data.get("session"), "session"))
    if not session:
        raise NotFoundError("Academic session not found")

    fs = FeeStructure(
        program_id_fk=program.program_id,
        session_id_fk=session.session_id,
        semester=semester,
        total_amount=total_amount,
        due_date=due_date,
        description=(data.get("description") or "").strip(),
        is_active=True,
    )
    db.session.add(fs)
    db.session.flush()
    record_audit("CREATE", "FeeStructure", fs.structure_id, actor,
                 [change("all", None, fee_structure_to_dict(fs))], ip_address=ip_address)
    db.session.commit()
    invalidate_dashboard()
    logger.info("Fee structure %s created by user_id=%s (total=%s)", fs.structure_id, actor.user_id, total_amount)
    return fs


def update_fee_structure(actor, structure_id, data, ip_address=None):
    require_admin(actor)
    fs = get_fee_structure(structure_id)

    updates = {}
    if "total_amount" in data:
        total_amount = parse_amount(data.get("total_amount"), "total_amount")
        if total_amount != fs.total_amount and _has_payments(fs.structure_id):
            raise ConflictError("Total amount cannot change once payments reference this fee structure")
        updates["total_amount"] = total_amount
    if "due_date" in data:
        updates["due_date"] = parse_date(data.get("due_date"), "due_date")
    if "description" in data:
        updates["description"] = (data.get("description") or "").strip()
    if "is_active" in data:
        updates["is_active"] = parse_bool(data.get("is_active"))
    if not updates:
        raise ValidationError("No updatable fields supplied")

    before = {k: getattr(fs, k) for k in updates}
    for k, v in updates.items():
        setattr(fs, k, v)
    record_audit("UPDATE", "FeeStructure", fs.structure_id, actor, diff_changes(before, updates),
                 ip_address=ip_address)
    db.session.commit()
    invalidate_dashboard()
    return fs


def delete_fee_structure(actor, structure_id, ip_address=None):
    """Hard delete when unreferenced, otherwise deactivate. Returns the outcome."""
    require_admin(actor)
    fs = get_fee_structure(structure_id)
    if _has_payments(fs.structure_id):
        was_active = bool(fs.is_active)
        fs.is_active = False
        record_audit("UPDATE", "FeeStructure", fs.structure_id, actor,
                     [change("is_active", was_active, False)],
                     reason="Payments exist; deactivated instead of deleted", ip_address=ip_address)
        db.session.commit()
        invalidate_dashboard()
        return "deactivated"
    snapshot = fee_structure_to_dict(fs)
    record_audit("DELETE", "FeeStructure", fs.structure_id, actor,
                 [change("all", snapshot, None)], ip_address=ip_address)
    db.session.delete(fs)
    db.session.commit()
    invalidate_dashboard()
    return "deleted"


# ==========================================
# EXPENSES
# ==========================================

EXPENSE_FIELDS = ("title", "amount", "category", "paid_on", "paid_to", "remarks")


def expense_to_dict(e):
    return {
        "expense_id": e.expense_id,
        "title": e.title,
        "amount": e.amount,
        "category": e.category,
        "paid_on": _iso(e.paid_on),
        "paid_to": e.paid_to,
        "remarks": e.remarks or "",
        "recorded_by": {
            "user_id": e.recorded_by_fk,
            "full_name": getattr(e.recorded_by, "full_name", None),
        },
        "is_locked": bool(e.is_locked),
        "is_deleted": bool(e.is_deleted),
        "deleted_at": _iso(e.deleted_at),
        "deletion_reason": e.deletion_reason,
        "created_at": _iso(e.created_at),
    }


def _clean_expense_field(name, value):
    if name == "amount":
        return parse_amount(value, "amount")
    if name == "paid_on":
        return parse_date(value, "paid_on")
    if name == "category":
        category = (value or "").strip().lower()
        if category not in EXPENSE_CATEGORIES:
            raise ValidationError(f"category must be one of: {', '.join(EXPENSE_CATEGORIES)}")
        return category
    if name == "remarks":
        return (value or "").strip()
    if is_blank(value):
        raise ValidationError(f"{name} is required")
    return value.strip()


def get_expense(expense_id):
    e = db.session.get(Expense, parse_int(expense_id, "expense_id"))
    if not e:
        raise NotFoundError("Expense not found")
    return e


def list_expenses(actor, category=None, month=None):
    require_admin(actor)
    q = select(Expense).filter(Expense.is_deleted.is_(False))
    if category:
        q = q.filter(Expense.category == category)
    if month:
        start, end = month_bounds(month)
        q = q.filter(Expense.paid_on >= start, Expense.paid_on <= end)
    rows = db.session.execute(q.order_by(Expense.paid_on.desc(), Expense.expense_id.desc())).scalars().all()
    total = sum(e.amount for e in rows)
    return rows, total


def create_expense(actor, data, ip_address=None):
    require_admin(actor)
    require_fields(data, "title", "amount", "category", "paid_on", "paid_to")
    values = {name: _clean_expense_field(name, data.get(name)) for name in EXPENSE_FIELDS}
    e = Expense(recorded_by_fk=actor.user_id, **values)
    db.session.add(e)
    db.session.flush()
    record_audit("CREATE", "Expense", e.expense_id, actor, [change("all", None, values)],
                 ip_address=ip_address)
    db.session.commit()
    invalidate_dashboard()
    logger.info("Expense %s recorded by user_id=%s (amount=%s)", e.expense_id, actor.user_id, e.amount)
    return e


def update_expense(actor, expense_id, data, ip_address=None):
    require_admin(actor)
    e = get_expense(expense_id)
    if e.is_locked:
        raise RecordLockedError("Record is locked for the period and cannot be edited")
    if e.is_deleted:
        raise AlreadyDeletedError("Expense is soft-deleted")
    updates = {name: _clean_expense_field(name, data.get(name)) for name in EXPENSE_FIELDS if name in data}
    if not updates:
        raise ValidationError("No updatable fields supplied")
    before = {k: getattr(e, k) for k in updates}
    for k, v in updates.items():
        setattr(e, k, v)
    record_audit("UPDATE", "Expense", e.expense_id, actor, diff_changes(before, updates),
                 ip_address=ip_address)
    db.session.commit()
    invalidate_dashboard()
    return e


def delete_expense(actor, expense_id, reason=None, ip_address=None):
    require_admin(actor)
    require_root(actor)
    e = get_expense(expense_id)
    if e.is_locked:
        logger.warning("Delete of locked expense %s refused (user_id=%s)", e.expense_id, actor.user_id)
        raise RecordLockedError("Record is locked for the period and cannot be deleted")
    if e.is_deleted:
        raise AlreadyDeletedError("Expense is already soft-deleted")
    reason = reason or "No reason provided"
    e.is_deleted = True
    e.deleted_by_fk = actor.user_id
    e.deleted_at = utc_now()
    e.deletion_reason = reason
    record_audit("SOFT_DELETE", "Expense", e.expense_id, actor, [change("is_deleted", False, True)],
                 reason=reason, ip_address=ip_address)
    db.session.commit()
    invalidate_dashboard()
    logger.info("Expense %s soft-deleted by user_id=%s", e.expense_id, actor.user_id)
    return e


# ==========================================
# SALARY
# ==========================================

def salary_to_dict(s):
    return {
        "salary_id": s.salary_id,
        "employee": {
            "user_id": s.employee_id_fk,
            "username": getattr(s.employee, "username", None),
            "full_name": getattr(s.employee, "full_name", None),
            "role": getattr(s.employee, "role", None),
        },
        "month": s.month,
        "base_amount": s.base_amount,
        "deductions": s.deductions,
        "net_amount": s.net_amount,
        "status": s.status,
        "paid_on": _iso(s.paid_on),
        "paid_by": s.paid_by_fk,
        "remarks": s.remarks or "",
        "is_locked": bool(s.is_locked),
        "is_deleted": bool(s.is_deleted),
        "created_at": _iso(s.created_at),
    }


def get_salary(salary_id):
    s = db.session.get(Salary, parse_int(salary_id, "salary_id"))
    if not s:
        raise NotFoundError("Salary record not found")
    return s


def list_salaries(actor, month=None, status=None):
    require_admin(actor)
    q = select(Salary).filter(Salary.is_deleted.is_(False))
    if month:
        q = q.filter(Salary.month == month)
    if status:
        q = q.filter(Salary.status == status)
    rows = db.session.execute(q.order_by(Salary.month.desc(), Salary.created_at.desc())).scalars().all()
    total_pending = sum(r.net_amount for r in rows if r.status == "pending")
    return rows, total_pending


def create_salary(actor, data, ip_address=None):
    require_admin(actor)
    require_fields(data, "employee", "month", "base_amount")
    month = parse_month(data.get("month"))
    base_amount = parse_amount(data.get("base_amount"), "base_amount")
    raw_deductions = data.get("deductions")
    deductions = 0 if is_blank(raw_deductions) else parse_amount(raw_deductions, "deductions", allow_zero=True)
    if deductions > base_amount:
        raise ValidationError("Deductions must be between 0 and base amount")

    employee = db.session.get(User, parse_int(data.get("employee"), "employee"))
    if not employee:
        raise NotFoundError("Employee not found")
    dup = db.session.execute(
        select(Salary).filter_by(employee_id_fk=employee.user_id, month=month)
    ).scalars().first()
    if dup:
        raise ConflictError(f"Salary for this employee in {month} already exists")

    s = Salary(
        employee_id_fk=employee.user_id,
        month=month,
        base_amount=base_amount,
        deductions=deductions,
        net_amount=base_amount - deductions,
        status="pending",
        remarks=(data.get("remarks") or "").strip(),
    )
    db.session.add(s)
    db.session.flush()
    record_audit("CREATE", "Salary", s.salary_id, actor, [change("all", None, salary_to_dict(s))],
                 ip_address=ip_address)
    db.session.commit()
    invalidate_dashboard()
    logger.info("Salary %s created for employee %s month %s", s.salary_id, employee.user_id, month)
    return s


def update_salary(actor, salary_id, data, ip_address=None):
    """Mark a salary paid and/or change its remarks."""
    require_admin(actor)
    s = get_salary(salary_id)
    if s.is_deleted:
        raise AlreadyDeletedError("Salary is soft-deleted")
    if s.is_locked:
        raise RecordLockedError("Record is locked for the period and cannot be edited")

    action = (data.get("action") or "").strip().lower()
    if action and action != "mark_paid":
        raise ValidationError(f"Unknown action: {action}")
    if not action and "remarks" not in data:
        raise ValidationError("Nothing to update")

    updates = {}
    if action == "mark_paid":
        if s.status == "paid":
            raise ValidationError("Salary already marked as paid")
        paid_on = data.get("paid_on")
        updates["status"] = "paid"
        updates["paid_on"] = parse_date(paid_on, "paid_on") if not is_blank(paid_on) else date.today()
        updates["paid_by_fk"] = actor.user_id
    if "remarks" in data:
        updates["remarks"] = (data.get("remarks") or "").strip()

    before = {k: getattr(s, k) for k in updates}
    for k, v in updates.items():
        setattr(s, k, v)
    record_audit("UPDATE", "Salary", s.salary_id, actor, diff_changes(before, updates),
                 ip_address=ip_address)
    db.session.commit()
    invalidate_dashboard()
    return s


def delete_salary(actor, salary_id, reason=None, ip_address=None):
    require_admin(actor)
    require_root(actor)
    s = get_salary(salary_id)
    if s.is_locked:
        logger.warning("Delete of locked salary %s refused (user_id=%s)", s.salary_id, actor.user_id)
        raise RecordLockedError("Record is locked for the period and cannot be deleted")
    if s.is_deleted:
        raise AlreadyDeletedError("Salary is already soft-deleted")
    reason = reason or "No reason provided"
    s.is_deleted = True
    s.deleted_by_fk = actor.user_id
    s.deleted_at = utc_now()
    s.deletion_reason = reason
    record_audit("SOFT_DELETE", "Salary", s.salary_id, actor, [change("is_deleted", False, True)],
                 reason=reason, ip_address=ip_address)
    db.session.commit()
    invalidate_dashboard()
    return s


# ==========================================
# PERIOD LOCKING
# ==========================================

def lock_period(actor, lock_date, ip_address=None):
    """
    Freeze every financial record dated on or before ``lock_date``.

    Expenses lock by ``paid_on``; salaries by ``paid_on`` or creation date;
    fee payments when any of their transactions was paid on or before the
    cutoff. Rows already locked keep their original lock metadata.
    """
    require_admin(actor)
    require_root(actor)
    cutoff = parse_date(lock_date, "lock_date")
    next_day = datetime.combine(cutoff + timedelta(days=1), time.min)
    now = utc_now()
    lock_values = {"is_locked": True, "locked_by_fk": actor.user_id, "locked_at": now}

    expenses = db.session.execute(
        update(Expense)
        .where(Expense.paid_on <= cutoff, Expense.is_locked.is_(False))
        .values(**lock_values)
        .execution_options(synchronize_session=False)
    ).rowcount
    salaries = db.session.execute(
        update(Salary)
        .where(or_(Salary.paid_on <= cutoff, Salary.created_at < next_day), Salary.is_locked.is_(False))
        .values(**lock_values)
        .execution_options(synchronize_session=False)
    ).rowcount
    paid_before_cutoff = select(PaymentTransaction.payment_id_fk).where(PaymentTransaction.paid_on <= cutoff)
    fee_payments = db.session.execute(
        update(FeePayment)
        .where(FeePayment.payment_id.in_(paid_before_cutoff), FeePayment.is_locked.is_(False))
        .values(**lock_values)
        .execution_options(synchronize_session=False)
    ).rowcount

    counts = {"expenses": expenses, "salaries": salaries, "fee_payments": fee_payments}
    record_audit(
        "LOCK", "FinancialPeriod", cutoff.isoformat(), actor,
        [change("lock_date", None, cutoff)] + [change(f"{k}_locked", 0, v) for k, v in counts.items()],
        reason="Period End Closing", ip_address=ip_address,
    )
    db.session.commit()
    invalidate_dashboard()
    logger.info("Financial period up to %s locked by user_id=%s: %s", cutoff, actor.user_id, counts)
    return cutoff, counts


# ==========================================
# DASHBOARD
# ==========================================

def _months_back(today, count):
    """First day of the month ``count - 1`` months before ``today``'s month."""
    idx = today.year * 12 + (today.month - 1) - (count - 1)
    return date(idx // 12, idx % 12 + 1, 1)


def _monthly(rows):
    totals = {}
    for paid_on, amount in rows:
        key = (paid_on.year, paid_on.month)
        totals[key] = totals.get(key, 0) + (amount or 0)
    return [{"year": y, "month": m, "total": t} for (y, m), t in sorted(totals.items())]


def finance_dashboard(today=None):
    today = today or date.today()
    live_payments = FeePayment.is_deleted.is_(False)

    total_revenue = db.session.scalar(
        select(func.coalesce(func.sum(FeePayment.amount_paid), 0)).where(live_payments)
    ) or 0
    total_pending_fees = db.session.scalar(
        select(func.coalesce(func.sum(FeeStructure.total_amount - FeePayment.amount_paid), 0))
        .select_from(FeePayment)
        .join(FeeStructure, FeeStructure.structure_id == FeePayment.structure_id_fk)
        .where(live_payments, FeePayment.status.in_(("unpaid", "partial")))
    ) or 0
    total_expenses = db.session.scalar(
        select(func.coalesce(func.sum(Expense.amount), 0)).where(Expense.is_deleted.is_(False))
    ) or 0

    def _salary_total(status):
        return db.session.scalar(
            select(func.coalesce(func.sum(Salary.net_amount), 0))
            .where(Salary.is_deleted.is_(False), Salary.status == status)
        ) or 0

    total_salary_paid = _salary_total("paid")
    total_salary_pending = _salary_total("pending")
    total_spend = total_expenses + total_salary_paid

    since = _months_back(today, 6)
    revenue_rows = db.session.execute(
        select(PaymentTransaction.paid_on, PaymentTransaction.amount)
        .join(FeePayment, FeePayment.payment_id == PaymentTransaction.payment_id_fk)
        .where(live_payments, PaymentTransaction.paid_on >= since)
    ).all()
    expense_rows = db.session.execute(
        select(Expense.paid_on, Expense.amount)
        .where(Expense.is_deleted.is_(False), Expense.paid_on >= since)
    ).all()

    pending_top5 = db.session.execute(
        select(FeePayment)
        .where(live_payments, FeePayment.status.in_(("unpaid", "partial")))
        .order_by(FeePayment.updated_at.asc(), FeePayment.payment_id.asc())
        .limit(5)
    ).scalars().all()

    from .ledger import fee_payment_to_dict

    return {
        "stats": {
            "total_revenue": int(total_revenue),
            "total_expenses": int(total_expenses),
            "total_salary_paid": int(total_salary_paid),
            "total_spend": int(total_spend),
            "net_balance": int(total_revenue - total_spend),
            "total_pending_fees": int(total_pending_fees),
            "total_salary_pending": int(total_salary_pending),
        },
        "charts": {
            "monthly_revenue": _monthly(revenue_rows),
            "monthly_expenses": _monthly(expense_rows),
        },
        "pending_top5": [fee_payment_to_dict(p, include_transactions=False) for p in pending_top5],
    }
