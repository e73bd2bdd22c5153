"""
Student fee ledger.

One FeePayment per (student, fee structure) pair carries the running
``amount_paid`` and a status derived from it. Payments append
PaymentTransaction rows; cancelling removes one and rolls the total back.
Both paths update ``amount_paid`` with a compare-and-swap on the value read
at the start of the request, so two concurrent writers cannot both apply
against the same balance.
"""
import logging
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .. import db
from ..audit import change, record_audit
from ..decorators import require_admin, require_authenticated, require_root
from ..errors import (
    AlreadyDeletedError,
    ConcurrentUpdateError,
    NotFoundError,
    OverpaymentError,
    RecordLockedError,
    ValidationError,
)
from ..models import FeePayment, FeeStructure, PaymentTransaction, PAYMENT_MODES, User, utc_now
from ..utils import parse_amount, parse_date, parse_int, require_fields
from .services import fee_structure_to_dict, get_fee_structure, invalidate_dashboard

logger = logging.getLogger(__name__)


def derive_status(amount_paid, total_amount):
    if amount_paid <= 0:
        return "unpaid"
    if amount_paid >= total_amount:
        return "paid"
    return "partial"


def remaining_balance(fp):
    return max(0, fp.fee_structure.total_amount - fp.amount_paid)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def transaction_to_dict(t):
    return {
        "transaction_id": t.transaction_id,
        "amount": t.amount,
        "paid_on": t.paid_on.isoformat() if t.paid_on else None,
        "mode": t.mode,
        "receipt_no": t.receipt_no,
        "remarks": t.remarks or "",
        "recorded_by": t.recorded_by_fk,
    }


def fee_payment_to_dict(fp, include_transactions=True, today=None):
    fs = fp.fee_structure
    student = fp.student
    out = {
        "payment_id": fp.payment_id,
        "student": {
            "user_id": fp.student_id_fk,
            "username": getattr(student, "username", None),
            "full_name": getattr(student, "full_name", None),
        },
        "fee_structure": fee_structure_to_dict(fs),
        "amount_paid": fp.amount_paid,
        "remaining": remaining_balance(fp),
        "status": fp.status,
        "is_overdue": fp.status != "paid" and fs.due_date < (today or date.today()),
        "is_locked": bool(fp.is_locked),
        "is_deleted": bool(fp.is_deleted),
        "updated_at": fp.updated_at.isoformat() if fp.updated_at else None,
    }
    if include_transactions:
        out["transactions"] = [transaction_to_dict(t) for t in fp.transactions]
    return out


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _find_fee_payment(student_id, structure_id):
    return db.session.execute(
        select(FeePayment).filter_by(student_id_fk=student_id, structure_id_fk=structure_id)
    ).scalars().first()


def _create_fee_payment(student_id, structure_id):
    """Create the ledger row lazily; if a concurrent request won the insert, use its row."""
    fp = FeePayment(student_id_fk=student_id, structure_id_fk=structure_id, amount_paid=0, status="unpaid")
    db.session.add(fp)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        fp = _find_fee_payment(student_id, structure_id)
        if fp is None:
            raise
    return fp


def _swap_amount_paid(fp, expected, new_amount, total_amount):
    """Write ``new_amount`` only if ``amount_paid`` still equals ``expected``."""
    status = derive_status(new_amount, total_amount)
    result = db.session.execute(
        update(FeePayment)
        .where(FeePayment.payment_id == fp.payment_id, FeePayment.amount_paid == expected)
        .values(amount_paid=new_amount, status=status, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        logger.warning("Concurrent update on fee payment %s (expected amount_paid=%s)", fp.payment_id, expected)
        raise ConcurrentUpdateError("Fee payment was updated by another request. Reload and retry.")
    return status


def _check_balance(fp, amount, total_amount):
    paid = fp.amount_paid if fp else 0
    if fp is not None and fp.is_deleted:
        raise AlreadyDeletedError("Fee payment record is soft-deleted")
    remaining = total_amount - paid
    if amount > remaining:
        raise OverpaymentError(max(remaining, 0))
    return paid


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def record_payment(actor, student_id, data, ip_address=None):
    """Append a payment to the student's ledger for one fee structure."""
    require_admin(actor)
    require_fields(data, "fee_structure_id", "amount", "mode", "receipt_no", "paid_on")
    amount = parse_amount(data.get("amount"), "amount")
    mode = str(data.get("mode")).strip().lower()
    if mode not in PAYMENT_MODES:
        raise ValidationError(f"mode must be one of: {', '.join(PAYMENT_MODES)}")
    paid_on = parse_date(data.get("paid_on"), "paid_on")
    receipt_no = str(data.get("receipt_no")).strip()
    remarks = (data.get("remarks") or "").strip()

    fs = get_fee_structure(data.get("fee_structure_id"))
    student = db.session.get(User, parse_int(student_id, "student_id"))
    if not student or student.role_key != "student":
        raise NotFoundError("Student not found")
    total_amount = fs.total_amount
    structure_id = fs.structure_id

    fp = _find_fee_payment(student.user_id, structure_id)
    _check_balance(fp, amount, total_amount)
    if fp is None:
        fp = _create_fee_payment(student.user_id, structure_id)
        try:
            _check_balance(fp, amount, total_amount)
        except (AlreadyDeletedError, OverpaymentError):
            db.session.rollback()
            raise

    before, old_status = fp.amount_paid, fp.status
    after = before + amount
    new_status = _swap_amount_paid(fp, before, after, total_amount)

    txn = PaymentTransaction(
        payment_id_fk=fp.payment_id,
        amount=amount,
        paid_on=paid_on,
        mode=mode,
        receipt_no=receipt_no,
        remarks=remarks,
        recorded_by_fk=actor.user_id,
    )
    db.session.add(txn)
    db.session.flush()
    record_audit(
        "UPDATE", "FeePayment", fp.payment_id, actor,
        [
            change("payments", None, transaction_to_dict(txn)),
            change("amount_paid", before, after),
            change("status", old_status, new_status),
        ],
        ip_address=ip_address,
    )
    db.session.commit()
    invalidate_dashboard()
    logger.info(
        "Payment %s of %s recorded on fee payment %s (student=%s) by user_id=%s",
        txn.transaction_id, amount, fp.payment_id, student.user_id, actor.user_id,
    )
    return fp


def cancel_payment(actor, fee_payment_id, transaction_id, reason=None, ip_address=None):
    """Remove one transaction from a ledger and roll ``amount_paid`` back."""
    require_admin(actor)
    require_root(actor)
    fp = db.session.get(FeePayment, parse_int(fee_payment_id, "feePaymentId"))
    if not fp:
        raise NotFoundError("Fee payment not found")
    if fp.is_locked:
        logger.warning("Cancel on locked fee payment %s refused (user_id=%s)", fp.payment_id, actor.user_id)
        raise RecordLockedError("Record is locked for the period and cannot be changed")
    if fp.is_deleted:
        raise AlreadyDeletedError("Fee payment record is soft-deleted")
    txn = db.session.get(PaymentTransaction, parse_int(transaction_id, "paymentRecordId"))
    if not txn or txn.payment_id_fk != fp.payment_id:
        raise NotFoundError("Payment transaction not found")

    reason = reason or "No reason provided"
    before, old_status = fp.amount_paid, fp.status
    after = max(0, before - txn.amount)
    snapshot = transaction_to_dict(txn)
    new_status = _swap_amount_paid(fp, before, after, fp.fee_structure.total_amount)
    db.session.delete(txn)
    record_audit(
        "SOFT_DELETE", "FeePayment", fp.payment_id, actor,
        [
            change("payments", snapshot, None),
            change("amount_paid", before, after),
            change("status", old_status, new_status),
        ],
        reason=reason, ip_address=ip_address,
    )
    db.session.commit()
    invalidate_dashboard()
    logger.info("Transaction %s cancelled on fee payment %s by user_id=%s", snapshot["transaction_id"],
                fp.payment_id, actor.user_id)
    return fp


def soft_delete_fee_payment(actor, fee_payment_id, reason=None, ip_address=None):
    require_admin(actor)
    require_root(actor)
    fp = db.session.get(FeePayment, parse_int(fee_payment_id, "fee_payment_id"))
    if not fp:
        raise NotFoundError("Fee payment not found")
    if fp.is_locked:
        raise RecordLockedError("Record is locked for the period and cannot be deleted")
    if fp.is_deleted:
        raise AlreadyDeletedError("Fee payment record is already soft-deleted")
    reason = reason or "No reason provided"
    fp.is_deleted = True
    fp.deleted_by_fk = actor.user_id
    fp.deleted_at = utc_now()
    fp.deletion_reason = reason
    record_audit("SOFT_DELETE", "FeePayment", fp.payment_id, actor, [change("is_deleted", False, True)],
                 reason=reason, ip_address=ip_address)
    db.session.commit()
    invalidate_dashboard()
    return fp


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def list_fee_payments(actor, status=None, session_id=None, include_deleted=False):
    require_admin(actor)
    q = select(FeePayment).join(FeeStructure, FeeStructure.structure_id == FeePayment.structure_id_fk)
    if not include_deleted:
        q = q.filter(FeePayment.is_deleted.is_(False))
    if status:
        q = q.filter(FeePayment.status == status)
    if session_id:
        q = q.filter(FeeStructure.session_id_fk == session_id)
    q = q.order_by(FeePayment.updated_at.desc(), FeePayment.payment_id.desc())
    return db.session.execute(q).scalars().all()


def student_payment_history(actor, student_id):
    require_admin(actor)
    student = db.session.get(User, parse_int(student_id, "student_id"))
    if not student or student.role_key != "student":
        raise NotFoundError("Student not found")
    rows = db.session.execute(
        select(FeePayment)
        .filter(FeePayment.student_id_fk == student.user_id, FeePayment.is_deleted.is_(False))
        .order_by(FeePayment.created_at.desc(), FeePayment.payment_id.desc())
    ).scalars().all()
    return student, rows


def own_payments(actor):
    """Fee ledgers belonging to the calling student."""
    require_authenticated(actor)
    return db.session.execute(
        select(FeePayment)
        .filter(FeePayment.student_id_fk == actor.user_id, FeePayment.is_deleted.is_(False))
        .order_by(FeePayment.created_at.desc(), FeePayment.payment_id.desc())
    ).scalars().all()
