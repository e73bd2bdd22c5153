from datetime import datetime, timezone

from flask_login import UserMixin
from sqlalchemy import event

from . import db
from .errors import AuditLogImmutableError


def utc_now():
    return datetime.now(timezone.utc)


# ==========================================
# USERS / ACADEMIC REFERENCES
# ==========================================

class Program(db.Model):
    __tablename__ = "programs"
    program_id = db.Column(db.Integer, primary_key=True)
    program_name = db.Column(db.String(64), nullable=False)
    program_code = db.Column(db.String(20))  # e.g. BCA, BBA


class AcademicSession(db.Model):
    __tablename__ = "academic_sessions"
    session_id = db.Column(db.Integer, primary_key=True)
    session_name = db.Column(db.String(16), nullable=False)  # e.g. 2025-26
    is_current = db.Column(db.Boolean, default=False)


class User(UserMixin, db.Model):
    __tablename__ = "users"
    user_id = db.Column(db.Integer, primary_key=True)
    program_id_fk = db.Column(db.Integer, db.ForeignKey("programs.program_id"))  # For students
    username = db.Column(db.String(128), unique=True, nullable=False)
    full_name = db.Column(db.String(128))
    email = db.Column(db.String(128))
    password_hash = db.Column(db.String(256))
    role = db.Column(db.String(32), default="student")  # admin, clerk, teacher, student
    is_active = db.Column(db.Boolean, default=True)

    # Root privilege: required for destructive financial/library operations
    is_root = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=utc_now)

    def get_id(self):
        return str(self.user_id)

    @property
    def role_key(self):
        return (self.role or "").strip().lower()


# ==========================================
# FEES
# ==========================================

FEE_STATUSES = ("unpaid", "partial", "paid")
PAYMENT_MODES = ("cash", "online", "cheque", "dd")


class FeeStructure(db.Model):
    __tablename__ = "fee_structures"
    structure_id = db.Column(db.Integer, primary_key=True)
    program_id_fk = db.Column(db.Integer, db.ForeignKey("programs.program_id"), nullable=False)
    session_id_fk = db.Column(db.Integer, db.ForeignKey("academic_sessions.session_id"), nullable=False)
    semester = db.Column(db.Integer, nullable=False)
    total_amount = db.Column(db.Integer, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.Text, default="")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    program = db.relationship("Program")
    session = db.relationship("AcademicSession")

    __table_args__ = (
        db.CheckConstraint("total_amount > 0", name="ck_fee_structure_total_positive"),
        db.CheckConstraint("semester >= 1", name="ck_fee_structure_semester"),
    )


class FeePayment(db.Model):
    """Running ledger of one student's payments against one fee structure."""
    __tablename__ = "fee_payments"
    payment_id = db.Column(db.Integer, primary_key=True)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    structure_id_fk = db.Column(db.Integer, db.ForeignKey("fee_structures.structure_id"), nullable=False)
    amount_paid = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="unpaid")

    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    deleted_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    deleted_at = db.Column(db.DateTime)
    deletion_reason = db.Column(db.Text)

    is_locked = db.Column(db.Boolean, default=False, nullable=False)
    locked_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    locked_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    student = db.relationship("User", foreign_keys=[student_id_fk])
    fee_structure = db.relationship("FeeStructure")
    transactions = db.relationship(
        "PaymentTransaction",
        backref="fee_payment",
        order_by="PaymentTransaction.transaction_id",
        cascade="all, delete-orphan",
        lazy=True,
    )

    __table_args__ = (
        db.UniqueConstraint("student_id_fk", "structure_id_fk", name="uq_fee_payment_student_structure"),
    )


class PaymentTransaction(db.Model):
    __tablename__ = "payment_transactions"
    transaction_id = db.Column(db.Integer, primary_key=True)
    payment_id_fk = db.Column(db.Integer, db.ForeignKey("fee_payments.payment_id"), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    paid_on = db.Column(db.Date, nullable=False)
    mode = db.Column(db.String(16), nullable=False)  # cash, online, cheque, dd
    receipt_no = db.Column(db.String(64), nullable=False)
    remarks = db.Column(db.Text, default="")
    recorded_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_payment_transaction_amount"),
    )


# ==========================================
# EXPENSES & SALARY
# ==========================================

EXPENSE_CATEGORIES = ("utilities", "maintenance", "supplies", "events", "salary", "other")


class Expense(db.Model):
    __tablename__ = "expenses"
    expense_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    category = db.Column(db.String(32), nullable=False)
    paid_on = db.Column(db.Date, nullable=False)
    paid_to = db.Column(db.String(200), nullable=False)
    remarks = db.Column(db.Text, default="")
    recorded_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)

    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    deleted_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    deleted_at = db.Column(db.DateTime)
    deletion_reason = db.Column(db.Text)

    is_locked = db.Column(db.Boolean, default=False, nullable=False)
    locked_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    locked_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    recorded_by = db.relationship("User", foreign_keys=[recorded_by_fk])


class Salary(db.Model):
    __tablename__ = "salaries"
    salary_id = db.Column(db.Integer, primary_key=True)
    employee_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    month = db.Column(db.String(7), nullable=False)  # YYYY-MM
    base_amount = db.Column(db.Integer, nullable=False)
    deductions = db.Column(db.Integer, nullable=False, default=0)
    # Snapshot taken at creation; not recomputed when deductions change
    net_amount = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")  # pending, paid
    paid_on = db.Column(db.Date)
    paid_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    remarks = db.Column(db.Text, default="")

    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    deleted_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    deleted_at = db.Column(db.DateTime)
    deletion_reason = db.Column(db.Text)

    is_locked = db.Column(db.Boolean, default=False, nullable=False)
    locked_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    locked_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    employee = db.relationship("User", foreign_keys=[employee_id_fk])

    __table_args__ = (
        db.UniqueConstraint("employee_id_fk", "month", name="uq_salary_employee_month"),
    )


# ==========================================
# LIBRARY
# ==========================================

DOCUMENT_FILE_TYPES = ("docx", "pptx", "xlsx", "pdf", "rich-text")


class LibraryCategory(db.Model):
    __tablename__ = "library_categories"
    category_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    semester_or_module = db.Column(db.Integer)  # null for common categories
    created_at = db.Column(db.DateTime, default=utc_now)


class LibraryDocument(db.Model):
    __tablename__ = "library_documents"
    document_id = db.Column(db.Integer, primary_key=True)
    program_id_fk = db.Column(db.Integer, db.ForeignKey("programs.program_id"))  # null when common
    category_id_fk = db.Column(db.Integer, db.ForeignKey("library_categories.category_id"), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text)
    file_path = db.Column(db.String(255))  # key in the external blob store
    file_type = db.Column(db.String(16), nullable=False)
    current_version = db.Column(db.Integer, nullable=False, default=1)
    is_common = db.Column(db.Boolean, default=False, nullable=False)

    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    deleted_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    deleted_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    category = db.relationship("LibraryCategory")
    program = db.relationship("Program")


class DocumentVersion(db.Model):
    __tablename__ = "document_versions"
    version_id = db.Column(db.Integer, primary_key=True)
    document_id_fk = db.Column(db.Integer, db.ForeignKey("library_documents.document_id"), nullable=False)
    file_path = db.Column(db.String(255))
    content = db.Column(db.Text)
    version_number = db.Column(db.Integer, nullable=False)
    updated_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    previous_version_id_fk = db.Column(db.Integer, db.ForeignKey("document_versions.version_id"))
    created_at = db.Column(db.DateTime, default=utc_now)

    updated_by = db.relationship("User")

    __table_args__ = (
        db.UniqueConstraint("document_id_fk", "version_number", name="uq_document_version_number"),
    )


# ==========================================
# AUDIT
# ==========================================

AUDIT_ACTIONS = ("CREATE", "UPDATE", "SOFT_DELETE", "DELETE", "LOCK")
AUDIT_ENTITY_TYPES = (
    "FeePayment", "Expense", "Salary", "FeeStructure",
    "LibraryCategory", "LibraryDocument", "FinancialPeriod",
)


class AuditLog(db.Model):
    """
    Append-only ledger of mutations. Rows are written in the same
    transaction as the change they describe and are never updated or deleted.
    """
    __tablename__ = "audit_logs"
    log_id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(16), nullable=False)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    performed_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    changes = db.Column(db.JSON, nullable=False, default=list)  # [{field, old, new}]
    reason = db.Column(db.Text)
    ip_address = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=utc_now, index=True)

    performed_by = db.relationship("User")


@event.listens_for(AuditLog, "before_update")
def _audit_log_no_update(mapper, connection, target):
    raise AuditLogImmutableError("Audit logs are immutable and cannot be updated.")


@event.listens_for(AuditLog, "before_delete")
def _audit_log_no_delete(mapper, connection, target):
    raise AuditLogImmutableError("Audit logs are immutable and cannot be deleted.")
