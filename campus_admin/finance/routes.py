from flask import current_app, request, Response
from flask_login import login_required, current_user

from . import finance_bp
from . import ledger, services
from .exports import XLSX_MIMETYPE, export_payments_xlsx
from .. import cache, csrf_required, limiter
from ..api_utils import api_success
from ..audit import audit_log_to_dict, list_audit_logs
from ..decorators import role_required, root_required
from ..utils import client_ip, json_body, parse_bool, parse_optional_int, require_fields


def _actor():
    return current_user._get_current_object()


# Fee structures
@finance_bp.route("/fee-structures", methods=["GET", "POST"])
@login_required
@csrf_required
@role_required("admin")
def fee_structures():
    if request.method == "POST":
        fs = services.create_fee_structure(_actor(), json_body(), ip_address=client_ip())
        return api_success({"fee_structure": services.fee_structure_to_dict(fs)}, status=201)
    include_inactive = parse_bool(request.args.get("include_inactive"))
    rows = services.list_fee_structures(_actor(), include_inactive=include_inactive)
    return api_success({"items": [services.fee_structure_to_dict(fs) for fs in rows]}, {"count": len(rows)})


@finance_bp.route("/fee-structures/<int:structure_id>", methods=["PUT", "DELETE"])
@login_required
@csrf_required
@role_required("admin")
def fee_structure_detail(structure_id):
    if request.method == "PUT":
        fs = services.update_fee_structure(_actor(), structure_id, json_body(), ip_address=client_ip())
        return api_success({"fee_structure": services.fee_structure_to_dict(fs)})
    outcome = services.delete_fee_structure(_actor(), structure_id, ip_address=client_ip())
    return api_success({"structure_id": structure_id, "outcome": outcome})


# Fee payments
@finance_bp.route("/payments", methods=["GET"])
@login_required
@role_required("admin")
def payments_list():
    rows = ledger.list_fee_payments(
        _actor(),
        status=(request.args.get("status") or "").strip().lower() or None,
        session_id=parse_optional_int(request.args.get("session_id")),
        include_deleted=parse_bool(request.args.get("include_deleted")),
    )
    items = [ledger.fee_payment_to_dict(fp) for fp in rows]
    return api_success({"items": items}, {"count": len(items)})


@finance_bp.route("/payments", methods=["DELETE"])
@login_required
@csrf_required
@role_required("admin")
@root_required
def payments_cancel():
    data = json_body()
    require_fields(data, "feePaymentId", "paymentRecordId")
    fp = ledger.cancel_payment(
        _actor(),
        data.get("feePaymentId"),
        data.get("paymentRecordId"),
        reason=(data.get("reason") or "").strip() or None,
        ip_address=client_ip(),
    )
    return api_success({"fee_payment": ledger.fee_payment_to_dict(fp)})


@finance_bp.route("/payments/export", methods=["GET"])
@login_required
@role_required("admin")
def payments_export():
    content = export_payments_xlsx(
        _actor(),
        status=(request.args.get("status") or "").strip().lower() or None,
        session_id=parse_optional_int(request.args.get("session_id")),
    )
    return Response(content, mimetype=XLSX_MIMETYPE, headers={
        "Content-Disposition": "attachment; filename=fee_payments.xlsx"
    })


@finance_bp.route("/payments/<int:student_id>", methods=["GET", "POST"])
@login_required
@csrf_required
@role_required("admin")
def student_payments(student_id):
    if request.method == "POST":
        fp = ledger.record_payment(_actor(), student_id, json_body(), ip_address=client_ip())
        return api_success({"fee_payment": ledger.fee_payment_to_dict(fp)}, status=201)
    student, rows = ledger.student_payment_history(_actor(), student_id)
    return api_success(
        {"items": [ledger.fee_payment_to_dict(fp) for fp in rows]},
        {"student_id": student.user_id, "student_name": student.full_name or student.username},
    )


@finance_bp.route("/payments/records/<int:fee_payment_id>", methods=["DELETE"])
@login_required
@csrf_required
@role_required("admin")
@root_required
def payment_record_delete(fee_payment_id):
    data = json_body()
    fp = ledger.soft_delete_fee_payment(
        _actor(), fee_payment_id, reason=(data.get("reason") or "").strip() or None, ip_address=client_ip()
    )
    return api_success({"payment_id": fp.payment_id, "is_deleted": True})


# Expenses
@finance_bp.route("/expenses", methods=["GET", "POST"])
@login_required
@csrf_required
@role_required("admin")
def expenses():
    if request.method == "POST":
        e = services.create_expense(_actor(), json_body(), ip_address=client_ip())
        return api_success({"expense": services.expense_to_dict(e)}, status=201)
    rows, total = services.list_expenses(
        _actor(),
        category=(request.args.get("category") or "").strip().lower() or None,
        month=(request.args.get("month") or "").strip() or None,
    )
    return api_success({"items": [services.expense_to_dict(e) for e in rows]}, {"count": len(rows), "total": total})


@finance_bp.route("/expenses/<int:expense_id>", methods=["PUT", "DELETE"])
@login_required
@csrf_required
@role_required("admin")
def expense_detail(expense_id):
    data = json_body()
    if request.method == "PUT":
        e = services.update_expense(_actor(), expense_id, data, ip_address=client_ip())
        return api_success({"expense": services.expense_to_dict(e)})
    e = services.delete_expense(
        _actor(), expense_id, reason=(data.get("reason") or "").strip() or None, ip_address=client_ip()
    )
    return api_success({"expense_id": e.expense_id, "is_deleted": True})


# Salary
@finance_bp.route("/salary", methods=["GET", "POST"])
@login_required
@csrf_required
@role_required("admin")
def salaries():
    if request.method == "POST":
        s = services.create_salary(_actor(), json_body(), ip_address=client_ip())
        return api_success({"salary": services.salary_to_dict(s)}, status=201)
    rows, total_pending = services.list_salaries(
        _actor(),
        month=(request.args.get("month") or "").strip() or None,
        status=(request.args.get("status") or "").strip().lower() or None,
    )
    return api_success(
        {"items": [services.salary_to_dict(s) for s in rows]},
        {"count": len(rows), "total_pending": total_pending},
    )


@finance_bp.route("/salary/<int:salary_id>", methods=["PUT", "DELETE"])
@login_required
@csrf_required
@role_required("admin")
def salary_detail(salary_id):
    data = json_body()
    if request.method == "PUT":
        s = services.update_salary(_actor(), salary_id, data, ip_address=client_ip())
        return api_success({"salary": services.salary_to_dict(s)})
    s = services.delete_salary(
        _actor(), salary_id, reason=(data.get("reason") or "").strip() or None, ip_address=client_ip()
    )
    return api_success({"salary_id": s.salary_id, "is_deleted": True})


# Period locking and audit trail (root)
@finance_bp.route("/lock-period", methods=["POST"])
@limiter.limit("10 per minute")
@login_required
@csrf_required
@role_required("admin")
@root_required
def lock_period():
    data = json_body()
    require_fields(data, "lock_date")
    cutoff, counts = services.lock_period(_actor(), data.get("lock_date"), ip_address=client_ip())
    return api_success({"lock_date": cutoff.isoformat(), "locked": counts})


@finance_bp.route("/audit-logs", methods=["GET"])
@login_required
@role_required("admin")
@root_required
def audit_logs():
    limit = parse_optional_int(request.args.get("limit")) or current_app.config.get("AUDIT_LOG_PAGE_SIZE", 100)
    limit = max(1, min(limit, 500))
    entity_type = (request.args.get("entity_type") or "").strip() or None
    rows = list_audit_logs(entity_type=entity_type, limit=limit)
    return api_success({"items": [audit_log_to_dict(log) for log in rows]}, {"limit": limit})


@finance_bp.route("/dashboard", methods=["GET"])
@login_required
@role_required("admin")
def dashboard():
    data = cache.get(services.DASHBOARD_CACHE_KEY)
    if data is None:
        data = services.finance_dashboard()
        cache.set(services.DASHBOARD_CACHE_KEY, data, timeout=current_app.config.get("DASHBOARD_CACHE_TIMEOUT", 60))
    return api_success(data)
