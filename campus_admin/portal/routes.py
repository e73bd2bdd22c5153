from flask_login import login_required, current_user

from . import portal_bp
from ..api_utils import api_success
from ..decorators import role_required
from ..finance.ledger import fee_payment_to_dict, own_payments
from ..library.services import document_to_dict, public_documents, student_documents


@portal_bp.route("/student/finance/payments", methods=["GET"])
@login_required
@role_required("student")
def student_fees():
    rows = own_payments(current_user._get_current_object())
    items = [fee_payment_to_dict(fp) for fp in rows]
    total_due = sum(i["remaining"] for i in items)
    return api_success({"items": items}, {"count": len(items), "total_due": total_due})


@portal_bp.route("/student/library", methods=["GET"])
@login_required
@role_required("student")
def student_library():
    rows = student_documents(current_user._get_current_object())
    return api_success({"items": [document_to_dict(d) for d in rows]}, {"count": len(rows)})


@portal_bp.route("/public/library", methods=["GET"])
def public_library():
    rows = public_documents()
    return api_success({"items": [document_to_dict(d, include_content=False) for d in rows]}, {"count": len(rows)})
