from flask import request
from flask_login import login_required, current_user

from . import library_bp
from . import services
from .. import csrf_required
from ..api_utils import api_success
from ..decorators import role_required
from ..utils import client_ip, json_body, parse_bool, parse_optional_int


def _actor():
    return current_user._get_current_object()


@library_bp.route("/categories", methods=["GET", "POST"])
@login_required
@csrf_required
@role_required("admin")
def categories():
    if request.method == "POST":
        c = services.create_category(_actor(), json_body(), ip_address=client_ip())
        return api_success({"category": services.category_to_dict(c)}, status=201)
    rows = services.list_categories(_actor())
    return api_success({"items": [services.category_to_dict(c) for c in rows]})


@library_bp.route("/documents", methods=["GET", "POST"])
@login_required
@csrf_required
@role_required("admin")
def documents():
    if request.method == "POST":
        d = services.create_document(_actor(), json_body(), ip_address=client_ip())
        return api_success({"document": services.document_to_dict(d)}, status=201)
    rows = services.list_documents(
        _actor(),
        course_id=parse_optional_int(request.args.get("course_id")),
        category_id=parse_optional_int(request.args.get("category_id")),
        include_deleted=parse_bool(request.args.get("include_deleted")),
    )
    return api_success(
        {"items": [services.document_to_dict(d, include_content=False) for d in rows]},
        {"count": len(rows)},
    )


@library_bp.route("/documents/<int:document_id>", methods=["GET", "PUT", "DELETE"])
@login_required
@csrf_required
@role_required("admin")
def document_detail(document_id):
    if request.method == "PUT":
        d = services.update_document(_actor(), document_id, json_body(), ip_address=client_ip())
        return api_success({"document": services.document_to_dict(d)})
    if request.method == "DELETE":
        # force=true selects the permanent purge; it is root-only and checked by the service
        if parse_bool(request.args.get("force")):
            snapshot = services.purge_document(_actor(), document_id, ip_address=client_ip())
            return api_success({"document_id": snapshot["document_id"], "purged": True})
        d = services.soft_delete_document(_actor(), document_id, ip_address=client_ip())
        return api_success({"document_id": d.document_id, "is_deleted": True})
    return api_success({"document": services.document_to_dict(services.get_document(document_id))})


@library_bp.route("/documents/<int:document_id>/versions", methods=["GET"])
@login_required
@role_required("admin")
def document_versions(document_id):
    rows = services.list_versions(_actor(), document_id)
    return api_success({"items": [services.version_to_dict(v) for v in rows]}, {"count": len(rows)})
