from flask import jsonify


def api_success(data=None, meta=None, status=200):
    body = {"success": True, "data": data if data is not None else {}, "meta": meta or {}}
    return jsonify(body), status


def api_error(code="error", message="", status=400, details=None):
    err = {"code": code, "message": message}
    if details:
        err["details"] = details
    return jsonify({"success": False, "error": err}), status


def campus_error_response(exc):
    """Render a CampusError as the error envelope."""
    details = None
    remaining = getattr(exc, "remaining", None)
    if remaining is not None:
        details = {"remaining": remaining}
    return api_error(exc.code, exc.message, exc.status_code, details)
