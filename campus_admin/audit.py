import logging

from sqlalchemy import select

from . import db
from .models import AuditLog, AUDIT_ACTIONS, AUDIT_ENTITY_TYPES
from .utils import jsonable

logger = logging.getLogger(__name__)


def change(field, old, new):
    return {"field": field, "old": jsonable(old), "new": jsonable(new)}


def diff_changes(before, after):
    """Build change descriptors for the keys whose values differ."""
    return [change(k, before.get(k), after.get(k)) for k in after if before.get(k) != after.get(k)]


def record_audit(action, entity_type, entity_id, actor, changes=None, reason=None, ip_address=None):
    """
    Stage an AuditLog row in the current session.

    The caller commits it together with the mutation it describes, so the
    entry and the change become visible at the same time or not at all.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type}")
    performed_by = getattr(actor, "user_id", None)
    if performed_by is None:
        raise ValueError("Audit entries require the acting user")
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        performed_by_fk=performed_by,
        changes=list(changes or []),
        reason=reason,
        ip_address=ip_address,
    )
    db.session.add(entry)
    logger.debug("audit %s %s:%s by user_id=%s", action, entity_type, entity_id, performed_by)
    return entry


def list_audit_logs(entity_type=None, limit=100):
    q = select(AuditLog)
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)
    q = q.order_by(AuditLog.created_at.desc(), AuditLog.log_id.desc()).limit(limit)
    return db.session.execute(q).scalars().all()


def audit_log_to_dict(log):
    who = log.performed_by
    return {
        "log_id": log.log_id,
        "action": log.action,
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "performed_by": {
            "user_id": log.performed_by_fk,
            "username": getattr(who, "username", None),
            "full_name": getattr(who, "full_name", None),
        },
        "changes": log.changes or [],
        "reason": log.reason,
        "ip_address": log.ip_address,
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }
