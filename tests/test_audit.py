import pytest
from sqlalchemy import select

from campus_admin import db
from campus_admin.audit import list_audit_logs, record_audit
from campus_admin.errors import AuditLogImmutableError
from campus_admin.models import AuditLog


def _entry(actor):
    log = record_audit("CREATE", "Expense", 1, actor, [{"field": "all", "old": None, "new": {"amount": 10}}],
                       ip_address="10.0.0.1")
    db.session.commit()
    return log


def test_audit_logs_cannot_be_updated(actors, seed):
    log = _entry(actors.admin)
    log.reason = "tampered"
    with pytest.raises(AuditLogImmutableError):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(AuditLog, log.log_id).reason is None


def test_audit_logs_cannot_be_deleted(actors, seed):
    log = _entry(actors.admin)
    db.session.delete(log)
    with pytest.raises(AuditLogImmutableError):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(AuditLog, log.log_id) is not None


def test_record_audit_requires_actor_and_known_action(actors, seed):
    with pytest.raises(ValueError):
        record_audit("CREATE", "Expense", 1, None)
    with pytest.raises(ValueError):
        record_audit("ARCHIVE", "Expense", 1, actors.admin)
    with pytest.raises(ValueError):
        record_audit("CREATE", "Invoice", 1, actors.admin)
    assert db.session.execute(select(AuditLog)).scalars().all() == []


def test_list_audit_logs_newest_first(actors, seed):
    first = _entry(actors.admin)
    record_audit("LOCK", "FinancialPeriod", "2025-03-31", actors.root)
    db.session.commit()

    rows = list_audit_logs()
    assert rows[0].entity_type == "FinancialPeriod"
    assert rows[-1].log_id == first.log_id
    assert [r.entity_type for r in list_audit_logs(entity_type="Expense")] == ["Expense"]
    assert len(list_audit_logs(limit=1)) == 1
