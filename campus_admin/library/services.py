"""
Digital library: categories, documents and their version chain.

Every content change writes a new DocumentVersion (N+1) that points back at
version N, and bumps ``current_version`` in the same transaction, so versions
1..current_version always exist.
"""
import logging

from sqlalchemy import select, delete, or_

from .. import db
from ..audit import change, diff_changes, record_audit
from ..decorators import require_admin, require_authenticated, require_root
from ..errors import AlreadyDeletedError, NotFoundError, ValidationError
from ..models import (
    DOCUMENT_FILE_TYPES,
    DocumentVersion,
    LibraryCategory,
    LibraryDocument,
    Program,
    utc_now,
)
from ..utils import is_blank, parse_bool, parse_int, parse_optional_int, require_fields

logger = logging.getLogger(__name__)


def _iso(value):
    return value.isoformat() if value else None


def category_to_dict(c):
    return {
        "category_id": c.category_id,
        "name": c.name,
        "semester_or_module": c.semester_or_module,
        "created_at": _iso(c.created_at),
    }


def document_to_dict(d, include_content=True):
    out = {
        "document_id": d.document_id,
        "title": d.title,
        "course_id": d.program_id_fk,
        "course_name": getattr(d.program, "program_name", None),
        "category": category_to_dict(d.category) if d.category else None,
        "file_path": d.file_path,
        "file_type": d.file_type,
        "current_version": d.current_version,
        "is_common": bool(d.is_common),
        "is_deleted": bool(d.is_deleted),
        "deleted_at": _iso(d.deleted_at),
        "created_at": _iso(d.created_at),
        "updated_at": _iso(d.updated_at),
    }
    if include_content:
        out["content"] = d.content or ""
    return out


def version_to_dict(v):
    return {
        "version_id": v.version_id,
        "document_id": v.document_id_fk,
        "version_number": v.version_number,
        "file_path": v.file_path,
        "content": v.content or "",
        "previous_version_id": v.previous_version_id_fk,
        "updated_by": {
            "user_id": v.updated_by_fk,
            "full_name": getattr(v.updated_by, "full_name", None),
        },
        "created_at": _iso(v.created_at),
    }


# Categories

def list_categories(actor):
    require_admin(actor)
    return db.session.execute(
        select(LibraryCategory).order_by(LibraryCategory.name.asc(), LibraryCategory.category_id.asc())
    ).scalars().all()


def create_category(actor, data, ip_address=None):
    require_admin(actor)
    require_fields(data, "name", message="Category name is required")
    c = LibraryCategory(
        name=data.get("name").strip(),
        semester_or_module=parse_optional_int(data.get("semester_or_module")),
    )
    db.session.add(c)
    db.session.flush()
    record_audit("CREATE", "LibraryCategory", c.category_id, actor, [change("all", None, category_to_dict(c))],
                 ip_address=ip_address)
    db.session.commit()
    return c


# Documents

def get_document(document_id):
    d = db.session.get(LibraryDocument, parse_int(document_id, "document_id"))
    if not d:
        raise NotFoundError("Document not found")
    return d


def list_documents(actor, course_id=None, category_id=None, include_deleted=False):
    require_admin(actor)
    q = select(LibraryDocument)
    if not include_deleted:
        q = q.filter(LibraryDocument.is_deleted.is_(False))
    if course_id:
        q = q.filter(LibraryDocument.program_id_fk == course_id)
    if category_id:
        q = q.filter(LibraryDocument.category_id_fk == category_id)
    q = q.order_by(LibraryDocument.updated_at.desc(), LibraryDocument.document_id.desc())
    return db.session.execute(q).scalars().all()


def create_document(actor, data, ip_address=None):
    require_admin(actor)
    require_fields(data, "title", "category_id", "file_type")
    is_common = parse_bool(data.get("is_common"))
    file_type = str(data.get("file_type")).strip().lower()
    if file_type not in DOCUMENT_FILE_TYPES:
        raise ValidationError(f"file_type must be one of: {', '.join(DOCUMENT_FILE_TYPES)}")

    program_id = None
    if not is_common:
        if is_blank(data.get("course_id")):
            raise ValidationError("course_id is required unless the document is common")
        program = db.session.get(Program, parse_int(data.get("course_id"), "course_id"))
        if not program:
            raise NotFoundError("Course not found")
        program_id = program.program_id
    category = db.session.get(LibraryCategory, parse_int(data.get("category_id"), "category_id"))
    if not category:
        raise NotFoundError("Category not found")

    file_path = (data.get("file_path") or "").strip() or None
    content = data.get("content") or ""
    d = LibraryDocument(
        program_id_fk=program_id,
        category_id_fk=category.category_id,
        title=data.get("title").strip(),
        content=content,
        file_path=file_path,
        file_type=file_type,
        current_version=1,
        is_common=is_common,
    )
    db.session.add(d)
    db.session.flush()
    db.session.add(DocumentVersion(
        document_id_fk=d.document_id,
        file_path=file_path,
        content=content,
        version_number=1,
        updated_by_fk=actor.user_id,
    ))
    record_audit("CREATE", "LibraryDocument", d.document_id, actor,
                 [change("all", None, document_to_dict(d, include_content=False))], ip_address=ip_address)
    db.session.commit()
    logger.info("Library document %s created by user_id=%s", d.document_id, actor.user_id)
    return d


def update_document(actor, document_id, data, ip_address=None):
    """Write the next version and advance ``current_version``."""
    require_admin(actor)
    d = get_document(document_id)
    if d.is_deleted:
        raise AlreadyDeletedError("Cannot update a deleted document")
    if "title" in data and is_blank(data.get("title")):
        raise ValidationError("title cannot be blank")

    current = d.current_version
    previous = db.session.execute(
        select(DocumentVersion).filter_by(document_id_fk=d.document_id, version_number=current)
    ).scalars().first()
    file_path = d.file_path
    if not is_blank(data.get("file_path")):
        file_path = data.get("file_path").strip()
    content = data.get("content") if "content" in data else d.content

    db.session.add(DocumentVersion(
        document_id_fk=d.document_id,
        file_path=file_path,
        content=content,
        version_number=current + 1,
        updated_by_fk=actor.user_id,
        previous_version_id_fk=previous.version_id if previous else None,
    ))
    changes = [change("version", f"V{current}", f"V{current + 1}")]
    if "title" in data:
        title = data.get("title").strip()
        changes += diff_changes({"title": d.title}, {"title": title})
        d.title = title
    d.file_path = file_path
    d.content = content
    d.current_version = current + 1
    d.updated_at = utc_now()
    record_audit("UPDATE", "LibraryDocument", d.document_id, actor, changes, ip_address=ip_address)
    db.session.commit()
    logger.info("Library document %s updated to V%s by user_id=%s", d.document_id, current + 1, actor.user_id)
    return d


def soft_delete_document(actor, document_id, ip_address=None):
    require_admin(actor)
    d = get_document(document_id)
    if d.is_deleted:
        raise AlreadyDeletedError("Document is already deleted")
    d.is_deleted = True
    d.deleted_at = utc_now()
    d.deleted_by_fk = actor.user_id
    record_audit("SOFT_DELETE", "LibraryDocument", d.document_id, actor, [change("is_deleted", False, True)],
                 ip_address=ip_address)
    db.session.commit()
    return d


def purge_document(actor, document_id, ip_address=None):
    """Permanently remove a document and every version of it."""
    require_admin(actor)
    require_root(actor)
    d = get_document(document_id)
    snapshot = document_to_dict(d, include_content=False)
    removed = db.session.execute(
        delete(DocumentVersion)
        .where(DocumentVersion.document_id_fk == d.document_id)
        .execution_options(synchronize_session=False)
    ).rowcount
    record_audit("DELETE", "LibraryDocument", d.document_id, actor, [change("all", snapshot, None)],
                 reason=f"Purged with {removed} version(s)", ip_address=ip_address)
    db.session.delete(d)
    db.session.commit()
    logger.info("Library document %s purged by user_id=%s (%s versions)", snapshot["document_id"],
                actor.user_id, removed)
    return snapshot


def list_versions(actor, document_id):
    require_admin(actor)
    d = get_document(document_id)
    return db.session.execute(
        select(DocumentVersion)
        .filter_by(document_id_fk=d.document_id)
        .order_by(DocumentVersion.version_number.desc())
    ).scalars().all()


# Portal listings

def student_documents(actor):
    """Common documents plus those of the student's own program."""
    require_authenticated(actor)
    visible = LibraryDocument.is_common.is_(True)
    if actor.program_id_fk:
        visible = or_(visible, LibraryDocument.program_id_fk == actor.program_id_fk)
    return db.session.execute(
        select(LibraryDocument)
        .filter(LibraryDocument.is_deleted.is_(False), visible)
        .order_by(LibraryDocument.title.asc())
    ).scalars().all()


def public_documents():
    return db.session.execute(
        select(LibraryDocument)
        .filter(LibraryDocument.is_deleted.is_(False))
        .order_by(LibraryDocument.title.asc())
    ).scalars().all()
