"""
Document Service Facade.

Every read goes through `can_read`, every write through `can_edit` (app.pcms.access).
Versions are append-only: a new upload gets `current_version + 1` and its own storage
key, so fetching an older version keeps returning the bytes stored for it. Access logs
are side-effect records written alongside reads, never a gate.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, BinaryIO

from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.pcms.access import (
    VISIBILITIES,
    AccessDecision,
    AccessDescriptor,
    Principal,
    can_edit,
    can_read,
    evaluate_access,
    principal_for,
)
from app.pcms.audit import record_event
from app.pcms.errors import AuthorizationError, NotFoundError, ValidationError
from app.pcms.models import User
from app.pcms.modules.notifications.service import NotificationDispatcher, NotificationEvent
from app.pcms.qr import QrCodeGenerator
from app.pcms.rbac import ROLES, load_actor, resolve_department_id, user_has_capability
from app.pcms.storage import Storage, StorageError
from app.pcms.utils import generate_reference, isoformat, parse_int

from .models import ACCESS_METHODS, DOCUMENT_STATUSES, Document, DocumentAccessLog, DocumentVersion

logger = logging.getLogger(__name__)

SETTABLE_STATUSES = frozenset(DOCUMENT_STATUSES - {"deleted"})
MIN_SEARCH_LENGTH = 2


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    data: bytes
    content_type: str = "application/octet-stream"


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"


def document_access_descriptor(doc: Document) -> AccessDescriptor:
    return AccessDescriptor.build(
        author_id=doc.author_id,
        department_id=doc.department_id,
        visibility=doc.visibility,
        allowed_roles=doc.allowed_roles,
        allowed_users=doc.allowed_users,
        allowed_departments=doc.allowed_departments,
    )


def _ensure_readable(principal: Principal, doc: Document) -> None:
    if not can_read(principal, document_access_descriptor(doc)):
        logger.warning("Document read denied document_id=%s user_id=%s", doc.id, principal.id)
        raise AuthorizationError("You do not have access to this document.", details={"document_id": doc.id})


def _ensure_editable(principal: Principal, doc: Document) -> None:
    if not can_edit(principal, document_access_descriptor(doc)):
        logger.warning("Document edit denied document_id=%s user_id=%s", doc.id, principal.id)
        raise AuthorizationError("You do not have permission to modify this document.", details={"document_id": doc.id})


def _find(s: Session, document_id: int) -> Document:
    doc = s.get(Document, document_id)
    if doc is None or doc.is_deleted:
        raise NotFoundError.for_entity("Document", document_id)
    return doc


# Serialization

def version_to_dict(v: DocumentVersion) -> dict[str, Any]:
    return {
        "version": v.version,
        "filename": v.filename,
        "content_type": v.content_type,
        "size_bytes": v.size_bytes,
        "sha256": v.sha256,
        "change_notes": v.change_notes,
        "uploaded_by_id": v.uploaded_by_user_id,
        "uploaded_at": isoformat(v.uploaded_at),
    }


def document_to_dict(doc: Document, decision: AccessDecision | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": doc.id,
        "document_number": doc.document_number,
        "title": doc.title,
        "description": doc.description,
        "category": doc.category,
        "subcategory": doc.subcategory,
        "tags": doc.tags or [],
        "status": doc.status,
        "author_id": doc.author_id,
        "department_id": doc.department_id,
        "access_control": {
            "visibility": doc.visibility,
            "allowed_roles": doc.allowed_roles or [],
            "allowed_users": doc.allowed_users or [],
            "allowed_departments": doc.allowed_departments or [],
        },
        "qr_code": {"code": doc.qr_code, "url": doc.qr_url},
        "current_version": doc.current_version,
        "versions": [version_to_dict(v) for v in doc.versions],
        "created_at": isoformat(doc.created_at),
        "updated_at": isoformat(doc.updated_at),
    }
    if decision is not None:
        data["access"] = decision.to_dict()
    return data


def access_log_to_dict(log: DocumentAccessLog) -> dict[str, Any]:
    return {
        "user_id": log.user_id,
        "method": log.method,
        "ip_address": log.ip_address,
        "accessed_at": isoformat(log.accessed_at),
    }


# Input cleaning

def _clean_text(data: dict[str, Any], key: str, *, required: bool = False) -> str | None:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError.required_field(key)
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be text.", details={"field": key})
    return value.strip()


def _clean_id_list(data: dict[str, Any], key: str) -> list[int]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a list.", details={"field": key})
    return sorted({parse_int(v, key) for v in value})


def _clean_access_control(data: dict[str, Any]) -> dict[str, Any]:
    visibility = data.get("visibility") or "private"
    if visibility not in VISIBILITIES:
        raise ValidationError(f"Unknown visibility: {visibility!r}", details={"field": "visibility"})
    roles = data.get("allowed_roles") or []
    if not isinstance(roles, list) or any(r not in ROLES for r in roles):
        raise ValidationError("allowed_roles must be a list of known roles.", details={"field": "allowed_roles"})
    return {
        "visibility": visibility,
        "allowed_roles": sorted(set(roles)),
        "allowed_users": _clean_id_list(data, "allowed_users"),
        "allowed_departments": _clean_id_list(data, "allowed_departments"),
    }


def _clean_tags(data: dict[str, Any]) -> list[str]:
    tags = data.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise ValidationError("tags must be a list of strings.", details={"field": "tags"})
    return [t.strip() for t in tags if t.strip()]


# Notifications

def _notify_shared(
    s: Session,
    doc: Document,
    user_ids: list[int],
    *,
    actor: User,
    dispatcher: NotificationDispatcher,
) -> list[int]:
    recipients = tuple(uid for uid in user_ids if uid != actor.id)
    if not recipients:
        return []
    return dispatcher.dispatch(
        s,
        NotificationEvent(
            type="document_update",
            title="Document Shared With You",
            message=f'{actor.email} shared the document "{doc.title}" ({doc.document_number}) with you.',
            related_entity="document",
            related_entity_id=doc.id,
            sender_id=actor.id,
            recipient_ids=recipients,
        ),
    )


# Storage

def _store_version(
    s: Session,
    doc: Document,
    upload: UploadedFile,
    *,
    version: int,
    actor: User,
    change_notes: str,
    storage: Storage,
) -> DocumentVersion:
    if not upload.data:
        raise ValidationError("Uploaded file is empty.", details={"field": "file"})
    filename = sanitize_upload_filename(upload.filename)
    sha256, size_bytes = file_digest_and_bytes(upload.data)
    storage_key = f"documents/{doc.document_number}/v{version}/{filename}"
    storage.put_bytes(storage_key, upload.data, content_type=upload.content_type)

    v = DocumentVersion(
        version=version,
        storage_key=storage_key,
        filename=filename,
        content_type=(upload.content_type or "application/octet-stream").strip(),
        sha256=sha256,
        size_bytes=size_bytes,
        change_notes=(change_notes or "")[:512],
        uploaded_by_user_id=actor.id,
    )
    doc.versions.append(v)
    return v


# Operations

def create_document(
    s: Session,
    *,
    actor_id: int,
    data: dict[str, Any],
    upload: UploadedFile | None,
    storage: Storage,
    qr: QrCodeGenerator,
    dispatcher: NotificationDispatcher,
) -> Document:
    actor = load_actor(s, actor_id)
    if not user_has_capability(actor, "documents.create"):
        raise AuthorizationError("Missing capability: documents.create")
    if upload is None:
        raise ValidationError.required_field("file")

    title = _clean_text(data, "title", required=True)
    category = _clean_text(data, "category", required=True)
    access_control = _clean_access_control(data)

    document_number = generate_reference("DOC")
    while s.query(Document.id).filter(Document.document_number == document_number).first() is not None:
        document_number = generate_reference("DOC")

    code = qr.generate(f"/documents/{document_number}", f"Document: {title}")
    department_id = resolve_department_id(s, data.get("department_id"), actor.department_id)

    doc = Document(
        document_number=document_number,
        title=title,
        description=_clean_text(data, "description"),
        category=category,
        subcategory=_clean_text(data, "subcategory"),
        tags=_clean_tags(data),
        status="active",
        author_id=actor.id,
        department_id=department_id,
        qr_code=code.code,
        qr_url=code.url,
        current_version=1,
        **access_control,
    )
    s.add(doc)
    _store_version(s, doc, upload, version=1, actor=actor, change_notes="Initial version", storage=storage)
    s.flush()

    _notify_shared(s, doc, access_control["allowed_users"], actor=actor, dispatcher=dispatcher)
    record_event(
        s,
        actor=actor,
        action="document.create",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"document_number": doc.document_number, "category": doc.category, "visibility": doc.visibility},
    )
    s.commit()
    logger.info("Document created document_id=%s document_number=%s", doc.id, doc.document_number)
    return doc


def update_document(
    s: Session,
    document_id: int,
    *,
    actor_id: int,
    data: dict[str, Any],
    dispatcher: NotificationDispatcher,
) -> Document:
    """Metadata and access-control update. File, number, QR code, versions and logs are not writable here."""
    actor = load_actor(s, actor_id)
    doc = _find(s, document_id)
    _ensure_editable(principal_for(actor), doc)

    changes: list[dict[str, Any]] = []

    def _set(key: str, value: Any) -> None:
        old = getattr(doc, key)
        if old == value:
            return
        setattr(doc, key, value)
        if not isinstance(value, (list, dict)):
            changes.append({"field": key, "old": old, "new": value})
        else:
            changes.append({"field": key})

    if "title" in data:
        _set("title", _clean_text(data, "title", required=True))
    if "category" in data:
        _set("category", _clean_text(data, "category", required=True))
    for key in ("description", "subcategory"):
        if key in data:
            _set(key, _clean_text(data, key))
    if "tags" in data:
        _set("tags", _clean_tags(data))

    access_keys = ("visibility", "allowed_roles", "allowed_users", "allowed_departments")
    newly_shared: list[int] = []
    if any(k in data for k in access_keys):
        merged = {
            "visibility": doc.visibility,
            "allowed_roles": doc.allowed_roles or [],
            "allowed_users": doc.allowed_users or [],
            "allowed_departments": doc.allowed_departments or [],
        }
        merged.update({k: data[k] for k in access_keys if k in data})
        cleaned = _clean_access_control(merged)
        previous_users = set(doc.allowed_users or [])
        newly_shared = [uid for uid in cleaned["allowed_users"] if uid not in previous_users and uid != doc.author_id]
        for key, value in cleaned.items():
            _set(key, value)

    if not changes:
        return doc

    doc.updated_at = datetime.utcnow()
    _notify_shared(s, doc, newly_shared, actor=actor, dispatcher=dispatcher)
    record_event(
        s,
        actor=actor,
        action="document.update",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"document_number": doc.document_number, "changes": changes},
    )
    s.commit()
    return doc


def add_version(
    s: Session,
    document_id: int,
    *,
    actor_id: int,
    upload: UploadedFile | None,
    change_notes: str = "",
    storage: Storage,
) -> DocumentVersion:
    actor = load_actor(s, actor_id)
    doc = _find(s, document_id)
    _ensure_editable(principal_for(actor), doc)
    if upload is None:
        raise ValidationError.required_field("file")

    # Unique (document_id, version) rejects a concurrent writer of the same number.
    version = doc.current_version + 1
    v = _store_version(s, doc, upload, version=version, actor=actor, change_notes=change_notes, storage=storage)
    doc.current_version = version
    doc.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=actor,
        action="document.add_version",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={
            "document_number": doc.document_number,
            "version": version,
            "sha256": v.sha256,
            "size_bytes": v.size_bytes,
        },
    )
    s.commit()
    logger.info("Document version added document_id=%s version=%s", doc.id, version)
    return v


def get_version(doc: Document, version: int | None = None) -> DocumentVersion:
    wanted = doc.current_version if version is None else version
    for v in doc.versions:
        if v.version == wanted:
            return v
    raise NotFoundError(f"Document version {wanted} not found.", details={"document_id": doc.id, "version": wanted})


def log_access(
    s: Session,
    doc: Document,
    *,
    user_id: int | None,
    method: str,
    ip_address: str | None = None,
) -> DocumentAccessLog:
    if method not in ACCESS_METHODS:
        raise ValidationError(f"Unknown access method: {method!r}", details={"field": "method"})
    log = DocumentAccessLog(document_id=doc.id, user_id=user_id, method=method, ip_address=ip_address)
    s.add(log)
    return log


def get_document(
    s: Session,
    document_id: int,
    *,
    actor_id: int,
    ip_address: str | None = None,
    method: str = "direct",
) -> tuple[Document, AccessDecision]:
    actor = load_actor(s, actor_id)
    doc = _find(s, document_id)
    principal = principal_for(actor)
    _ensure_readable(principal, doc)
    log_access(s, doc, user_id=actor.id, method=method, ip_address=ip_address)
    s.commit()
    return doc, evaluate_access(principal, document_access_descriptor(doc))


def get_document_by_qr_code(
    s: Session,
    code: str,
    *,
    actor_id: int,
    ip_address: str | None = None,
) -> tuple[Document, AccessDecision]:
    code = (code or "").strip()
    if not code:
        raise ValidationError.required_field("qr_code")
    doc = s.query(Document).filter(Document.qr_code == code, Document.is_deleted.is_(False)).one_or_none()
    if doc is None:
        raise NotFoundError.for_entity("Document", code)
    return get_document(s, doc.id, actor_id=actor_id, ip_address=ip_address, method="qrcode")


def get_file(
    s: Session,
    document_id: int,
    *,
    actor_id: int,
    storage: Storage,
    version: int | None = None,
    ip_address: str | None = None,
) -> tuple[DocumentVersion, BinaryIO]:
    """Historical versions are served from their own storage key; no version means the current one."""
    actor = load_actor(s, actor_id)
    doc = _find(s, document_id)
    _ensure_readable(principal_for(actor), doc)
    v = get_version(doc, version)

    try:
        fobj = storage.open(v.storage_key)
    except StorageError:
        logger.warning("Stored file missing document_id=%s version=%s key=%s", doc.id, v.version, v.storage_key)
        raise NotFoundError("Document file not found.", details={"document_id": doc.id, "version": v.version})

    log_access(s, doc, user_id=actor.id, method="download", ip_address=ip_address)
    s.commit()
    return v, fobj


def evaluate_document_access(s: Session, document_id: int, *, actor_id: int) -> AccessDecision:
    actor = load_actor(s, actor_id)
    doc = _find(s, document_id)
    return evaluate_access(principal_for(actor), document_access_descriptor(doc))


def list_access_logs(s: Session, document_id: int, *, actor_id: int) -> list[DocumentAccessLog]:
    actor = load_actor(s, actor_id)
    doc = _find(s, document_id)
    _ensure_editable(principal_for(actor), doc)
    return (
        s.query(DocumentAccessLog)
        .filter(DocumentAccessLog.document_id == doc.id)
        .order_by(DocumentAccessLog.accessed_at.desc(), DocumentAccessLog.id.desc())
        .all()
    )


def set_status(s: Session, document_id: int, status: str, *, actor_id: int) -> Document:
    actor = load_actor(s, actor_id)
    doc = _find(s, document_id)
    _ensure_editable(principal_for(actor), doc)
    if status not in SETTABLE_STATUSES:
        raise ValidationError(f"Invalid status: {status!r}", details={"field": "status", "allowed": sorted(SETTABLE_STATUSES)})
    if doc.status == status:
        return doc

    old = doc.status
    doc.status = status
    doc.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="document.update_status",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"document_number": doc.document_number, "from": old, "to": status},
    )
    s.commit()
    return doc


def delete_document(s: Session, document_id: int, *, actor_id: int) -> None:
    actor = load_actor(s, actor_id)
    doc = _find(s, document_id)
    _ensure_editable(principal_for(actor), doc)

    doc.is_deleted = True
    doc.status = "deleted"
    doc.deleted_at = datetime.utcnow()
    doc.deleted_by_user_id = actor.id
    record_event(
        s,
        actor=actor,
        action="document.delete",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"document_number": doc.document_number},
    )
    s.commit()
    logger.info("Document soft-deleted document_id=%s by user_id=%s", doc.id, actor.id)


def list_documents(
    s: Session,
    *,
    actor_id: int,
    category: str | None = None,
    status: str | None = None,
    query: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Document], int]:
    actor = load_actor(s, actor_id)
    principal = principal_for(actor)

    q = s.query(Document).filter(Document.is_deleted.is_(False))
    if category:
        q = q.filter(Document.category == category)
    if status:
        if status not in SETTABLE_STATUSES:
            raise ValidationError(f"Invalid status: {status!r}", details={"field": "status"})
        q = q.filter(Document.status == status)
    if query is not None:
        query = query.strip()
        if len(query) < MIN_SEARCH_LENGTH:
            raise ValidationError(
                f"Search query must be at least {MIN_SEARCH_LENGTH} characters.",
                details={"field": "q"},
            )
        pattern = f"%{query}%"
        q = q.filter(
            (Document.title.ilike(pattern))
            | (Document.description.ilike(pattern))
            | (Document.document_number.ilike(pattern))
        )

    readable = [
        d
        for d in q.order_by(Document.created_at.desc(), Document.id.desc()).all()
        if can_read(principal, document_access_descriptor(d))
    ]
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    start = (page - 1) * per_page
    return readable[start : start + per_page], len(readable)
