from __future__ import annotations

import hashlib
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.docvault.modules.documents.errors import DocumentNotFound, OwnershipError
from app.docvault.modules.documents.models import Document, DocumentVersion

ALLOWED_CONTENT_TYPES = ("application/pdf",)


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def file_digest(file_bytes: bytes) -> str:
    return file_digest_and_bytes(file_bytes)[0]


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.pdf"


def normalize_title(title: str | None) -> str:
    return (title or "").strip()


def get_owned_document(s: Session, document_id: int, owner_id: int, *, for_update: bool = False) -> Document:
    """
    Load a document and check that `owner_id` owns it.
    Raises DocumentNotFound / OwnershipError.
    """
    stmt = select(Document).where(Document.id == document_id)
    if for_update:
        stmt = stmt.with_for_update()
    doc = s.execute(stmt).scalar_one_or_none()
    if doc is None:
        raise DocumentNotFound("Document not found")
    if doc.owner_user_id != owner_id:
        raise OwnershipError("You do not have permission to access this document")
    return doc


def next_version_number(s: Session, document_id: int) -> int:
    """
    max(existing) + 1. Callers must hold the parent document lock so concurrent
    appends cannot read the same maximum.
    """
    current = s.scalar(
        select(func.coalesce(func.max(DocumentVersion.version_number), 0)).where(
            DocumentVersion.document_id == document_id
        )
    )
    return int(current or 0) + 1


def get_version(s: Session, document_id: int, version_number: int) -> DocumentVersion | None:
    return s.execute(
        select(DocumentVersion).where(
            DocumentVersion.document_id == document_id,
            DocumentVersion.version_number == version_number,
        )
    ).scalar_one_or_none()


def list_documents_for_owner(s: Session, owner_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(
            Document.id,
            Document.title,
            Document.created_at,
            func.count(DocumentVersion.id).label("version_count"),
        )
        .outerjoin(DocumentVersion, DocumentVersion.document_id == Document.id)
        .where(Document.owner_user_id == owner_id)
        .group_by(Document.id, Document.title, Document.created_at)
        .order_by(Document.created_at.desc(), Document.id.desc())
    ).all()
    return [
        {
            "id": r.id,
            "title": r.title,
            "createdAt": r.created_at.isoformat() if r.created_at else None,
            "versionCount": int(r.version_count),
        }
        for r in rows
    ]


def serialize_version(v: DocumentVersion) -> dict[str, Any]:
    return {
        "versionNumber": v.version_number,
        "contentId": v.content_id,
        "fileHash": v.file_hash,
        "txHash": v.ledger_tx_hash,
        "filename": v.filename,
        "sizeBytes": v.size_bytes,
        "createdAt": v.created_at.isoformat() if v.created_at else None,
    }


def serialize_document(doc: Document) -> dict[str, Any]:
    return {
        "id": doc.id,
        "title": doc.title,
        "ledgerDocumentId": doc.ledger_document_id,
        "createdAt": doc.created_at.isoformat() if doc.created_at else None,
        "versions": [serialize_version(v) for v in doc.versions],
    }
