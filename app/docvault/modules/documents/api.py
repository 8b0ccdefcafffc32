from __future__ import annotations

from flask import Blueprint, Response, current_app, g, request

from app.docvault.audit import record_event
from app.docvault.auth import current_user, login_required
from app.docvault.db import db_session
from app.docvault.modules.documents.custody import EXTENSION_KEY, DocumentCustody
from app.docvault.modules.documents.errors import CustodyError, ValidationError
from app.docvault.modules.documents.pipeline import NewDocument, NewVersion
from app.docvault.modules.documents.service import (
    get_owned_document,
    list_documents_for_owner,
    serialize_document,
)

bp = Blueprint("documents", __name__)


def _custody() -> DocumentCustody:
    return current_app.extensions[EXTENSION_KEY]


def _uploaded_file() -> tuple[bytes | None, str, str]:
    f = request.files.get("file")
    if not f or not f.filename:
        return None, "", ""
    content_type = (f.mimetype or "application/octet-stream").strip()
    return f.read(), f.filename, content_type


@bp.errorhandler(CustodyError)
def _custody_error(e: CustodyError):
    if isinstance(e, ValidationError):
        current_app.logger.info("Request rejected: %s", e)
    else:
        current_app.logger.error(
            "Custody operation failed (request_id=%s): %s", getattr(g, "request_id", None), e, exc_info=e
        )
    return {"error": e.public_message, "stage": getattr(e.stage, "value", e.stage)}, e.status_code


@bp.get("")
@login_required
def list_documents():
    s = db_session()
    return {"documents": list_documents_for_owner(s, current_user().id)}


@bp.post("")
@login_required
def create_document():
    u = current_user()
    data, filename, content_type = _uploaded_file()
    result = _custody().commit(
        NewDocument(
            owner_id=u.id,
            title=request.form.get("title"),
            plaintext=data,
            filename=filename,
            content_type=content_type,
        )
    )
    current_app.logger.info(
        "Document created: id=%s ledger_document_id=%s tx=%s",
        result.document_id,
        result.ledger_document_id,
        result.tx_hash,
    )
    return result.to_dict(), 201


@bp.get("/<int:doc_id>")
@login_required
def document_detail(doc_id: int):
    s = db_session()
    doc = get_owned_document(s, doc_id, current_user().id)
    return serialize_document(doc)


@bp.post("/<int:doc_id>/version")
@login_required
def add_version(doc_id: int):
    u = current_user()
    data, filename, content_type = _uploaded_file()
    result = _custody().commit(
        NewVersion(
            owner_id=u.id,
            document_id=doc_id,
            plaintext=data,
            filename=filename,
            content_type=content_type,
        )
    )
    current_app.logger.info("Version %s added to document %s (tx=%s)", result.version_number, doc_id, result.tx_hash)
    return result.to_dict(), 201


@bp.get("/<int:doc_id>/version/<int:version_number>/view")
@login_required
def view_version(doc_id: int, version_number: int):
    u = current_user()
    if version_number < 1:
        raise ValidationError("Invalid version number")
    content = _custody().read_version(owner_id=u.id, document_id=doc_id, version_number=version_number)

    s = db_session()
    record_event(
        s,
        actor=u,
        action="doc.view",
        entity_type="Document",
        entity_id=str(doc_id),
        metadata={"version": version_number},
    )
    s.commit()

    resp = Response(content.plaintext, mimetype=content.content_type or "application/pdf")
    resp.headers["Content-Disposition"] = f'inline; filename="{content.filename}"'
    resp.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return resp
