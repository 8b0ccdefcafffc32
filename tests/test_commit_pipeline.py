import hashlib
import json

import pytest
from sqlalchemy.exc import OperationalError

from app.docvault.db import session_scope
from app.docvault.ledger import LedgerError
from app.docvault.models import AuditEvent
from app.docvault.modules.documents.errors import (
    GENERIC_FAILURE,
    BlockchainError,
    ContentDecryptError,
    DocumentNotFound,
    InternalError,
    KeyUnsealError,
    OwnershipError,
    PersistenceError,
    RemoteStorageError,
    ValidationError,
)
from app.docvault.modules.documents.models import Document, DocumentVersion
from app.docvault.modules.documents.pipeline import NewDocument, NewVersion, Stage
from app.docvault.storage import StorageError

from conftest import ALICE_WALLET

REPORT_BYTES = b"%PDF-1.4\n\x00"  # 10 bytes


def _new_doc(owner_id, *, title="Report", data=REPORT_BYTES, filename="report.pdf", content_type="application/pdf"):
    return NewDocument(owner_id=owner_id, title=title, plaintext=data, filename=filename, content_type=content_type)


def _new_version(owner_id, document_id, data, *, filename="report.pdf"):
    return NewVersion(
        owner_id=owner_id, document_id=document_id, plaintext=data, filename=filename, content_type="application/pdf"
    )


def _versions(app, document_id):
    with session_scope(app) as s:
        return [
            (v.version_number, v.file_hash)
            for v in s.query(DocumentVersion)
            .filter(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version_number)
            .all()
        ]


def _audit_actions(app):
    with session_scope(app) as s:
        return [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id).all()]


def test_create_report_commits_version_one(app, custody, users, content_store, ledger):
    assert len(REPORT_BYTES) == 10
    attempt = custody.execute(_new_doc(users["alice"]))

    assert attempt.succeeded
    assert attempt.history == [
        Stage.VALIDATE,
        Stage.HASH,
        Stage.ENCRYPT,
        Stage.UPLOAD_CONTENT,
        Stage.WRITE_LEDGER,
        Stage.PERSIST,
        Stage.DONE,
    ]
    result = attempt.result
    assert result.version_number == 1
    assert result.ledger_document_id == 1
    assert result.tx_hash.startswith("0x") and len(result.tx_hash) == 66

    expected_hash = hashlib.sha256(REPORT_BYTES).hexdigest()
    with session_scope(app) as s:
        doc = s.get(Document, result.document_id)
        assert doc.title == "Report"
        assert doc.owner_user_id == users["alice"]
        assert doc.ledger_document_id == 1
        v = doc.versions[0]
        assert v.version_number == 1
        assert v.file_hash == expected_hash
        assert v.size_bytes == 10
        assert v.ledger_tx_hash == result.tx_hash
        assert len(v.wrapped_key) == 120

    # Only sealed bytes leave the process.
    stored = content_store.blobs[ledger.calls[0][3]]
    assert REPORT_BYTES not in stored
    assert ledger.calls == [("create", ALICE_WALLET, "Report", v.content_id, expected_hash)]
    assert content_store.puts[0]["metadata"]["title"] == "Report"

    content = custody.read_version(owner_id=users["alice"], document_id=result.document_id, version_number=1)
    assert content.plaintext == REPORT_BYTES
    assert content.file_hash == expected_hash
    assert "doc.create" in _audit_actions(app)


def test_append_then_failed_append_leaves_two_versions(app, custody, users, ledger):
    first = custody.commit(_new_doc(users["alice"]))
    second = custody.commit(_new_version(users["alice"], first.document_id, b"%PDF-1.4 second revision"))
    assert second.version_number == 2
    assert second.ledger_document_id == first.ledger_document_id
    assert ledger.calls[-1][0:2] == ("append", first.ledger_document_id)

    ledger.fail_append = LedgerError("execution reverted")
    attempt = custody.execute(_new_version(users["alice"], first.document_id, b"%PDF-1.4 third revision"))

    assert not attempt.succeeded
    assert attempt.history[-2:] == [Stage.WRITE_LEDGER, Stage.FAILED]
    assert isinstance(attempt.error, BlockchainError)
    assert attempt.error.stage is Stage.WRITE_LEDGER
    assert attempt.error.status_code == 502
    assert [n for n, _ in _versions(app, first.document_id)] == [1, 2]
    assert _audit_actions(app).count("doc.version") == 1


def test_reverted_receipt_is_a_blockchain_failure(app, custody, users, ledger):
    ledger.status = 0
    with pytest.raises(BlockchainError):
        custody.commit(_new_doc(users["alice"]))
    with session_scope(app) as s:
        assert s.query(Document).count() == 0


def test_failed_status_on_append_leaves_no_third_version(app, custody, users, ledger):
    first = custody.commit(_new_doc(users["alice"]))
    custody.commit(_new_version(users["alice"], first.document_id, b"%PDF-1.4 second revision"))

    ledger.status = 0
    with pytest.raises(BlockchainError) as exc:
        custody.commit(_new_version(users["alice"], first.document_id, b"%PDF-1.4 third revision"))
    assert exc.value.stage is Stage.WRITE_LEDGER
    assert [n for n, _ in _versions(app, first.document_id)] == [1, 2]

    ledger.status = 1
    third = custody.commit(_new_version(users["alice"], first.document_id, b"%PDF-1.4 third revision"))
    assert third.version_number == 3


def test_database_outage_during_validation_is_not_a_caller_error(custody, users, content_store, ledger, monkeypatch):
    def unavailable():
        raise OperationalError("SELECT users", {}, Exception("database is locked"))

    monkeypatch.setattr(custody.committer, "session_factory", unavailable)
    attempt = custody.execute(_new_doc(users["alice"]))

    err = attempt.error
    assert isinstance(err, InternalError)
    assert not isinstance(err, ValidationError)
    assert err.stage is Stage.VALIDATE
    assert err.status_code >= 500
    assert err.public_message == GENERIC_FAILURE
    assert isinstance(err.__cause__, OperationalError)
    assert content_store.puts == []
    assert ledger.calls == []


def test_cipher_failure_is_internal_not_tampering(custody, users, content_store, ledger, monkeypatch):
    def broken_encrypt(plaintext):
        raise ValueError("cipher backend unavailable")

    monkeypatch.setattr(custody.committer.cipher, "encrypt", broken_encrypt)
    attempt = custody.execute(_new_doc(users["alice"]))

    err = attempt.error
    assert isinstance(err, InternalError)
    assert err.stage is Stage.ENCRYPT
    assert err.status_code == 500
    assert err.public_message == GENERIC_FAILURE
    assert content_store.puts == []
    assert ledger.calls == []


def test_create_without_assigned_ledger_id_fails(app, custody, users, ledger):
    ledger.omit_document_id = True
    with pytest.raises(BlockchainError) as exc:
        custody.commit(_new_doc(users["alice"]))
    assert "document ID" in exc.value.message
    with session_scope(app) as s:
        assert s.query(Document).count() == 0


def test_upload_failure_never_reaches_the_ledger(app, custody, users, content_store, ledger):
    content_store.fail_with = StorageError("HTTP 503 from Pinata (pinFileToIPFS)")
    attempt = custody.execute(_new_doc(users["alice"]))

    assert isinstance(attempt.error, RemoteStorageError)
    assert attempt.error.stage is Stage.UPLOAD_CONTENT
    assert attempt.error.public_message == "Operation failed, try again."
    assert ledger.calls == []
    with session_scope(app) as s:
        assert s.query(Document).count() == 0


@pytest.mark.parametrize(
    "kwargs,message",
    [
        ({"title": "   "}, "Document title is required"),
        ({"data": None}, "PDF file is required"),
        ({"data": b""}, "Uploaded file is empty"),
        ({"data": b"x" * (1024 * 1024 + 1)}, "File size exceeds 1MB limit"),
        ({"content_type": "image/png"}, "File must be a PDF"),
    ],
)
def test_validation_rejects_before_any_external_call(custody, users, content_store, ledger, kwargs, message):
    attempt = custody.execute(_new_doc(users["alice"], **kwargs))
    assert isinstance(attempt.error, ValidationError)
    assert attempt.error.message == message
    assert attempt.history == [Stage.VALIDATE, Stage.FAILED]
    assert content_store.puts == []
    assert ledger.calls == []


def test_create_requires_wallet_address(custody, users, ledger):
    with pytest.raises(ValidationError, match="wallet address"):
        custody.commit(_new_doc(users["nowallet"]))
    assert ledger.calls == []


def test_pdf_content_type_with_parameters_is_accepted(custody, users):
    result = custody.commit(_new_doc(users["alice"], content_type="application/pdf; charset=binary"))
    assert result.version_number == 1


def test_append_to_someone_elses_document_is_forbidden(app, custody, users, ledger):
    doc = custody.commit(_new_doc(users["alice"]))
    calls_before = len(ledger.calls)

    with pytest.raises(OwnershipError) as exc:
        custody.commit(_new_version(users["bob"], doc.document_id, b"%PDF-1.4 hijack"))
    assert exc.value.status_code == 403
    with pytest.raises(DocumentNotFound):
        custody.commit(_new_version(users["alice"], 9999, b"%PDF-1.4 nothing"))
    assert len(ledger.calls) == calls_before
    with pytest.raises(OwnershipError):
        custody.read_version(owner_id=users["bob"], document_id=doc.document_id, version_number=1)


def test_local_failure_after_ledger_confirmation_is_reported(app, custody, users, ledger):
    custody.commit(_new_doc(users["alice"]))
    # Force the ledger to hand out an id that already exists locally.
    ledger.next_document_id = 1

    attempt = custody.execute(_new_doc(users["alice"], title="Duplicate"))

    err = attempt.error
    assert isinstance(err, PersistenceError)
    assert err.stage is Stage.PERSIST
    assert err.tx_hash is not None and err.tx_hash.startswith("0x")
    assert err.ledger_document_id == 1
    assert err.tx_hash in str(err)
    assert err.public_message == "Operation failed, try again."

    with session_scope(app) as s:
        assert s.query(Document).count() == 1
        assert s.query(DocumentVersion).count() == 1
        ev = s.query(AuditEvent).filter(AuditEvent.action == "ledger.unreconciled").one()
        meta = json.loads(ev.metadata_json)
        assert meta["tx_hash"] == err.tx_hash
        assert meta["ledger_document_id"] == 1
        assert meta["kind"] == "create"
        assert meta["content_id"] == attempt.content_id


def test_read_rejects_tampered_content(app, custody, users, content_store):
    doc = custody.commit(_new_doc(users["alice"]))
    with session_scope(app) as s:
        v = s.query(DocumentVersion).filter(DocumentVersion.document_id == doc.document_id).one()
        cid = v.content_id
    sealed = bytearray(content_store.blobs[cid])
    sealed[-1] ^= 0x01
    content_store.blobs[cid] = bytes(sealed)

    with pytest.raises(ContentDecryptError):
        custody.read_version(owner_id=users["alice"], document_id=doc.document_id, version_number=1)


def test_read_rejects_tampered_wrapped_key(app, custody, users):
    doc = custody.commit(_new_doc(users["alice"]))
    with session_scope(app) as s:
        v = s.query(DocumentVersion).filter(DocumentVersion.document_id == doc.document_id).one()
        raw = bytearray(bytes.fromhex(v.wrapped_key))
        raw[20] ^= 0x80
        v.wrapped_key = bytes(raw).hex()

    with pytest.raises(KeyUnsealError):
        custody.read_version(owner_id=users["alice"], document_id=doc.document_id, version_number=1)


def test_read_missing_content_and_missing_version(app, custody, users, content_store):
    doc = custody.commit(_new_doc(users["alice"]))
    with pytest.raises(DocumentNotFound, match="Version not found"):
        custody.read_version(owner_id=users["alice"], document_id=doc.document_id, version_number=2)

    content_store.blobs.clear()
    with pytest.raises(RemoteStorageError) as exc:
        custody.read_version(owner_id=users["alice"], document_id=doc.document_id, version_number=1)
    assert exc.value.stage == "fetch_content"
