"""
Version commit pipeline.

    VALIDATE -> HASH -> ENCRYPT -> UPLOAD_CONTENT -> WRITE_LEDGER -> PERSIST -> DONE
                                      any stage failure -> FAILED

Stages run strictly in order; each consumes what the previous one left on the
CommitAttempt. Only PERSIST touches the local database for writes, and it runs
after the ledger has confirmed. Nothing is retried here. Content stays pinned
after a later failure; the wrapped key is only ever stored by PERSIST. A ledger
write is never repeated.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.docvault.audit import record_event
from app.docvault.content_store import ContentStore
from app.docvault.db import transaction_scope
from app.docvault.ledger import Ledger, LedgerReceipt
from app.docvault.models import User
from app.docvault.modules.documents.crypto import EnvelopeCipher, SealedFile
from app.docvault.modules.documents.errors import (
    BlockchainError,
    CustodyError,
    InternalError,
    PersistenceError,
    RemoteStorageError,
    ValidationError,
)
from app.docvault.modules.documents.models import Document, DocumentVersion
from app.docvault.modules.documents.service import (
    ALLOWED_CONTENT_TYPES,
    file_digest_and_bytes,
    get_owned_document,
    next_version_number,
    normalize_title,
    sanitize_upload_filename,
)

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    VALIDATE = "validate"
    HASH = "hash"
    ENCRYPT = "encrypt"
    UPLOAD_CONTENT = "upload_content"
    WRITE_LEDGER = "write_ledger"
    PERSIST = "persist"
    DONE = "done"
    FAILED = "failed"


NEXT_STAGE: dict[Stage, Stage] = {
    Stage.VALIDATE: Stage.HASH,
    Stage.HASH: Stage.ENCRYPT,
    Stage.ENCRYPT: Stage.UPLOAD_CONTENT,
    Stage.UPLOAD_CONTENT: Stage.WRITE_LEDGER,
    Stage.WRITE_LEDGER: Stage.PERSIST,
    Stage.PERSIST: Stage.DONE,
}

# Failure kind used when a stage raises something that is not already a CustodyError.
# Deliberate rejections arrive as CustodyError subclasses and pass through unchanged.
FAILURE_KIND: dict[Stage, type[CustodyError]] = {
    Stage.VALIDATE: InternalError,
    Stage.HASH: InternalError,
    Stage.ENCRYPT: InternalError,
    Stage.UPLOAD_CONTENT: RemoteStorageError,
    Stage.WRITE_LEDGER: BlockchainError,
    Stage.PERSIST: PersistenceError,
}

TERMINAL_STAGES = (Stage.DONE, Stage.FAILED)


@dataclass(frozen=True)
class NewDocument:
    owner_id: int
    title: str | None
    plaintext: bytes | None
    filename: str
    content_type: str = "application/pdf"


@dataclass(frozen=True)
class NewVersion:
    owner_id: int
    document_id: int
    plaintext: bytes | None
    filename: str
    content_type: str = "application/pdf"


CommitRequest = NewDocument | NewVersion


@dataclass(frozen=True)
class CommitResult:
    document_id: int
    ledger_document_id: int
    version_number: int
    tx_hash: str

    def to_dict(self) -> dict:
        return {
            "documentId": self.document_id,
            "ledgerDocumentId": self.ledger_document_id,
            "version": self.version_number,
            "txHash": self.tx_hash,
        }


@dataclass
class CommitAttempt:
    request: CommitRequest
    stage: Stage = Stage.VALIDATE
    history: list[Stage] = field(default_factory=list)

    # VALIDATE
    title: str | None = None
    filename: str | None = None
    owner_wallet: str | None = None
    ledger_document_id: int | None = None
    # HASH
    file_hash: str | None = None
    size_bytes: int = 0
    # ENCRYPT
    sealed: SealedFile | None = None
    # UPLOAD_CONTENT
    content_id: str | None = None
    # WRITE_LEDGER
    receipt: LedgerReceipt | None = None
    # PERSIST / DONE
    result: CommitResult | None = None
    error: CustodyError | None = None

    @property
    def creates_document(self) -> bool:
        return isinstance(self.request, NewDocument)

    @property
    def succeeded(self) -> bool:
        return self.stage is Stage.DONE


class VersionCommitter:
    def __init__(
        self,
        *,
        cipher: EnvelopeCipher,
        content_store: ContentStore,
        ledger: Ledger,
        session_factory: sessionmaker,
        max_upload_bytes: int,
        allowed_content_types: tuple[str, ...] = ALLOWED_CONTENT_TYPES,
    ) -> None:
        self.cipher = cipher
        self.content_store = content_store
        self.ledger = ledger
        self.session_factory = session_factory
        self.max_upload_bytes = max_upload_bytes
        self.allowed_content_types = allowed_content_types
        self._handlers: dict[Stage, Callable[[CommitAttempt], None]] = {
            Stage.VALIDATE: self._validate,
            Stage.HASH: self._hash,
            Stage.ENCRYPT: self._encrypt,
            Stage.UPLOAD_CONTENT: self._upload_content,
            Stage.WRITE_LEDGER: self._write_ledger,
            Stage.PERSIST: self._persist,
        }

    def commit(self, request: CommitRequest) -> CommitResult:
        attempt = self.execute(request)
        if attempt.error is not None:
            raise attempt.error
        assert attempt.result is not None
        return attempt.result

    def execute(self, request: CommitRequest) -> CommitAttempt:
        attempt = CommitAttempt(request=request)
        while attempt.stage not in TERMINAL_STAGES:
            stage = attempt.stage
            attempt.history.append(stage)
            try:
                self._handlers[stage](attempt)
            except Exception as e:
                attempt.error = self._wrap_failure(stage, e, attempt)
                attempt.stage = Stage.FAILED
            else:
                attempt.stage = NEXT_STAGE[stage]
        attempt.history.append(attempt.stage)

        if attempt.error is not None:
            self._report_failure(attempt)
        return attempt

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _validate(self, attempt: CommitAttempt) -> None:
        req = attempt.request
        if attempt.creates_document:
            title = normalize_title(req.title)
            if not title:
                raise ValidationError("Document title is required")
            attempt.title = title

        if req.plaintext is None:
            raise ValidationError("PDF file is required")
        if len(req.plaintext) == 0:
            raise ValidationError("Uploaded file is empty")
        if len(req.plaintext) > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes // (1024 * 1024)
            raise ValidationError(f"File size exceeds {limit_mb}MB limit")
        content_type = (req.content_type or "").split(";")[0].strip().lower()
        if content_type not in self.allowed_content_types:
            raise ValidationError("File must be a PDF")
        attempt.filename = sanitize_upload_filename(req.filename)

        with self.session_factory() as s:
            user = s.get(User, req.owner_id)
            if user is None or not user.is_active:
                raise ValidationError("User not found")
            if attempt.creates_document:
                if not user.wallet_address:
                    raise ValidationError("User must have a wallet address to create documents")
                attempt.owner_wallet = user.wallet_address
            else:
                doc = get_owned_document(s, req.document_id, req.owner_id)
                attempt.title = doc.title
                attempt.ledger_document_id = doc.ledger_document_id

    def _hash(self, attempt: CommitAttempt) -> None:
        attempt.file_hash, attempt.size_bytes = file_digest_and_bytes(attempt.request.plaintext)
        logger.debug("File hash: %s (%s bytes)", attempt.file_hash, attempt.size_bytes)

    def _encrypt(self, attempt: CommitAttempt) -> None:
        attempt.sealed = self.cipher.encrypt(attempt.request.plaintext)

    def _upload_content(self, attempt: CommitAttempt) -> None:
        req = attempt.request
        metadata: dict[str, object] = {"userId": req.owner_id, "title": attempt.title}
        if not attempt.creates_document:
            metadata["documentId"] = req.document_id
        attempt.content_id = self.content_store.put(
            attempt.sealed.sealed_content,
            name=attempt.filename,
            metadata=metadata,
        )
        logger.info("Sealed content stored (cid=%s)", attempt.content_id)

    def _write_ledger(self, attempt: CommitAttempt) -> None:
        if attempt.creates_document:
            receipt = self.ledger.create_record(
                attempt.owner_wallet, attempt.title, attempt.content_id, attempt.file_hash
            )
        else:
            receipt = self.ledger.append_record(
                attempt.ledger_document_id, attempt.content_id, attempt.file_hash
            )
        if not receipt.succeeded:
            raise BlockchainError(f"Transaction {receipt.tx_hash} failed (status={receipt.status})")
        if attempt.creates_document:
            if not receipt.document_id:
                raise BlockchainError(
                    f"Failed to extract document ID from blockchain transaction {receipt.tx_hash}"
                )
            attempt.ledger_document_id = int(receipt.document_id)
        attempt.receipt = receipt
        logger.info(
            "Ledger confirmed tx=%s ledger_document_id=%s", receipt.tx_hash, attempt.ledger_document_id
        )

    def _persist(self, attempt: CommitAttempt) -> None:
        req = attempt.request
        with transaction_scope(self.session_factory) as s:
            if attempt.creates_document:
                doc = Document(
                    owner_user_id=req.owner_id,
                    ledger_document_id=attempt.ledger_document_id,
                    title=attempt.title,
                )
                s.add(doc)
                s.flush()
                version_number = 1
            else:
                # Row lock on the parent serializes version assignment per document.
                doc = get_owned_document(s, req.document_id, req.owner_id, for_update=True)
                version_number = next_version_number(s, doc.id)

            v = DocumentVersion(
                document_id=doc.id,
                version_number=version_number,
                content_id=attempt.content_id,
                file_hash=attempt.file_hash,
                ledger_tx_hash=attempt.receipt.tx_hash,
                wrapped_key=attempt.sealed.wrapped_key,
                filename=attempt.filename,
                content_type=req.content_type,
                size_bytes=attempt.size_bytes,
            )
            s.add(v)
            s.flush()

            record_event(
                s,
                actor=s.get(User, req.owner_id),
                action="doc.create" if attempt.creates_document else "doc.version",
                entity_type="Document",
                entity_id=str(doc.id),
                metadata={
                    "ledger_document_id": attempt.ledger_document_id,
                    "version": version_number,
                    "tx_hash": attempt.receipt.tx_hash,
                    "content_id": attempt.content_id,
                    "file_hash": attempt.file_hash,
                },
            )
            document_id = doc.id

        attempt.result = CommitResult(
            document_id=document_id,
            ledger_document_id=attempt.ledger_document_id,
            version_number=version_number,
            tx_hash=attempt.receipt.tx_hash,
        )

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _wrap_failure(self, stage: Stage, exc: Exception, attempt: CommitAttempt) -> CustodyError:
        if stage is Stage.PERSIST and not isinstance(exc, PersistenceError):
            err: CustodyError = PersistenceError(
                f"Local commit failed after ledger confirmation: {exc}",
                stage=stage,
                tx_hash=attempt.receipt.tx_hash if attempt.receipt else None,
                ledger_document_id=attempt.ledger_document_id,
            )
            err.__cause__ = exc
            return err
        if isinstance(exc, CustodyError):
            if exc.stage is None:
                exc.stage = stage
            return exc
        kind = FAILURE_KIND[stage]
        err = kind(str(exc) or exc.__class__.__name__, stage=stage)
        err.__cause__ = exc
        return err

    def _report_failure(self, attempt: CommitAttempt) -> None:
        err = attempt.error
        failed_at = err.stage
        if isinstance(err, PersistenceError):
            logger.error(
                "LEDGER/LOCAL DIVERGENCE: ledger tx %s (ledger_document_id=%s, cid=%s) has no local record: %s",
                err.tx_hash,
                err.ledger_document_id,
                attempt.content_id,
                err.__cause__ or err,
            )
            self._record_unreconciled(attempt, err)
        elif isinstance(err, ValidationError):
            logger.info("Commit rejected at %s: %s", failed_at, err.message)
        elif isinstance(err, InternalError):
            logger.error("Commit aborted at %s by an internal failure: %s", failed_at, err, exc_info=err.__cause__)
        else:
            logger.warning("Commit failed at %s: %s", failed_at, err, exc_info=err.__cause__)

        if attempt.content_id and not isinstance(err, PersistenceError):
            logger.info("Content %s left pinned after failed commit", attempt.content_id)

    def _record_unreconciled(self, attempt: CommitAttempt, err: PersistenceError) -> None:
        req = attempt.request
        try:
            with transaction_scope(self.session_factory) as s:
                record_event(
                    s,
                    actor=s.get(User, req.owner_id),
                    action="ledger.unreconciled",
                    entity_type="Document",
                    entity_id=None if attempt.creates_document else str(req.document_id),
                    reason=str(err.__cause__ or err)[:512],
                    metadata={
                        "tx_hash": err.tx_hash,
                        "ledger_document_id": err.ledger_document_id,
                        "content_id": attempt.content_id,
                        "file_hash": attempt.file_hash,
                        "title": attempt.title,
                        "kind": "create" if attempt.creates_document else "version",
                    },
                )
        except SQLAlchemyError:
            logger.exception(
                "Could not record ledger.unreconciled event for tx %s; reconcile from logs", err.tx_hash
            )
