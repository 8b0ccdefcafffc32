from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import Flask
from sqlalchemy.orm import sessionmaker

from app.docvault.content_store import ContentStore, content_store_from_config
from app.docvault.ledger import Ledger, ledger_from_config
from app.docvault.modules.documents.crypto import EnvelopeCipher
from app.docvault.modules.documents.errors import (
    ContentDecryptError,
    CryptoError,
    DocumentNotFound,
    RemoteStorageError,
)
from app.docvault.modules.documents.pipeline import CommitAttempt, CommitRequest, CommitResult, VersionCommitter
from app.docvault.modules.documents.service import file_digest, get_owned_document, get_version
from app.docvault.storage import StorageError

logger = logging.getLogger(__name__)

EXTENSION_KEY = "docvault.custody"


@dataclass(frozen=True)
class VersionContent:
    document_id: int
    version_number: int
    filename: str
    content_type: str
    file_hash: str
    plaintext: bytes


class DocumentCustody:
    """
    Process-wide entry point for committing and reading document versions.
    Built once per app; the cipher and clients it holds are shared read-only.
    """

    def __init__(
        self,
        *,
        cipher: EnvelopeCipher,
        content_store: ContentStore,
        ledger: Ledger,
        session_factory: sessionmaker,
        max_upload_bytes: int,
    ) -> None:
        self.cipher = cipher
        self.content_store = content_store
        self.ledger = ledger
        self.session_factory = session_factory
        self.committer = VersionCommitter(
            cipher=cipher,
            content_store=content_store,
            ledger=ledger,
            session_factory=session_factory,
            max_upload_bytes=max_upload_bytes,
        )

    def commit(self, request: CommitRequest) -> CommitResult:
        return self.committer.commit(request)

    def execute(self, request: CommitRequest) -> CommitAttempt:
        return self.committer.execute(request)

    def read_version(self, *, owner_id: int, document_id: int, version_number: int) -> VersionContent:
        with self.session_factory() as s:
            get_owned_document(s, document_id, owner_id)
            v = get_version(s, document_id, version_number)
            if v is None:
                raise DocumentNotFound("Version not found")
            content_id = v.content_id
            wrapped_key = v.wrapped_key
            file_hash = v.file_hash
            filename = v.filename
            content_type = v.content_type

        logger.info("Retrieving version %s of document %s (cid=%s)", version_number, document_id, content_id)
        try:
            sealed = self.content_store.get(content_id)
        except StorageError as e:
            raise RemoteStorageError("Failed to retrieve document from storage", stage="fetch_content") from e

        try:
            plaintext = self.cipher.decrypt(sealed, wrapped_key)
        except CryptoError as e:
            e.stage = e.stage or "decrypt"
            raise
        if file_digest(plaintext) != file_hash:
            raise ContentDecryptError("Decrypted content does not match the recorded file hash", stage="verify")

        return VersionContent(
            document_id=document_id,
            version_number=version_number,
            filename=filename,
            content_type=content_type,
            file_hash=file_hash,
            plaintext=plaintext,
        )


def custody_from_app(app: Flask) -> DocumentCustody:
    return DocumentCustody(
        cipher=EnvelopeCipher.from_hex(app.config.get("FILE_ENCRYPTION_MASTER_KEY")),
        content_store=content_store_from_config(app.config),
        ledger=ledger_from_config(app.config),
        session_factory=app.extensions["sqlalchemy_sessionmaker"],
        max_upload_bytes=int(app.config.get("MAX_UPLOAD_BYTES") or 20 * 1024 * 1024),
    )
