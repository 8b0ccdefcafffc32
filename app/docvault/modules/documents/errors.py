"""
Failure kinds for the custody pipeline.

Every error carries the pipeline stage it came from. The HTTP layer maps the
kind to a status code; validation and crypto failures expose their reason,
remote and persistence failures expose only a generic message.
"""

from __future__ import annotations

GENERIC_FAILURE = "Operation failed, try again."


class CustodyError(Exception):
    status_code = 500

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    @property
    def public_message(self) -> str:
        return GENERIC_FAILURE

    def __str__(self) -> str:
        stage = getattr(self.stage, "value", self.stage)
        return f"[{stage}] {self.message}" if stage else self.message


class ValidationError(CustodyError):
    """Caller input problem. Nothing external happened; safe to retry after correction."""

    status_code = 400

    @property
    def public_message(self) -> str:
        return self.message


class DocumentNotFound(ValidationError):
    status_code = 404


class OwnershipError(ValidationError):
    status_code = 403


class CryptoError(CustodyError):
    """Authentication failure on sealed data. Indicates corruption or tampering; never retried."""

    status_code = 422

    @property
    def public_message(self) -> str:
        return self.message


class KeyUnsealError(CryptoError):
    pass


class ContentDecryptError(CryptoError):
    pass


class InternalError(CustodyError):
    """Unexpected failure inside the service (database unavailable, cipher backend error)."""

    status_code = 500


class RemoteStorageError(CustodyError):
    status_code = 502


class BlockchainError(CustodyError):
    """
    Ledger rejection or confirmation timeout. Not retried automatically:
    ledger creation is not idempotent and a blind retry can duplicate the record.
    """

    status_code = 502


class PersistenceError(CustodyError):
    """
    Local commit failed after the ledger write succeeded. The ledger now holds a
    record with no local counterpart; the identifiers below are needed to reconcile it.
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        tx_hash: str | None = None,
        ledger_document_id: int | None = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.tx_hash = tx_hash
        self.ledger_document_id = ledger_document_id

    def __str__(self) -> str:
        return f"{super().__str__()} (tx={self.tx_hash} ledger_document_id={self.ledger_document_id})"
