import hashlib
import threading
import uuid

import pytest
from werkzeug.security import generate_password_hash

from app.docvault import create_app
from app.docvault.db import session_scope
from app.docvault.ledger import LedgerError, LedgerReceipt
from app.docvault.models import Base, User
from app.docvault.modules.documents.crypto import EnvelopeCipher
from app.docvault.modules.documents.custody import EXTENSION_KEY, DocumentCustody
from app.docvault.storage import StorageError

MASTER_KEY_HEX = "00112233445566778899aabbccddeeff" * 2
ALICE_WALLET = "0x" + "a1" * 20
BOB_WALLET = "0x" + "b2" * 20


class FakeContentStore:
    """In-memory content store. Ids are derived from the bytes, like a CID."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.puts: list[dict] = []
        self.fail_with: Exception | None = None
        self._lock = threading.Lock()

    def put(self, data, *, name=None, metadata=None):
        if self.fail_with is not None:
            raise self.fail_with
        cid = "Qm" + hashlib.sha256(data).hexdigest()[:44]
        with self._lock:
            self.blobs[cid] = bytes(data)
            self.puts.append({"cid": cid, "name": name, "metadata": dict(metadata or {})})
        return cid

    def get(self, content_id):
        try:
            return self.blobs[content_id]
        except KeyError as e:
            raise StorageError(f"Object not found: {content_id}") from e


class FakeLedger:
    """Records calls; assigns sequential ledger document ids like the contract counter."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.next_document_id = 1
        self.fail_append: Exception | None = None
        self.fail_create: Exception | None = None
        self.status = 1
        self.omit_document_id = False
        self._lock = threading.Lock()

    def _tx_hash(self):
        return "0x" + uuid.uuid4().hex + uuid.uuid4().hex

    def create_record(self, owner, title, content_id, file_hash):
        with self._lock:
            self.calls.append(("create", owner, title, content_id, file_hash))
            if self.fail_create is not None:
                raise self.fail_create
            document_id = None
            if self.status == 1 and not self.omit_document_id:
                document_id = self.next_document_id
                self.next_document_id += 1
        return LedgerReceipt(tx_hash=self._tx_hash(), status=self.status, block_number=1, document_id=document_id)

    def append_record(self, ledger_document_id, content_id, file_hash):
        with self._lock:
            self.calls.append(("append", ledger_document_id, content_id, file_hash))
            if self.fail_append is not None:
                raise self.fail_append
        return LedgerReceipt(
            tx_hash=self._tx_hash(), status=self.status, block_number=1, document_id=ledger_document_id
        )

    def check_connection(self):
        return {"chain_id": 31337, "document_counter": self.next_document_id - 1}


@pytest.fixture()
def content_store():
    return FakeContentStore()


@pytest.fixture()
def ledger():
    return FakeLedger()


@pytest.fixture()
def app(tmp_path, monkeypatch, content_store, ledger):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("CONTENT_STORE_BACKEND", "storage")
    monkeypatch.setenv("FILE_ENCRYPTION_MASTER_KEY", MASTER_KEY_HEX)
    monkeypatch.setenv("MAX_UPLOAD_BYTES", str(1024 * 1024))
    for k in (
        "S3_ENDPOINT",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "PINATA_JWT",
        "PINATA_GATEWAY",
        "LEDGER_RPC_URL",
        "LEDGER_PRIVATE_KEY",
        "LEDGER_CONTRACT_ADDRESS",
        "LEDGER_CHECK_ON_START",
    ):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    app.extensions[EXTENSION_KEY] = DocumentCustody(
        cipher=EnvelopeCipher.from_hex(MASTER_KEY_HEX),
        content_store=content_store,
        ledger=ledger,
        session_factory=app.extensions["sqlalchemy_sessionmaker"],
        max_upload_bytes=app.config["MAX_UPLOAD_BYTES"],
    )

    with session_scope(app) as s:
        s.add_all(
            [
                User(
                    email="alice@example.com",
                    password_hash=generate_password_hash("alice-pw-123"),
                    wallet_address=ALICE_WALLET,
                    is_active=True,
                ),
                User(
                    email="bob@example.com",
                    password_hash=generate_password_hash("bob-pw-1234"),
                    wallet_address=BOB_WALLET,
                    is_active=True,
                ),
                User(
                    email="nowallet@example.com",
                    password_hash=generate_password_hash("nowallet-pw"),
                    is_active=True,
                ),
            ]
        )

    yield app
    engine.dispose()


@pytest.fixture()
def users(app):
    with session_scope(app) as s:
        return {u.email.split("@")[0]: u.id for u in s.query(User).all()}


@pytest.fixture()
def custody(app) -> DocumentCustody:
    return app.extensions[EXTENSION_KEY]
