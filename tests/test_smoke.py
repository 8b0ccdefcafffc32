import pytest

from app.docvault import create_app
from app.docvault.config import load_config
from app.docvault.db import session_scope
from app.docvault.models import AuditEvent, User
from app.docvault.modules.documents.crypto import MasterKeyError


@pytest.fixture()
def client(app):
    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").data == b"ok"


def test_register_login_logout(client, app):
    assert client.get("/auth/me").status_code == 401

    r = client.post(
        "/auth/register",
        json={"email": "New@Example.com", "password": "long-enough", "wallet_address": "0x" + "C3" * 20},
    )
    assert r.status_code == 201
    assert r.json["user"]["email"] == "new@example.com"
    assert r.json["user"]["walletAddress"] == "0x" + "c3" * 20

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "new@example.com"

    assert client.post("/auth/logout").json == {"ok": True}
    assert client.get("/auth/me").status_code == 401

    r = client.post("/auth/login", data={"email": "new@example.com", "password": "wrong-password"})
    assert r.status_code == 401
    r = client.post("/auth/login", data={"email": "new@example.com", "password": "long-enough"})
    assert r.status_code == 200

    with session_scope(app) as s:
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id).all()]
    assert actions == ["auth.register", "auth.logout", "auth.login_failed", "auth.login"]


@pytest.mark.parametrize(
    "payload",
    [
        {"email": "not-an-email", "password": "long-enough", "wallet_address": "0x" + "11" * 20},
        {"email": "short@example.com", "password": "short", "wallet_address": "0x" + "11" * 20},
        {"email": "wallet@example.com", "password": "long-enough", "wallet_address": "0x1234"},
    ],
)
def test_register_validation(client, payload):
    assert client.post("/auth/register", json=payload).status_code == 400


def test_register_duplicate_email_conflicts(client, app):
    r = client.post(
        "/auth/register",
        json={"email": "alice@example.com", "password": "long-enough", "wallet_address": "0x" + "44" * 20},
    )
    assert r.status_code == 409
    with session_scope(app) as s:
        assert s.query(User).filter(User.email == "alice@example.com").count() == 1


def test_bad_master_key_stops_startup(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("FILE_ENCRYPTION_MASTER_KEY", "abc123")
    with pytest.raises(MasterKeyError, match="64 hexadecimal"):
        create_app()

    monkeypatch.delenv("FILE_ENCRYPTION_MASTER_KEY")
    with pytest.raises(MasterKeyError, match="not set"):
        create_app()


def test_production_requires_postgres(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-strong-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("FILE_ENCRYPTION_MASTER_KEY", "ab" * 32)
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()


def test_config_defaults_and_integer_parsing(monkeypatch):
    for k in ("CONTENT_STORE_BACKEND", "LEDGER_CONFIRM_TIMEOUT_SECONDS", "MAX_UPLOAD_BYTES", "LOG_LEVEL"):
        monkeypatch.delenv(k, raising=False)
    cfg = load_config()
    assert cfg["CONTENT_STORE_BACKEND"] == "storage"
    assert cfg["LEDGER_CONFIRM_TIMEOUT_SECONDS"] == 120
    assert cfg["MAX_UPLOAD_BYTES"] == 20 * 1024 * 1024
    assert cfg["LOG_LEVEL"] == "INFO"
    assert cfg["MAX_CONTENT_LENGTH"] > cfg["MAX_UPLOAD_BYTES"]

    monkeypatch.setenv("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024))
    cfg = load_config()
    assert cfg["MAX_UPLOAD_BYTES"] == 50 * 1024 * 1024
    assert cfg["MAX_CONTENT_LENGTH"] > 50 * 1024 * 1024

    monkeypatch.setenv("MAX_UPLOAD_BYTES", "lots")
    with pytest.raises(RuntimeError, match="MAX_UPLOAD_BYTES"):
        load_config()
