import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    content_store_backend: str
    pinata_jwt: str
    pinata_gateway: str
    pinata_api_url: str
    content_timeout_seconds: int

    ledger_rpc_url: str
    ledger_private_key: str
    ledger_contract_address: str
    ledger_confirm_timeout_seconds: int

    file_encryption_master_key: str
    max_upload_bytes: int


_MULTIPART_OVERHEAD_BYTES = 1024 * 1024


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from e


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///docvault.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        content_store_backend=_getenv("CONTENT_STORE_BACKEND", "storage"),
        pinata_jwt=_getenv("PINATA_JWT", ""),
        pinata_gateway=_getenv("PINATA_GATEWAY", ""),
        pinata_api_url=_getenv("PINATA_API_URL", "https://api.pinata.cloud"),
        content_timeout_seconds=_getenv_int("CONTENT_TIMEOUT_SECONDS", 60),
        ledger_rpc_url=_getenv("LEDGER_RPC_URL", ""),
        ledger_private_key=_getenv("LEDGER_PRIVATE_KEY", ""),
        ledger_contract_address=_getenv("LEDGER_CONTRACT_ADDRESS", ""),
        ledger_confirm_timeout_seconds=_getenv_int("LEDGER_CONFIRM_TIMEOUT_SECONDS", 120),
        file_encryption_master_key=_getenv("FILE_ENCRYPTION_MASTER_KEY", ""),
        max_upload_bytes=_getenv_int("MAX_UPLOAD_BYTES", 20 * 1024 * 1024),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "CONTENT_STORE_BACKEND": s.content_store_backend,
        "PINATA_JWT": s.pinata_jwt,
        "PINATA_GATEWAY": s.pinata_gateway,
        "PINATA_API_URL": s.pinata_api_url,
        "CONTENT_TIMEOUT_SECONDS": s.content_timeout_seconds,
        "LEDGER_RPC_URL": s.ledger_rpc_url,
        "LEDGER_PRIVATE_KEY": s.ledger_private_key,
        "LEDGER_CONTRACT_ADDRESS": s.ledger_contract_address,
        "LEDGER_CONFIRM_TIMEOUT_SECONDS": s.ledger_confirm_timeout_seconds,
        "FILE_ENCRYPTION_MASTER_KEY": s.file_encryption_master_key,
        "MAX_UPLOAD_BYTES": s.max_upload_bytes,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # request body limit: the per-file limit plus room for multipart framing and form fields
        "MAX_CONTENT_LENGTH": s.max_upload_bytes + _MULTIPART_OVERHEAD_BYTES,
    }
