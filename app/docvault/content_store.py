"""
Content-addressed storage for sealed document bytes.

Two backends:
- PinataContentStore pins to IPFS through the Pinata API and reads back via a gateway.
- StorageContentStore keeps blobs in the platform Storage (local disk or S3),
  keyed by the SHA-256 of the sealed bytes. Useful for development and single-node setups.
"""

from __future__ import annotations

import hashlib
import json
import re
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import dataclass
from typing import Any

from app.docvault.storage import Storage, StorageError, storage_from_config

_STORAGE_ID_RE = re.compile(r"^sha256-[0-9a-f]{64}$")


class ContentStore:
    def put(self, data: bytes, *, name: str | None = None, metadata: dict[str, Any] | None = None) -> str:
        raise NotImplementedError

    def get(self, content_id: str) -> bytes:
        raise NotImplementedError


@dataclass(frozen=True)
class StorageContentStore(ContentStore):
    storage: Storage
    prefix: str = "content"

    def _key(self, content_id: str) -> str:
        return f"{self.prefix}/{content_id}"

    def put(self, data: bytes, *, name: str | None = None, metadata: dict[str, Any] | None = None) -> str:
        content_id = "sha256-" + hashlib.sha256(data).hexdigest()
        key = self._key(content_id)
        if not self.storage.exists(key):
            self.storage.put_bytes(key, data, content_type="application/octet-stream")
        return content_id

    def get(self, content_id: str) -> bytes:
        if not _STORAGE_ID_RE.fullmatch(content_id or ""):
            raise StorageError(f"Malformed content id: {content_id!r}")
        return self.storage.get_bytes(self._key(content_id))


@dataclass(frozen=True)
class PinataContentStore(ContentStore):
    jwt: str
    gateway: str
    api_url: str = "https://api.pinata.cloud"
    timeout_seconds: int = 60

    def _auth_header(self) -> str:
        return f"Bearer {self.jwt}"

    def _require_config(self) -> None:
        if not self.jwt or not self.gateway:
            raise StorageError("Pinata is not configured. Set PINATA_JWT and PINATA_GATEWAY.")

    def _open(self, req: urllib.request.Request, what: str) -> bytes:
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                return resp.read()
        except urllib.error.HTTPError as e:
            try:
                body = e.read().decode("utf-8", errors="ignore")
            except OSError:
                body = ""
            raise StorageError(f"HTTP {e.code} from Pinata ({what}): {body[:300]}") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise StorageError(f"Pinata request failed ({what}): {e}") from e

    def put(self, data: bytes, *, name: str | None = None, metadata: dict[str, Any] | None = None) -> str:
        self._require_config()
        filename = name or "document.pdf.enc"
        pin_meta = {
            "name": filename,
            "keyvalues": {k: str(v) for k, v in (metadata or {}).items()},
        }
        boundary = uuid.uuid4().hex
        body = _multipart_body(
            boundary,
            files=[("file", filename, "application/octet-stream", data)],
            fields=[("pinataMetadata", json.dumps(pin_meta))],
        )
        req = urllib.request.Request(
            self.api_url.rstrip("/") + "/pinning/pinFileToIPFS",
            data=body,
            method="POST",
        )
        req.add_header("Authorization", self._auth_header())
        req.add_header("Content-Type", f"multipart/form-data; boundary={boundary}")
        req.add_header("Accept", "application/json")

        raw = self._open(req, "pinFileToIPFS")
        try:
            payload = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise StorageError("Invalid JSON from Pinata (pinFileToIPFS)") from e
        cid = payload.get("IpfsHash") if isinstance(payload, dict) else None
        if not cid:
            raise StorageError("Pinata response did not include IpfsHash")
        return str(cid)

    def get(self, content_id: str) -> bytes:
        self._require_config()
        if not content_id:
            raise StorageError("Content id is required")
        url = f"https://{self.gateway}/ipfs/{urllib.parse.quote(content_id)}"
        req = urllib.request.Request(url, method="GET")
        return self._open(req, "gateway fetch")


def _multipart_body(
    boundary: str,
    *,
    files: list[tuple[str, str, str, bytes]],
    fields: list[tuple[str, str]],
) -> bytes:
    parts: list[bytes] = []
    for field_name, value in fields:
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{field_name}"\r\n\r\n'
                f"{value}\r\n"
            ).encode("utf-8")
        )
    for field_name, filename, content_type, data in files:
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{field_name}"; filename="{filename}"\r\n'
                f"Content-Type: {content_type}\r\n\r\n"
            ).encode("utf-8")
        )
        parts.append(data)
        parts.append(b"\r\n")
    parts.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(parts)


def content_store_from_config(config: dict) -> ContentStore:
    backend = (config.get("CONTENT_STORE_BACKEND") or "storage").strip().lower()
    if backend == "pinata":
        return PinataContentStore(
            jwt=(config.get("PINATA_JWT") or "").strip(),
            gateway=(config.get("PINATA_GATEWAY") or "").strip(),
            api_url=(config.get("PINATA_API_URL") or "https://api.pinata.cloud").strip(),
            timeout_seconds=int(config.get("CONTENT_TIMEOUT_SECONDS") or 60),
        )
    return StorageContentStore(storage=storage_from_config(config))
