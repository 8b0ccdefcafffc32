from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any

from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception
from web3.logs import DISCARD

logger = logging.getLogger(__name__)

_HEX_DIGEST_RE = re.compile(r"^(0x)?[0-9a-fA-F]{1,64}$")

# Subset of the VersionedDocuments contract used by this service.
VERSIONED_DOCUMENTS_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "createDocument",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "title", "type": "string"},
            {"name": "cid", "type": "string"},
            {"name": "fileHash", "type": "bytes32"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "addVersion",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "documentId", "type": "uint256"},
            {"name": "cid", "type": "string"},
            {"name": "fileHash", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getDocument",
        "stateMutability": "view",
        "inputs": [{"name": "documentId", "type": "uint256"}],
        "outputs": [
            {"name": "owner", "type": "address"},
            {"name": "title", "type": "string"},
            {"name": "versionCount", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "documentCounter",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "DocumentCreated",
        "anonymous": False,
        "inputs": [
            {"name": "documentId", "type": "uint256", "indexed": True},
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "title", "type": "string", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "VersionAdded",
        "anonymous": False,
        "inputs": [
            {"name": "documentId", "type": "uint256", "indexed": True},
            {"name": "versionNumber", "type": "uint256", "indexed": False},
            {"name": "cid", "type": "string", "indexed": False},
            {"name": "fileHash", "type": "bytes32", "indexed": False},
        ],
    },
]


class LedgerError(RuntimeError):
    pass


@dataclass(frozen=True)
class LedgerReceipt:
    tx_hash: str
    status: int
    block_number: int | None = None
    document_id: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class Ledger:
    def create_record(self, owner: str, title: str, content_id: str, file_hash: str) -> LedgerReceipt:
        raise NotImplementedError

    def append_record(self, ledger_document_id: int, content_id: str, file_hash: str) -> LedgerReceipt:
        raise NotImplementedError

    def check_connection(self) -> dict[str, Any]:
        raise NotImplementedError


def hash_to_bytes32(file_hash: str) -> bytes:
    """Left-pad a hex digest (with or without 0x) to 32 bytes."""
    if not file_hash or not _HEX_DIGEST_RE.fullmatch(file_hash):
        raise LedgerError("File hash must be a hex digest of at most 32 bytes")
    digits = file_hash[2:] if file_hash.startswith("0x") else file_hash
    return bytes.fromhex(digits.rjust(64, "0"))


class Web3Ledger(Ledger):
    def __init__(
        self,
        *,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        confirm_timeout_seconds: int = 120,
    ) -> None:
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self._private_key = private_key
        self._send_lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._handles: tuple[Any, Any, Any] | None = None

    @property
    def configured(self) -> bool:
        return bool(self.rpc_url and self._private_key and self.contract_address)

    def _connect(self) -> tuple[Any, Any, Any]:
        if not self.configured:
            raise LedgerError(
                "Ledger not configured. Set LEDGER_RPC_URL, LEDGER_PRIVATE_KEY and LEDGER_CONTRACT_ADDRESS."
            )
        with self._init_lock:
            if self._handles is None:
                w3 = Web3(
                    Web3.HTTPProvider(
                        self.rpc_url,
                        request_kwargs={"timeout": self.confirm_timeout_seconds},
                    )
                )
                account = w3.eth.account.from_key(self._private_key)
                contract = w3.eth.contract(
                    address=Web3.to_checksum_address(self.contract_address),
                    abi=VERSIONED_DOCUMENTS_ABI,
                )
                self._handles = (w3, contract, account)
        return self._handles

    def _transact(self, fn_call: Any) -> tuple[str, Any]:
        w3, _contract, account = self._connect()
        # One in-flight send per account keeps pending nonces unique.
        with self._send_lock:
            tx = fn_call.build_transaction(
                {
                    "from": account.address,
                    "nonce": w3.eth.get_transaction_count(account.address, "pending"),
                    "chainId": w3.eth.chain_id,
                }
            )
            signed = account.sign_transaction(tx)
            raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
            tx_hash = w3.eth.send_raw_transaction(raw)
        tx_hex = Web3.to_hex(tx_hash)
        logger.info("Ledger transaction sent: %s", tx_hex)

        try:
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirm_timeout_seconds)
        except TimeExhausted as e:
            raise LedgerError(
                f"Transaction {tx_hex} not confirmed within {self.confirm_timeout_seconds}s"
            ) from e
        logger.info(
            "Ledger transaction %s confirmed (block=%s status=%s gas=%s)",
            tx_hex,
            receipt.get("blockNumber"),
            receipt.get("status"),
            receipt.get("gasUsed"),
        )
        return tx_hex, receipt

    def create_record(self, owner: str, title: str, content_id: str, file_hash: str) -> LedgerReceipt:
        if not Web3.is_address(owner):
            raise LedgerError("Invalid owner address")
        if not (title or "").strip():
            raise LedgerError("Title cannot be empty")
        if not (content_id or "").strip():
            raise LedgerError("CID cannot be empty")

        _w3, contract, _account = self._connect()
        fn_call = contract.functions.createDocument(
            Web3.to_checksum_address(owner), title, content_id, hash_to_bytes32(file_hash)
        )
        try:
            tx_hex, receipt = self._transact(fn_call)
        except Web3Exception as e:
            raise LedgerError(f"createDocument failed: {e}") from e

        document_id = None
        if receipt.get("status") == 1:
            events = contract.events.DocumentCreated().process_receipt(receipt, errors=DISCARD)
            if events:
                document_id = int(events[0]["args"]["documentId"])
        return LedgerReceipt(
            tx_hash=tx_hex,
            status=int(receipt.get("status", 0)),
            block_number=receipt.get("blockNumber"),
            document_id=document_id,
        )

    def append_record(self, ledger_document_id: int, content_id: str, file_hash: str) -> LedgerReceipt:
        if not ledger_document_id or ledger_document_id <= 0:
            raise LedgerError("Invalid document ID")
        if not (content_id or "").strip():
            raise LedgerError("CID cannot be empty")

        _w3, contract, _account = self._connect()
        fn_call = contract.functions.addVersion(int(ledger_document_id), content_id, hash_to_bytes32(file_hash))
        try:
            tx_hex, receipt = self._transact(fn_call)
        except Web3Exception as e:
            raise LedgerError(f"addVersion failed: {e}") from e
        return LedgerReceipt(
            tx_hash=tx_hex,
            status=int(receipt.get("status", 0)),
            block_number=receipt.get("blockNumber"),
            document_id=int(ledger_document_id),
        )

    def check_connection(self) -> dict[str, Any]:
        w3, contract, _account = self._connect()
        try:
            chain_id = w3.eth.chain_id
            counter = contract.functions.documentCounter().call()
        except Web3Exception as e:
            raise LedgerError(f"Ledger connection check failed: {e}") from e
        return {"chain_id": int(chain_id), "document_counter": int(counter)}


def ledger_from_config(config: dict) -> Web3Ledger:
    return Web3Ledger(
        rpc_url=(config.get("LEDGER_RPC_URL") or "").strip(),
        private_key=(config.get("LEDGER_PRIVATE_KEY") or "").strip(),
        contract_address=(config.get("LEDGER_CONTRACT_ADDRESS") or "").strip(),
        confirm_timeout_seconds=int(config.get("LEDGER_CONFIRM_TIMEOUT_SECONDS") or 120),
    )
