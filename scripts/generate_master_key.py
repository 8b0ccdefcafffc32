#!/usr/bin/env python
"""
Generate a FILE_ENCRYPTION_MASTER_KEY value.

Prints 64 hex characters (32 random bytes, AES-256). Store it in the
deployment environment or .env. Losing it makes every stored version
unreadable; there is no rotation support.

Usage:
    python scripts/generate_master_key.py
    python scripts/generate_master_key.py --env   # print as KEY=value line
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.docvault.modules.documents.crypto import KEY_BYTES, load_master_key


def generate_master_key_hex() -> str:
    key_hex = AESGCM.generate_key(bit_length=KEY_BYTES * 8).hex()
    load_master_key(key_hex)
    return key_hex


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a master key for envelope encryption.")
    parser.add_argument("--env", action="store_true", help="Print as a FILE_ENCRYPTION_MASTER_KEY=... line")
    args = parser.parse_args()

    key_hex = generate_master_key_hex()
    if args.env:
        print(f"FILE_ENCRYPTION_MASTER_KEY={key_hex}")
    else:
        print(key_hex)


if __name__ == "__main__":
    main()
