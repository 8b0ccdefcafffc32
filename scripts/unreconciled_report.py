#!/usr/bin/env python
"""
Unreconciled ledger records report.

Lists ledger transactions that were confirmed on chain but whose local
commit failed (audit action "ledger.unreconciled"). Each row carries the
tx hash, the ledger document id and the content id needed to repair the
local record by hand.

Usage:
    python scripts/unreconciled_report.py
    python scripts/unreconciled_report.py --limit 20 --json

Environment:
    DATABASE_URL: database connection string
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.docvault.models import AuditEvent
from scripts._db_utils import script_database_url, script_session

UNRECONCILED_ACTION = "ledger.unreconciled"


def unreconciled_rows(s: Session, *, limit: int = 100) -> list[dict[str, Any]]:
    events = s.execute(
        select(AuditEvent)
        .where(AuditEvent.action == UNRECONCILED_ACTION)
        .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        .limit(limit)
    ).scalars()
    rows: list[dict[str, Any]] = []
    for ev in events:
        try:
            meta = json.loads(ev.metadata_json) if ev.metadata_json else {}
        except ValueError:
            meta = {}
        rows.append(
            {
                "at": ev.created_at.isoformat() if ev.created_at else None,
                "user": ev.actor_user_email,
                "document_id": ev.entity_id,
                "kind": meta.get("kind"),
                "tx_hash": meta.get("tx_hash"),
                "ledger_document_id": meta.get("ledger_document_id"),
                "content_id": meta.get("content_id"),
                "file_hash": meta.get("file_hash"),
                "reason": ev.reason,
            }
        )
    return rows


def main() -> None:
    parser = argparse.ArgumentParser(description="List ledger records with no local counterpart.")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    args = parser.parse_args()

    with script_session(script_database_url()) as s:
        rows = unreconciled_rows(s, limit=args.limit)

    if args.json:
        print(json.dumps(rows, indent=2))
        return
    if not rows:
        print("No unreconciled ledger records.")
        return

    print(f"Found {len(rows)} unreconciled ledger record(s):\n")
    for i, r in enumerate(rows, 1):
        print(f"{i}. [{r['at']}] {r['kind'] or '?'} by {r['user'] or '?'}")
        print(f"   tx_hash:            {r['tx_hash']}")
        print(f"   ledger_document_id: {r['ledger_document_id']}")
        print(f"   local document id:  {r['document_id'] or '(none)'}")
        print(f"   content_id:         {r['content_id']}")
        print(f"   reason:             {r['reason']}")


if __name__ == "__main__":
    main()
