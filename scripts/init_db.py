import argparse
import os
import re
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.docvault.db import build_engine
from app.docvault.models import Base, User
from scripts._db_utils import script_database_url, script_session

_WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def create_tables(*, database_url: str | None = None) -> None:
    """
    Create all tables directly from the models. For local development only;
    deployed databases are managed by Alembic (scripts/release.py).
    """
    engine = build_engine(script_database_url(database_url))
    try:
        Base.metadata.create_all(engine)
    finally:
        engine.dispose()
    print("Created tables.")


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the initial user in an idempotent way.
    Does NOT overwrite an existing user's password. Skips seeding when ADMIN_PASSWORD is unset.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@docvault.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or ""
    admin_wallet = (os.environ.get("ADMIN_WALLET") or "").strip()

    if not admin_password:
        print("ADMIN_PASSWORD not set; skipping user seed.")
        return
    if admin_wallet and not _WALLET_RE.fullmatch(admin_wallet):
        raise RuntimeError("ADMIN_WALLET must be a 0x-prefixed 40 hex character address.")

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(script_database_url(database_url)) as s:
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                wallet_address=admin_wallet.lower() or None,
                is_active=True,
            )
            s.add(user)
        elif admin_wallet and not user.wallet_address:
            user.wallet_address = admin_wallet.lower()

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create tables and seed the initial user.")
    parser.add_argument("--seed-only", action="store_true", help="Skip create_all (database managed by Alembic).")
    args = parser.parse_args()
    if not args.seed_only:
        create_tables(database_url=None)
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
