from __future__ import annotations

import os
from contextlib import contextmanager

from sqlalchemy.orm import Session, sessionmaker

from app.docvault.db import build_engine


def script_database_url(database_url: str | None = None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or "sqlite:///docvault.db").strip()


@contextmanager
def script_session(db_url: str):
    engine = build_engine(db_url)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
