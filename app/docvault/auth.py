from __future__ import annotations

import re
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta
from functools import wraps
from typing import Any

from flask import Blueprint, current_app, g, request, session
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from app.docvault.audit import record_event
from app.docvault.db import db_session
from app.docvault.models import User
from app.docvault.security import ensure_csrf_token

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds
_MIN_PASSWORD_LENGTH = 8

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _payload() -> dict[str, Any]:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _user_json(user: User) -> dict[str, Any]:
    return {"id": user.id, "email": user.email, "walletAddress": user.wallet_address}


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    # End the read transaction now; document commits open their own sessions.
    s.commit()
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def login_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return {"error": "Authentication required"}, 401
        return fn(*args, **kwargs)

    return wrapped


@bp.get("/csrf")
def csrf():
    return {"csrf_token": ensure_csrf_token()}


@bp.post("/register")
def register():
    data = _payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    wallet_address = (data.get("wallet_address") or data.get("walletAddress") or "").strip()

    if not _EMAIL_RE.fullmatch(email):
        return {"error": "A valid email is required"}, 400
    if len(password) < _MIN_PASSWORD_LENGTH:
        return {"error": f"Password must be at least {_MIN_PASSWORD_LENGTH} characters"}, 400
    if not _WALLET_RE.fullmatch(wallet_address):
        return {"error": "A valid wallet address is required"}, 400

    s = db_session()
    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        wallet_address=wallet_address.lower(),
        is_active=True,
    )
    s.add(user)
    try:
        s.flush()
    except IntegrityError:
        s.rollback()
        return {"error": "Email or wallet address already registered"}, 409

    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id))
    s.commit()
    session["user_id"] = user.id
    return {"user": _user_json(user)}, 201


@bp.post("/login")
def login():
    data = _payload()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return {"error": "Too many login attempts. Please wait 5 minutes."}, 429

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            return {"error": "Invalid credentials"}, 401

        session["user_id"] = user.id
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return {"user": _user_json(user)}, 200
    except Exception:
        current_app.logger.exception("Login crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return {"ok": True}


@bp.get("/me")
@login_required
def me():
    return {"user": _user_json(current_user())}
