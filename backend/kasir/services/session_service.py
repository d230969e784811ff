# Overview: Service-layer operations for bearer sessions; issue, validate, and revoke opaque tokens.

"""
Bearer Session Service

WHY: Cashiers stay logged in on shared tills, so sessions expire on an
absolute limit (SESSION_ABSOLUTE_HOURS) and on inactivity
(SESSION_IDLE_HOURS), and can be revoked on logout.

INVARIANTS:
- Only sha256(token) is stored; the plaintext is returned once from create_session
- A revoked session is never revived
"""

import hashlib
import secrets
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, User
from ..validation import NotFoundError
from kasir.time_utils import utcnow


TOKEN_BYTES = 32

REVOKE_LOGOUT = "User logout"
REVOKE_IDLE = "Idle timeout"
REVOKE_INACTIVE_USER = "User account deactivated"


def hash_token(token: str) -> str:
    # Tokens carry 256 bits of entropy, so a fast digest is enough
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _live_session(token: str) -> SessionToken | None:
    return (
        db.session.query(SessionToken)
        .filter_by(token_hash=hash_token(token), is_revoked=False)
        .first()
    )


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """Issue a session for user_id. Returns (session_row, plaintext_token)."""
    if db.session.get(User, user_id) is None:
        raise NotFoundError("User not found")

    token = secrets.token_hex(TOKEN_BYTES)
    now = utcnow()
    session = SessionToken(
        user_id=user_id,
        token_hash=hash_token(token),
        created_at=now,
        last_used_at=now,
        expires_at=now + timedelta(hours=current_app.config["SESSION_ABSOLUTE_HOURS"]),
        user_agent=(user_agent or "")[:512] or None,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    return session, token


def validate_session(token: str) -> User | None:
    """
    Resolve a bearer token to its user, or None.

    Idle sessions and sessions of deactivated users are revoked on sight;
    an expired session is simply refused. A valid hit refreshes last_used_at.
    """
    session = _live_session(token)
    now = utcnow()
    if session is None or session.expires_at < now:
        return None

    if now - session.last_used_at > timedelta(hours=current_app.config["SESSION_IDLE_HOURS"]):
        _revoke(session, REVOKE_IDLE)
        return None

    user = session.user
    if user is None or not user.is_active:
        _revoke(session, REVOKE_INACTIVE_USER)
        return None

    session.last_used_at = now
    db.session.commit()
    return user


def revoke_session(token: str, reason: str = REVOKE_LOGOUT) -> bool:
    """Revoke the live session for token. False when there is none."""
    session = _live_session(token)
    if session is None:
        return False
    _revoke(session, reason)
    return True
