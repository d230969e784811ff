# Overview: Service-layer operations for accounts; password hashing, provisioning, and credential checks.

"""
Account Service

WHY: Every sale and every subscription payment is attributed to a user
account, so provisioning and credential checks live in one place.

Passwords are bcrypt hashes (cost 12). Bearer sessions are handled by
session_service.py; this module never issues tokens.
"""

import re

import bcrypt

from ..extensions import db
from ..models import User
from ..models.auth import ROLE_USER
from ..validation import ConflictError, ValidationError
from kasir.time_utils import utcnow


BCRYPT_ROUNDS = 12
MIN_PASSWORD_LENGTH = 8

# (pattern, message) pairs checked in order; the first miss is reported
PASSWORD_RULES = [
    (r"[A-Z]", "Password must contain at least one uppercase letter"),
    (r"[a-z]", "Password must contain at least one lowercase letter"),
    (r"\d", "Password must contain at least one digit"),
    (r"[^A-Za-z0-9]", "Password must contain at least one symbol"),
]


class PasswordValidationError(ValidationError):
    """Password rejected by PASSWORD_RULES."""


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def check_password_rules(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise PasswordValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    for pattern, message in PASSWORD_RULES:
        if not re.search(pattern, password):
            raise PasswordValidationError(message)


def hash_password(password: str) -> str:
    """Validate against PASSWORD_RULES, then return the bcrypt hash as text."""
    check_password_rules(password)
    digest = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS))
    return digest.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    # Malformed stored hashes count as a mismatch
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_user(
    name: str,
    email: str,
    password: str,
    *,
    phone: str | None = None,
    role: str = ROLE_USER,
    is_email_verified: bool = False,
) -> User:
    """
    Provision an account (CLI and tests; self-registration is not exposed).

    Raises:
        ValidationError: Name or email missing
        PasswordValidationError: Password fails PASSWORD_RULES
        ConflictError: Email already registered
    """
    email = normalize_email(email)
    name = (name or "").strip()
    if not name or not email:
        raise ValidationError("Name and email are required")

    if db.session.query(User.id).filter_by(email=email).first():
        raise ConflictError("Email already registered")

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        phone=phone,
        whatsapp=phone,
        role=role,
        is_email_verified=is_email_verified,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(email: str, password: str) -> User | None:
    """Return the active user for these credentials and stamp last_login_at, else None."""
    user = (
        db.session.query(User)
        .filter(User.email == normalize_email(email), User.is_active.is_(True))
        .first()
    )
    if user is None or not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user
