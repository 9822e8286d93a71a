# Overview: Account store; credential lookup and account creation.

"""
Authentication Service

Credentials are email + password. Passwords are hashed with bcrypt; the cost
factor comes from BCRYPT_ROUNDS (12 in production, lower in tests).

Accounts carry a role flag: "admin" may create other accounts, "user" may
not. Both own their own catalog and sales.
"""

import bcrypt
from flask import current_app

from ..extensions import db
from ..models import User, ROLES, ROLE_USER
from ..validation import ValidationError, ConflictError
from rackstock.time_utils import utcnow


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Returns the hash as a str for storage.
    """
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    Returns True if password matches hash, False otherwise (including
    malformed hashes).
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(email: str, password: str, name: str | None = None, role: str = ROLE_USER) -> User:
    """
    Create a new account.

    Raises:
        ValidationError: missing email/password or unknown role
        ConflictError: an account with that email already exists
    """
    email = normalize_email(email)
    if not email or not password:
        raise ValidationError("email and password are required")
    if role not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")

    existing = db.session.query(User).filter_by(email=email).first()
    if existing:
        raise ConflictError("User with this email already exists")

    user = User(
        email=email,
        name=(name or "").strip() or email.split("@")[0],
        password_hash=hash_password(password),
        role=role,
    )

    db.session.add(user)
    db.session.commit()
    return user


def authenticate(email: str, password: str) -> User | None:
    """
    Look up an active account by email and verify its password.

    Returns User if credentials valid, None otherwise.
    Updates last_login_at timestamp on successful authentication.
    """
    user = db.session.query(User).filter(
        User.email == normalize_email(email),
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
