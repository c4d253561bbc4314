"""
UI Analyzer — Authentication & Authorization
JWT token issuance, bcrypt password hashing and account CRUD.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db
from errors import (
    AuthError, PersistenceError,
    TokenExpiredError, TokenMalformedError, ValidationError,
)
from user_db import Plan, User, utcnow

logger = logging.getLogger(__name__)

# ── Config ────────────────────────────────────────────────────────────────────
ALGORITHM    = "HS256"
TOKEN_DAYS   = 7

pwd_context  = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)
security     = HTTPBearer(auto_error=False)


# ── Password helpers ──────────────────────────────────────────────────────────
def hash_password(plain: str) -> str:
    return pwd_context.hash(plain)

def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def normalize_email(email: str) -> str:
    return email.lower().strip()


# ── JWT helpers ───────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class TokenClaims:
    id: int
    email: str


class TokenIssuer:
    """Issues and verifies signed bearer tokens carrying {id, email}."""

    def __init__(self, secret_key: str, days: int = TOKEN_DAYS):
        self.secret_key = secret_key
        self.days = days

    def issue(self, user_id: int, email: str, now: Optional[datetime] = None) -> str:
        issued = now or utcnow()
        return jwt.encode(
            {
                "id": user_id,
                "email": email,
                "iat": int(issued.timestamp()),
                "exp": int((issued + timedelta(days=self.days)).timestamp()),
            },
            self.secret_key, algorithm=ALGORITHM,
        )

    def verify(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise TokenExpiredError()
        except JWTError:
            raise TokenMalformedError()

        uid, email = payload.get("id"), payload.get("email")
        if not isinstance(uid, int) or not isinstance(email, str):
            raise TokenMalformedError()
        return TokenClaims(id=uid, email=email)

    def refresh(self, claims: TokenClaims) -> str:
        """New token with a fresh validity window; no password re-check."""
        return self.issue(claims.id, claims.email)


# ── FastAPI dependencies ──────────────────────────────────────────────────────
def get_token_issuer(request: Request) -> TokenIssuer:
    return request.app.state.token_issuer


async def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Security(security),
    issuer: TokenIssuer = Depends(get_token_issuer),
    db: Session = Depends(get_db),
) -> User:
    """Authenticated, still-active User row. Raises 401 otherwise."""
    if creds is None or not creds.credentials:
        raise AuthError("Access token required")
    claims = issuer.verify(creds.credentials)
    user = db.get(User, claims.id)
    if user is None or not user.is_active:
        raise AuthError("Invalid token")
    return user


# ── User CRUD ─────────────────────────────────────────────────────────────────
def commit_or_raise(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to persist {what}: {e}")
        raise PersistenceError()


def create_user(db: Session, email: str, password: str, name: str) -> User:
    email = normalize_email(email)
    if db.query(User).filter(User.email == email).first():
        raise ValidationError("User with this email already exists")
    user = User(
        email=email,
        hashed_password=hash_password(password),
        name=name.strip(),
        plan=Plan.free,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # lost a race with a concurrent registration for the same email
        db.rollback()
        raise ValidationError("User with this email already exists")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create user: {e}")
        raise PersistenceError()
    db.refresh(user)
    logger.info(f"Registered user id={user.id}")
    return user


def authenticate_user(db: Session, email: str, password: str) -> User:
    user = db.query(User).filter(User.email == normalize_email(email)).first()
    if not user or not user.is_active or not verify_password(password, user.hashed_password):
        raise AuthError("Invalid email or password")
    user.last_login = utcnow()
    commit_or_raise(db, "last login")
    return user


def update_profile(db: Session, user: User, name: Optional[str] = None,
                   email: Optional[str] = None) -> User:
    if name:
        user.name = name.strip()
    if email:
        email = normalize_email(email)
        if email != user.email:
            if db.query(User).filter(User.email == email).first():
                raise ValidationError("Email is already in use")
            user.email = email
    commit_or_raise(db, "profile")
    return user


def change_password(db: Session, user: User, current: str, new: str) -> None:
    if not verify_password(current, user.hashed_password):
        raise ValidationError("Current password is incorrect")
    user.hashed_password = hash_password(new)
    commit_or_raise(db, "password")


def deactivate_user(db: Session, user: User) -> None:
    """Soft delete: flip the active flag and anonymise the email."""
    user.is_active = False
    user.email = f"deleted_{int(utcnow().timestamp() * 1000)}_{user.email}"
    commit_or_raise(db, "account deletion")
    logger.info(f"Deactivated user id={user.id}")
