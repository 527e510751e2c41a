# FILE: apiforge/services/auth_service.py
"""Accounts: bcrypt password hashes, HS256 bearer tokens."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import bcrypt
import jwt
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.core.config import JWT_ALGORITHM, JWT_EXPIRATION_HOURS, JWT_SECRET
from apiforge.core.errors import ApiForgeError
from apiforge.models.project import Project
from apiforge.models.types import utcnow
from apiforge.models.user import User

logger = logging.getLogger("apiforge.auth")


class EmailAlreadyRegistered(ApiForgeError):
    code = "EMAIL_TAKEN"
    status_code = 409


class InvalidCredentials(ApiForgeError):
    code = "INVALID_CREDENTIALS"
    status_code = 401


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed hash in the row
        return False


def create_token(user_id: str, email: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "sub": user_id,
        "email": email,
        "iat": now,
        "exp": now + timedelta(hours=JWT_EXPIRATION_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _iso(value: datetime) -> str:
    return value.replace(tzinfo=timezone.utc).isoformat()


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "created_at": _iso(user.created_at),
        "last_login_at": _iso(user.last_login_at) if user.last_login_at else None,
    }


async def register_user(db: AsyncSession, email: str, password: str, name: str) -> User:
    taken = (await db.execute(select(User.id).where(User.email == email))).first()
    if taken is not None:
        raise EmailAlreadyRegistered("Email already registered")

    user = User(
        id=str(uuid.uuid4()),
        email=email,
        password_hash=hash_password(password),
        name=name.strip() or email.split("@")[0],
        created_at=utcnow(),
        last_login_at=utcnow(),
    )
    db.add(user)
    await db.commit()
    logger.info("User %s registered", user.id)
    return user


async def authenticate(db: AsyncSession, email: str, password: str) -> User:
    email = (email or "").strip().lower()
    user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if user is None or not verify_password(password, user.password_hash):
        logger.info("Failed login for %s", email)
        raise InvalidCredentials("Invalid credentials")

    user.last_login_at = utcnow()
    await db.commit()
    return user


async def count_projects(db: AsyncSession, user_id: str) -> int:
    return (
        await db.execute(select(func.count(Project.id)).where(Project.user_id == user_id))
    ).scalar_one()
