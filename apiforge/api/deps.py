# FILE: apiforge/api/deps.py
from typing import Any, Dict

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.core.config import JWT_ALGORITHM, JWT_SECRET
from apiforge.core.database import get_db
from apiforge.models.project import Project
from apiforge.models.user import User
from apiforge.services.auth_service import user_to_dict
from apiforge.services.orchestrator import ProjectOrchestrator
from apiforge.services.sandbox_manager import SandboxManager

security = HTTPBearer(auto_error=False)


def _decode(token: str) -> str:
    try:
        payload = jwt.decode(token.strip(), JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("user_id") or payload.get("sub")
    if not user_id or not isinstance(user_id, str):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return user_id


async def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(security),
        db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = await db.get(User, _decode(credentials.credentials))
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user_to_dict(user)


def get_orchestrator(request: Request) -> ProjectOrchestrator:
    return request.app.state.orchestrator


def get_sandboxes(request: Request) -> SandboxManager:
    return request.app.state.sandboxes


async def get_owned_project(
        pid: str,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
) -> Project:
    project = (
        await db.execute(
            select(Project).where(Project.id == pid, Project.user_id == user["id"])
        )
    ).scalar_one_or_none()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project
