# FILE: apiforge/api/auth.py
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.api.deps import get_current_user
from apiforge.core.database import get_db
from apiforge.schemas.auth import MeResponse, TokenResponse, UserCreate, UserLogin, UserResponse
from apiforge.services.auth_service import (
    authenticate,
    count_projects,
    create_token,
    register_user,
    user_to_dict,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _token_response(user) -> TokenResponse:
    return TokenResponse(
        token=create_token(user.id, user.email),
        user=UserResponse(**user_to_dict(user)),
    )


@router.post("/register", response_model=TokenResponse)
async def register(data: UserCreate, db: AsyncSession = Depends(get_db)):
    user = await register_user(db, data.email, data.password, data.name)
    return _token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(data: UserLogin, db: AsyncSession = Depends(get_db)):
    user = await authenticate(db, data.email, data.password)
    return _token_response(user)


@router.get("/me", response_model=MeResponse)
async def auth_me(user=Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return MeResponse(**user, project_count=await count_projects(db, user["id"]))
