from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from userauth.auth import AuthUser
from userauth.deps import get_current_user, get_repository
from userauth.errors import AlreadyExists, AlreadyRegistered, InvalidIdentity, NotFound, UserAuthError
from userauth.models import UserAuth
from userauth.repository import UserAuthRepository

router = APIRouter(prefix="/users", tags=["users"])


class UserProfile(BaseModel):
    user_name: Optional[str] = Field(default=None, description="3-15 chars: letters, digits and . _ -")
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    full_name: Optional[str] = None
    company: Optional[str] = None
    phone_number: Optional[str] = None
    meta: Dict[str, str] = Field(default_factory=dict)

    def to_user_auth(self) -> UserAuth:
        return UserAuth(**self.model_dump(exclude={"password"}))


class CreateUserRequest(UserProfile):
    password: str = Field(..., min_length=1)


class UpdateUserRequest(UserProfile):
    password: Optional[str] = Field(default=None, description="Omit to keep the current password")


class UserResponse(UserProfile):
    id: int
    created_date: Optional[datetime] = None
    modified_date: Optional[datetime] = None

    @classmethod
    def from_user_auth(cls, user: UserAuth) -> "UserResponse":
        # Never expose password/digest hashes.
        return cls.model_validate(user.model_dump(exclude={"password_hash", "salt", "digest_ha1_hash"}))


def http_error(e: UserAuthError) -> HTTPException:
    if isinstance(e, InvalidIdentity):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (AlreadyExists, AlreadyRegistered)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=500, detail=f"{type(e).__name__}: {e}")


def _load(repo: UserAuthRepository, user_auth_id: int) -> UserAuth:
    user = repo.get_user_auth(user_auth_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"UserAuth {user_auth_id} not found")
    return user


@router.post("", response_model=UserResponse, status_code=201)
def create_user(
    payload: CreateUserRequest = Body(...),
    repo: UserAuthRepository = Depends(get_repository),
) -> UserResponse:
    try:
        user = repo.create_user_auth(payload.to_user_auth(), payload.password)
    except UserAuthError as e:
        raise http_error(e)
    return UserResponse.from_user_auth(user)


@router.get("/me", response_model=UserResponse)
def get_me(
    current: AuthUser = Depends(get_current_user),
    repo: UserAuthRepository = Depends(get_repository),
) -> UserResponse:
    return UserResponse.from_user_auth(_load(repo, current.user_auth_id))


@router.get("/{user_auth_id}", response_model=UserResponse)
def get_user(user_auth_id: int, repo: UserAuthRepository = Depends(get_repository)) -> UserResponse:
    return UserResponse.from_user_auth(_load(repo, user_auth_id))


@router.put("/{user_auth_id}", response_model=UserResponse)
def update_user(
    user_auth_id: int,
    payload: UpdateUserRequest = Body(...),
    repo: UserAuthRepository = Depends(get_repository),
) -> UserResponse:
    existing = _load(repo, user_auth_id)
    try:
        user = repo.update_user_auth(existing, payload.to_user_auth(), payload.password)
    except UserAuthError as e:
        raise http_error(e)
    return UserResponse.from_user_auth(user)


@router.delete("/{user_auth_id}", status_code=204)
def delete_user(user_auth_id: int, repo: UserAuthRepository = Depends(get_repository)) -> Response:
    try:
        repo.delete_user_auth(user_auth_id)
    except UserAuthError as e:
        raise http_error(e)
    return Response(status_code=204)
