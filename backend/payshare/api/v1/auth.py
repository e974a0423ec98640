from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field

from payshare.api.deps import get_auth, get_ledger
from payshare.ledger import LedgerStore
from payshare.schemas import User
from payshare.services.auth import REFRESH, AuthService

router = APIRouter()


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    username: Optional[str] = Field(default=None, min_length=3, max_length=64)
    display_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    ok: bool = True
    access_token: str
    refresh_token: str
    user: dict


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "balance": user.balance,
        "created_at": user.created_at.isoformat(),
    }


def issue_tokens(auth: AuthService, user: User) -> TokenResponse:
    return TokenResponse(
        access_token=auth.create_access_token(user.id),
        refresh_token=auth.create_refresh_token(user.id),
        user=user_to_dict(user),
    )


@router.post("/register", response_model=TokenResponse)
async def register(
    data: RegisterRequest,
    ledger: LedgerStore = Depends(get_ledger),
    auth: AuthService = Depends(get_auth),
):
    # DuplicateKey from the ledger becomes a 409 in the app-level handler
    user = await auth.create_user(
        ledger,
        email=data.email,
        password=data.password,
        username=data.username,
        display_name=data.display_name,
    )
    return issue_tokens(auth, user)


@router.post("/login", response_model=TokenResponse)
async def login(
    data: LoginRequest,
    ledger: LedgerStore = Depends(get_ledger),
    auth: AuthService = Depends(get_auth),
):
    user = await auth.authenticate(ledger, data.email, data.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return issue_tokens(auth, user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    data: RefreshRequest,
    ledger: LedgerStore = Depends(get_ledger),
    auth: AuthService = Depends(get_auth),
):
    user_id = auth.decode_token(data.refresh_token, REFRESH)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    user = await ledger.get_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return issue_tokens(auth, user)
