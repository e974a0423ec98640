from typing import Optional
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from payshare.config import Settings
from payshare.ledger import LedgerStore
from payshare.schemas import User
from payshare.services.auth import AuthService
from payshare.services.storage import StorageService

security = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_ledger(request: Request) -> LedgerStore:
    return request.app.state.ledger


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    ledger: LedgerStore = Depends(get_ledger),
    auth: AuthService = Depends(get_auth),
) -> User:
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user_id = auth.decode_token(credentials.credentials)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await ledger.get_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return user


async def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    ledger: LedgerStore = Depends(get_ledger),
    auth: AuthService = Depends(get_auth),
) -> Optional[User]:
    if not credentials:
        return None
    try:
        return await get_current_user(credentials, ledger, auth)
    except HTTPException:
        return None


def get_client_ip(request: Request) -> str:
    x_real_ip = request.headers.get("X-Real-IP")
    if x_real_ip:
        return x_real_ip
    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else ""
