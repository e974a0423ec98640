from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import jwt, JWTError
from passlib.context import CryptContext
from payshare.config import Settings
from payshare.ledger import LedgerStore
from payshare.schemas import User, UserCreate

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS = "access"
REFRESH = "refresh"


class AuthService:
    """Local email/password accounts on top of the ledger's user records."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @staticmethod
    def hash_password(password: str) -> str:
        return pwd_context.hash(password)

    @staticmethod
    def verify_password(plain: str, hashed: Optional[str]) -> bool:
        # users created through an external provider have no local password
        if not hashed:
            return False
        return pwd_context.verify(plain, hashed)

    def _issue_token(self, user_id: int, token_type: str, lifetime: timedelta) -> str:
        payload = {
            "sub": str(user_id),
            "type": token_type,
            "exp": datetime.now(timezone.utc) + lifetime,
        }
        return jwt.encode(payload, self.settings.APP_SECRET_KEY, algorithm=self.settings.JWT_ALGORITHM)

    def create_access_token(self, user_id: int) -> str:
        return self._issue_token(user_id, ACCESS, timedelta(minutes=self.settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))

    def create_refresh_token(self, user_id: int) -> str:
        return self._issue_token(user_id, REFRESH, timedelta(days=self.settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS))

    def decode_token(self, token: str, token_type: str = ACCESS) -> Optional[int]:
        """Returns the user id carried by a valid token of ``token_type``."""
        try:
            payload = jwt.decode(token, self.settings.APP_SECRET_KEY, algorithms=[self.settings.JWT_ALGORITHM])
        except JWTError:
            return None
        if payload.get("type") != token_type:
            return None
        try:
            return int(payload["sub"])
        except (KeyError, ValueError):
            return None

    async def create_user(
        self,
        ledger: LedgerStore,
        email: str,
        password: str,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> User:
        return await ledger.create_user(
            UserCreate(
                email=email.lower(),
                username=username,
                display_name=display_name or username,
                password_hash=self.hash_password(password),
            )
        )

    async def authenticate(self, ledger: LedgerStore, email: str, password: str) -> Optional[User]:
        user = await ledger.get_user_by_email(email.lower())
        if not user or not self.verify_password(password, user.password_hash):
            return None
        return user

