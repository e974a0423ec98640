from payshare.services.auth import AuthService
from payshare.services.storage import StorageService

__all__ = [
    "AuthService",
    "StorageService",
]
