from fastapi import APIRouter
from payshare.api.v1 import auth, users, files, payments

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["Auth"])
api_router.include_router(users.router, prefix="/user", tags=["User"])
api_router.include_router(files.router, prefix="/files", tags=["Files"])
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])
