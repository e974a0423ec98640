import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payshare.api.v1.router import api_router
from payshare.config import Settings, settings
from payshare.ledger import LedgerError, LedgerStore, SqlLedgerStore, create_ledger_store
from payshare.services.auth import AuthService
from payshare.services.storage import StorageService

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting PayShare API [{app.state.settings.APP_ENV}]")
    ledger = app.state.ledger
    if isinstance(ledger, SqlLedgerStore) and app.state.settings.APP_ENV == "development":
        await ledger.db.create_all()
    yield
    await ledger.close()
    logger.info("PayShare API stopped")


async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "detail": exc.detail})


def create_app(
    app_settings: Optional[Settings] = None,
    ledger: Optional[LedgerStore] = None,
    storage: Optional[StorageService] = None,
) -> FastAPI:
    app_settings = app_settings or settings

    app = FastAPI(
        title="PayShare API",
        description="Pay-per-download file sharing",
        version="1.0.0",
        docs_url="/docs" if app_settings.APP_DEBUG else None,
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.ledger = ledger or create_ledger_store(app_settings)
    app.state.storage = storage or StorageService(app_settings)
    app.state.auth = AuthService(app_settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LedgerError, ledger_error_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": "1.0.0"}

    app.include_router(api_router, prefix="/api/v1")
    return app


app = create_app()
