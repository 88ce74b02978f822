"""
Passkey Sessions Sample Application

Run with: uvicorn sample:app
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException

from passkey_auth.errors import StorageUnavailable
from passkey_auth.orchestrator import AuthOrchestrator, get_orchestrator
from passkey_auth.router import auth, session

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(application: FastAPI):
    yield
    # Only close an orchestrator that requests actually built
    if get_orchestrator.cache_info().currsize:
        await get_orchestrator().close()
        get_orchestrator.cache_clear()


def create_app() -> FastAPI:
    """
    Build the application with both routers mounted under /api
    """
    application = FastAPI(title="Passkey Sessions", lifespan=lifespan)

    @application.get("/health", tags=["Health"])
    async def health(orchestrator: AuthOrchestrator = Depends(get_orchestrator)) -> dict:
        try:
            await orchestrator.check_storage()
        except StorageUnavailable as err:
            raise HTTPException(status_code=err.status_code, detail=err.to_detail()) from err
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Include passkey routers
    application.include_router(auth.router, prefix="/api", tags=["Authentication"])
    application.include_router(session.router, prefix="/api", tags=["Session"])
    return application


app = create_app()
