"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from churnpilot.api import analytics, coupons, ingestion, outbox, playbooks, templates
from churnpilot.config import get_settings
from churnpilot.exceptions import PersistenceError, ValidationError

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: make sure tables exist (SQLite dev setups have no migrations)
    from churnpilot.database import Base, engine
    import churnpilot.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Churn risk scoring and automated retention playbooks",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content=exc.to_dict())


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    return JSONResponse(status_code=503, content={"error": "persistence_error", "message": str(exc)})


# Register routers
app.include_router(ingestion.router, prefix="/api/v1")
app.include_router(playbooks.router, prefix="/api/v1")
app.include_router(templates.router, prefix="/api/v1")
app.include_router(coupons.router, prefix="/api/v1")
app.include_router(analytics.router, prefix="/api/v1")
app.include_router(outbox.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
