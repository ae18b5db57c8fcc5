# backend/customer_insights/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import settings
from .db import Base, engine, SessionLocal
from .errors import AppError
from .logging_config import get_logger
from .routers import analytics, customers
from .seed import seed_if_needed

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables first
    Base.metadata.create_all(bind=engine)

    # Optional seeding
    if settings.SEED_ON_START:
        with SessionLocal() as db:
            seed_if_needed(db)
    yield


app = FastAPI(title=settings.APP_TITLE, version=settings.APP_VERSION, lifespan=lifespan)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    logger.warning(
        "Request failed",
        extra={"path": request.url.path, "status_code": exc.status_code, "error": str(exc)},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# API routers
app.include_router(customers.router)
app.include_router(analytics.router)  # /api/health/*
