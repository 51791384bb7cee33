import logging
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text
from sqlalchemy.orm import Session
from app.api.queue import router as queue_router
from app.api.ussd import router as ussd_router
from app.api.audit import router as audit_router
from app.api.deps import close_clients
from app.core.config import settings
from app.core.db import create_tables, get_db
from app.core.errors import QueueError
from app.core.logging_config import configure_logging

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    logger.info("%s started", settings.PROJECT_NAME)
    yield
    close_clients()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Queue ticketing, agent call-next dispatch and the USSD menu for kiosk, web and mobile customers.",
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _error_body(request: Request, detail: str, error: str, retryable: bool) -> dict:
    return {
        "detail": detail,
        "error": error,
        "retryable": retryable,
        "request_id": getattr(request.state, "request_id", None),
    }


@app.exception_handler(QueueError)
async def queue_exception_handler(request: Request, exc: QueueError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = _error_body(request, exc.message, exc.error_code, exc.retryable)
    if exc.field:
        body["field"] = exc.field
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content=_error_body(
            request,
            "Service Unavailable: Database connection or operational failure",
            "transient_store_error",
            True,
        ),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "Internal Server Error", "internal_error", False),
    )


@app.get("/health", tags=["system"])
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_status = "ok"
    except SQLAlchemyError:
        db_status = "error"
    return {"status": "ok", "database": db_status}


app.include_router(queue_router)
app.include_router(ussd_router)
app.include_router(audit_router)
