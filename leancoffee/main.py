from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
import json
import logging
import traceback

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from leancoffee.database import Base, engine, get_db
import leancoffee.models  # noqa: F401  # Ensure all SQLAlchemy models are registered
from leancoffee.auth.identity import decode_identity, extract_token
from leancoffee.routers import realtime as realtime_router
from leancoffee.routers import sessions as sessions_router
from leancoffee.schemas.envelope import AppResult, ValidationErrorItem
from leancoffee.services.gateway import SessionGateway, get_gateway
from leancoffee.utils.logging_config import setup_logging

logger = logging.getLogger("leancoffee")
audit_logger = logging.getLogger("audit")

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
AUDIT_VALUE_LIMIT = 80
# Pydantic prefixes error locations with where the value came from.
_LOCATION_PREFIXES = {"body", "query", "path", "header", "cookie"}


def _active_gateway(app: FastAPI) -> SessionGateway:
    provider = app.dependency_overrides.get(get_gateway, get_gateway)
    return provider()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine)
    gateway = _active_gateway(app)
    cleared = gateway.presence.reset()
    logger.info("Lean Coffee core started; cleared %s stale presence flags.", cleared)
    try:
        yield
    finally:
        await gateway.shutdown()
        logger.info("Lean Coffee core stopped.")


app = FastAPI(
    title="Lean Coffee",
    description="Session collaboration core for Lean Coffee meetings",
    lifespan=lifespan,
)


def _redact(key: str, value: Any) -> Any:
    if "token" in key.lower():
        return "***"
    if isinstance(value, str) and len(value) > AUDIT_VALUE_LIMIT:
        return f"<{len(value)} chars>"
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return type(value).__name__


def _summarize_body(raw: bytes) -> Optional[str]:
    """Compact, redacted rendering of a JSON request body for the audit log."""
    if not raw:
        return None
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return "unparseable"
    if not isinstance(parsed, dict):
        return type(parsed).__name__
    return json.dumps(
        {str(key): _redact(str(key), value) for key, value in parsed.items()},
        ensure_ascii=True,
    )


async def audit_action_middleware(
    request: Request, call_next: RequestResponseEndpoint
) -> Response:
    """Log every mutating API call with its caller and outcome."""
    method = request.method.upper()
    path = request.url.path
    if method not in MUTATING_METHODS or not path.startswith("/api/"):
        return await call_next(request)

    identity = decode_identity(extract_token(request.headers, request.cookies))
    body_summary = None
    if request.headers.get("content-type", "").lower().startswith("application/json"):
        body_summary = _summarize_body(await request.body())

    response = await call_next(request)

    entry: Dict[str, Any] = {
        "user": identity.user_id if identity else "anonymous",
        "method": method,
        "path": path,
        "status": response.status_code,
    }
    if body_summary:
        entry["payload"] = body_summary
    audit_logger.info("API mutation: %s", entry)
    return response


app.add_middleware(BaseHTTPMiddleware, dispatch=audit_action_middleware)

app.include_router(sessions_router.router)
app.include_router(realtime_router.router)


def _envelope(result: AppResult) -> JSONResponse:
    return JSONResponse(
        status_code=result.status_code,
        content=result.model_dump(mode="json", by_alias=True),
    )


def _validation_items(errors: List[Dict[str, Any]]) -> List[ValidationErrorItem]:
    items = []
    for err in errors:
        location = [str(part) for part in err.get("loc", ())]
        if location and location[0] in _LOCATION_PREFIXES:
            location = location[1:]
        items.append(
            ValidationErrorItem(
                property_name=".".join(location) or "request",
                error_message=str(err.get("msg", "Invalid value")),
            )
        )
    return items


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error on %s %s: %s\n%s",
        request.method,
        request.url.path,
        exc,
        traceback.format_exc(),
    )
    return _envelope(
        AppResult.failure_result(
            "An unexpected error occurred.", "INTERNAL_ERROR", status_code=500
        )
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error("HTTP %s on %s: %s", exc.status_code, request.url.path, exc.detail)
    else:
        logger.info("HTTP %s on %s: %s", exc.status_code, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    items = _validation_items(exc.errors())
    logger.warning(
        "Rejected request to %s: %s",
        request.url.path,
        [f"{item.property_name}: {item.error_message}" for item in items],
    )
    return _envelope(AppResult.validation_failure(items))


@app.get("/health", tags=["healthcheck"])
async def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logging.getLogger("database").error("Health check failed: %s", exc)
        raise HTTPException(status_code=503, detail="Database connection failed")
    return {"status": "healthy", "database": "connected"}
