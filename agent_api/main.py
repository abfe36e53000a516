import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agent_api.catalog_routes import catalog_router
from agent_api.dependencies import build_idempotency_cache
from agent_api.lead_routes import leads_router
from common.config import settings
from common.database import init_db
from common.enums import AgentAction
from common.exceptions import AgentAPIError, UnknownAction
from common.logging_config import configure_logging


logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if settings.CREATE_SCHEMA_ON_STARTUP:
        await init_db()
        logger.info("Database schema created")
    app.state.idempotency_cache = build_idempotency_cache()
    logger.info("Agent API started")
    yield
    await app.state.idempotency_cache.close()
    logger.info("Agent API stopped")


app = FastAPI(
    title="Outreach Agent API",
    summary="Deterministic lead pipeline for outreach agents, with idempotent writes",
    lifespan=lifespan,
)

app.include_router(catalog_router)
app.include_router(leads_router)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid4())


def _error_response(request: Request, status_code: int, payload: dict) -> JSONResponse:
    request_id = _request_id(request)
    return JSONResponse(
        status_code=status_code,
        content={**jsonable_encoder(payload), "requestId": request_id},
        headers={REQUEST_ID_HEADER: request_id},
    )


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request.state.request_id
    return response


@app.exception_handler(AgentAPIError)
async def agent_api_error_handler(request: Request, exc: AgentAPIError):
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return _error_response(request, exc.status_code, exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    for error in errors:
        # An action outside the catalog is reported with the list of valid names
        if tuple(error.get("loc", ())) == ("body", "action") and error.get("type") == "enum":
            unknown = UnknownAction(error.get("input"), [a.value for a in AgentAction])
            return _error_response(request, unknown.status_code, unknown.to_payload())
    return _error_response(
        request,
        status.HTTP_400_BAD_REQUEST,
        {
            "error": "Validation error",
            "code": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": errors,
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error on %s %s (request %s)", request.method, request.url.path, _request_id(request)
    )
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"error": "Internal error", "code": "INTERNAL_ERROR", "message": "Unexpected server error"},
    )
