import logging
from typing import Any, Dict

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tryon_backend import app_context
from tryon_backend.app.routes.credits import router as credits_router
from tryon_backend.app.routes.generation import router as generation_router
from tryon_backend.app.routes.subscriptions import router as subscriptions_router
from tryon_backend.app.services import tryon as tryon_services
from tryon_backend.middleware_request_id import REQUEST_ID_HEADER, RequestIdMiddleware

load_dotenv()

SERVICE_CONFIG = tryon_services.get_service_config()

logging.basicConfig(
    level=getattr(logging, SERVICE_CONFIG.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("tryon")


def get_conn():
    return psycopg2.connect(**SERVICE_CONFIG.db_config())


if SERVICE_CONFIG.uses_postgres:
    app_context.configure(get_conn=get_conn)

app = FastAPI(title="Try-On Generation API")

app.add_middleware(RequestIdMiddleware)

# Storefront dev origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)

app.include_router(generation_router)
app.include_router(credits_router)
app.include_router(subscriptions_router)


@app.exception_handler(StarletteHTTPException)
async def envelope_http_exception(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict) and "requestId" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)
    return await http_exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def envelope_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    body: Dict[str, Any] = {
        "error": {
            "code": "invalid_request",
            "message": "Request body failed validation.",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
        "requestId": request_id,
    }
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body)


@app.exception_handler(Exception)
async def envelope_unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.error(
        "Unhandled error on %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
        extra={"request_id": request_id},
    )
    body: Dict[str, Any] = {
        "error": {"code": "internal_error", "message": "An unexpected error occurred."},
        "requestId": request_id,
    }
    headers = {REQUEST_ID_HEADER: request_id} if request_id else None
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body, headers=headers)


@app.on_event("startup")
def recover_stale_reservations() -> None:
    released = tryon_services.release_stale_reservations()
    logger.info("Startup reservation sweep released %s reservations", released)


@app.on_event("shutdown")
def shutdown_generation_workers() -> None:
    tryon_services.shutdown_services()


@app.get("/api/health")
def health() -> Dict[str, Any]:
    cache = tryon_services.get_generation_cache()
    return {
        "status": "ok",
        "storageBackend": SERVICE_CONFIG.storage_backend,
        "inFlightGenerations": cache.in_flight_count(),
    }
