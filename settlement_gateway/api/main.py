"""FastAPI application factory"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from settlement_gateway.api.middleware import AccessLogMiddleware, RequestContextMiddleware
from settlement_gateway.api.v1 import audit, credit, inventory, orders, returns
from settlement_gateway.domain.exceptions import BlobStoreError, ConflictError, DomainException
from settlement_gateway.infrastructure.observability.logging import log_domain_error, setup_logging
from settlement_gateway.infrastructure.observability.metrics import conflict_counter
from settlement_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)

STATUS_BY_KIND = {
    "validation": 400,
    "permission": 403,
    "not_found": 404,
    "conflict": 409,
    "invariant": 422,
    "upstream": 503,
}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    """Translate the domain exception hierarchy into HTTP responses"""
    request_id = _request_id(request)
    if isinstance(exc, ConflictError):
        conflict_counter.labels(code=exc.code).inc()
    if isinstance(exc, BlobStoreError):
        logging.error(f"Blob store error: {exc}", extra={"request_id": request_id})
    else:
        log_domain_error(request_id, exc.code, exc.detail, request.url.path)
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, 400),
        content={"error": exc.code, "kind": exc.kind, "detail": exc.detail},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are validation errors like any other"""
    detail = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
    log_domain_error(_request_id(request), "VALIDATION_ERROR", "; ".join(detail), request.url.path)
    return JSONResponse(
        status_code=400,
        content={"error": "VALIDATION_ERROR", "kind": "validation", "detail": detail},
    )


async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logging.error(f"Unexpected error: {exc}", extra={"request_id": _request_id(request)}, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "kind": "internal", "detail": "Internal server error"},
    )


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Settlement Gateway",
        description="Credit ledger, payment verification and return settlement service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(DomainException, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unexpected_exception_handler)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(credit.router, prefix="/v1", tags=["credit"])
    app.include_router(returns.router, prefix="/v1", tags=["returns"])
    app.include_router(orders.router, prefix="/v1", tags=["orders"])
    app.include_router(inventory.router, prefix="/v1", tags=["inventory"])
    app.include_router(audit.router, prefix="/v1", tags=["audit"])

    return app


app = create_app()
