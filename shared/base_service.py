"""
Base service class for Entitlement Platform services.

``BaseService`` builds the FastAPI app, request correlation and timing
middleware, the ``/health`` and ``/metrics`` routes and the mapping from
``PlatformException`` to the JSON error body. Subclasses add routes and
override ``start``, ``stop`` and ``_check_dependencies``.
"""

import os
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticityError, ErrorResponse, PlatformException, RateLimitError
from shared.logging import clear_context, configure_logging, get_logger, set_request_id
from shared.metrics import get_metrics_collector

VERSION = "1.0.0"


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)

        configure_logging(service_name, self.config.log_level)
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_exception_handlers()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.start()
            try:
                yield
            finally:
                await self.stop()

        local = self.config.env == "local"
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Entitlement Platform - {self.service_name.title()} Service",
            version=VERSION,
            docs_url="/docs" if local else None,
            redoc_url="/redoc" if local else None,
            lifespan=lifespan,
        )

    def _setup_middleware(self):
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self.app.middleware("http")(self._correlate_and_time)

    async def _correlate_and_time(self, request: Request, call_next):
        """Tag the request with an id, then record its duration and status."""
        started = time.time()
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        try:
            response = await call_next(request)
            duration = time.time() - started
            response.headers["X-Request-ID"] = request_id

            # Route templates keep label cardinality bounded.
            route = request.scope.get("route")
            endpoint = getattr(route, "path", None) or "unmatched"
            self.metrics.record_http_request(request.method, endpoint, response.status_code, duration)
            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2)
            )
            return response
        finally:
            clear_context()

    def _setup_exception_handlers(self):
        self.app.add_exception_handler(PlatformException, self._handle_platform_exception)
        self.app.add_exception_handler(RequestValidationError, self._handle_validation_error)
        self.app.add_exception_handler(Exception, self._handle_unexpected)

    async def _handle_platform_exception(self, request: Request, exc: PlatformException):
        if isinstance(exc, AuthenticityError):
            # Full reason stays in the log; the response is generic.
            self.logger.error("Authenticity check failed", security_event=True, path=request.url.path, reason=exc.message)
        elif exc.status_code >= 500:
            self.logger.error("Platform error", code=exc.code, message=exc.message, details=exc.details)
        else:
            self.logger.warning("Request rejected", code=exc.code, message=exc.message, status_code=exc.status_code)

        self.metrics.record_error(exc.code)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response().model_dump(),
            headers=exc.headers if isinstance(exc, RateLimitError) else None
        )

    async def _handle_validation_error(self, request: Request, exc: RequestValidationError):
        """Request validation failures are 400 with field-level details."""
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        self.logger.warning("Request validation failed", path=request.url.path, errors=errors)
        self.metrics.record_error("VALIDATION_ERROR")
        body = ErrorResponse(code="VALIDATION_ERROR", message="Invalid request", details={"errors": errors})
        return JSONResponse(status_code=400, content=body.model_dump())

    async def _handle_unexpected(self, request: Request, exc: Exception):
        self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
        self.metrics.record_error("INTERNAL_ERROR")
        body = ErrorResponse(code="INTERNAL_ERROR", message="Internal server error")
        return JSONResponse(status_code=500, content=body.model_dump())

    def _setup_routes(self):
        @self.app.get("/health")
        async def health_check():
            """Report dependency status; 503 when any dependency is down."""
            dependencies = await self._check_dependencies()
            healthy = "error" not in dependencies.values()
            status = "ok" if healthy else "error"
            self.metrics.record_health_check(status)
            return JSONResponse(
                status_code=200 if healthy else 503,
                content={
                    "service": self.service_name,
                    "status": status,
                    "uptime_seconds": time.time() - self._start_time,
                    "dependencies": dependencies,
                    "version": VERSION,
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }
            )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            return Response(content=generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    async def start(self):
        """Open service resources. Override in subclasses."""

    async def stop(self):
        """Close service resources. Override in subclasses."""

    async def _check_dependencies(self) -> Dict[str, str]:
        """Map dependency name to ``ok``, ``degraded`` or ``error``."""
        return {}

    def run(self):
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
