"""FastAPI application factory for the prompt mining relay."""

from __future__ import annotations

import logging
import os
from http import HTTPStatus
from typing import Any, Dict, Final, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from routes.analytics import router as analytics_router
from routes.health import router as health_router
from routes.prompts import router as prompts_router
from routes.security import SecurityGate, SecuritySettings

from .config import Settings, load_settings
from .errors import MintingError
from .service import MintingService

LOGGER: Final[logging.Logger] = logging.getLogger("prompt_mining")


def _configure_logging() -> None:
    level = os.environ.get("PM_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO))
    LOGGER.info("Prompt mining logging configured", extra={"level": level})


def _error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MintingError)
    async def _minting_error(_request: Request, exc: MintingError) -> JSONResponse:
        if exc.http_status >= 500:
            LOGGER.warning("request.failed", extra={"code": exc.code, "category": exc.category})
        return JSONResponse(_error_body(**exc.to_dict()), status_code=exc.http_status)

    @app.exception_handler(HTTPException)
    async def _http_error(_request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail
        if isinstance(detail, dict) and "code" in detail:
            body = _error_body(str(detail["code"]), str(detail.get("message") or detail["code"]))
        else:
            code = HTTPStatus(exc.status_code).phrase.upper().replace(" ", "_")
            body = _error_body(code, str(detail))
        return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
        return JSONResponse(
            _error_body("VALIDATION_ERROR", "Request validation failed", {"fields": fields}),
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.error(
            "request.unhandled",
            extra={"path": request.url.path, "error": type(exc).__name__},
            exc_info=exc,
        )
        return JSONResponse(_error_body("INTERNAL_ERROR", "An unexpected error occurred"), status_code=500)


def create_app(
    *,
    settings: Optional[Settings] = None,
    service: Optional[MintingService] = None,
) -> FastAPI:
    """Instantiate the relay API around a single ``MintingService``."""

    _configure_logging()
    if service is None:
        service = MintingService.from_settings(settings or load_settings())
    app = FastAPI(title="Prompt Mining Relay", version="0.1.0", docs_url="/docs")
    app.state.service = service
    app.state.security = SecurityGate(SecuritySettings.from_auth_config(service.settings.auth))

    _install_error_handlers(app)
    app.include_router(health_router)
    app.include_router(prompts_router)
    app.include_router(analytics_router)

    @app.on_event("startup")
    async def _initialize_nonces() -> None:
        seeded = await service.initialize()
        LOGGER.info("Relay ready", extra={"seeded_nonces": seeded})

    return app


__all__ = ["create_app"]
