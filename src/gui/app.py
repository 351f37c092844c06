"""
statbridge GUI - FastAPI Application.

This module creates and configures the FastAPI application exposing engine
status and analysis execution.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from engine import (
    DomainError,
    EngineCorruption,
    EngineError,
    ExecutionTimeout,
    InitializationFailure,
    ResultShapeError,
)

from .config import GUI_DEBUG
from .models import ErrorResponse
from .routes import api_router, websocket_router
from .services.engine_service import EngineService, get_engine_service, set_engine_service

# HTTP status per engine error type (first match wins)
ERROR_STATUS = (
    (DomainError, 422),
    (ExecutionTimeout, 504),
    (InitializationFailure, 503),
    (EngineCorruption, 503),
    (ResultShapeError, 502),
)


def error_status(error: EngineError) -> int:
    for error_cls, status in ERROR_STATUS:
        if isinstance(error, error_cls):
            return status
    return 500


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    body = ErrorResponse(error=exc.category, message=exc.message, raw_message=exc.raw_message)
    return JSONResponse(status_code=error_status(exc), content=body.model_dump())


def create_app(service: Optional[EngineService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Parameters
    ----------
    service : EngineService, optional
        Engine service to use instead of the default singleton.

    Returns
    -------
    FastAPI
        Configured application instance.
    """
    if service is not None:
        set_engine_service(service)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await get_engine_service().shutdown()

    app = FastAPI(
        title="statbridge",
        description="Status and execution API for the embedded R statistics engine",
        version="0.1.0",
        debug=GUI_DEBUG,
        lifespan=lifespan,
    )

    app.add_exception_handler(EngineError, engine_error_handler)

    # Include routers
    app.include_router(api_router)
    app.include_router(websocket_router)

    return app


# Application instance for uvicorn
app = create_app()


def run_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False):
    """
    Run the development server.

    Parameters
    ----------
    host : str
        Host to bind to.
    port : int
        Port to bind to.
    reload : bool
        Enable auto-reload on code changes.
    """
    import uvicorn

    uvicorn.run("gui.app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    from .config import GUI_HOST, GUI_PORT

    run_server(GUI_HOST, GUI_PORT)
