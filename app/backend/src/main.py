"""Entrypoint for the FastAPI application."""

import os
from dotenv import load_dotenv

# Load .env locally only (deployments inject env vars)
env_path = os.path.join(os.path.dirname(__file__), "../.env")
if os.path.exists(env_path):
    load_dotenv(dotenv_path=os.path.abspath(env_path))

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import health, invoices
from .core.errors import InvoiceEngineError
from .core.logging import configure_logging

LOGGER = structlog.get_logger(__name__)


async def handle_engine_error(request: Request, exc: InvoiceEngineError) -> JSONResponse:
    log = LOGGER.error if exc.status_code >= 500 else LOGGER.info
    log(
        "request_failed",
        path=request.url.path,
        error=exc.code,
        stage=exc.stage,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Invoice Engine", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(InvoiceEngineError, handle_engine_error)

    app.include_router(health.router, prefix="/api")
    app.include_router(invoices.router, prefix="/api")

    return app


app = create_app()
