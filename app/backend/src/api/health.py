"""Health check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.backend.src.services.mailer import Mailer, get_mailer
from ..db import get_session_dependency

router = APIRouter(tags=["health"])


@router.get("/health/live")
def liveness() -> dict[str, str]:
    """Return a liveness indicator."""

    return {"status": "live"}


@router.get("/health/ready")
def readiness(session: Session = Depends(get_session_dependency)) -> dict[str, str]:
    """Return readiness information, ensuring the database connection is healthy."""

    session.execute(text("SELECT 1"))
    return {"status": "ready"}


@router.get("/health/smtp")
def smtp_health(mailer: Mailer = Depends(get_mailer)) -> dict[str, str]:
    """Connect and authenticate against the SMTP server without sending mail."""

    mailer.verify()
    return {"status": "ok"}


@router.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics."""

    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
