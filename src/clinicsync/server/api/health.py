"""Health check API route."""

from __future__ import annotations

from fastapi import APIRouter

from clinicsync import __version__
from clinicsync.server.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__)
