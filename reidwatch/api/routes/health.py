"""Health check endpoints."""

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
def health() -> dict[str, str]:
    """Liveness check; does not load any model."""

    return {"status": "ok", "service": "reidwatch"}
