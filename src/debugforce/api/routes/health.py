from fastapi import APIRouter, Request

from debugforce import __version__
from debugforce.api.schemas.session_schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Liveness check; reports whether the orchestrator is wired."""
    ready = getattr(request.app.state, "orchestrator", None) is not None
    return HealthResponse(
        status="healthy" if ready else "starting",
        details={"version": __version__, "orchestrator": ready},
    )
