from fastapi import HTTPException, Request, status

from debugforce.core.domain.orchestrator import MotherOrchestrator


def get_orchestrator(request: Request) -> MotherOrchestrator:
    """Orchestrator created by the application lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized",
        )
    return orchestrator
