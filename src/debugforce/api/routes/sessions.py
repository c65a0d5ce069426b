"""
Debugging Session API Routes
============================

HTTP endpoints of the debugging control surface.

Endpoints:
- POST /api/v1/sessions - Start a debugging session
- GET /api/v1/sessions/{session_id} - Session status snapshot
- POST /api/v1/sessions/{session_id}/observations - Add an observation
- POST /api/v1/sessions/{session_id}/cancel - Cancel a session
"""

from fastapi import APIRouter, Depends, HTTPException, status

from debugforce.api.dependencies import get_orchestrator
from debugforce.api.schemas.session_schemas import (
    AcknowledgementResponse,
    ObservationRequest,
    SessionStatusResponse,
    StartSessionRequest,
    StartSessionResponse,
)
from debugforce.core.domain.errors import InvalidTransitionError, SessionNotFoundError
from debugforce.core.domain.orchestrator import MotherOrchestrator

router = APIRouter()


def _not_found(e: SessionNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=str(e),
    )


def _conflict(e: InvalidTransitionError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=str(e),
    )


@router.post(
    "/sessions",
    response_model=StartSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start debugging session",
    description="Triage the error and investigate its hypotheses in the background",
)
async def start_session(
    request: StartSessionRequest,
    orchestrator: MotherOrchestrator = Depends(get_orchestrator),
) -> StartSessionResponse:
    """
    Start a debugging session.

    Returns immediately; poll the status endpoint for progress.

    Raises:
        HTTPException 400: If error or repo_path is blank
    """
    try:
        session_id = await orchestrator.start_session(
            error=request.error,
            repo_path=request.repo_path,
            context=request.context,
            language=request.language,
            file_path=request.file_path,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    snapshot = await orchestrator.get_status(session_id)
    return StartSessionResponse(session_id=session_id, status=snapshot.status.value)


@router.get(
    "/sessions/{session_id}",
    response_model=SessionStatusResponse,
    summary="Get session status",
)
async def get_session(
    session_id: str,
    orchestrator: MotherOrchestrator = Depends(get_orchestrator),
) -> SessionStatusResponse:
    try:
        snapshot = await orchestrator.get_status(session_id)
    except SessionNotFoundError as e:
        raise _not_found(e)
    return SessionStatusResponse.from_snapshot(snapshot)


@router.post(
    "/sessions/{session_id}/observations",
    response_model=AcknowledgementResponse,
    summary="Add observation",
    description="Live scenario agents pick the observation up on their next iteration",
)
async def add_observation(
    session_id: str,
    request: ObservationRequest,
    orchestrator: MotherOrchestrator = Depends(get_orchestrator),
) -> AcknowledgementResponse:
    try:
        await orchestrator.add_observation(session_id, request.text)
    except SessionNotFoundError as e:
        raise _not_found(e)
    except InvalidTransitionError as e:
        raise _conflict(e)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    return AcknowledgementResponse(acknowledged=True)


@router.post(
    "/sessions/{session_id}/cancel",
    response_model=AcknowledgementResponse,
    summary="Cancel session",
)
async def cancel_session(
    session_id: str,
    orchestrator: MotherOrchestrator = Depends(get_orchestrator),
) -> AcknowledgementResponse:
    """
    Kill every live scenario of a session.

    Raises:
        HTTPException 404: If the session does not exist
        HTTPException 409: If the session already concluded
    """
    try:
        final_status = await orchestrator.cancel_session(session_id)
    except SessionNotFoundError as e:
        raise _not_found(e)
    except InvalidTransitionError as e:
        raise _conflict(e)
    return AcknowledgementResponse(acknowledged=True, status=final_status.value)
