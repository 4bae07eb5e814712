"""
Session inspection API routes.
"""

from fastapi import APIRouter, Depends
from structlog import get_logger

from app.models.schemas import SessionInfo, SessionListResponse
from app.services.playground_service import get_session_manager
from app.services.session_manager import SessionManager

logger = get_logger()
router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get(
    "/",
    response_model=SessionListResponse,
    summary="List live sessions",
    description="Read-only view of the sessions currently bound to a client connection"
)
async def list_sessions(
    manager: SessionManager = Depends(get_session_manager)
) -> SessionListResponse:
    """
    List live sessions.

    Sessions are sorted by creation time (oldest first).
    """
    sessions = sorted(manager.list_sessions(), key=lambda s: s.created_at)
    return SessionListResponse(
        sessions=[SessionInfo.from_session(s) for s in sessions],
        total=len(sessions)
    )
