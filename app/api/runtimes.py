"""
Runtime catalog API routes.
"""

from fastapi import APIRouter, HTTPException

from app.models.schemas import ErrorResponse, RuntimeInfo
from app.sandbox.runtimes import RUNTIMES, get_runtime

router = APIRouter(prefix="/runtimes", tags=["runtimes"])


@router.get(
    "/",
    response_model=list[RuntimeInfo],
    summary="List runtimes",
    description="Languages the playground can run, with their default image and commands"
)
async def list_runtimes() -> list[RuntimeInfo]:
    return [RuntimeInfo(**profile.to_dict()) for profile in RUNTIMES.values()]


@router.get(
    "/{language}",
    response_model=RuntimeInfo,
    responses={404: {"model": ErrorResponse}},
    summary="Get a runtime"
)
async def get_runtime_info(language: str) -> RuntimeInfo:
    profile = get_runtime(language)
    if profile is None:
        raise HTTPException(status_code=404, detail="Runtime not found")
    return RuntimeInfo(**profile.to_dict())
