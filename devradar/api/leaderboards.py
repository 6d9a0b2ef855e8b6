from fastapi import APIRouter, Depends, Query, Response

from devradar.api.deps import get_runtime
from devradar.core.auth import get_current_user_id
from devradar.models.leaderboard import LeaderboardMetric
from devradar.runtime import Runtime

router = APIRouter(prefix="/v1/leaderboards")

BOARD_CACHE = "public, max-age=60"
NETWORK_CACHE = "public, max-age=10"


@router.get("/weekly/{metric}")
async def weekly_leaderboard(
    metric: LeaderboardMetric,
    response: Response,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    runtime: Runtime = Depends(get_runtime),
):
    """Top users for this week's ``time`` or ``commits`` board."""
    board = await runtime.leaderboards.weekly(metric, user_id, page=page, limit=limit)
    response.headers["Cache-Control"] = BOARD_CACHE
    return {"data": board.model_dump(by_alias=True)}


@router.get("/friends")
async def friends_leaderboard(
    response: Response,
    user_id: str = Depends(get_current_user_id),
    runtime: Runtime = Depends(get_runtime),
):
    board = await runtime.leaderboards.friends(user_id)
    response.headers["Cache-Control"] = BOARD_CACHE
    return {"data": board.model_dump(by_alias=True, exclude={"pagination"})}


@router.get("/network-activity")
async def network_activity(
    response: Response,
    user_id: str = Depends(get_current_user_id),
    runtime: Runtime = Depends(get_runtime),
):
    activity = await runtime.leaderboards.network_activity()
    response.headers["Cache-Control"] = NETWORK_CACHE
    return {"data": activity.model_dump(by_alias=True)}
