"""
Stats endpoints. Session reports arrive from the editor agent every few
minutes; the remaining routes serve the dashboard and the agent's stats view.
"""

from fastapi import APIRouter, Depends, Query

from devradar.api.deps import get_runtime
from devradar.core.auth import get_current_user_id
from devradar.models.stats import CommitReport, SessionReport
from devradar.runtime import Runtime

router = APIRouter(prefix="/v1/stats")


@router.post("/session")
async def record_session(
    report: SessionReport,
    user_id: str = Depends(get_current_user_id),
    runtime: Runtime = Depends(get_runtime),
):
    """Record a coding session increment. The answer does not depend on whether the streak moved."""
    await runtime.stats.record_session(
        user_id,
        report.session_duration,
        language=report.language,
        project=report.project,
    )
    return {"data": {"recorded": True}}


@router.post("/commits")
async def record_commits(
    report: CommitReport,
    user_id: str = Depends(get_current_user_id),
    runtime: Runtime = Depends(get_runtime),
):
    total = await runtime.stats.record_commits(user_id, report.count)
    return {"data": {"recorded": True, "weeklyCommits": total}}


@router.get("/me")
async def get_my_stats(user_id: str = Depends(get_current_user_id), runtime: Runtime = Depends(get_runtime)):
    summary = await runtime.stats.get_summary(user_id)
    return {"data": summary.model_dump(by_alias=True)}


@router.get("/streak")
async def get_streak(user_id: str = Depends(get_current_user_id), runtime: Runtime = Depends(get_runtime)):
    streak = await runtime.stats.get_streak(user_id)
    return {"data": streak.model_dump(by_alias=True)}


@router.get("/weekly")
async def get_weekly(user_id: str = Depends(get_current_user_id), runtime: Runtime = Depends(get_runtime)):
    weekly = await runtime.stats.get_weekly(user_id)
    return {"data": weekly.model_dump(by_alias=True)}


@router.get("/achievements")
async def list_achievements(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    runtime: Runtime = Depends(get_runtime),
):
    # One extra row tells us whether another page exists.
    items = await runtime.stats.list_achievements(user_id, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    return {
        "data": [a.model_dump(by_alias=True) for a in items[:limit]],
        "pagination": {"limit": limit, "offset": offset, "hasMore": has_more},
    }
