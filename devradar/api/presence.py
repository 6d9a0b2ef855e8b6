from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from devradar.api.deps import get_runtime
from devradar.core.auth import get_current_user_id
from devradar.core.clock import epoch_ms
from devradar.models.presence import PresenceRecord
from devradar.runtime import Runtime

router = APIRouter(prefix="/v1/presence")


@router.get("/friends")
async def friends_presence(user_id: str = Depends(get_current_user_id), runtime: Runtime = Depends(get_runtime)):
    """Current presence of everyone the caller follows; unknown means offline."""
    friend_ids = await run_in_threadpool(runtime.graph.get_friend_ids, user_id)
    known = await runtime.stores.presence.get_presences(friend_ids)
    now = epoch_ms(runtime.gateway.time_fn())
    friends = [
        (known.get(fid) or PresenceRecord.offline(fid, now)).model_dump(by_alias=True)
        for fid in sorted(friend_ids)
    ]
    return {"data": friends}
