from fastapi import APIRouter, Depends

from devradar.api.deps import get_runtime
from devradar.core.auth import Credential, get_current_credential
from devradar.core.logging import get_logger, log_event
from devradar.runtime import Runtime

router = APIRouter(prefix="/v1/auth")

logger = get_logger("auth")


@router.post("/logout")
async def logout(credential: Credential = Depends(get_current_credential), runtime: Runtime = Depends(get_runtime)):
    """Revoke the bearer token. Live sockets opened with it are closed with 4002."""
    closed = await runtime.gateway.revoke(credential)
    log_event(
        "info",
        "auth.logout",
        logger=logger,
        user_id=credential.user_id,
        event_type="auth.logout",
        extra={"sockets_closed": closed},
    )
    return {"data": {"revoked": True, "socketsClosed": closed}}
