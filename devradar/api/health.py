import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from devradar.api.deps import get_runtime
from devradar.runtime import Runtime

logger = logging.getLogger("devradar.health")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(runtime: Runtime = Depends(get_runtime)):
    """Readiness: the presence store answers and the data layer is reachable."""
    checks = {
        "store": await runtime.stores.presence.ping(),
        "database": await run_in_threadpool(runtime.graph.ping),
    }
    if not all(checks.values()):
        failed = ", ".join(name for name, ok in checks.items() if not ok)
        logger.warning(f"[readyz] not ready: {failed}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": f"unavailable: {failed}", "checks": checks})
    return {"status": "ok", "backend": runtime.stores.backend_name, "checks": checks}
