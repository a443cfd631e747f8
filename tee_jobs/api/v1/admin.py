from dataclasses import asdict

from fastapi import APIRouter

from tee_jobs.api.deps import Runtime

router = APIRouter()

@router.get("/queue/health")
async def queue_health(runtime: Runtime):
    health = await runtime.monitor.get_queue_health()
    return asdict(health)

@router.post("/recover-stuck")
async def trigger_recover_stuck(runtime: Runtime):
    report = await runtime.recovery.trigger_manual_recovery()
    return asdict(report)

@router.post("/cleanup")
async def trigger_cleanup(runtime: Runtime):
    removed = await runtime.monitor.cleanup_completed_jobs()
    return {"removed_count": removed}
