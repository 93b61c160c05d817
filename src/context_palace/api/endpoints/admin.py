"""Admin endpoints for background maintenance."""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from context_palace.api.dependencies import get_maintenance
from context_palace.core.logging import get_logger
from context_palace.services.maintenance import MaintenanceOrchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class JobStatusResponse(BaseModel):
    scheduler_running: bool
    active_jobs: int
    jobs: list[dict]


class JobTriggerResponse(BaseModel):
    job_id: str
    result: Any = None
    message: str


@router.get("/jobs/status", response_model=JobStatusResponse, operation_id="job_status")
async def get_job_status(orchestrator: MaintenanceOrchestrator = Depends(get_maintenance)):
    """Get maintenance scheduler status."""
    status = orchestrator.get_job_status()
    return JobStatusResponse(
        scheduler_running=status["scheduler_running"], active_jobs=len(status["jobs"]), jobs=status["jobs"]
    )


@router.post("/jobs/trigger/{job_id}", response_model=JobTriggerResponse, operation_id="trigger")
async def trigger_job(job_id: str, orchestrator: MaintenanceOrchestrator = Depends(get_maintenance)):
    """Run a maintenance job now. Unknown job ids return 404."""
    outcome = await orchestrator.trigger(job_id)
    # Jobs log and swallow their own failures, which leaves a None result
    message = f"Job {job_id} completed" if outcome["result"] is not None else f"Job {job_id} failed; see logs"
    return JobTriggerResponse(job_id=job_id, result=outcome["result"], message=message)
