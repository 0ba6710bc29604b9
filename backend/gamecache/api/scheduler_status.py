"""
Scheduler Status API Endpoints

Provides endpoints to monitor background job status and manually trigger jobs.
"""

from fastapi import APIRouter, Depends, HTTPException
from fastapi import status as http_status

from gamecache.api.deps import get_scheduler
from gamecache.core.scheduler import BackgroundScheduler
from gamecache.schemas.common import DataResponse, ErrorResponse

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


@router.get(
    "/status",
    response_model=DataResponse,
    responses={
        200: {"description": "Scheduler status retrieved successfully"},
        500: {"description": "Internal server error", "model": ErrorResponse}
    }
)
async def get_scheduler_status(scheduler: BackgroundScheduler = Depends(get_scheduler)):
    """
    Get status of background scheduler and all jobs

    Returns information about:
    - Scheduler state (running/stopped)
    - List of scheduled jobs with next run times
    """
    try:
        job_status = scheduler.get_job_status()

        return DataResponse(data={
            "scheduler": job_status,
            "system_health": "healthy" if job_status["status"] == "running" else "degraded",
            "message": "Cache maintenance is active" if job_status["status"] == "running" else "Cache maintenance is not running"
        })

    except Exception as e:
        raise HTTPException(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to get scheduler status: {str(e)}"
        )


@router.post(
    "/trigger/{job_id}",
    response_model=DataResponse,
    responses={
        200: {"description": "Job triggered successfully"},
        400: {"description": "Bad request", "model": ErrorResponse}
    }
)
async def trigger_job(job_id: str, scheduler: BackgroundScheduler = Depends(get_scheduler)):
    """
    Manually trigger a maintenance job without waiting for its schedule
    """
    result = await scheduler.trigger_job(job_id)

    if not result["success"]:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail=result["message"]
        )

    return DataResponse(data={
        "job_id": job_id,
        "message": result["message"],
        "triggered_at": "now"
    })
