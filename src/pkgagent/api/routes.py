"""API route handlers for the install agent status endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse

from pkgagent.api.models import ErrorResponse, ProgressResponse, RunRequest, SuccessResponse
from pkgagent.models.status import StageEnum
from pkgagent.services.agent import InstallAgent
from pkgagent.services.state_manager import StateManager

router = APIRouter(prefix="/api/v1.0")
logger = logging.getLogger("pkgagent.api")


@router.get("/progress", response_model=ProgressResponse)
async def get_progress():
    """GET /api/v1.0/progress - Query current run status.

    Response format (success):
        {
            "code": 200,
            "msg": "success",
            "data": {
                "stage": "mounted",
                "track": "stable",
                "package_id": "com.example.app",
                "completed": 1,
                "total": 3,
                "message": "Mounted com.example.app at /Volumes/App",
                "error": null
            }
        }

    A failed last run is reported with code 500 and msg carrying the error.
    """
    status = StateManager().get_status()

    if status.stage == StageEnum.FAILED:
        msg = f"Run failed: {status.error}" if status.error else "Run failed"
        return ProgressResponse(code=500, msg=msg, data=status)
    return ProgressResponse(code=200, msg="success", data=status)


@router.post("/run", response_model=SuccessResponse)
async def post_run(run_request: RunRequest, background_tasks: BackgroundTasks, request: Request):
    """POST /api/v1.0/run - Start installing a track in the background.

    Returns code 409 while another run is active; runs are serialized.
    """
    state_manager = StateManager()
    current_status = state_manager.get_status()

    if state_manager.is_busy():
        return JSONResponse(
            status_code=200,
            content=ErrorResponse(
                code=409,
                msg=f"Run already in progress: {current_status.stage.value}",
                stage=current_status.stage,
            ).model_dump(mode="json"),
        )

    # Mark busy before the response so a second POST cannot slip in
    state_manager.begin_run(run_request.track)
    background_tasks.add_task(
        _run_workflow,
        request.app.state.agent,
        run_request.track,
        run_request.base_url,
        run_request.target_volume,
    )

    return JSONResponse(
        status_code=200,
        content=SuccessResponse(data={"track": run_request.track}).model_dump(),
    )


async def _run_workflow(
    agent: InstallAgent,
    track: str,
    base_url: Optional[str],
    target_volume: Optional[str],
) -> None:
    """Background task for a track run."""
    try:
        await agent.run(track, base_url=base_url, target_volume=target_volume)
    except Exception as e:
        # Already logged and recorded in StateManager by the agent
        logger.debug(f"Background run for {track} ended with {type(e).__name__}")
