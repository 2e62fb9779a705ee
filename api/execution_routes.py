"""
Execution API Routes
====================

REST API endpoints for planning and driving parallel execution runs.
Provides operations for planning, starting, stopping, resuming, cancelling
sessions and retrying merges.
"""

from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from parallel_runner.errors import AnalysisError, OrchestratorError
from parallel_runner.execution_plan import ExecutionPlan, ExecutionSnapshot, WorkItem
from parallel_runner.parallel.orchestrator import ExecutionOrchestrator
from parallel_runner.parallel.wave_scheduler import WaveScheduler
from parallel_runner.spec_scanner import scan_work_items

logger = logging.getLogger(__name__)

router = APIRouter(tags=["execution"])

_orchestrator: Optional[ExecutionOrchestrator] = None
_scheduler = WaveScheduler()


# =============================================================================
# Request/Response Models
# =============================================================================

class WorkItemModel(BaseModel):
    """A work item submitted for planning."""
    id: str = Field(..., min_length=1, description="Unique work item id")
    title: str = Field("", description="Human readable title")
    dependencies: List[str] = Field(default_factory=list, description="Ids this item depends on")
    file_path: Optional[str] = None

    def to_work_item(self) -> WorkItem:
        return WorkItem(
            id=self.id,
            title=self.title,
            dependencies=list(self.dependencies),
            file_path=self.file_path,
        )


class PlanRequest(BaseModel):
    """Request model for planning or starting a run."""
    items: Optional[List[WorkItemModel]] = Field(
        None,
        description="Work items; when omitted the project's spec directory is scanned"
    )


class WaveModel(BaseModel):
    """One wave of a plan."""
    wave_number: int
    item_ids: List[str]


class PlanResponse(BaseModel):
    """Response model for an execution plan."""
    waves: List[WaveModel]
    total_items: int
    estimated_parallelism: int


class StartResponse(BaseModel):
    """Response model for starting a run."""
    status: str
    plan: PlanResponse


class StopResponse(BaseModel):
    """Response model for stopping a run."""
    state: str
    cancelled_sessions: int


class SnapshotModel(BaseModel):
    """Resumable run state."""
    completed_work_item_ids: List[str] = Field(default_factory=list)
    current_wave_index: int = Field(0, ge=0)


class CancelResponse(BaseModel):
    """Response model for cancelling a session."""
    session_id: str
    cancelled: bool


class MergeResultResponse(BaseModel):
    """Response model for a merge attempt."""
    work_item_id: str
    success: bool
    strategy: str
    conflict_files: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    commit: Optional[str] = None
    cleaned_up: bool = False
    duration: float = 0.0


# =============================================================================
# Helper Functions
# =============================================================================

def configure(orchestrator: Optional[ExecutionOrchestrator]) -> None:
    """Set the orchestrator served by this router."""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> ExecutionOrchestrator:
    """
    Dependency returning the configured orchestrator.

    Raises:
        HTTPException: 503 if no orchestrator is configured
    """
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Execution orchestrator not configured")
    return _orchestrator


def _plan_response(plan: ExecutionPlan) -> PlanResponse:
    return PlanResponse(
        waves=[WaveModel(wave_number=w.wave_number, item_ids=w.item_ids) for w in plan.waves],
        total_items=plan.total_items,
        estimated_parallelism=plan.estimated_parallelism,
    )


def _build_plan(request: PlanRequest, orchestrator: ExecutionOrchestrator) -> ExecutionPlan:
    if request.items is None:
        items = scan_work_items(
            orchestrator.worktree_manager.project_path,
            orchestrator.config.specs_dir,
        )
    else:
        items = [model.to_work_item() for model in request.items]

    try:
        return _scheduler.build_plan(items)
    except AnalysisError as e:
        logger.warning(f"Planning failed: {e.format()}")
        raise HTTPException(status_code=400, detail=e.to_dict())


# =============================================================================
# API Endpoints
# =============================================================================

@router.post("/api/execution/plan", response_model=PlanResponse)
async def plan_execution(
    request: PlanRequest,
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)
):
    """
    Compute the wave plan without running anything.
    """
    return _plan_response(_build_plan(request, orchestrator))


@router.post("/api/execution/start", response_model=StartResponse, status_code=202)
async def start_execution(
    request: PlanRequest,
    background_tasks: BackgroundTasks,
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)
):
    """
    Plan and start a run in the background.

    Returns 409 if a run is already in progress.
    """
    if orchestrator.is_running:
        raise HTTPException(status_code=409, detail="Execution already in progress")

    plan = _build_plan(request, orchestrator)
    try:
        orchestrator.reserve()
    except OrchestratorError as e:
        raise HTTPException(status_code=409, detail=e.message)

    background_tasks.add_task(_run_plan, orchestrator, plan)
    return StartResponse(status="started", plan=_plan_response(plan))


async def _run_plan(orchestrator: ExecutionOrchestrator, plan: ExecutionPlan) -> None:
    try:
        await orchestrator.start_execution(plan, reserved=True)
    except OrchestratorError as e:
        logger.warning(f"Run not started: {e.format()}")
    except Exception as e:
        logger.error(f"Run failed: {e}", exc_info=True)
    finally:
        orchestrator.release()


@router.post("/api/execution/stop", response_model=StopResponse)
async def stop_execution(orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)):
    """
    Stop the current run, cancelling every live session.
    """
    cancelled = await orchestrator.stop_execution()
    return StopResponse(state=orchestrator.state.value, cancelled_sessions=cancelled)


@router.get("/api/execution/status")
async def get_execution_status(
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """
    Get run state, wave progress and live sessions.
    """
    return orchestrator.get_status()


@router.get("/api/execution/snapshot", response_model=SnapshotModel)
async def get_snapshot(orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)):
    """
    Get the resumable state of the run.
    """
    return SnapshotModel(**orchestrator.snapshot().to_dict())


@router.post("/api/execution/restore", response_model=SnapshotModel)
async def restore_snapshot(
    snapshot: SnapshotModel,
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)
):
    """
    Load a snapshot so the next start resumes from it.
    """
    try:
        orchestrator.restore(ExecutionSnapshot.from_dict(snapshot.model_dump()))
    except OrchestratorError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return SnapshotModel(**orchestrator.snapshot().to_dict())


@router.post("/api/sessions/{session_id}/cancel", response_model=CancelResponse)
async def cancel_session(
    session_id: str,
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)
):
    """
    Cancel one session without stopping the run.
    """
    if orchestrator.sessions.get(session_id) is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return CancelResponse(session_id=session_id, cancelled=orchestrator.cancel_session(session_id))


@router.post("/api/merges/{work_item_id}/retry", response_model=MergeResultResponse)
async def retry_merge(
    work_item_id: str,
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)
):
    """
    Retry a merge after its conflict was resolved on the work branch.
    """
    if not orchestrator.worktree_manager.has_worktree(work_item_id):
        raise HTTPException(status_code=404, detail=f"No worktree found for {work_item_id}")
    try:
        result = await orchestrator.retry_merge(work_item_id)
    except OrchestratorError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return MergeResultResponse(**result.to_dict())


@router.get("/api/events")
async def drain_events(orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)) -> List[Dict[str, Any]]:
    """
    Return and clear every pending lifecycle event.
    """
    return [event.to_dict() for event in orchestrator.events.drain()]


def create_app(orchestrator: Optional[ExecutionOrchestrator] = None) -> FastAPI:
    """Build a FastAPI app serving this router."""
    app = FastAPI(title="Parallel Runner")
    configure(orchestrator)
    app.include_router(router)
    return app
