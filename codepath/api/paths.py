from fastapi import APIRouter, Body, Depends, Response
from pydantic import BaseModel, Field
import logging

from codepath.api.errors import to_http_exception
from codepath.core.container import get_planning_service, get_sync_coordinator
from codepath.core.exceptions import CodepathError
from codepath.curriculum.models import LearnerProfile, LearningPath
from codepath.models import ImportResult
from codepath.services.planning_service import PlanningService
from codepath.services.sync_coordinator import SyncCoordinator

router = APIRouter(tags=["Learning Paths"])
logger = logging.getLogger(__name__)


class CreatePathRequest(BaseModel):
    repository_id: str = Field(..., min_length=1)
    learner: LearnerProfile


@router.post("", response_model=LearningPath, status_code=201)
async def create_path(
    request: CreatePathRequest,
    planner: PlanningService = Depends(get_planning_service),
):
    """
    Plan a learning path for a learner over an ingested repository.

    Returns 409 when declared prerequisites form a cycle.
    """
    logger.info(
        f"🗺️  Path request for repository_id={request.repository_id} learner={request.learner.learner_id}"
    )
    try:
        return await planner.create_path(request.repository_id, request.learner)
    except CodepathError as e:
        raise to_http_exception(e)


@router.get("/{path_id}", response_model=LearningPath)
async def get_path(path_id: str, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    try:
        return coordinator.get_path(path_id)
    except CodepathError as e:
        raise to_http_exception(e)


@router.delete("/{path_id}", status_code=204)
async def delete_path(path_id: str, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Delete a path with its phases and tasks. Progress records are kept."""
    try:
        coordinator.delete_path(path_id)
    except CodepathError as e:
        raise to_http_exception(e)
    return Response(status_code=204)


@router.get("/{path_id}/spec")
async def export_spec(path_id: str, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Portable spec document, byte-identical while the path is unchanged."""
    try:
        body = coordinator.render_spec(path_id)
    except CodepathError as e:
        raise to_http_exception(e)
    return Response(content=body, media_type="application/json")


@router.put("/{path_id}/spec", response_model=ImportResult)
async def import_spec(
    path_id: str,
    document: dict = Body(...),
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
):
    """Re-import a spec document; an altered document is a curriculum revision."""
    try:
        return await coordinator.import_spec(path_id, document)
    except CodepathError as e:
        raise to_http_exception(e)
