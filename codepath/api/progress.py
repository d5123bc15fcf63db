"""
API routes for learner progress sync.
"""

from fastapi import APIRouter, Depends
from typing import List
import logging

from codepath.api.errors import to_http_exception
from codepath.core.container import get_sync_coordinator
from codepath.core.exceptions import CodepathError
from codepath.models import LearnerMetrics, ProgressRecord, ProgressUpdate, SyncResult
from codepath.services.sync_coordinator import SyncCoordinator

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=SyncResult)
async def apply_update(
    update: ProgressUpdate,
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
):
    """
    Inbound update from the external task client.

    Stale or duplicate deliveries return 200 with `accepted: false` and the
    reason; unknown tasks return 404 and unknown statuses 422.
    """
    try:
        return await coordinator.apply_update(update)
    except CodepathError as e:
        raise to_http_exception(e)


@router.get("/{learner_id}", response_model=List[ProgressRecord])
async def list_progress(learner_id: str, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    return coordinator.list_records(learner_id)


@router.get("/{learner_id}/metrics", response_model=LearnerMetrics)
async def learner_metrics(learner_id: str, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Completion counts, confidence trend and at-risk flag."""
    return coordinator.metrics(learner_id)
