from fastapi import APIRouter
import logging

from codepath.config import settings

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
def health_check():
    """Liveness probe"""
    return {
        "status": "healthy",
        "service": settings.app_name,
        "environment": settings.environment,
    }
