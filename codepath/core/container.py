"""
Service wiring for the HTTP layer.

Each getter returns the process-wide lazy singleton of its service, so routes
can depend on them with FastAPI `Depends` and tests can override them.
"""

import logging

from codepath.services import (
    domain_analyzer,
    embedding_service,
    ingestion_pipeline,
    llm_service,
    path_store,
    planning_service,
    qdrant_service,
    retrieval_engine,
    sync_coordinator,
    tutor_service,
)
from codepath.core import qdrant_client, supabase_client

logger = logging.getLogger(__name__)

get_ingestion_pipeline = ingestion_pipeline.get_ingestion_pipeline
get_retrieval_engine = retrieval_engine.get_retrieval_engine
get_domain_analyzer = domain_analyzer.get_domain_analyzer
get_planning_service = planning_service.get_planning_service
get_sync_coordinator = sync_coordinator.get_sync_coordinator
get_tutor_service = tutor_service.get_tutor_service


def reset_services() -> None:
    """Drop every cached singleton (tests, settings reload)."""
    embedding_service._embedding_service_instance = None
    qdrant_client._qdrant_client = None
    qdrant_service._qdrant_service_instance = None
    retrieval_engine._retrieval_engine_instance = None
    ingestion_pipeline._snapshot_store_instance = None
    ingestion_pipeline._ingestion_pipeline_instance = None
    domain_analyzer._domain_analyzer_instance = None
    supabase_client._supabase_client = None
    path_store._path_store_instance = None
    sync_coordinator._sync_coordinator_instance = None
    planning_service._planning_service_instance = None
    llm_service._llm_service_instance = None
    tutor_service._tutor_service_instance = None
    logger.debug("   Service singletons reset")
