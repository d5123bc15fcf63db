from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field
from typing import List
import logging

from codepath.api.errors import to_http_exception
from codepath.core.container import get_domain_analyzer, get_ingestion_pipeline, get_retrieval_engine
from codepath.core.exceptions import CodepathError
from codepath.models import DomainAnalysis, IndexReport, IngestionReport, SourceFile
from codepath.services.domain_analyzer import DomainAnalyzer
from codepath.services.ingestion_pipeline import IngestionPipeline
from codepath.services.retrieval_engine import RetrievalEngine

router = APIRouter(tags=["Repositories"])
logger = logging.getLogger(__name__)


class IngestRequest(BaseModel):
    files: List[SourceFile] = Field(..., description="Flat list of (file_path, language, content) tuples")


class QueryResult(BaseModel):
    fragment_id: str
    file_path: str
    start_line: int
    end_line: int
    language: str
    content: str
    score: float


@router.post("/{repository_id}/ingest", response_model=IngestionReport)
async def ingest_repository(
    repository_id: str,
    request: IngestRequest,
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
):
    """
    Chunk and index repository files. Re-ingesting replaces the previous file set.
    """
    logger.info(f"📥 Ingest request for repository_id={repository_id} ({len(request.files)} files)")
    try:
        return await pipeline.ingest(repository_id, request.files)
    except CodepathError as e:
        raise to_http_exception(e)


@router.post("/{repository_id}/reindex-pending", response_model=IndexReport)
async def reindex_pending(
    repository_id: str,
    engine: RetrievalEngine = Depends(get_retrieval_engine),
):
    """Retry embedding for fragments left index_pending by provider failures."""
    try:
        return await engine.retry_pending(repository_id)
    except CodepathError as e:
        raise to_http_exception(e)


@router.get("/{repository_id}/query", response_model=List[QueryResult])
async def query_repository(
    repository_id: str,
    text: str = Query(..., min_length=1),
    k: int = Query(5, ge=1, le=50),
    engine: RetrievalEngine = Depends(get_retrieval_engine),
):
    """Top-k fragments of this repository for a free-text query."""
    try:
        results = await engine.query(repository_id, text, k)
    except CodepathError as e:
        raise to_http_exception(e)

    return [
        QueryResult(
            fragment_id=result.fragment.id,
            file_path=result.fragment.file_path,
            start_line=result.fragment.start_line,
            end_line=result.fragment.end_line,
            language=result.fragment.language,
            content=result.fragment.content,
            score=result.score,
        )
        for result in results
    ]


@router.get("/{repository_id}/analysis", response_model=DomainAnalysis)
async def analyze_repository(
    repository_id: str,
    analyzer: DomainAnalyzer = Depends(get_domain_analyzer),
):
    """Domains of an ingested repository, most foundational first."""
    try:
        return await analyzer.analyze(repository_id)
    except CodepathError as e:
        raise to_http_exception(e)


@router.delete("/{repository_id}", status_code=204)
async def delete_repository(
    repository_id: str,
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
):
    """Drop a repository's snapshot and every fragment indexed for it. Learning paths are kept."""
    try:
        pipeline.remove(repository_id)
    except CodepathError as e:
        raise to_http_exception(e)
    return Response(status_code=204)
