import logging
import time
from typing import List, Dict, Optional

from qdrant_client import QdrantClient
from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchAny,
    MatchValue,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from codepath.config import settings
from codepath.core.qdrant_client import get_qdrant_client
from codepath.models import CodeFragment

logger = logging.getLogger(__name__)

PAYLOAD_INDEX_FIELDS = ("repository_id", "file_path")
SCROLL_LIMIT = 1000

# Lazy singleton instance
_qdrant_service_instance = None


def get_qdrant_service() -> 'QdrantService':
    """
    Get or create singleton QdrantService instance (lazy initialization).

    The collection check/creation happens only on first use.

    Returns:
        QdrantService: Singleton instance with initialized collection
    """
    global _qdrant_service_instance

    if _qdrant_service_instance is None:
        logger.info(f"🔍 Initializing QdrantService (first use)...")
        _qdrant_service_instance = QdrantService()
        logger.info(f"✅ QdrantService ready (will reuse for future requests)")

    return _qdrant_service_instance


def _repository_filter(repository_id: str, **extra) -> Filter:
    conditions = [FieldCondition(key="repository_id", match=MatchValue(value=repository_id))]
    for key, value in extra.items():
        conditions.append(FieldCondition(key=key, match=MatchValue(value=value)))
    return Filter(must=conditions)


def fragment_from_payload(point_id, payload: Dict) -> CodeFragment:
    return CodeFragment(
        id=str(point_id),
        repository_id=payload["repository_id"],
        file_path=payload["file_path"],
        ordinal=payload["ordinal"],
        start_line=payload["start_line"],
        end_line=payload["end_line"],
        language=payload.get("language", "text"),
        context=payload.get("context", ""),
        content=payload["content"],
        content_hash=payload["content_hash"],
        token_count=payload.get("token_count", 0),
    )


class QdrantService:
    def __init__(
        self,
        client: Optional[QdrantClient] = None,
        collection_name: Optional[str] = None,
        vector_size: Optional[int] = None,
        skip_collection_check: bool = False,
    ):
        """
        Initialize QdrantService.

        Args:
            client: Qdrant client (defaults to the process-wide singleton)
            collection_name: Collection to use (defaults to settings.qdrant_collection)
            vector_size: Vector dimension (defaults to settings.embedding_dimension)
            skip_collection_check: If True, skip collection check (for testing)
        """
        self.client = client or get_qdrant_client()
        self.collection_name = collection_name or settings.qdrant_collection
        self.vector_size = vector_size or settings.embedding_dimension
        logger.info(f"🔍 Initializing QdrantService for collection: {self.collection_name}")
        if not skip_collection_check:
            self._ensure_collection()

    def _ensure_collection(self):
        logger.debug(f"🔍 Checking if collection '{self.collection_name}' exists")
        collections = self.client.get_collections().collections
        collection_names = [c.name for c in collections]

        if self.collection_name not in collection_names:
            logger.info(f"📦 Creating new Qdrant collection: {self.collection_name}")
            logger.debug(f"   Vector size: {self.vector_size}, distance: Cosine")
            self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(size=self.vector_size, distance=Distance.COSINE),
            )
            logger.info(f"✅ Collection '{self.collection_name}' created successfully")
        else:
            logger.debug(f"✅ Collection '{self.collection_name}' already exists")

        # Keyword indexes keep tenant filters cheap on a remote server
        for field_name in PAYLOAD_INDEX_FIELDS:
            try:
                self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=field_name,
                    field_schema="keyword",
                )
            except Exception as e:
                error_msg = str(e).lower()
                if "already exists" in error_msg or "duplicate" in error_msg:
                    logger.debug(f"   Index on '{field_name}' already exists")
                else:
                    logger.warning(f"⚠️  Failed to create/verify index on '{field_name}': {e}")

    def upsert_fragments(
        self,
        fragments: List[CodeFragment],
        embeddings: List[List[float]],
    ):
        if not fragments:
            logger.warning("⚠️  No fragments to upsert")
            return

        if len(fragments) != len(embeddings):
            raise ValueError(
                f"Mismatched lengths: fragments={len(fragments)}, embeddings={len(embeddings)}"
            )

        points = [
            PointStruct(
                id=fragment.id,
                vector=embedding,
                payload={
                    "repository_id": fragment.repository_id,
                    "file_path": fragment.file_path,
                    "ordinal": fragment.ordinal,
                    "start_line": fragment.start_line,
                    "end_line": fragment.end_line,
                    "language": fragment.language,
                    "context": fragment.context,
                    "content": fragment.content,
                    "content_hash": fragment.content_hash,
                    "token_count": fragment.token_count,
                },
            )
            for fragment, embedding in zip(fragments, embeddings)
        ]

        upsert_start = time.time()
        try:
            self.client.upsert(collection_name=self.collection_name, points=points)
        except Exception as e:
            logger.error(f"❌ Failed to upsert fragments into Qdrant: {e}", exc_info=True)
            raise
        logger.debug(f"   Upserted {len(points)} points in {time.time() - upsert_start:.3f}s")

    def slot_point_id(self, repository_id: str, file_path: str, ordinal: int) -> Optional[str]:
        """Id of the point currently stored for (repository, file, ordinal), if any."""
        points, _ = self.client.scroll(
            collection_name=self.collection_name,
            scroll_filter=_repository_filter(repository_id, file_path=file_path, ordinal=ordinal),
            limit=2,
            with_payload=False,
            with_vectors=False,
        )
        if len(points) > 1:
            logger.warning(f"⚠️  Slot {file_path}#{ordinal} holds {len(points)} points")
        return str(points[0].id) if points else None

    def list_file_slots(self, repository_id: str, file_path: str) -> Dict[int, str]:
        """Map ordinal -> point id for every stored fragment of one file."""
        slots: Dict[int, str] = {}
        offset = None
        while True:
            points, next_offset = self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=_repository_filter(repository_id, file_path=file_path),
                limit=SCROLL_LIMIT,
                offset=offset,
                with_payload=["ordinal"],
                with_vectors=False,
            )
            for point in points:
                slots[point.payload["ordinal"]] = str(point.id)
            if next_offset is None:
                break
            offset = next_offset
        return slots

    def list_file_paths(self, repository_id: str) -> set:
        paths = set()
        offset = None
        while True:
            points, next_offset = self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=_repository_filter(repository_id),
                limit=SCROLL_LIMIT,
                offset=offset,
                with_payload=["file_path"],
                with_vectors=False,
            )
            paths.update(point.payload["file_path"] for point in points)
            if next_offset is None:
                break
            offset = next_offset
        return paths

    def delete_points(self, point_ids: List[str]) -> int:
        if not point_ids:
            return 0
        self.client.delete(
            collection_name=self.collection_name,
            points_selector=PointIdsList(points=list(point_ids)),
        )
        return len(point_ids)

    def count(self, repository_id: str) -> int:
        result = self.client.count(
            collection_name=self.collection_name,
            count_filter=_repository_filter(repository_id),
            exact=True,
        )
        return result.count if hasattr(result, 'count') else result

    def delete_by_repository(self, repository_id: str) -> int:
        """
        Delete all points that belong to one repository.

        Returns:
            Number of points deleted
        """
        logger.info(f"🗑️  Deleting points from '{self.collection_name}' for repository_id={repository_id}")
        point_count = self.count(repository_id)
        if point_count == 0:
            logger.info(f"✅ No points found for repository_id={repository_id}")
            return 0

        self.client.delete(
            collection_name=self.collection_name,
            points_selector=FilterSelector(filter=_repository_filter(repository_id)),
        )
        logger.info(f"✅ Deleted {point_count} points for repository_id={repository_id}")
        return point_count

    def retrieve(self, point_ids: List[str]) -> List[CodeFragment]:
        if not point_ids:
            return []
        records = self.client.retrieve(
            collection_name=self.collection_name,
            ids=list(point_ids),
            with_payload=True,
            with_vectors=False,
        )
        return [fragment_from_payload(record.id, record.payload) for record in records]

    def search(
        self,
        repository_id: str,
        query_embedding: List[float],
        limit: int = 5,
        file_paths: Optional[List[str]] = None,
    ):
        """Top-`limit` points by cosine similarity, never crossing repositories."""
        query_filter = _repository_filter(repository_id)
        if file_paths is not None:
            query_filter.must.append(FieldCondition(key="file_path", match=MatchAny(any=list(file_paths))))
        response = self.client.query_points(
            collection_name=self.collection_name,
            query=query_embedding,
            limit=limit,
            query_filter=query_filter,
            with_payload=True,
        )
        return response.points
