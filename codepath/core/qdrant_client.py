import logging

from qdrant_client import QdrantClient

from codepath.config import settings

logger = logging.getLogger(__name__)

_qdrant_client: QdrantClient | None = None


def get_qdrant_client() -> QdrantClient:
    """
    Get or create singleton Qdrant client instance.

    Without QDRANT_URL the client runs Qdrant in-process (":memory:"), which
    keeps the index for the lifetime of the process only.
    """
    global _qdrant_client

    if _qdrant_client is None:
        try:
            if settings.qdrant_url:
                _qdrant_client = QdrantClient(
                    url=settings.qdrant_url,
                    api_key=settings.qdrant_api_key if settings.qdrant_api_key else None,
                )
                logger.info("Qdrant client initialized successfully")
            else:
                _qdrant_client = QdrantClient(location=":memory:")
                logger.warning("QDRANT_URL is not configured, using in-process Qdrant (data is not persisted)")
        except Exception as e:
            logger.error(f"Failed to initialize Qdrant client: {e}")
            raise

    return _qdrant_client
