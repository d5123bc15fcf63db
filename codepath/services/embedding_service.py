import logging
import time
from typing import List, TYPE_CHECKING
from codepath.config import settings
from codepath.core.exceptions import InvariantViolationError

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

# Lazy singleton instance
_embedding_service_instance = None


def _load_model(model_name: str) -> 'SentenceTransformer':
    # Lazy import - only import when actually needed (avoids slow torch init on startup)
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name)


def get_embedding_service() -> 'EmbeddingService':
    """
    Get or create singleton EmbeddingService instance (lazy initialization).

    The model is loaded only on first use, then reused for all subsequent requests.

    Returns:
        EmbeddingService: Singleton instance with loaded model
    """
    global _embedding_service_instance

    if _embedding_service_instance is None:
        logger.info(f"🤖 Loading embedding model (first use - this may take a few seconds)...")
        logger.info(f"   Model: {settings.embedding_model_name}")
        _embedding_service_instance = EmbeddingService(_load_model(settings.embedding_model_name))
        logger.info(f"✅ EmbeddingService ready (will reuse for future requests)")

    return _embedding_service_instance


class EmbeddingService:
    def __init__(self, model: 'SentenceTransformer' = None, dimension: int | None = None):
        """
        Initialize EmbeddingService with a pre-loaded model.

        Args:
            model: Pre-loaded SentenceTransformer model. If None, loads the configured model.
            dimension: Expected vector size (defaults to settings.embedding_dimension)
        """
        if model is None:
            logger.info(f"🤖 Initializing EmbeddingService with model: {settings.embedding_model_name}")
            model = _load_model(settings.embedding_model_name)
        self.model = model
        self.dimension = dimension or settings.embedding_dimension

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """
        Generate normalized embeddings for a list of texts.
        """
        if not texts:
            logger.warning("⚠️  No texts provided for embedding generation")
            return []

        logger.info(f"🧮 Generating embeddings for {len(texts)} texts")
        logger.debug(f"   Batch size: {settings.embedding_batch_size}")

        start_time = time.time()
        total_chars = sum(len(text) for text in texts)

        embeddings = self.model.encode(
            texts,
            batch_size=settings.embedding_batch_size,
            show_progress_bar=False,
            normalize_embeddings=True,
        )

        duration = time.time() - start_time
        embedding_dim = len(embeddings[0]) if len(embeddings) > 0 else 0
        if embedding_dim != self.dimension:
            raise InvariantViolationError(
                f"Embedding model produced dim={embedding_dim}, configured dimension is {self.dimension}"
            )

        logger.info(f"✅ Generated {len(embeddings)} embeddings (dim={embedding_dim}) in {duration:.2f}s")
        if duration > 0:
            logger.debug(f"   Throughput: {total_chars / duration / 1000:.1f}K chars/sec")

        return embeddings.tolist()
