"""
Tests for EmbeddingService
"""
import pytest
from unittest.mock import Mock, patch
import numpy as np

from codepath.core.exceptions import InvariantViolationError


class TestEmbeddingService:
    """Test cases for EmbeddingService"""

    def test_embed_texts_success(self):
        """Test embed_texts - successful embedding generation"""
        from codepath.services.embedding_service import EmbeddingService

        mock_model = Mock()
        mock_model.encode.return_value = np.array([[0.1] * 384, [0.2] * 384])

        service = EmbeddingService(mock_model)
        embeddings = service.embed_texts(["Hello world", "Test text"])

        assert len(embeddings) == 2
        assert len(embeddings[0]) == 384
        assert isinstance(embeddings[0], list)
        mock_model.encode.assert_called_once()

    def test_embed_texts_empty(self):
        """Test embed_texts - empty input"""
        from codepath.services.embedding_service import EmbeddingService

        mock_model = Mock()

        service = EmbeddingService(mock_model)
        embeddings = service.embed_texts([])

        assert embeddings == []
        mock_model.encode.assert_not_called()

    def test_embed_texts_batch_processing(self):
        """Test embed_texts - batch size and normalization are passed through"""
        from codepath.services.embedding_service import EmbeddingService

        mock_model = Mock()
        mock_model.encode.return_value = np.array([[0.1] * 384] * 50)

        service = EmbeddingService(mock_model)
        embeddings = service.embed_texts(["Text"] * 50)

        assert len(embeddings) == 50
        call_args = mock_model.encode.call_args
        assert call_args[1]["batch_size"] == 32
        assert call_args[1]["normalize_embeddings"] is True

    def test_dimension_mismatch(self):
        """A model of the wrong size must never reach the vector store"""
        from codepath.services.embedding_service import EmbeddingService

        mock_model = Mock()
        mock_model.encode.return_value = np.array([[0.1] * 768])

        service = EmbeddingService(mock_model, dimension=384)

        with pytest.raises(InvariantViolationError, match="dim=768"):
            service.embed_texts(["Text"])

    @patch("codepath.services.embedding_service._load_model")
    def test_get_embedding_service_loads_once(self, mock_load_model):
        """Model is loaded on first use and reused afterwards"""
        from codepath.config import settings
        from codepath.services.embedding_service import get_embedding_service

        mock_load_model.return_value = Mock()

        first = get_embedding_service()
        second = get_embedding_service()

        assert first is second
        mock_load_model.assert_called_once_with(settings.embedding_model_name)
