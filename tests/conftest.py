"""
Pytest configuration and shared fixtures
"""
import hashlib
import re
import uuid
from unittest.mock import Mock

import numpy as np
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from qdrant_client import QdrantClient

from codepath.models import SourceFile

DIMENSION = 384


class HashingEmbedder:
    """Deterministic bag-of-words embedder, so tests never load a model."""

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.calls = 0

    def embed_texts(self, texts):
        self.calls += 1
        vectors = []
        for text in texts:
            vector = np.zeros(self.dimension)
            for token in re.findall(r"[a-z0-9]+", text.lower()):
                index = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dimension
                vector[index] += 1.0
            norm = np.linalg.norm(vector)
            if norm == 0:
                vector[0] = 1.0
            else:
                vector = vector / norm
            vectors.append(vector.tolist())
        return vectors


class FailingEmbedder:
    """Embedding provider that is always unreachable."""

    def __init__(self):
        self.calls = 0

    def embed_texts(self, texts):
        self.calls += 1
        raise ConnectionError("embedding provider unreachable")


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset singleton services before and after each test"""
    from codepath.core.container import reset_services

    reset_services()
    yield
    reset_services()


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No real backoff sleeps during tests."""
    from codepath.config import settings

    monkeypatch.setattr(settings, "provider_backoff_seconds", 0)
    monkeypatch.setattr(settings, "provider_backoff_max_seconds", 0)
    monkeypatch.setattr(settings, "provider_timeout_seconds", 5.0)
    monkeypatch.setattr(settings, "groq_api_key", None)


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def failing_embedder():
    return FailingEmbedder()


@pytest.fixture
def qdrant_service():
    """QdrantService over an in-process Qdrant collection"""
    from codepath.services.qdrant_service import QdrantService

    return QdrantService(
        client=QdrantClient(location=":memory:"),
        collection_name=f"test_fragments_{uuid.uuid4().hex[:8]}",
        vector_size=DIMENSION,
    )


@pytest.fixture
def engine(embedder, qdrant_service):
    from codepath.services.retrieval_engine import RetrievalEngine

    return RetrievalEngine(embedding_service=embedder, qdrant_service=qdrant_service)


@pytest.fixture
def snapshots():
    from codepath.services.ingestion_pipeline import RepositorySnapshotStore

    return RepositorySnapshotStore()


@pytest.fixture
def pipeline(engine, snapshots):
    from codepath.services.ingestion_pipeline import IngestionPipeline

    return IngestionPipeline(engine=engine, snapshots=snapshots)


@pytest.fixture
def analyzer(engine, snapshots):
    from codepath.services.domain_analyzer import DomainAnalyzer

    return DomainAnalyzer(engine=engine, snapshots=snapshots)


@pytest.fixture
def path_store():
    from codepath.services.path_store import InMemoryPathStore

    return InMemoryPathStore()


@pytest.fixture
def coordinator(path_store):
    from codepath.services.sync_coordinator import SyncCoordinator

    return SyncCoordinator(store=path_store)


@pytest.fixture
def planning(analyzer, coordinator):
    from codepath.curriculum.planner import CurriculumPlanner
    from codepath.services.planning_service import PlanningService

    return PlanningService(analyzer=analyzer, planner=CurriculumPlanner(), coordinator=coordinator)


@pytest.fixture
def tutor(engine):
    from codepath.services.tutor_service import TutorService

    return TutorService(engine=engine, use_llm=False)


@pytest.fixture
def sample_files():
    """Small TypeScript service: models, auth and api directories"""
    return [
        SourceFile(
            file_path="src/models/user.ts",
            language="typescript",
            content=(
                "// A registered account\n"
                "export interface User {\n"
                "  id: string;\n"
                "  email: string;\n"
                "  passwordHash: string;\n"
                "}\n"
            ),
        ),
        SourceFile(
            file_path="src/models/session.ts",
            language="typescript",
            content=(
                "import { User } from './user';\n"
                "\n"
                "export interface Session {\n"
                "  user: User;\n"
                "  expiresAt: number;\n"
                "}\n"
            ),
        ),
        SourceFile(
            file_path="src/auth/types.ts",
            language="typescript",
            content=(
                "export interface Claims {\n"
                "  sub: string;\n"
                "  exp: number;\n"
                "}\n"
            ),
        ),
        SourceFile(
            file_path="src/auth/jwt.ts",
            language="typescript",
            content=(
                "import { Claims } from './types';\n"
                "import { User } from '../models/user';\n"
                "\n"
                "// Sign a token carrying the user id as subject\n"
                "export function signToken(user: User, secret: string): string {\n"
                "  const claims: Claims = { sub: user.id, exp: Date.now() + 3600 };\n"
                "  return encode(claims, secret);\n"
                "}\n"
                "\n"
                "export function verifyToken(token: string, secret: string): Claims {\n"
                "  return decode(token, secret);\n"
                "}\n"
            ),
        ),
        SourceFile(
            file_path="src/api/routes.ts",
            language="typescript",
            content=(
                "import { verifyToken } from '../auth/jwt';\n"
                "import { User } from '../models/user';\n"
                "\n"
                "export function profileRoute(token: string): User {\n"
                "  const claims = verifyToken(token, process.env.SECRET);\n"
                "  return loadUser(claims.sub);\n"
                "}\n"
            ),
        ),
        SourceFile(
            file_path="src/api/server.ts",
            language="typescript",
            content=(
                "import { profileRoute } from './routes';\n"
                "\n"
                "export function start(port: number) {\n"
                "  listen(port, { '/profile': profileRoute });\n"
                "}\n"
            ),
        ),
    ]


@pytest.fixture
def mock_supabase_client(monkeypatch):
    """Mock Supabase client"""
    mock_client = Mock()

    # Create a helper function to build query chains
    def create_query_chain():
        chain = Mock()
        chain.select = Mock(return_value=chain)
        chain.eq = Mock(return_value=chain)
        chain.order = Mock(return_value=chain)
        chain.upsert = Mock(return_value=chain)
        chain.delete = Mock(return_value=chain)
        chain.execute = Mock(return_value=Mock(data=[]))
        return chain

    mock_table = create_query_chain()
    mock_client.table = Mock(return_value=mock_table)

    monkeypatch.setattr("codepath.core.supabase_client._supabase_client", mock_client)
    return mock_client


@pytest.fixture
def client(pipeline, engine, analyzer, planning, coordinator, tutor):
    """FastAPI test client with every service wired to in-process fixtures"""
    from codepath.api.paths import router as paths_router
    from codepath.api.progress import router as progress_router
    from codepath.api.repositories import router as repositories_router
    from codepath.api.routes import router
    from codepath.api.tutor import ConversationStore, get_conversation_store
    from codepath.api.tutor import router as tutor_router
    from codepath.config import settings
    from codepath.core import container

    test_app = FastAPI(title=settings.app_name, debug=settings.debug)
    test_app.include_router(router, prefix="/api")
    test_app.include_router(repositories_router, prefix="/api/repositories")
    test_app.include_router(paths_router, prefix="/api/paths")
    test_app.include_router(progress_router, prefix="/api/progress")
    test_app.include_router(tutor_router, prefix="/api/tutor")

    conversations = ConversationStore()
    test_app.dependency_overrides[container.get_ingestion_pipeline] = lambda: pipeline
    test_app.dependency_overrides[container.get_retrieval_engine] = lambda: engine
    test_app.dependency_overrides[container.get_domain_analyzer] = lambda: analyzer
    test_app.dependency_overrides[container.get_planning_service] = lambda: planning
    test_app.dependency_overrides[container.get_sync_coordinator] = lambda: coordinator
    test_app.dependency_overrides[container.get_tutor_service] = lambda: tutor
    test_app.dependency_overrides[get_conversation_store] = lambda: conversations

    return TestClient(test_app)


@pytest.fixture
def auth_analysis():
    """Domain analysis of a repository holding auth/jwt.ts and auth/types.ts"""
    from codepath.models import Domain, DomainAnalysis

    return DomainAnalysis(
        repository_id="repo",
        domains=[
            Domain(
                name="auth",
                files=["auth/jwt.ts", "auth/types.ts"],
                key_files=["auth/types.ts", "auth/jwt.ts"],
                complexity_score=0.3,
                complexity="beginner",
            )
        ],
        file_imports={"auth/jwt.ts": ["auth/types.ts"], "auth/types.ts": []},
        file_lines={"auth/jwt.ts": 40, "auth/types.ts": 12},
    )


@pytest.fixture
def registered_path(coordinator, auth_analysis):
    """Learning path of learner u1 over the auth repository, registered for sync"""
    from codepath.curriculum.models import LearnerProfile
    from codepath.curriculum.planner import CurriculumPlanner

    path = CurriculumPlanner().plan(auth_analysis, LearnerProfile(learner_id="u1"))
    return coordinator.register_path(path)
