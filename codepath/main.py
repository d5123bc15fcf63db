import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from codepath.api.paths import router as paths_router
from codepath.api.progress import router as progress_router
from codepath.api.repositories import router as repositories_router
from codepath.api.routes import router
from codepath.api.tutor import router as tutor_router
from codepath.config import settings
from codepath.core.container import get_sync_coordinator

# Configure logging from settings
logging.basicConfig(level=settings.log_level)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logging.info("=" * 60)
    logging.info(f"🚀 {settings.app_name} starting up...")
    logging.info("=" * 60)

    logging.info("📋 App Configuration:")
    logging.info(f"  Environment: {settings.environment}")
    logging.info(f"  Debug mode: {settings.debug}")
    logging.info(f"  Log level: {settings.log_level}")

    logging.info("🌐 Server Configuration:")
    logging.info(f"  Host: {settings.host}")
    logging.info(f"  Port: {settings.port}")
    logging.info(f"  CORS Origins: {settings.cors_origins}")

    logging.info("💾 Storage Configuration:")
    logging.info(f"  Persistence backend: {settings.persistence_backend}")
    logging.info(f"  Supabase URL: {'✓ Configured' if settings.supabase_url else '✗ Not set'}")
    logging.info(f"  Qdrant URL: {settings.qdrant_url if settings.qdrant_url else '✗ Not set (in-process)'}")
    logging.info(f"  Qdrant collection: {settings.qdrant_collection}")

    logging.info("🧮 Retrieval Configuration:")
    logging.info(f"  Embedding model: {settings.embedding_model_name} (dim={settings.embedding_dimension})")
    logging.info(f"  Chunk window: {settings.chunk_window_lines} lines, overlap {settings.chunk_overlap_lines}")

    logging.info("🤖 LLM Configuration:")
    logging.info(f"  Groq API: {'✓ Configured' if settings.groq_api_key else '✗ Not set (extractive answers)'}")
    logging.info(f"  Groq Model: {settings.groq_model}")
    logging.info(f"  Provider timeout: {settings.provider_timeout_seconds}s, attempts: {settings.provider_max_attempts}")

    try:
        get_sync_coordinator().load_paths()
    except Exception as e:
        logging.warning(f"⚠️  Could not load persisted learning paths: {e}")

    logging.info("=" * 60)
    logging.info("✅ Startup complete - Ready to accept requests")
    logging.info("=" * 60)

    yield  # App runs here

    logging.info("=" * 60)
    logging.info("🛑 App is shutting down...")
    logging.info("=" * 60)


app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)

# Add CORS middleware - configured from settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")
app.include_router(repositories_router, prefix="/api/repositories")
app.include_router(paths_router, prefix="/api/paths")
app.include_router(progress_router, prefix="/api/progress", tags=["progress"])
app.include_router(tutor_router, prefix="/api/tutor")
