"""
Main FastAPI application entry point
"""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .api.dependencies import get_analyzer, get_chunk_store, get_reaper
from .core import engine, init_db, settings
from .services import TimeoutAnalyzer

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown"""
    # Startup
    logger.info("🚀 Starting Chunked Upload Server...")
    
    init_db(engine)
    logger.info("✅ Database tables created/verified")
    
    get_chunk_store().ensure_ready()
    
    reaper_task = None
    if settings.REAPER_ENABLED:
        reaper_task = asyncio.create_task(get_reaper().run_periodically(settings.REAPER_INTERVAL_SECONDS))
        logger.info(f"🧹 Reaper running every {settings.REAPER_INTERVAL_SECONDS}s")
    
    logger.info(f"🌐 Server ready at http://{settings.SERVER_HOST}:{settings.SERVER_PORT}")
    logger.info(f"📖 API docs at http://{settings.SERVER_HOST}:{settings.SERVER_PORT}/docs")
    
    yield
    
    # Shutdown
    logger.info("🛑 Shutting down Chunked Upload Server...")
    if reaper_task is not None:
        reaper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reaper_task
    analyzer = get_analyzer()
    if isinstance(analyzer, TimeoutAnalyzer):
        analyzer.shutdown()
    engine.dispose()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_TITLE,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": settings.APP_TITLE,
        "version": settings.APP_VERSION,
        "status": "running",
        "endpoints": {
            "init": "/uploads/init",
            "chunk": "/uploads/chunk",
            "status": "/uploads/{session_id}/status",
            "result": "/uploads/{session_id}/result",
            "docs": "/docs"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
