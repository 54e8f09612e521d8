"""Main FastAPI application for the AI provider plugin host."""

import logging
import os
from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()

# Configure logging BEFORE importing any modules that use logger
log_level = os.getenv('LOG_LEVEL', 'INFO')
logging.basicConfig(
    level=getattr(logging, log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Import after logging is configured
from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from aihost import __version__
from aihost.routers.plugins import router as plugins_router

# Create FastAPI app
app = FastAPI(
    title="AI Plugin Host",
    description="Loads AI provider plugins and runs them in isolated workers",
    version=__version__,
)

app.include_router(plugins_router)  # /api/plugins endpoints


@app.get("/")
async def root():
    return {"message": "AI Plugin Host API", "docs": "/docs"}


@app.on_event("startup")
async def startup_event():
    """Application startup event: load every installed plugin."""
    from aihost.dependencies import get_plugin_manager

    logger.info("Starting AI Plugin Host")
    manager = get_plugin_manager()
    logger.info(f"Plugin directory: {manager.plugins_dir}")
    await run_in_threadpool(manager.load_all)


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event: unload every plugin."""
    from aihost.dependencies import get_plugin_manager

    logger.info("Shutting down AI Plugin Host")
    await run_in_threadpool(get_plugin_manager().shutdown)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "9090"))
    uvicorn.run("app:app", host="0.0.0.0", port=port)
