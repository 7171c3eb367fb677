"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .api import devices_router, sessions_router
from .config import get_settings
from .isapi.client import close_http_client
from .storage import get_device_storage

# Configure logging
settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    logger.info(f"hikgate starting, data dir: {settings.data_dir}, cache: {settings.cache_backend}")
    get_device_storage()
    yield
    await close_http_client()
    logger.info("hikgate shutting down")


app = FastAPI(
    title="hikgate",
    description="Hikvision ISAPI digest client and secure session service",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(devices_router)
app.include_router(sessions_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
