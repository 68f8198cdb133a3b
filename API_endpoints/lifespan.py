# API_endpoints/lifespan.py
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from backend.services import build_services

LOGGER = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup/shutdown events."""
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services()
        LOGGER.info("Services built from environment")
    elif app.state.services.store is not None:
        app.state.services.store.init()

    # Drop runs that finished before a reload
    evicted = app.state.services.runs.evict_expired()
    LOGGER.info("Startup maintenance done, evicted %s finished runs", evicted)

    yield

    LOGGER.info("Shutting down, quota used today: %s", app.state.services.quota_manager.daily_used)
