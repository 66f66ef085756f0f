import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mcpchat.api.auth import router as auth_router
from mcpchat.api.connections import router as connections_router
from mcpchat.api.conversations import router as conversations_router
from mcpchat.api.health import router as health_router
from mcpchat.api.tools import router as tools_router
from mcpchat.config import settings
from mcpchat.services.database import init_db
from mcpchat.services.store import store
from mcpchat.services.streaming import coordinator, registry

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    logger.info("Backend starting...")

    await init_db(store.engine)
    registry.start_reaper(settings.reaper_interval)

    logger.info("Backend started")

    yield

    # Shutdown
    logger.info("Backend shutting down...")
    await coordinator.cancel_all()
    await registry.stop_reaper()
    await store.close()


app = FastAPI(title="MCP Chat Backend", lifespan=lifespan)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(auth_router)
app.include_router(conversations_router)
app.include_router(connections_router)
app.include_router(tools_router)
