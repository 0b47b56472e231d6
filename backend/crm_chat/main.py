"""FastAPI application entry point."""

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crm_chat.chat.manager import init_surface_manager, shutdown_surface_manager
from crm_chat.db.database import close_database, init_database

# Configure logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    db_path = os.getenv("DATABASE_PATH", "./data/crm_chat.db")
    await init_database(db_path)
    logger.info(f"Conversation store ready at {db_path}")

    # Start chat surface manager
    await init_surface_manager()

    yield

    # Shutdown (flushes pending conversation writes before the database closes)
    await shutdown_surface_manager()

    await close_database()


app = FastAPI(
    title="Mortgage CRM Assistant",
    description="Chat sessions with the broker AI assistant, backed by an n8n workflow",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware - allow any localhost port for local frontends
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://localhost(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


# Import and include routers after app is created to avoid circular imports
from crm_chat.api import chat  # noqa: E402

app.include_router(chat.router, prefix="/api/v1", tags=["chat"])
