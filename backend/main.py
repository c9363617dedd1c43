"""FastAPI application entry point.

Startup sequence: init DB → seed default agent → init document store → init LLM → build pipeline.
"""

from contextlib import asynccontextmanager

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.agent.agents import seed_default_agent
from backend.agent.pipeline import ChatPipeline
from backend.api.routes import router
from backend.core.database import init_db
from backend.core.documents import DocumentStore
from backend.core.llm_adapter import LLMAdapter

load_dotenv()

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("startup.begin")

    # Initialize SQLite database
    init_db()
    seed_default_agent()
    logger.info("startup.db_initialized")

    documents = DocumentStore()
    app.state.documents = documents
    logger.info("startup.documents_initialized", healthy=documents.is_healthy())

    llm_adapter = LLMAdapter()
    app.state.llm_adapter = llm_adapter
    logger.info("startup.llm_initialized", healthy=llm_adapter.is_healthy())
    if not llm_adapter.is_healthy():
        logger.error("startup.llm_unconfigured", hint="Set CEREBRAS_API_KEY or GROQ_API_KEY in .env")

    app.state.pipeline = ChatPipeline(documents, llm_adapter)

    logger.info("startup.complete")
    yield
    logger.info("shutdown.complete")


app = FastAPI(
    title="Lectern API",
    description="Streaming library chat with per-user token metering",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for the chat widget
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
