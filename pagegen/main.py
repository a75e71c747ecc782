"""FastAPI application for the landing page generator."""

import logging
from contextlib import asynccontextmanager
from typing import Dict

import httpx
import uvicorn
from fastapi import FastAPI, Request

from pagegen.admin import admin_router
from pagegen.config import Config, load_config
from pagegen.gemini import GeminiClient
from pagegen.generator import ContentGenerator
from pagegen.history_store import HistoryStore
from pagegen.key_manager import CredentialPool
from pagegen.publishing import WordPressPublisher
from pagegen.rate_limiter import ThroughputLimiter
from pagegen.request_queue import CallSerializer
from pagegen.retry import RetryOrchestrator
from pagegen.routes import api_router
from pagegen.task_store import TaskStore

logger = logging.getLogger(__name__)


def build_state(
    app: FastAPI,
    config: Config,
    gemini_http: httpx.AsyncClient,
    wordpress_http: httpx.AsyncClient,
) -> None:
    """Wire the services for one application instance onto ``app.state``."""
    key_pool = CredentialPool(config.api_keys, config.priority_key)
    rate_limiter = ThroughputLimiter(config)
    call_serializer = CallSerializer(config.max_queue_size)
    orchestrator = RetryOrchestrator(key_pool, rate_limiter, call_serializer, config)

    history_store = HistoryStore(config.history_file, config.max_history_records)
    history_store.load()

    app.state.config = config
    app.state.key_pool = key_pool
    app.state.rate_limiter = rate_limiter
    app.state.call_serializer = call_serializer
    app.state.orchestrator = orchestrator
    app.state.generator = ContentGenerator(
        orchestrator, GeminiClient(gemini_http, config), config.max_attempts
    )
    app.state.publisher = WordPressPublisher(wordpress_http)
    app.state.history_store = history_store
    app.state.task_store = TaskStore(history_store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    config = load_config()

    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO))

    gemini_http = httpx.AsyncClient(
        base_url=config.gemini_base_url,
        timeout=httpx.Timeout(10.0, read=config.request_timeout_seconds, write=30.0),
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
    )
    wordpress_http = httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=60.0))

    build_state(app, config, gemini_http, wordpress_http)

    logger.info(
        "Landing page generator started with %d key(s)", len(app.state.key_pool.credentials)
    )

    yield

    await gemini_http.aclose()
    await wordpress_http.aclose()
    logger.info("Landing page generator stopped")


app = FastAPI(title="Landing Page Generator", lifespan=lifespan)

app.include_router(admin_router)
app.include_router(api_router)


@app.get("/")
async def root(request: Request) -> Dict[str, object]:
    status = request.app.state.key_pool.get_status()
    return {
        "service": "Landing Page Generator",
        "status": "running",
        "keys_available": status["available_keys"],
        "total_keys": status["total_keys"],
    }


@app.get("/health")
async def health_check(request: Request) -> Dict[str, object]:
    """Health check endpoint with key pool status."""
    status = request.app.state.key_pool.get_status()
    return {
        "status": "healthy" if status["available_keys"] else "degraded",
        "keys_available": status["available_keys"],
        "total_keys": status["total_keys"],
        "queued_requests": request.app.state.call_serializer.total_queue_depth(),
    }


def run() -> None:
    """Console entry point."""
    config = load_config()
    uvicorn.run("pagegen.main:app", host=config.host, port=config.port)
