"""
FastAPI API Server.

REST API for triggering the clinical document pipeline, checking its
progress and reviewing the generated documents. The pipeline itself runs
in the worker process.

Start with:
    uvicorn src.api_server:app --reload --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from dotenv import load_dotenv
load_dotenv(".env.local")

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.consultations import router as consultations_router
from src.api.deps import close_orchestrator
from src.api.documents import router as documents_router
from src.api.middleware import RequestIdMiddleware
from src.logging_config import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle hooks."""
    logger.info("api_server_starting")
    yield
    await close_orchestrator()
    logger.info("api_server_stopping")


app = FastAPI(
    title="Clinical Document Pipeline API",
    description="Turns consultation recordings into draft clinical documents for review",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(consultations_router)
app.include_router(documents_router)


@app.get("/health", tags=["System"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "clinical-document-pipeline"}


@app.get("/", tags=["System"])
async def root() -> dict[str, str]:
    """API root."""
    return {
        "service": "Clinical Document Pipeline",
        "version": "0.1.0",
        "docs": "/docs",
    }
