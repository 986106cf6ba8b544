"""
Tool Hire Advisor — FastAPI Backend
=====================================
Main application entry point. Defines app, lifespan, CORS and the request
validation handler, and includes the route module. The route handlers live
in toolhire/routes/.

Run with:
    uvicorn main:app --reload
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from toolhire import config
from toolhire.catalog import CatalogUnavailable, read_catalog
from toolhire.prompt_loader import load_prompts

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("toolhire")


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Prompts are required; fail startup if they are missing
    load_prompts()
    print(f"[startup] Prompts loaded from: {config.PROMPTS_DIR}")
    print(f"[startup] Model: {config.ADVISOR_MODEL}, fallback: {config.FALLBACK_MODEL}")

    # The catalog is only needed for recommendations, so a missing catalog is a warning
    try:
        read_catalog()
        print(f"[startup] Catalog found at: {config.CATALOG_DIR}")
    except CatalogUnavailable as e:
        print(f"[startup] WARNING: {e}; recommendations will fail until it is restored.")

    if config.STREAM_BUDGET_SECONDS:
        print(f"[startup] Server stream budget: {config.STREAM_BUDGET_SECONDS}s")

    yield
    # Shutdown (nothing to clean up)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Tool Hire Advisor",
    description="Conversational project intake and tool hire recommendations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": True,
            "text": "The request body is not valid.",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "tool-hire-advisor", "model": config.ADVISOR_MODEL}


# ---------------------------------------------------------------------------
# Include route modules
# ---------------------------------------------------------------------------

from toolhire.routes.advisor import router as advisor_router  # noqa: E402

app.include_router(advisor_router, tags=["Advisor"])
