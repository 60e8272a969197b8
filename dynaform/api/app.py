"""
FastAPI application factory for dynaform.

Creates and configures the FastAPI app, the form collaborators (local JSON
forms or the remote forms API), the session store, and routes.

Run with:
    uvicorn dynaform.api.app:app --reload
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dynaform.api.routes import configure_routes, router
from dynaform.core.http_client import get_form_client
from dynaform.core.options import OptionResolver
from dynaform.core.session import SessionStore
from dynaform.core.sources import InMemorySubmissionStore, JsonDirectorySource

# Load environment variables from .env
load_dotenv()

# Logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_FORMS_DIR = Path(__file__).parent.parent / "schemas"


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    application = FastAPI(
        title="dynaform",
        description="Dynamic form engine: configuration-driven forms with live validation",
        version="0.1.0",
    )

    # CORS: allow all origins in development
    allowed_origins = os.getenv("CORS_ALLOWED_ORIGINS", "*").split(",")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Form collaborators: bundled JSON forms, or the remote forms API
    form_source = os.getenv("FORM_SOURCE", "local").strip().lower()
    api_client = get_form_client()
    if form_source == "remote":
        source = api_client
        sink = api_client
    else:
        if form_source != "local":
            logger.warning("Unknown FORM_SOURCE '%s'; using local forms", form_source)
        forms_dir = os.getenv("FORMS_DIR", str(DEFAULT_FORMS_DIR))
        source = JsonDirectorySource(forms_dir)
        sink = InMemorySubmissionStore()
    # Dynamic option endpoints are always served by the forms API
    resolver = OptionResolver(api_client)

    # Initialize session store
    session_timeout = int(os.getenv("SESSION_TIMEOUT_SECONDS", "1800"))
    session_store = SessionStore(timeout_seconds=session_timeout)

    # Configure routes with dependencies
    configure_routes(session_store, source, resolver, sink)
    application.include_router(router, prefix="/api")

    @application.on_event("startup")
    async def on_startup():
        logger.info("dynaform backend starting up")
        logger.info("Form source: %s", form_source)
        logger.info("Session timeout: %d seconds", session_timeout)

    @application.on_event("shutdown")
    async def on_shutdown():
        await api_client.aclose()

    return application


# Create the app instance (used by uvicorn)
app = create_app()
