"""
HTTP API for the LazyDraft web client.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..config import settings
from .routes import router, set_service


def create_app(service=None, templates=None, users=None, auto_reply=None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="LazyDraft",
        description="AI email drafting, scheduling and recurring campaigns",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routes
    app.include_router(router, prefix="/api")

    # Set services if provided
    if service:
        set_service(service, templates=templates, users=users, auto_reply=auto_reply)

    return app


__all__ = ["create_app", "router", "set_service"]
