"""
FastAPI application for inbound webhooks
"""
from fastapi import FastAPI

from .webhooks import router as webhooks_router


def create_app() -> FastAPI:
    app = FastAPI(title="Inbox Rules Pipeline")
    app.include_router(webhooks_router)
    return app


app = create_app()
