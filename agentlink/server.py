"""FastAPI application for the conversation store service."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from agentlink.api import api_router, root_router
from agentlink.db import init_db
from agentlink.log_config import configure_logging
from agentlink.middleware import (
    http_exception_handler,
    request_logging_middleware,
    store_exception_handler,
    validation_exception_handler,
)
from agentlink.settings import settings

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Conversation store ready", data_dir=settings.data_dir())
    yield


app = FastAPI(title="agentlink conversation store", lifespan=lifespan)

app.middleware("http")(request_logging_middleware)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(SQLAlchemyError, store_exception_handler)

app.include_router(api_router)
app.include_router(root_router)


def run(host: str | None = None, port: int | None = None) -> None:
    """Serve the conversation store with uvicorn."""
    configure_logging()
    uvicorn.run(
        "agentlink.server:app",
        host=host or settings.host(),
        port=port or settings.port(),
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    run()
