"""Composition of API routers."""

from __future__ import annotations

from fastapi import APIRouter

from agentlink.api.conversation import router as conversation_router
from agentlink.api.health import router as health_router

api_router = APIRouter(prefix="/api")
api_router.include_router(conversation_router)

root_router = APIRouter()
root_router.include_router(health_router)
