"""HTTP API of the conversation store service."""

from agentlink.api.router import api_router, root_router

__all__ = ["api_router", "root_router"]
