"""API module."""

from fastapi import APIRouter

from .endpoints import context, messages, tools

router = APIRouter()

# Include endpoint routers
router.include_router(messages.router, tags=["entities"])
router.include_router(context.router, tags=["context"])
router.include_router(tools.router, prefix="/tools", tags=["tools"])
