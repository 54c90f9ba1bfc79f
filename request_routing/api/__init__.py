"""API routes for request routing."""

from fastapi import APIRouter

from .routing import router as routing_router

# Main API router
api_router = APIRouter()
api_router.include_router(routing_router)

__all__ = ["api_router"]
