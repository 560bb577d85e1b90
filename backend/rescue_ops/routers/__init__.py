"""Rescue Ops - API Routers"""
from .access import router as access_router
from .scheduler import router as scheduler_router

__all__ = [
    "access_router",
    "scheduler_router",
]
