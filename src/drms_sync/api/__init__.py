"""Operator HTTP API."""

from .sync_endpoints import router as sync_router

__all__ = ["sync_router"]
