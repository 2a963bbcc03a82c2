"""
Routes package for the affiliate backend.

Each router handles a specific domain of the API.
"""

from .evolution_routes import router as evolution_router

__all__ = [
    "evolution_router",
]
