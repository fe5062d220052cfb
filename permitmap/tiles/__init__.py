"""Permit vector tiles: generation, caching and request handling."""

from .cache import PostgresTileCache, TileCache, TileKey
from .handler import TileRequestError, TileRequestHandler, TileResponse
from .service import TileService

__all__ = [
    "PostgresTileCache",
    "TileCache",
    "TileKey",
    "TileRequestError",
    "TileRequestHandler",
    "TileResponse",
    "TileService",
]
