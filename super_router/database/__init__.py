"""
Database integration layer for Super Router
"""

from super_router.database.cache_store import CacheStore, get_cache_store

__all__ = ["CacheStore", "get_cache_store"]
