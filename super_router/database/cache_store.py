"""
Supabase-backed cache of generated media
Append-only rows in the generated_media table, keyed by (prompt_hash, endpoint_path)
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, List, Optional

import structlog
from supabase import Client, create_client

from super_router.config import RouterConfig, get_config
from super_router.errors import CacheUnavailable
from super_router.models import CacheEntry, utcnow

logger = structlog.get_logger()

CACHE_TABLE = "generated_media"


class CacheStore:
    """
    Lookup and append operations over the cache table.

    The Supabase client is synchronous, so every call runs in a worker thread
    with a timeout. Any failure surfaces as CacheUnavailable.
    """

    def __init__(self, client: Client, timeout: float = 10.0, table: str = CACHE_TABLE):
        self.client = client
        self.timeout = timeout
        self.table = table

    async def _run(self, operation: str, query: Callable[[], Any]) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(query), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("cache_timeout", operation=operation, timeout=self.timeout)
            raise CacheUnavailable(f"Cache {operation} timed out after {self.timeout}s") from e
        except Exception as e:
            logger.error("cache_error", operation=operation, error=str(e))
            raise CacheUnavailable(f"Cache {operation} failed: {e}") from e

    # ===== READ PATH =====

    async def lookup(self, prompt_hash: str, endpoint_path: str) -> Optional[CacheEntry]:
        """
        Return the newest non-expired entry for a key, or None.
        Expiry is re-checked here because rows outlive expires_at until reaped.
        """
        now = utcnow()
        result = await self._run(
            "lookup",
            lambda: self.client.table(self.table)
            .select("*")
            .eq("prompt_hash", prompt_hash)
            .eq("endpoint_path", endpoint_path)
            .gt("expires_at", now.isoformat())
            .order("created_at", desc=True)
            .limit(5)
            .execute(),
        )

        live = [entry for entry in self._parse_rows(result.data) if entry.is_live(now)]
        if not live:
            return None
        return max(live, key=lambda entry: entry.created_at)

    async def live_references(self, storage_key: str, limit: int = 100) -> List[CacheEntry]:
        """Non-expired rows that point at this storage object"""
        now = utcnow()
        result = await self._run(
            "reference_check",
            lambda: self.client.table(self.table)
            .select("*")
            .eq("storage_key", storage_key)
            .gt("expires_at", now.isoformat())
            .limit(limit)
            .execute(),
        )
        return [entry for entry in self._parse_rows(result.data) if entry.is_live(now)]

    async def has_live_reference(self, storage_key: str) -> bool:
        """True if any non-expired row still points at this storage object"""
        return bool(await self.live_references(storage_key, limit=1))

    async def find_expired(self, limit: int = 100, now: Optional[datetime] = None) -> List[CacheEntry]:
        """Oldest-expiring rows first, for the expiry sweep"""
        cutoff = (now or utcnow()).isoformat()
        result = await self._run(
            "find_expired",
            lambda: self.client.table(self.table)
            .select("*")
            .lte("expires_at", cutoff)
            .order("expires_at")
            .limit(limit)
            .execute(),
        )
        return self._parse_rows(result.data)

    async def ping(self) -> None:
        await self._run("ping", lambda: self.client.table(self.table).select("id").limit(1).execute())

    # ===== WRITE PATH =====

    async def insert(self, entry: CacheEntry) -> CacheEntry:
        """
        Append an entry. Never overwrites; duplicate keys from concurrent
        misses are expected and resolved by lookup picking the newest row.
        """
        row = entry.model_dump(mode="json", exclude_none=True)
        result = await self._run("insert", lambda: self.client.table(self.table).insert(row).execute())

        stored = self._parse_rows(result.data)
        logger.info(
            "cache_entry_inserted",
            endpoint=entry.endpoint_path,
            prompt_hash=entry.prompt_hash,
            storage_key=entry.storage_key,
        )
        return stored[0] if stored else entry

    async def delete(self, entry_id: str) -> None:
        await self._run("delete", lambda: self.client.table(self.table).delete().eq("id", entry_id).execute())

    @staticmethod
    def _parse_rows(rows: Optional[List[dict]]) -> List[CacheEntry]:
        entries = []
        for row in rows or []:
            try:
                entries.append(CacheEntry.model_validate(row))
            except ValueError as e:
                # A row violating expires_at > created_at is treated as absent
                logger.warning("cache_row_invalid", row_id=row.get("id"), error=str(e))
        return entries


# Singleton instance
_cache_store: Optional[CacheStore] = None


def get_cache_store(config: Optional[RouterConfig] = None) -> CacheStore:
    """Get or create the singleton cache store from configuration"""
    global _cache_store

    if _cache_store is None:
        config = config or get_config()
        client = create_client(config.supabase_url, config.supabase_key)
        _cache_store = CacheStore(client, timeout=config.cache_timeout)

    return _cache_store
