import asyncio
import structlog

from super_router.database.cache_store import CacheStore
from super_router.storage.artifact_store import ArtifactStore

logger = structlog.get_logger()


async def sweep_expired(cache: CacheStore, artifacts: ArtifactStore, batch_size: int = 100) -> int:
    """
    Delete one batch of expired cache rows.

    A storage object is removed only when no live row still uses its key;
    keys are deterministic, so a fresh duplicate may share the object.
    Returns the number of rows deleted.
    """
    expired = await cache.find_expired(limit=batch_size)
    deleted = 0
    checked_keys = set()

    for entry in expired:
        if entry.id is None:
            continue
        await cache.delete(entry.id)
        deleted += 1

        if entry.storage_key in checked_keys:
            continue
        checked_keys.add(entry.storage_key)

        if await cache.has_live_reference(entry.storage_key):
            logger.debug("artifact_still_referenced", storage_key=entry.storage_key)
            continue
        try:
            await artifacts.delete(entry.storage_key)
        except Exception as e:
            # The row is gone already; an orphaned object only costs storage
            logger.warning("artifact_delete_failed", storage_key=entry.storage_key, error=str(e))
            continue

        await _invalidate_stranded(cache, entry.storage_key)

    return deleted


async def _invalidate_stranded(cache: CacheStore, storage_key: str) -> None:
    """
    Drop live rows recorded for a key while its object was being removed.

    A concurrent miss for the same prompt can upsert the key and insert its
    row between the reference check and the delete. Such a row would serve a
    dead URL until it expires; removing it turns the next request into a miss.
    """
    stranded = await cache.live_references(storage_key)
    for entry in stranded:
        if entry.id is None:
            continue
        logger.warning("cache_row_invalidated", storage_key=storage_key, row_id=entry.id)
        await cache.delete(entry.id)


async def reap_expired(cache: CacheStore, artifacts: ArtifactStore, batch_size: int = 100) -> int:
    """Sweep batch after batch until the expired backlog is empty"""
    total = 0
    while True:
        deleted = await sweep_expired(cache, artifacts, batch_size=batch_size)
        total += deleted
        if deleted < batch_size:
            return total


async def run_cleanup_worker(
    cache: CacheStore,
    artifacts: ArtifactStore,
    interval: float = 3600,
    batch_size: int = 100,
):
    """Background task that reaps expired cache entries and their artifacts"""
    while True:
        try:
            await asyncio.sleep(interval)

            deleted = await reap_expired(cache, artifacts, batch_size=batch_size)
            if deleted > 0:
                logger.info("expired_entries_reaped", count=deleted)

        except asyncio.CancelledError:
            logger.info("cleanup_worker_stopped")
            raise
        except Exception as e:
            logger.error("cleanup_worker_error", error=str(e))
