import json
import logging

from db import KeyValueStore
from offline.models import CacheSnapshot
from offline.queue import PENDING_MUTATIONS_KEY


logger = logging.getLogger(__name__)


CACHE_KEY = "offlineCache"


class StaleSnapshotError(Exception):
    pass


class LocalCacheStore:
    """The last server snapshot, the only source for reads while offline."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        reset_keys: tuple[str, ...] = (PENDING_MUTATIONS_KEY,),
    ) -> None:
        self.kv = kv
        # Everything else `clear` wipes along with the snapshot.
        self.reset_keys = reset_keys

    async def _load(self) -> CacheSnapshot | None:
        raw = await self.kv.get(CACHE_KEY)
        if raw is None:
            return None
        try:
            return CacheSnapshot.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring corrupt offline cache: %r", e)
            return None

    async def read(self) -> CacheSnapshot | None:
        async with self.kv.lock:
            return await self._load()

    async def write(self, snapshot: CacheSnapshot) -> None:
        """Replace the stored snapshot in a single statement.

        Raises `StaleSnapshotError` when `snapshot` is older than the stored
        one.
        """
        async with self.kv.lock:
            current = await self._load()
            if current is not None and snapshot.version < current.version:
                raise StaleSnapshotError(
                    f"Snapshot version {snapshot.version} is older than "
                    f"cached version {current.version}"
                )
            await self.kv.set(CACHE_KEY, json.dumps(snapshot.to_dict()))
        logger.info("Wrote %r", snapshot)

    async def clear(self) -> None:
        async with self.kv.lock:
            await self.kv.delete(CACHE_KEY, *self.reset_keys)
        logger.info("Cleared offline cache")
