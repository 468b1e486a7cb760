import json
import logging
from typing import Iterable

from db import KeyValueStore
from offline.models import PendingMutation


logger = logging.getLogger(__name__)


PENDING_MUTATIONS_KEY = "pendingMutations"


class PendingMutationQueue:
    """Durable FIFO of unconfirmed writes.

    Never reorders, deduplicates or caps the queue. Callers that care about
    duplicates must check `list()` before enqueueing.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    async def _load(self) -> list[PendingMutation]:
        raw = await self.kv.get(PENDING_MUTATIONS_KEY)
        if raw is None:
            return []
        try:
            return [PendingMutation.from_dict(m) for m in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding corrupt pending mutation queue: %r", e)
            await self.kv.delete(PENDING_MUTATIONS_KEY)
            return []

    async def _save(self, mutations: list[PendingMutation]) -> None:
        await self.kv.set(
            PENDING_MUTATIONS_KEY, json.dumps([m.to_dict() for m in mutations])
        )

    async def enqueue(self, mutation: PendingMutation) -> None:
        async with self.kv.lock:
            mutations = await self._load()
            mutations.append(mutation)
            await self._save(mutations)
        logger.info(
            "Queued %s %s (%s pending)",
            mutation.type.value,
            mutation.action.value,
            len(mutations),
        )

    async def list(self) -> list[PendingMutation]:
        async with self.kv.lock:
            return await self._load()

    async def count(self) -> int:
        return len(await self.list())

    async def remove_confirmed(self, ids: Iterable[str]) -> None:
        ids = set(ids)
        if not ids:
            return
        async with self.kv.lock:
            mutations = await self._load()
            await self._save([m for m in mutations if m.id not in ids])

    async def rebind(self, ids: dict[str, str]) -> None:
        """Rewrite queued references to local records the server now has."""
        if not ids:
            return
        async with self.kv.lock:
            mutations = await self._load()
            if any([m.rebind(ids) for m in mutations]):
                await self._save(mutations)
