from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Callable

from db import KeyValueStore
from offline.models import Entity, MutationType, is_local_id


logger = logging.getLogger(__name__)


class MirrorKind(Enum):
    favorites = "favorites"
    transactions = "budgetTransactions"
    itineraries = "savedItineraries"
    reservations = "reservations"
    shared = "sharedItems"


MIRROR_KINDS: dict[MutationType, MirrorKind] = {
    MutationType.favorite: MirrorKind.favorites,
    MutationType.transaction: MirrorKind.transactions,
    MutationType.itinerary: MirrorKind.itineraries,
    MutationType.reservation: MirrorKind.reservations,
    MutationType.share: MirrorKind.shared,
}


MIRROR_KEYS = tuple(kind.value for kind in MirrorKind)


class LocalMirror:
    """Optimistic local copies of records written from this device."""

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    async def _load(self, kind: MirrorKind) -> list[Entity]:
        raw = await self.kv.get(kind.value)
        if raw is None:
            return []
        try:
            records = json.loads(raw)
        except ValueError as e:
            logger.warning("Discarding corrupt %s mirror: %r", kind.value, e)
            return []
        if not isinstance(records, list):
            logger.warning("Discarding corrupt %s mirror: not a list", kind.value)
            return []
        return [r for r in records if isinstance(r, dict)]

    async def _save(self, kind: MirrorKind, records: list[Entity]) -> None:
        await self.kv.set(kind.value, json.dumps(records))

    async def list(self, kind: MirrorKind) -> list[Entity]:
        async with self.kv.lock:
            return await self._load(kind)

    async def add(
        self, kind: MirrorKind, record: Entity, *, newest_first: bool = False
    ) -> None:
        async with self.kv.lock:
            records = await self._load(kind)
            if newest_first:
                records.insert(0, record)
            else:
                records.append(record)
            await self._save(kind, records)

    async def remove(
        self, kind: MirrorKind, predicate: Callable[[Entity], bool]
    ) -> list[Entity]:
        async with self.kv.lock:
            records = await self._load(kind)
            kept = [r for r in records if not predicate(r)]
            await self._save(kind, kept)
        return [r for r in records if predicate(r)]

    async def remap(
        self, kind: MirrorKind, local_id: str, server_record: Entity | None
    ) -> bool:
        """Swap a local record for the server's version of it.

        Server fields win; fields only the device knows about (e.g. a
        business name) are kept. With no server record the local one is
        dropped so it cannot linger as an orphan.
        """
        async with self.kv.lock:
            records = await self._load(kind)
            for i, record in enumerate(records):
                if record.get("id") != local_id:
                    continue
                if server_record is None or is_local_id(server_record.get("id")):
                    del records[i]
                else:
                    records[i] = {**record, **server_record}
                await self._save(kind, records)
                return True
        return False

    async def prune_confirmed(self, *kinds: MirrorKind) -> None:
        """Keep only unconfirmed records; a fresh snapshot holds the rest."""
        async with self.kv.lock:
            for kind in kinds:
                records = await self._load(kind)
                await self._save(kind, [r for r in records if is_local_id(r.get("id"))])

    async def replace_confirmed(self, kind: MirrorKind, records: list[Entity]) -> None:
        """Swap the confirmed records of `kind` for a fresh server list.

        Unconfirmed local records stay in front of the server's.
        """
        async with self.kv.lock:
            local = [r for r in await self._load(kind) if is_local_id(r.get("id"))]
            await self._save(kind, local + records)


def server_record(body: Any, type: MutationType) -> Entity | None:
    """The created record in a write response, e.g. `{"favorite": {...}}`.

    A publish response becomes the fields of the shared item it confirms.
    """
    if not isinstance(body, dict):
        return None
    if type == MutationType.share:
        itinerary = body.get("itinerary")
        if not isinstance(itinerary, dict) or not body.get("shareCode"):
            return None
        return {"itemId": itinerary.get("id"), "shareCode": body["shareCode"]}
    record = body.get(type.value)
    return record if isinstance(record, dict) else None
