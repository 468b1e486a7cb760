"""Replays pending mutations and refreshes the offline cache.

A drain is:

1. Copy the queue.
2. Send each mutation in order, once. Failures stay queued for next time.
   A mutation that refers to a record created earlier in the queue (cancel a
   reservation, publish an itinerary) is sent with that record's server id
   once the create has gone through.
3. Drop the confirmed ones from the queue and swap their optimistic local
   records for the server's.
4. Fetch a whole new snapshot and overwrite the cache with it.

Draining is at-least-once. A crash between the server confirming a mutation
and the queue dropping it replays that mutation, which the server records a
second time.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from offline.cache import LocalCacheStore, StaleSnapshotError
from offline.client import (
    ApiClient,
    ServerRejectedError,
    ServerUnavailableError,
    response_body,
)
from offline.mirror import MIRROR_KINDS, LocalMirror, MirrorKind, server_record
from offline.models import (
    CacheSnapshot,
    EntityKind,
    MutationAction,
    MutationType,
    Payload,
    PendingMutation,
    is_local_id,
    refers_to_local_record,
)
from offline.queue import PendingMutationQueue


logger = logging.getLogger(__name__)


ROUTES: dict[MutationType, str] = {
    MutationType.reservation: "/api/reservations",
    MutationType.favorite: "/api/favorites",
    MutationType.transaction: "/api/budget/transaction",
    MutationType.itinerary: "/api/itineraries",
    MutationType.share: "/api/itinerary/{itineraryId}/publish",
}


def route(type: MutationType, action: MutationAction) -> tuple[str, str]:
    """HTTP method and path for a `type` x `action` write."""
    method = "POST"
    if action == MutationAction.delete and type in (
        MutationType.reservation,
        MutationType.favorite,
    ):
        method = "DELETE"
    return method, ROUTES[type]


def request_line(payload: Payload, action: MutationAction) -> tuple[str, str]:
    """`route` with the payload's fields filled into the path."""
    method, path = route(payload.type, action)
    return method, path.format(**payload.to_dict())


class MutationResult:
    def __init__(
        self,
        *,
        mutation_id: str,
        succeeded: bool,
        status_code: int | None = None,
        error: str | None = None,
    ) -> None:
        self.mutation_id = mutation_id
        self.succeeded = succeeded
        self.status_code = status_code
        self.error = error

    def __repr__(self) -> str:
        return (
            f"<MutationResult(mutation_id={self.mutation_id}, "
            f"succeeded={self.succeeded})>"
        )


class ReconciliationReport:
    def __init__(
        self,
        results: list[MutationResult] | None = None,
        *,
        coalesced: bool = False,
        snapshot_refreshed: bool = False,
    ) -> None:
        self.results = [] if results is None else results
        self.coalesced = coalesced
        self.snapshot_refreshed = snapshot_refreshed

    def __repr__(self) -> str:
        return (
            f"<ReconciliationReport(succeeded={len(self.succeeded)}, "
            f"failed={len(self.failed)}, coalesced={self.coalesced})>"
        )

    def __len__(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> list[str]:
        return [r.mutation_id for r in self.results if r.succeeded]

    @property
    def failed(self) -> list[str]:
        return [r.mutation_id for r in self.results if not r.succeeded]


class ReconciliationEngine:
    def __init__(
        self,
        *,
        api: ApiClient,
        cache: LocalCacheStore,
        queue: PendingMutationQueue,
        mirror: LocalMirror,
        is_online: Callable[[], bool],
        user_id: Callable[[], Awaitable[str]],
    ) -> None:
        self.api = api
        self.cache = cache
        self.queue = queue
        self.mirror = mirror
        self.is_online = is_online
        self.user_id = user_id
        self._lock = asyncio.Lock()

    @property
    def is_draining(self) -> bool:
        return self._lock.locked()

    async def drain(self) -> ReconciliationReport:
        if not self.is_online():
            logger.info("Offline, skipping drain")
            return ReconciliationReport()
        if self._lock.locked():
            logger.info("Drain already running, coalescing")
            return ReconciliationReport(coalesced=True)

        async with self._lock:
            mutations = await self.queue.list()
            # Local ids confirmed during this pass, mapped to their server ids.
            ids: dict[str, str] = {}
            results = []
            for mutation in mutations:
                mutation.rebind(ids)
                if refers_to_local_record(mutation.payload):
                    logger.info("Holding %r until its record is created", mutation)
                    results.append(
                        MutationResult(
                            mutation_id=mutation.id,
                            succeeded=False,
                            error="waits for a local record",
                        )
                    )
                    continue
                results.append(await self._replay(mutation, ids))

            confirmed = {r.mutation_id for r in results if r.succeeded}
            await self.queue.remove_confirmed(confirmed)
            await self.queue.rebind(ids)

            report = ReconciliationReport(results)
            if mutations:
                logger.info(
                    "Replayed %s mutations: %s succeeded, %s failed",
                    len(mutations),
                    len(report.succeeded),
                    len(report.failed),
                )
            report.snapshot_refreshed = await self._refresh()
            return report

    async def _replay(
        self, mutation: PendingMutation, ids: dict[str, str]
    ) -> MutationResult:
        method, path = request_line(mutation.payload, mutation.action)
        try:
            resp = await self.api.send(method, path, json=mutation.payload.to_dict())
        except ServerRejectedError as e:
            logger.warning("Server rejected %r: %s", mutation, e)
            return MutationResult(
                mutation_id=mutation.id,
                succeeded=False,
                status_code=e.status_code,
                error=str(e),
            )
        except ServerUnavailableError as e:
            logger.info("Could not replay %r: %s", mutation, e)
            return MutationResult(mutation_id=mutation.id, succeeded=False, error=str(e))

        if mutation.local_record_id is not None:
            record = server_record(response_body(resp), mutation.type)
            await self.mirror.remap(
                MIRROR_KINDS[mutation.type], mutation.local_record_id, record
            )
            server_id = None if record is None else record.get("id")
            if isinstance(server_id, str) and not is_local_id(server_id):
                ids[mutation.local_record_id] = server_id
        return MutationResult(
            mutation_id=mutation.id, succeeded=True, status_code=resp.status_code
        )

    async def refresh_snapshot(self) -> bool:
        """Fetch and store a new snapshot outside of a drain."""
        async with self._lock:
            return await self._refresh()

    async def _refresh(self) -> bool:
        try:
            snapshot = await self.fetch_snapshot()
        except ServerUnavailableError as e:
            logger.info("Snapshot fetch failed, keeping cached snapshot: %s", e)
            return False
        try:
            await self.cache.write(snapshot)
        except StaleSnapshotError as e:
            logger.warning("Not caching snapshot: %s", e)
            return False
        await self.mirror.prune_confirmed(MirrorKind.favorites, MirrorKind.itineraries)
        return True

    async def fetch_snapshot(self) -> CacheSnapshot:
        """Catalog plus the user's lists, all or nothing."""
        data = await self.api.cache_snapshot()
        user_id = await self.user_id()
        itineraries, favorites = await asyncio.gather(
            self.api.itineraries(user_id),
            self.api.favorites(user_id),
        )
        try:
            version = int(data["version"])
        except (KeyError, TypeError, ValueError) as e:
            raise ServerUnavailableError(f"Snapshot without a version: {data!r}") from e
        return CacheSnapshot(
            version=version,
            entities={
                EntityKind.businesses: data.get("businesses") or [],
                EntityKind.itineraries: itineraries,
                EntityKind.favorites: favorites,
            },
            last_updated_at=data.get("timestamp"),
        )
