"""One device session: the stores and the workers that share them.

Build order matters. The stores come first, then the monitor and the engine
that read them, then the operations that write through them.

Reads for the UI layer the pending queue over the cached snapshot. Records
written offline show up straight away, and deleted favorites disappear
straight away, without touching the snapshot itself.
"""
import contextlib
import logging
from typing import AsyncIterator

from databases import Database
import httpx

from config import Config
from db import KeyValueStore, create_db
from offline.budget import BudgetTracker
from offline.cache import LocalCacheStore
from offline.client import ApiClient, ServerUnavailableError, api_client_factory
from offline.connectivity import ConnectivityMonitor
from offline.mirror import MIRROR_KEYS, LocalMirror, MirrorKind
from offline.models import (
    CacheSnapshot,
    ConnectivityState,
    Entity,
    LocalIds,
    MutationAction,
    MutationType,
    PendingMutation,
    is_local_id,
    utcnow,
)
from offline.operations import MutationOperations
from offline.queue import PENDING_MUTATIONS_KEY, PendingMutationQueue
from offline.reconcile import ReconciliationEngine, ReconciliationReport


logger = logging.getLogger(__name__)


USER_ID_KEY = "userId"


def _pending_local_ids(pending: list[PendingMutation]) -> set[str]:
    return {m.local_record_id for m in pending if m.local_record_id is not None}


def _deleted_favorites(pending: list[PendingMutation]) -> set[str]:
    """Businesses whose latest queued favorite mutation is a delete."""
    deleted: set[str] = set()
    for m in pending:
        if m.type != MutationType.favorite:
            continue
        business_id = m.payload.to_dict()["businessId"]
        if m.action == MutationAction.delete:
            deleted.add(business_id)
        else:
            deleted.discard(business_id)
    return deleted


def _layer(
    server: list[Entity], local: list[Entity], pending_ids: set[str]
) -> list[Entity]:
    server_ids = {r.get("id") for r in server}
    extra = [
        r
        for r in local
        if r.get("id") not in server_ids
        and (not is_local_id(r.get("id")) or r.get("id") in pending_ids)
    ]
    return server + extra


class OfflineSession:
    def __init__(
        self,
        *,
        kv: KeyValueStore,
        http_client: httpx.AsyncClient,
        config: Config | None = None,
    ) -> None:
        self.config = Config() if config is None else config
        self.kv = kv
        self.ids = LocalIds()
        self.last_sync_time: str | None = None

        self.queue = PendingMutationQueue(kv)
        self.mirror = LocalMirror(kv)
        self.cache = LocalCacheStore(
            kv, reset_keys=(PENDING_MUTATIONS_KEY, *MIRROR_KEYS)
        )

        self.api = ApiClient(http_client, health_timeout=self.config.health_timeout)
        self.monitor = ConnectivityMonitor(
            self.api, interval=self.config.health_interval
        )
        self.engine = ReconciliationEngine(
            api=self.api,
            cache=self.cache,
            queue=self.queue,
            mirror=self.mirror,
            is_online=lambda: self.monitor.is_online,
            user_id=self.user_id,
        )

        self.operations = MutationOperations(
            api=self.api,
            queue=self.queue,
            mirror=self.mirror,
            ids=self.ids,
            user_id=self.user_id,
            refresh_snapshot=self.engine.refresh_snapshot,
        )
        self.budget = BudgetTracker(api=self.api, mirror=self.mirror, user_id=self.user_id)

        self.monitor.on_change(self._on_connectivity_change)

    async def __aenter__(self) -> "OfflineSession":
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    async def start(self) -> None:
        await self.monitor.start()
        if not self.config.drain_on_start:
            return
        online = await self.monitor.wait_first_check()
        if online and await self.queue.count():
            await self.drain()

    async def stop(self) -> None:
        await self.monitor.stop()

    async def _on_connectivity_change(self, state: ConnectivityState) -> None:
        if state.is_online:
            await self.drain()

    @property
    def is_online(self) -> bool:
        return self.monitor.is_online

    @property
    def is_syncing(self) -> bool:
        return self.engine.is_draining

    async def user_id(self) -> str:
        """Stable id for this device until the server knows who the user is."""
        async with self.kv.lock:
            user_id = await self.kv.get(USER_ID_KEY)
            if user_id is None:
                user_id = self.ids.next("user_")
                await self.kv.set(USER_ID_KEY, user_id)
        return user_id

    async def drain(self) -> ReconciliationReport:
        report = await self.engine.drain()
        if report.snapshot_refreshed:
            self.last_sync_time = utcnow().isoformat()
        return report

    async def sync(self) -> ReconciliationReport:
        """Drain if anything is pending, otherwise just refresh the cache."""
        if await self.queue.count():
            return await self.drain()
        report = ReconciliationReport()
        if self.is_online:
            report.snapshot_refreshed = await self.engine.refresh_snapshot()
            if report.snapshot_refreshed:
                self.last_sync_time = utcnow().isoformat()
        return report

    async def pending_count(self) -> int:
        return await self.queue.count()

    async def clear(self) -> None:
        await self.cache.clear()

    async def snapshot(self) -> CacheSnapshot | None:
        return await self.cache.read()

    async def businesses(self) -> list[Entity]:
        snapshot = await self.cache.read()
        return [] if snapshot is None else snapshot.businesses

    async def favorites(self) -> list[Entity]:
        snapshot = await self.cache.read()
        pending = await self.queue.list()
        records = _layer(
            [] if snapshot is None else snapshot.favorites,
            await self.mirror.list(MirrorKind.favorites),
            _pending_local_ids(pending),
        )
        deleted = _deleted_favorites(pending)
        return [r for r in records if str(r.get("businessId")) not in deleted]

    async def itineraries(self) -> list[Entity]:
        snapshot = await self.cache.read()
        pending = await self.queue.list()
        return _layer(
            [] if snapshot is None else snapshot.itineraries,
            await self.mirror.list(MirrorKind.itineraries),
            _pending_local_ids(pending),
        )

    async def _mirrored(self, kind: MirrorKind) -> list[Entity]:
        pending = await self.queue.list()
        return _layer([], await self.mirror.list(kind), _pending_local_ids(pending))

    async def transactions(self) -> list[Entity]:
        return await self._mirrored(MirrorKind.transactions)

    async def reservations(self) -> list[Entity]:
        return await self._mirrored(MirrorKind.reservations)

    async def refresh_reservations(self) -> list[Entity]:
        """Reload confirmed reservations from the server, minus cancelled ones."""
        user_id = await self.user_id()
        try:
            records = await self.api.reservations(user_id)
        except ServerUnavailableError as e:
            logger.info("Reservations fetch failed, keeping local copies: %s", e)
        else:
            await self.mirror.replace_confirmed(
                MirrorKind.reservations,
                [r for r in records if r.get("status") != "cancelled"],
            )
        return await self.reservations()

    async def shared_items(self) -> list[Entity]:
        return await self.mirror.list(MirrorKind.shared)


@contextlib.asynccontextmanager
async def open_session(
    config: Config | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    start: bool = True,
) -> AsyncIterator[OfflineSession]:
    """Connect the local database and the API client around a session."""
    config = Config() if config is None else config
    db = Database(config.db_url)
    await db.connect()
    http_client = api_client_factory(
        config.api_url, timeout=config.request_timeout, transport=transport
    )
    try:
        await create_db(db)
        session = OfflineSession(
            kv=KeyValueStore(db), http_client=http_client, config=config
        )
        if start:
            await session.start()
        try:
            yield session
        finally:
            await session.stop()
    finally:
        await http_client.aclose()
        await db.disconnect()
