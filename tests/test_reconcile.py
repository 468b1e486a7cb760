import asyncio

import pytest

from conftest import SwitchableTransport, go_offline, go_online
from offline.models import (
    CacheSnapshot,
    ConnectivityState,
    FavoritePayload,
    ItineraryPayload,
    MutationAction,
    MutationType,
    PendingMutation,
    ReservationPayload,
    SharePayload,
    TransactionPayload,
)
from offline.reconcile import route
from offline.session import OfflineSession
from server.storage import MemoryStorage


SNAPSHOT_CALLS = {"/api/cache/snapshot", "/api/itineraries/", "/api/favorites/"}


def is_snapshot_call(call: tuple[str, str]) -> bool:
    method, path = call
    return method == "GET" and any(path.startswith(p) for p in SNAPSHOT_CALLS)


@pytest.mark.parametrize(
    "type,action,expected",
    (
        (MutationType.reservation, MutationAction.create, ("POST", "/api/reservations")),
        (MutationType.reservation, MutationAction.delete, ("DELETE", "/api/reservations")),
        (MutationType.favorite, MutationAction.create, ("POST", "/api/favorites")),
        (MutationType.favorite, MutationAction.delete, ("DELETE", "/api/favorites")),
        (MutationType.transaction, MutationAction.create, ("POST", "/api/budget/transaction")),
        (MutationType.transaction, MutationAction.delete, ("POST", "/api/budget/transaction")),
        (MutationType.itinerary, MutationAction.update, ("POST", "/api/itineraries")),
        (
            MutationType.share,
            MutationAction.create,
            ("POST", "/api/itinerary/{itineraryId}/publish"),
        ),
    ),
)
def test_route(
    type: MutationType, action: MutationAction, expected: tuple[str, str]
) -> None:
    assert route(type, action) == expected


@pytest.mark.asyncio
async def test_drain_while_offline_is_a_no_op(
    session: OfflineSession, transport: SwitchableTransport
) -> None:
    await go_offline(session, transport)
    await session.operations.add_favorite("42")
    transport.calls.clear()

    report = await session.engine.drain()

    assert len(report) == 0
    assert not report.snapshot_refreshed
    assert transport.calls == []
    assert await session.pending_count() == 1


@pytest.mark.asyncio
async def test_drain_keeps_exactly_the_rejected_mutations(
    session: OfflineSession, server_storage: MemoryStorage
) -> None:
    user_id = await session.user_id()
    mutations = [
        PendingMutation(
            id="mutation_1",
            type=MutationType.favorite,
            action=MutationAction.create,
            payload=FavoritePayload(user_id=user_id, business_id="1"),
        ),
        PendingMutation(
            id="mutation_2",
            type=MutationType.transaction,
            action=MutationAction.create,
            payload=TransactionPayload(user_id=user_id, amount=5, category=""),
        ),
        PendingMutation(
            id="mutation_3",
            type=MutationType.itinerary,
            action=MutationAction.create,
            payload=ItineraryPayload(user_id=user_id, title="Trip", duration=1, stops=[]),
        ),
        PendingMutation(
            id="mutation_4",
            type=MutationType.reservation,
            action=MutationAction.create,
            payload=ReservationPayload(user_id=user_id, business_id="2"),
        ),
        PendingMutation(
            id="mutation_5",
            type=MutationType.favorite,
            action=MutationAction.create,
            payload=FavoritePayload(user_id=user_id, business_id="3"),
        ),
    ]
    for m in mutations:
        await session.queue.enqueue(m)

    report = await session.engine.drain()

    assert report.succeeded == ["mutation_1", "mutation_3", "mutation_5"]
    assert report.failed == ["mutation_2", "mutation_4"]
    assert {r.status_code for r in report.results if not r.succeeded} == {400}
    assert {r.status_code for r in report.results if r.succeeded} == {200}
    assert [m.id for m in await session.queue.list()] == ["mutation_2", "mutation_4"]
    assert [f["businessId"] for f in server_storage.favorites] == ["1", "3"]
    assert len(server_storage.itineraries) == 1


@pytest.mark.asyncio
async def test_results_carry_the_real_success_status(
    session: OfflineSession, transport: SwitchableTransport
) -> None:
    await session.queue.enqueue(
        PendingMutation(
            id="mutation_1",
            type=MutationType.favorite,
            action=MutationAction.delete,
            payload=FavoritePayload(user_id="user_1", business_id="1"),
        )
    )
    transport.fail_with = 204

    report = await session.engine.drain()

    assert [(r.succeeded, r.status_code) for r in report.results] == [(True, 204)]
    assert await session.queue.list() == []
    assert not report.snapshot_refreshed


@pytest.mark.asyncio
async def test_unreachable_mutations_stay_queued_in_order(
    session: OfflineSession, transport: SwitchableTransport
) -> None:
    # The monitor still believes we are online when the server starts failing.
    for business_id in ("1", "2", "3"):
        await session.queue.enqueue(
            PendingMutation(
                id=f"mutation_{business_id}",
                type=MutationType.favorite,
                action=MutationAction.create,
                payload=FavoritePayload(user_id="user_1", business_id=business_id),
            )
        )
    transport.fail_with = 503

    report = await session.engine.drain()

    assert report.succeeded == []
    assert not report.snapshot_refreshed
    assert [m.id for m in await session.queue.list()] == [
        "mutation_1",
        "mutation_2",
        "mutation_3",
    ]


@pytest.mark.asyncio
async def test_empty_drains_only_fetch_the_snapshot(
    session: OfflineSession, transport: SwitchableTransport
) -> None:
    first = await session.engine.drain()
    second = await session.engine.drain()

    assert len(first) == 0 and len(second) == 0
    assert first.snapshot_refreshed and second.snapshot_refreshed
    assert len(transport.calls) == 6
    assert all(is_snapshot_call(c) for c in transport.calls)


@pytest.mark.asyncio
async def test_concurrent_drain_is_coalesced(
    session: OfflineSession, transport: SwitchableTransport
) -> None:
    await go_offline(session, transport)
    await session.operations.add_favorite("42")
    transport.online = True
    session.monitor.state = ConnectivityState(is_online=True)

    first, second = await asyncio.gather(
        session.engine.drain(), session.engine.drain()
    )

    assert first.succeeded and not first.coalesced
    assert second.coalesced and len(second) == 0
    assert [c for c in transport.calls if c[0] == "POST"] == [("POST", "/api/favorites")]


@pytest.mark.asyncio
async def test_failed_snapshot_fetch_keeps_previous_snapshot(
    session: OfflineSession, transport: SwitchableTransport
) -> None:
    await session.sync()
    before = await session.snapshot()
    assert before is not None and before.businesses

    transport.fail_with = 500
    report = await session.engine.drain()

    assert not report.snapshot_refreshed
    after = await session.snapshot()
    assert after is not None
    assert after.to_dict() == before.to_dict()


@pytest.mark.asyncio
async def test_older_server_snapshot_is_not_cached(session: OfflineSession) -> None:
    await session.cache.write(CacheSnapshot(version=2**62))
    report = await session.engine.drain()
    assert not report.snapshot_refreshed
    snapshot = await session.snapshot()
    assert snapshot is not None and snapshot.businesses == []


@pytest.mark.asyncio
async def test_offline_favorite_reaches_cache_after_reconnect(
    session: OfflineSession, transport: SwitchableTransport
) -> None:
    await go_offline(session, transport)
    await session.operations.add_favorite("42")
    assert await session.pending_count() == 1

    # The offline -> online flip schedules the drain.
    await go_online(session, transport)

    assert await session.pending_count() == 0
    snapshot = await session.snapshot()
    assert snapshot is not None
    assert [f["businessId"] for f in snapshot.favorites] == ["42"]
    assert session.last_sync_time is not None


@pytest.mark.asyncio
async def test_duplicate_offline_creates_are_both_applied(
    session: OfflineSession,
    transport: SwitchableTransport,
    server_storage: MemoryStorage,
) -> None:
    await go_offline(session, transport)
    await session.operations.add_favorite("42")
    await session.operations.add_favorite("42")
    assert await session.pending_count() == 2

    await go_online(session, transport)

    assert await session.pending_count() == 0
    user_id = await session.user_id()
    assert len(server_storage.get_favorites(user_id)) == 2
    assert [f["businessId"] for f in await session.favorites()] == ["42", "42"]


@pytest.mark.asyncio
async def test_reference_to_rejected_create_is_held(
    session: OfflineSession, transport: SwitchableTransport
) -> None:
    user_id = await session.user_id()
    await session.queue.enqueue(
        PendingMutation(
            id="mutation_1",
            type=MutationType.reservation,
            action=MutationAction.create,
            # No date or party size, so the server refuses it.
            payload=ReservationPayload(user_id=user_id, business_id="2"),
            local_record_id="local_1",
        )
    )
    await session.queue.enqueue(
        PendingMutation(
            id="mutation_2",
            type=MutationType.reservation,
            action=MutationAction.delete,
            payload=ReservationPayload(user_id=user_id, reservation_id="local_1"),
        )
    )

    report = await session.engine.drain()

    assert report.failed == ["mutation_1", "mutation_2"]
    assert ("DELETE", "/api/reservations") not in transport.calls
    assert await session.pending_count() == 2


@pytest.mark.asyncio
async def test_publish_follows_itinerary_created_in_same_pass(
    session: OfflineSession, server_storage: MemoryStorage
) -> None:
    user_id = await session.user_id()
    await session.queue.enqueue(
        PendingMutation(
            id="mutation_1",
            type=MutationType.itinerary,
            action=MutationAction.create,
            payload=ItineraryPayload(user_id=user_id, title="Trip", duration=1, stops=[]),
            local_record_id="local_1",
        )
    )
    await session.queue.enqueue(
        PendingMutation(
            id="mutation_2",
            type=MutationType.share,
            action=MutationAction.create,
            payload=SharePayload(user_id=user_id, itinerary_id="local_1"),
        )
    )

    report = await session.engine.drain()

    assert report.succeeded == ["mutation_1", "mutation_2"]
    [itinerary] = server_storage.itineraries
    assert itinerary["isPublic"]
