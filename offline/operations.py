"""Writes that keep working offline.

Every operation tries the server first. When the server cannot be reached it
records an optimistic local copy, queues the write for the next drain and
returns the local copy, so the caller never sees a connectivity error. A 4xx
response is a real rejection and is raised as `ServerRejectedError`.
"""
import logging
import secrets
import string
from typing import Any, Awaitable, Callable

from offline.client import ApiClient, ServerUnavailableError
from offline.mirror import MIRROR_KINDS, LocalMirror, MirrorKind, server_record
from offline.models import (
    Entity,
    FavoritePayload,
    ItineraryPayload,
    LocalIds,
    MutationAction,
    Payload,
    PendingMutation,
    ReservationPayload,
    SharePayload,
    TransactionPayload,
    refers_to_local_record,
    utcnow,
)
from offline.queue import PendingMutationQueue
from offline.reconcile import request_line


logger = logging.getLogger(__name__)


SHARE_CODE_ALPHABET = string.ascii_lowercase + string.digits


def share_code(length: int = 8) -> str:
    return "".join(secrets.choice(SHARE_CODE_ALPHABET) for _ in range(length))


class MutationOperations:
    def __init__(
        self,
        *,
        api: ApiClient,
        queue: PendingMutationQueue,
        mirror: LocalMirror,
        ids: LocalIds,
        user_id: Callable[[], Awaitable[str]],
        refresh_snapshot: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self.api = api
        self.queue = queue
        self.mirror = mirror
        self.ids = ids
        self.user_id = user_id
        self.refresh_snapshot = refresh_snapshot

    async def _perform(
        self,
        action: MutationAction,
        payload: Payload,
        *,
        local_record: Entity | None = None,
        newest_first: bool = False,
    ) -> tuple[Entity | None, bool]:
        """Send `payload` or queue it.

        Returns the record to show the user and whether the server confirmed
        it. `local_record` is the optimistic record used when offline; it
        gets a local id here unless it already has one.

        A payload that refers to a record the server has not confirmed yet
        is always queued, behind the write that creates that record.
        """
        method, path = request_line(payload, action)
        kind = MIRROR_KINDS[payload.type]
        if refers_to_local_record(payload):
            logger.info(
                "Queueing %s %s behind its local record",
                payload.type.value,
                action.value,
            )
        else:
            try:
                body = await self.api.write(method, path, json=payload.to_dict())
            except ServerUnavailableError as e:
                logger.info(
                    "Offline, queueing %s %s: %s", payload.type.value, action.value, e
                )
            else:
                record = server_record(body, payload.type)
                if record is not None and local_record is not None:
                    record = {**local_record, **record}
                    await self.mirror.add(kind, record, newest_first=newest_first)
                return record, True

        local_id = None
        if local_record is not None:
            local_id = local_record.get("id") or self.ids.next("local_")
            local_record = {**local_record, "id": local_id}
            await self.mirror.add(kind, local_record, newest_first=newest_first)
        await self.queue.enqueue(
            PendingMutation(
                id=self.ids.next("mutation_"),
                type=payload.type,
                action=action,
                payload=payload,
                local_record_id=local_id,
            )
        )
        return local_record, False

    async def add_favorite(
        self, business_id: str, business_name: str | None = None
    ) -> Entity:
        user_id = await self.user_id()
        local = {
            "userId": user_id,
            "businessId": business_id,
            "businessName": business_name,
            "createdAt": utcnow().isoformat(),
        }
        record, _ = await self._perform(
            MutationAction.create,
            FavoritePayload(user_id=user_id, business_id=business_id),
            local_record=local,
        )
        return local if record is None else record

    async def remove_favorite(self, business_id: str) -> None:
        user_id = await self.user_id()
        _, confirmed = await self._perform(
            MutationAction.delete,
            FavoritePayload(user_id=user_id, business_id=business_id),
        )
        await self.mirror.remove(
            MirrorKind.favorites, lambda f: f.get("businessId") == business_id
        )
        if confirmed and self.refresh_snapshot is not None:
            await self.refresh_snapshot()

    async def add_transaction(
        self,
        *,
        amount: float,
        category: str,
        description: str | None = None,
        type: str = "expense",
        business_id: str | None = None,
    ) -> Entity:
        user_id = await self.user_id()
        local = {
            "userId": user_id,
            "businessId": business_id,
            "amount": str(amount),
            "category": category,
            "description": description,
            "date": utcnow().isoformat(),
            "type": type,
        }
        record, _ = await self._perform(
            MutationAction.create,
            TransactionPayload(
                user_id=user_id,
                amount=amount,
                category=category,
                description=description,
                transaction_type=type,
                business_id=business_id,
            ),
            local_record=local,
            newest_first=True,
        )
        return local if record is None else record

    async def save_itinerary(self, itinerary: dict[str, Any]) -> Entity:
        """Save a multi-day itinerary (`title`, `duration`, `days`, ...)."""
        for field in ("title", "duration"):
            if field not in itinerary:
                raise ValueError(f"Itinerary is missing {field!r}")
        user_id = await self.user_id()
        local = {k: v for k, v in itinerary.items() if k != "id"}
        record, _ = await self._perform(
            MutationAction.create,
            ItineraryPayload(
                user_id=user_id,
                title=itinerary["title"],
                duration=itinerary["duration"],
                stops=itinerary.get("days") or [],
                description=itinerary.get("description"),
                city=itinerary.get("city"),
            ),
            local_record=local,
        )
        return local if record is None else record

    async def share_itinerary(self, itinerary: dict[str, Any]) -> str:
        """Publish an itinerary and return its share code.

        Offline, the code is minted here and sent with the queued publish,
        which runs after the itinerary itself has been saved.
        """
        if itinerary.get("shareCode"):
            return itinerary["shareCode"]
        id = itinerary.get("id")
        if not id:
            id = (await self.save_itinerary(itinerary))["id"]

        user_id = await self.user_id()
        code = share_code()
        shared = {
            "id": self.ids.next("share_"),
            "userId": user_id,
            "itemType": "itinerary",
            "itemId": id,
            "shareCode": code,
            "createdAt": utcnow().isoformat(),
        }
        record, _ = await self._perform(
            MutationAction.create,
            SharePayload(user_id=user_id, itinerary_id=id, share_code=code),
            local_record=shared,
        )
        return (shared if record is None else record)["shareCode"]

    async def create_reservation(
        self,
        *,
        business_id: str,
        date: str,
        party_size: int,
        special_requests: str | None = None,
    ) -> Entity:
        user_id = await self.user_id()
        local = {
            "userId": user_id,
            "businessId": business_id,
            "date": date,
            "partySize": party_size,
            "specialRequests": special_requests,
            "status": "pending",
            "createdAt": utcnow().isoformat(),
        }
        record, _ = await self._perform(
            MutationAction.create,
            ReservationPayload(
                user_id=user_id,
                business_id=business_id,
                date=date,
                party_size=party_size,
                special_requests=special_requests,
            ),
            local_record=local,
        )
        return local if record is None else record

    async def cancel_reservation(self, reservation_id: str) -> None:
        user_id = await self.user_id()
        await self._perform(
            MutationAction.delete,
            ReservationPayload(user_id=user_id, reservation_id=reservation_id),
        )
        await self.mirror.remove(
            MirrorKind.reservations, lambda r: r.get("id") == reservation_id
        )
