from datetime import datetime, timezone
from enum import Enum
import time
from typing import Any, Self


type Entity = dict[str, Any]


LOCAL_PREFIXES = ("local_", "mutation_")


def is_local_id(id: Any) -> bool:
    """True for ids minted on the device that the server has not confirmed."""
    return isinstance(id, str) and id.startswith(LOCAL_PREFIXES)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalIds:
    """Mints `<prefix><ms>` ids, never handing out the same millisecond twice."""

    def __init__(self) -> None:
        self._last = 0

    def next(self, prefix: str) -> str:
        now = int(time.time() * 1000)
        self._last = max(now, self._last + 1)
        return f"{prefix}{self._last}"


class EntityKind(Enum):
    businesses = "businesses"
    itineraries = "itineraries"
    favorites = "favorites"


class MutationType(Enum):
    reservation = "reservation"
    favorite = "favorite"
    transaction = "transaction"
    itinerary = "itinerary"
    share = "share"


class MutationAction(Enum):
    create = "create"
    update = "update"
    delete = "delete"


class ConnectivityState:
    def __init__(
        self, *, is_online: bool = True, last_checked_at: datetime | None = None
    ) -> None:
        self.is_online = is_online
        self.last_checked_at = last_checked_at

    def __repr__(self) -> str:
        return (
            f"<ConnectivityState(is_online={self.is_online}, "
            f"last_checked_at={self.last_checked_at})>"
        )


class FavoritePayload:
    type = MutationType.favorite
    reference: str | None = None

    def __init__(self, *, user_id: str, business_id: str) -> None:
        self.user_id = user_id
        self.business_id = business_id

    def to_dict(self) -> dict[str, Any]:
        return {"userId": self.user_id, "businessId": self.business_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(user_id=data["userId"], business_id=str(data["businessId"]))


class TransactionPayload:
    type = MutationType.transaction
    reference: str | None = None

    def __init__(
        self,
        *,
        user_id: str,
        amount: float,
        category: str,
        description: str | None = None,
        transaction_type: str = "expense",
        business_id: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.amount = amount
        self.category = category
        self.description = description
        self.transaction_type = transaction_type
        self.business_id = business_id

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "userId": self.user_id,
            "amount": self.amount,
            "category": self.category,
            "type": self.transaction_type,
        }
        if self.description is not None:
            data["description"] = self.description
        if self.business_id is not None:
            data["businessId"] = self.business_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            user_id=data["userId"],
            amount=data["amount"],
            category=data["category"],
            description=data.get("description"),
            transaction_type=data.get("type", "expense"),
            business_id=data.get("businessId"),
        )


class ItineraryPayload:
    type = MutationType.itinerary
    reference: str | None = None

    def __init__(
        self,
        *,
        user_id: str,
        title: str,
        duration: int,
        stops: list[dict[str, Any]],
        description: str | None = None,
        city: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.title = title
        self.duration = duration
        # One entry per day, each with its own `stops` list.
        self.stops = stops
        self.description = description
        self.city = city

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "title": self.title,
            "description": self.description,
            "duration": self.duration,
            "city": self.city,
            "stops": self.stops,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            user_id=data["userId"],
            title=data["title"],
            duration=data["duration"],
            stops=data.get("stops") or [],
            description=data.get("description"),
            city=data.get("city"),
        )


class ReservationPayload:
    type = MutationType.reservation
    # Field holding the id of another record, rewritten once that record exists.
    reference: str | None = "reservation_id"

    def __init__(
        self,
        *,
        user_id: str,
        business_id: str | None = None,
        date: str | None = None,
        party_size: int | None = None,
        special_requests: str | None = None,
        reservation_id: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.business_id = business_id
        self.date = date
        self.party_size = party_size
        self.special_requests = special_requests
        self.reservation_id = reservation_id

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"userId": self.user_id}
        optional = {
            "businessId": self.business_id,
            "date": self.date,
            "partySize": self.party_size,
            "specialRequests": self.special_requests,
            "reservationId": self.reservation_id,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            user_id=data["userId"],
            business_id=data.get("businessId"),
            date=data.get("date"),
            party_size=data.get("partySize"),
            special_requests=data.get("specialRequests"),
            reservation_id=data.get("reservationId"),
        )


class SharePayload:
    """Publishes an itinerary, proposing the code already handed to the user."""

    type = MutationType.share
    reference: str | None = "itinerary_id"

    def __init__(
        self, *, user_id: str, itinerary_id: str, share_code: str | None = None
    ) -> None:
        self.user_id = user_id
        self.itinerary_id = itinerary_id
        self.share_code = share_code

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "userId": self.user_id,
            "itineraryId": self.itinerary_id,
        }
        if self.share_code is not None:
            data["shareCode"] = self.share_code
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            user_id=data["userId"],
            itinerary_id=data["itineraryId"],
            share_code=data.get("shareCode"),
        )


type Payload = (
    FavoritePayload
    | TransactionPayload
    | ItineraryPayload
    | ReservationPayload
    | SharePayload
)


def refers_to_local_record(payload: Payload) -> bool:
    """True while `payload` points at a record the server has not created."""
    return payload.reference is not None and is_local_id(
        getattr(payload, payload.reference)
    )


PAYLOAD_TYPES: dict[MutationType, type[Payload]] = {
    MutationType.favorite: FavoritePayload,
    MutationType.transaction: TransactionPayload,
    MutationType.itinerary: ItineraryPayload,
    MutationType.reservation: ReservationPayload,
    MutationType.share: SharePayload,
}


class PendingMutation:
    """A write the server has not confirmed yet."""

    def __init__(
        self,
        *,
        id: str,
        type: MutationType,
        action: MutationAction,
        payload: Payload,
        enqueued_at: datetime | None = None,
        local_record_id: str | None = None,
    ) -> None:
        type = MutationType(type)
        action = MutationAction(action)
        if not isinstance(payload, PAYLOAD_TYPES[type]):
            raise ValueError(
                f"{type.value} mutation needs a {PAYLOAD_TYPES[type].__name__}, "
                f"got {payload.__class__.__name__}"
            )
        self.id = id
        self.type = type
        self.action = action
        self.payload = payload
        self.enqueued_at = utcnow() if enqueued_at is None else enqueued_at
        self.local_record_id = local_record_id

    def __repr__(self) -> str:
        return (
            f"<PendingMutation(id={self.id}, type={self.type.value}, "
            f"action={self.action.value})>"
        )

    def rebind(self, ids: dict[str, str]) -> bool:
        """Point a reference to a local record at the record's server id.

        `ids` maps local ids to server ids. Returns whether anything changed.
        """
        field = self.payload.reference
        if field is None:
            return False
        current = getattr(self.payload, field)
        if current not in ids:
            return False
        setattr(self.payload, field, ids[current])
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "action": self.action.value,
            "payload": self.payload.to_dict(),
            "enqueuedAt": self.enqueued_at.isoformat(),
            "localRecordId": self.local_record_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        type = MutationType(data["type"])
        return cls(
            id=data["id"],
            type=type,
            action=MutationAction(data["action"]),
            payload=PAYLOAD_TYPES[type].from_dict(data["payload"]),
            enqueued_at=datetime.fromisoformat(data["enqueuedAt"]),
            local_record_id=data.get("localRecordId"),
        )


class CacheSnapshot:
    """Wholesale copy of the server data needed for offline reads."""

    def __init__(
        self,
        *,
        version: int,
        entities: dict[EntityKind, list[Entity]] | None = None,
        last_updated_at: str | None = None,
    ) -> None:
        entities = {} if entities is None else entities
        self.version = version
        self.entities = {kind: list(entities.get(kind, [])) for kind in EntityKind}
        self.last_updated_at = (
            utcnow().isoformat() if last_updated_at is None else last_updated_at
        )

    def __repr__(self) -> str:
        counts = ", ".join(f"{k.value}={len(v)}" for k, v in self.entities.items())
        return f"<CacheSnapshot(version={self.version}, {counts})>"

    @property
    def businesses(self) -> list[Entity]:
        return self.entities[EntityKind.businesses]

    @property
    def itineraries(self) -> list[Entity]:
        return self.entities[EntityKind.itineraries]

    @property
    def favorites(self) -> list[Entity]:
        return self.entities[EntityKind.favorites]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {k.value: v for k, v in self.entities.items()}
        data["version"] = self.version
        data["lastUpdated"] = self.last_updated_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        version = data["version"]
        if not isinstance(version, int):
            raise ValueError(f"Snapshot version must be an int, got {version!r}")
        entities: dict[EntityKind, list[Entity]] = {}
        for kind in EntityKind:
            records = data.get(kind.value) or []
            if not isinstance(records, list):
                raise ValueError(f"Snapshot {kind.value} must be a list")
            entities[kind] = records
        return cls(
            version=version, entities=entities, last_updated_at=data.get("lastUpdated")
        )
