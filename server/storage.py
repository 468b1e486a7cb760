"""In-memory storage behind the reference API. Lost on restart."""
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any
import uuid


type Record = dict[str, Any]


BUSINESSES: list[Record] = [
    {"id": "1", "name": "The Green Garden", "category": "Vegetarian", "priceLevel": 2},
    {"id": "2", "name": "Spice Route", "category": "Indian", "priceLevel": 2},
    {"id": "3", "name": "Sakura Japanese", "category": "Japanese", "priceLevel": 3},
    {"id": "4", "name": "Brew & Bean", "category": "Cafe", "priceLevel": 1},
    {"id": "5", "name": "The Study Corner", "category": "Cafe", "priceLevel": 1},
    {"id": "7", "name": "Noodle House", "category": "Chinese", "priceLevel": 1},
    {"id": "42", "name": "Night Owl Lounge", "category": "Bar", "priceLevel": 2},
]


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ItineraryNotFound(Exception):
    pass


class MemoryStorage:
    def __init__(self, businesses: list[Record] | None = None) -> None:
        self.businesses = list(BUSINESSES if businesses is None else businesses)
        self.favorites: list[Record] = []
        self.itineraries: list[Record] = []
        self.transactions: list[Record] = []
        self.reservations: list[Record] = []

    def snapshot_version(self) -> int:
        return int(time.time() * 1000)

    def add_favorite(self, user_id: str, business_id: str) -> Record:
        favorite = {
            "id": uuid.uuid4().hex,
            "userId": user_id,
            "businessId": business_id,
            "createdAt": now(),
        }
        self.favorites.append(favorite)
        return favorite

    def remove_favorite(self, user_id: str, business_id: str) -> None:
        self.favorites = [
            f
            for f in self.favorites
            if not (f["userId"] == user_id and f["businessId"] == business_id)
        ]

    def get_favorites(self, user_id: str) -> list[Record]:
        return [f for f in self.favorites if f["userId"] == user_id]

    def create_itinerary(self, data: Record) -> Record:
        days = data.get("stops") or []
        total = sum(
            stop.get("estimatedCost") or 0
            for day in days
            for stop in day.get("stops") or []
        )
        itinerary = {
            "id": uuid.uuid4().hex,
            "userId": data.get("userId"),
            "title": data.get("title"),
            "description": data.get("description"),
            "duration": data.get("duration"),
            "city": data.get("city"),
            "totalBudget": str(total),
            "days": days,
            "isPublic": False,
            "shareCode": None,
            "createdAt": now(),
        }
        self.itineraries.append(itinerary)
        return itinerary

    def get_itineraries(self, user_id: str) -> list[Record]:
        return [i for i in self.itineraries if i["userId"] == user_id]

    def publish_itinerary(self, id: str, share_code: str | None = None) -> Record:
        """Make an itinerary public.

        The first publish keeps a proposed `share_code` unless another
        itinerary already uses it. Later publishes keep the existing code.
        """
        if any(i["shareCode"] == share_code for i in self.itineraries):
            share_code = None
        for itinerary in self.itineraries:
            if itinerary["id"] == id:
                itinerary["isPublic"] = True
                itinerary["shareCode"] = (
                    itinerary["shareCode"] or share_code or secrets.token_hex(4)
                )
                return itinerary
        raise ItineraryNotFound(id)

    def add_transaction(self, data: Record) -> Record:
        transaction = {
            "id": uuid.uuid4().hex,
            "userId": data["userId"],
            "businessId": data.get("businessId"),
            "amount": str(data["amount"]),
            "category": data["category"],
            "description": data.get("description"),
            "type": data.get("type") or "expense",
            "date": now(),
        }
        self.transactions.append(transaction)
        return transaction

    def budget_history(self, user_id: str, days: int) -> list[Record]:
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        return [
            t
            for t in self.transactions
            if t["userId"] == user_id and t["date"] >= since
        ]

    def create_reservation(self, data: Record) -> Record:
        reservation = {
            "id": uuid.uuid4().hex,
            "userId": data.get("userId"),
            "businessId": data["businessId"],
            "date": data["date"],
            "partySize": data["partySize"],
            "specialRequests": data.get("specialRequests"),
            "status": "confirmed",
            "confirmationCode": secrets.token_hex(3).upper(),
            "createdAt": now(),
        }
        self.reservations.append(reservation)
        return reservation

    def get_reservations(self, user_id: str) -> list[Record]:
        return [r for r in self.reservations if r["userId"] == user_id]

    def cancel_reservation(self, id: str) -> None:
        for reservation in self.reservations:
            if reservation["id"] == id:
                reservation["status"] = "cancelled"
