"""Reference FoodJourney API for local development and tests.

Covers only the routes the offline client talks to. State lives in
`app.state.storage` and is gone on restart.
"""
import functools
import re
from typing import Any, Awaitable, Callable

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from config import Config, Env
from server.storage import ItineraryNotFound, MemoryStorage, now


CONFIG = Config()


def aJSONResponse(route: Callable[..., Awaitable[Any | tuple[Any, int]]]):
    @functools.wraps(route)
    async def wrapper(*args: Any, **kwargs: Any) -> JSONResponse:
        resp = await route(*args, **kwargs)
        if not isinstance(resp, tuple):
            data, code = resp, 200
        else:
            data, code = resp
        return JSONResponse(data, status_code=code)

    return wrapper


def storage(request: Request) -> MemoryStorage:
    return request.app.state.storage


async def body(request: Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


SHARE_CODE = re.compile(r"[a-z0-9]{8}")


def missing_fields() -> tuple[dict[str, str], int]:
    return {"error": "Missing required fields"}, 400


@aJSONResponse
async def health(request: Request) -> dict[str, Any]:
    return {"status": "ok", "timestamp": now()}


@aJSONResponse
async def cache_snapshot(request: Request) -> dict[str, Any]:
    store = storage(request)
    return {
        "version": store.snapshot_version(),
        "businesses": store.businesses,
        "timestamp": now(),
    }


@aJSONResponse
async def businesses(request: Request) -> list[dict[str, Any]]:
    return storage(request).businesses


@aJSONResponse
async def favorites(request: Request) -> Any:
    data = await body(request)
    user_id, business_id = data.get("userId"), data.get("businessId")
    match request.method.lower():
        case "post":
            if not user_id or not business_id:
                return missing_fields()
            favorite = storage(request).add_favorite(user_id, str(business_id))
            return {"success": True, "favorite": favorite}
        case "delete":
            storage(request).remove_favorite(user_id, str(business_id))
            return {"success": True}
        case _:
            raise ValueError("Unsupported method.")


@aJSONResponse
async def user_favorites(request: Request) -> dict[str, Any]:
    user_id = request.path_params["user_id"]
    return {"favorites": storage(request).get_favorites(user_id)}


@aJSONResponse
async def itineraries(request: Request) -> Any:
    data = await body(request)
    if not data.get("title"):
        return missing_fields()
    return {"success": True, "itinerary": storage(request).create_itinerary(data)}


@aJSONResponse
async def user_itineraries(request: Request) -> dict[str, Any]:
    user_id = request.path_params["user_id"]
    return {"itineraries": storage(request).get_itineraries(user_id)}


@aJSONResponse
async def publish_itinerary(request: Request) -> Any:
    share_code = (await body(request)).get("shareCode")
    if not (isinstance(share_code, str) and SHARE_CODE.fullmatch(share_code)):
        share_code = None
    try:
        itinerary = storage(request).publish_itinerary(
            request.path_params["id"], share_code
        )
    except ItineraryNotFound:
        return {"error": "Itinerary not found"}, 404
    return {"success": True, "shareCode": itinerary["shareCode"], "itinerary": itinerary}


@aJSONResponse
async def budget_transaction(request: Request) -> Any:
    data = await body(request)
    if not data.get("userId") or not data.get("amount") or not data.get("category"):
        return missing_fields()
    return {"success": True, "transaction": storage(request).add_transaction(data)}


@aJSONResponse
async def budget(request: Request) -> dict[str, Any]:
    try:
        days = int(request.query_params.get("days") or 30)
    except ValueError:
        days = 30
    transactions = storage(request).budget_history(request.path_params["user_id"], days)
    total = sum(float(t["amount"] or 0) for t in transactions)
    breakdown: dict[str, float] = {}
    for t in transactions:
        category = t["category"] or "Other"
        breakdown[category] = breakdown.get(category, 0.0) + float(t["amount"] or 0)
    return {
        "transactions": transactions,
        "summary": {
            "totalSpent": total,
            "categoryBreakdown": breakdown,
            "averagePerDay": total / days,
            "transactionCount": len(transactions),
        },
        "recommendations": [],
    }


@aJSONResponse
async def reservations(request: Request) -> Any:
    data = await body(request)
    match request.method.lower():
        case "post":
            if not data.get("businessId") or not data.get("date") or not data.get(
                "partySize"
            ):
                return missing_fields()
            reservation = storage(request).create_reservation(data)
            return {
                "success": True,
                "reservation": reservation,
                "message": f"Reservation confirmed for {reservation['partySize']} guests!",
            }
        case "delete":
            if not data.get("reservationId"):
                return missing_fields()
            storage(request).cancel_reservation(data["reservationId"])
            return {"success": True}
        case _:
            raise ValueError("Unsupported method.")


@aJSONResponse
async def user_reservations(request: Request) -> dict[str, Any]:
    user_id = request.path_params["user_id"]
    return {"reservations": storage(request).get_reservations(user_id)}


def create_app(store: MemoryStorage | None = None) -> Starlette:
    app = Starlette(
        debug=True if CONFIG.env == Env.local else False,
        routes=[
            Route("/api/health", health),
            Route("/api/cache/snapshot", cache_snapshot),
            Route("/api/businesses", businesses),
            Route("/api/favorites", favorites, methods=["POST", "DELETE"]),
            Route("/api/favorites/{user_id}", user_favorites),
            Route("/api/itineraries", itineraries, methods=["POST"]),
            Route("/api/itineraries/{user_id}", user_itineraries),
            Route("/api/itinerary/{id}/publish", publish_itinerary, methods=["POST"]),
            Route("/api/budget/transaction", budget_transaction, methods=["POST"]),
            Route("/api/budget/{user_id}", budget),
            Route("/api/reservations", reservations, methods=["POST", "DELETE"]),
            Route("/api/reservations/{user_id}", user_reservations),
        ],
    )
    app.state.storage = MemoryStorage() if store is None else store
    return app


app = create_app()
