"""Console client for poking at an offline session by hand.

    python main.py

Point `API_URL` at a running API (e.g. `uvicorn server.app:app --port 5000`),
stop the API to go offline, and watch queued writes drain when it comes back.
"""
import asyncio
import logging

from rich import print
from rich.logging import RichHandler

from config import Config
from offline.budget import spending_insights
from offline.client import ServerRejectedError
from offline.session import OfflineSession, open_session


CONFIG = Config()


HELP = """
[bold]Commands[/bold]
  status                 connectivity, pending mutations, last sync
  check                  check the server now
  sync                   drain the queue and refresh the cache
  businesses             cached catalog
  fav <id> [name]        add a favorite
  unfav <id>             remove a favorite
  favs                   favorites (cache + pending)
  spend <amount> <cat>   record a transaction
  budget                 budget summary and insights
  trip <title> <days>    save an itinerary
  trips                  itineraries (cache + pending)
  bookings               reservations, reloaded from the server
  pending                queued mutations
  clear                  drop the cache and the queue
  q                      quit
"""


async def status(session: OfflineSession) -> None:
    print(
        {
            "online": session.is_online,
            "syncing": session.is_syncing,
            "pending": await session.pending_count(),
            "lastSync": session.last_sync_time,
            "userId": await session.user_id(),
        }
    )


async def run(session: OfflineSession, cmd: str, args: list[str]) -> None:
    ops = session.operations
    match cmd:
        case "status":
            await status(session)
        case "check":
            print("online" if await session.monitor.check() else "offline")
        case "sync":
            print(await session.sync())
        case "businesses":
            for b in await session.businesses():
                print(f"{b['id']}: {b.get('name')}")
        case "fav":
            print(await ops.add_favorite(args[0], " ".join(args[1:]) or None))
        case "unfav":
            await ops.remove_favorite(args[0])
        case "favs":
            print(await session.favorites())
        case "spend":
            print(await ops.add_transaction(amount=float(args[0]), category=args[1]))
        case "budget":
            data = await session.budget.fetch()
            print(data["summary"])
            print(spending_insights(data["summary"]))
        case "trip":
            duration = int(args[1])
            days = [
                {"dayNumber": d, "title": f"Day {d}", "stops": []}
                for d in range(1, duration + 1)
            ]
            print(
                await ops.save_itinerary(
                    {"title": args[0], "duration": duration, "days": days}
                )
            )
        case "trips":
            print(await session.itineraries())
        case "bookings":
            print(await session.refresh_reservations())
        case "pending":
            for m in await session.queue.list():
                print(m.to_dict())
        case "clear":
            await session.clear()
        case _:
            print(HELP)


async def main() -> None:
    logging.basicConfig(
        level=CONFIG.log_level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    async with open_session(CONFIG) as session:
        await status(session)
        while True:
            line = await asyncio.to_thread(input, "> ")
            parts = line.split()
            if not parts:
                continue
            cmd, args = parts[0].lower(), parts[1:]
            if cmd in ("q", "quit", "exit"):
                break
            try:
                await run(session, cmd, args)
            except ServerRejectedError as e:
                print(f"[red]{e}[/red]")
            except (IndexError, ValueError):
                print(HELP)


if __name__ == "__main__":
    asyncio.run(main())
