"""Key-value persistence for the offline client.

Everything the client keeps on disk is a JSON blob under a string key. The
stores in `offline` share one `KeyValueStore` and take its lock around every
read-modify-write so no two writers interleave.
"""
import asyncio
import logging

from databases import Database


logger = logging.getLogger(__name__)


CREATE_KEY_VALUE_TABLE = """
CREATE TABLE IF NOT EXISTS KeyValue (key VARCHAR(128) PRIMARY KEY, value TEXT)
"""


SET_VALUE = """
INSERT INTO KeyValue(key, value) VALUES (:key, :value)
ON CONFLICT(key) DO UPDATE SET value = excluded.value
"""


GET_VALUE = "SELECT value FROM KeyValue WHERE key = :key"


DELETE_VALUE = "DELETE FROM KeyValue WHERE key = :key"


async def create_db(db: Database) -> None:
    await db.execute(  # pyright: ignore[reportUnknownMemberType]
        query=CREATE_KEY_VALUE_TABLE
    )


class KeyValueStore:
    """Async key-value store over a single sqlite table."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self.lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        result = await self.db.fetch_one(  # pyright: ignore[reportUnknownMemberType]
            GET_VALUE, values={"key": key}
        )
        if result is None:
            return None
        return result["value"]

    async def set(self, key: str, value: str) -> None:
        await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
            SET_VALUE, values={"key": key, "value": value}
        )

    async def delete(self, *keys: str) -> None:
        async with self.db.transaction():
            for key in keys:
                await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
                    DELETE_VALUE, values={"key": key}
                )
        logger.debug("Deleted keys %s", keys)
