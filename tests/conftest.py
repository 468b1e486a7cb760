from typing import AsyncIterator

import httpx
import pytest
import pytest_asyncio
from databases import Database
from starlette.applications import Starlette

from config import Config
from db import KeyValueStore, create_db
from offline.client import ApiClient, api_client_factory
from offline.session import OfflineSession
from server.app import create_app
from server.storage import MemoryStorage


BASE_URL = "http://testserver"


class SwitchableTransport(httpx.AsyncBaseTransport):
    """ASGI transport to the reference API that can drop off the network."""

    def __init__(self, app: Starlette) -> None:
        self.transport = httpx.ASGITransport(app=app)
        self.online = True
        self.fail_with: int | None = None
        self.calls: list[tuple[str, str]] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if not self.online:
            raise httpx.ConnectError("Network is unreachable", request=request)
        self.calls.append((request.method, request.url.path))
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, request=request)
        return await self.transport.handle_async_request(request)


async def go_offline(session: OfflineSession, transport: SwitchableTransport) -> None:
    transport.online = False
    assert not await session.monitor.check()
    await session.monitor.wait_idle()


async def go_online(session: OfflineSession, transport: SwitchableTransport) -> None:
    transport.online = True
    assert await session.monitor.check()
    await session.monitor.wait_idle()


@pytest.fixture
def server_storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def transport(server_storage: MemoryStorage) -> SwitchableTransport:
    return SwitchableTransport(create_app(server_storage))


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'offline.db'}"


@pytest_asyncio.fixture
async def kv(db_url: str) -> AsyncIterator[KeyValueStore]:
    db = Database(db_url)
    await db.connect()
    await create_db(db)
    yield KeyValueStore(db)
    await db.disconnect()


@pytest_asyncio.fixture
async def api(transport: SwitchableTransport) -> AsyncIterator[ApiClient]:
    client = ApiClient(api_client_factory(BASE_URL, transport=transport))
    yield client
    await client.close()


@pytest_asyncio.fixture
async def session(
    kv: KeyValueStore, transport: SwitchableTransport
) -> AsyncIterator[OfflineSession]:
    http_client = api_client_factory(BASE_URL, transport=transport)
    session = OfflineSession(
        kv=kv,
        http_client=http_client,
        config=Config(api_url=BASE_URL, drain_on_start=False),
    )
    yield session
    await session.stop()
    await http_client.aclose()
