"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from nft_auction_indexer.chain.client import (
    ConnectedCallback,
    DisconnectedCallback,
    ErrorCallback,
    HeaderCallback,
    Unsubscribe,
)
from nft_auction_indexer.chain.models import BlockHeader, ChainInfo
from nft_auction_indexer.errors import ChainConnectionError
from nft_auction_indexer.storage.database import DatabaseManager
from nft_auction_indexer.storage.models import Base


class FakeChainClient:
    """In-process chain client with scripted storage per block hash."""

    def __init__(
        self,
        *,
        storage: dict[str, dict[str, Any]] | None = None,
        fail_connect: bool = False,
    ) -> None:
        self.storage = storage if storage is not None else {}
        self.fail_connect = fail_connect
        self.failing_hashes: set[str] = set()
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0
        self.queries: list[tuple[str, str]] = []
        self._callbacks: list[HeaderCallback] = []
        self._on_connected: ConnectedCallback | None = None
        self._on_disconnected: DisconnectedCallback | None = None
        self._on_error: ErrorCallback | None = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    @property
    def active_subscriptions(self) -> int:
        return len(self._callbacks)

    def set_listeners(
        self,
        *,
        on_connected: ConnectedCallback | None = None,
        on_disconnected: DisconnectedCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._on_error = on_error

    async def connect(self) -> ChainInfo:
        self.connect_calls += 1
        if self.fail_connect:
            raise ChainConnectionError("connection refused")
        self.connected = True
        info = ChainInfo(chain="Development", node_name="Fake Node", node_version="1.0.0")
        if self._on_connected:
            await self._on_connected(info)
        return info

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False
        self._callbacks.clear()

    async def subscribe_new_heads(self, on_header: HeaderCallback) -> Unsubscribe:
        if not self.connected:
            raise ChainConnectionError("not connected")
        self.subscribe_calls += 1
        self._callbacks.append(on_header)

        async def unsubscribe() -> None:
            self.unsubscribe_calls += 1
            if on_header in self._callbacks:
                self._callbacks.remove(on_header)

        return unsubscribe

    def emit_header(self, header: BlockHeader) -> None:
        for callback in list(self._callbacks):
            callback(header)

    async def drop(self, error: BaseException | None = None) -> None:
        """Simulate a mid-session transport drop."""
        self.connected = False
        if error is not None and self._on_error:
            await self._on_error(error)
        if self._on_disconnected:
            await self._on_disconnected(error)

    def _storage_at(self, storage_function: str, block_hash: str) -> Any:
        self.queries.append((storage_function, block_hash))
        if not self.connected:
            raise ChainConnectionError("not connected")
        if block_hash in self.failing_hashes:
            raise RuntimeError(f"state pruned for {block_hash}")
        return self.storage.get(block_hash, {}).get(storage_function)

    async def query_map(self, storage_function: str, *, block_hash: str) -> list[tuple[Any, Any]]:
        return list(self._storage_at(storage_function, block_hash) or [])

    async def query_value(self, storage_function: str, *, block_hash: str) -> Any:
        return self._storage_at(storage_function, block_hash)


class FakeChainFactory:
    """Creates FakeChainClients; the first ``failures`` connects fail."""

    def __init__(self, storage: dict[str, dict[str, Any]] | None = None) -> None:
        self.storage = storage if storage is not None else {}
        self.failures = 0
        self.clients: list[FakeChainClient] = []

    def __call__(self) -> FakeChainClient:
        fail = self.failures > 0
        if fail:
            self.failures -= 1
        client = FakeChainClient(storage=self.storage, fail_connect=fail)
        self.clients.append(client)
        return client

    @property
    def latest(self) -> FakeChainClient:
        return self.clients[-1]


class RecordingIndexer:
    """Stands in for BlockIndexer; records headers and can be held mid-block."""

    def __init__(self) -> None:
        self.headers: list[BlockHeader] = []
        self.started: list[int] = []
        self.active = 0
        self.max_active = 0
        self.release = asyncio.Event()
        self.release.set()

    @property
    def numbers(self) -> list[int]:
        return [h.number for h in self.headers]

    async def index(self, header: BlockHeader) -> bool:
        self.started.append(header.number)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.release.wait()
            await asyncio.sleep(0)
            self.headers.append(header)
        finally:
            self.active -= 1
        return True


def make_header(number: int) -> BlockHeader:
    return BlockHeader(number=number, hash=f"0x{number:064x}", parent_hash=f"0x{number - 1:064x}")


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def header_factory() -> Callable[[int], BlockHeader]:
    return make_header


@pytest.fixture
def wait_for() -> Callable[..., Any]:
    return wait_until


@pytest.fixture
def chain_factory() -> FakeChainFactory:
    return FakeChainFactory()


@pytest.fixture
def fake_chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def db_manager(tmp_path) -> DatabaseManager:
    """DatabaseManager over a file-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def recording_indexer() -> RecordingIndexer:
    return RecordingIndexer()
