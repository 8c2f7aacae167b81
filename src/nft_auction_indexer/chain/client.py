"""Substrate chain client with lifecycle signals.

The pipeline talks to the node through the ``ChainClient`` protocol:
- connect / disconnect with connected, disconnected and error signals
- new-head subscription returning an async unsubscribe handle
- storage map/value queries pinned to a historical block hash

``SubstrateChainClient`` implements it over ``substrate-interface``. That
library is blocking, so calls run in worker threads. The head subscription
gets its own websocket connection because a subscription loop cannot share a
socket with concurrent storage queries. A transport failure on either
connection emits the error and disconnected signals.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

from substrateinterface import SubstrateInterface
from websocket import WebSocketException

from nft_auction_indexer.chain.models import BlockHeader, ChainInfo, scale_value
from nft_auction_indexer.errors import ChainConnectionError, TransportDropError

logger = logging.getLogger(__name__)

DEFAULT_PALLET_NAME = "Template"

# Raised by the websocket transport when the node connection is gone.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (OSError, WebSocketException)

T = TypeVar("T")

HeaderCallback = Callable[[BlockHeader], None]
ConnectedCallback = Callable[[ChainInfo], Awaitable[None]]
DisconnectedCallback = Callable[[BaseException | None], Awaitable[None]]
ErrorCallback = Callable[[BaseException], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]


class ChainClient(Protocol):
    """Connection to a chain node exposing the auction pallet's storage."""

    @property
    def is_connected(self) -> bool: ...

    def set_listeners(
        self,
        *,
        on_connected: ConnectedCallback | None = None,
        on_disconnected: DisconnectedCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None: ...

    async def connect(self) -> ChainInfo: ...

    async def disconnect(self) -> None: ...

    async def subscribe_new_heads(self, on_header: HeaderCallback) -> Unsubscribe: ...

    async def query_map(self, storage_function: str, *, block_hash: str) -> list[tuple[Any, Any]]: ...

    async def query_value(self, storage_function: str, *, block_hash: str) -> Any: ...


class SubstrateChainClient:
    """``ChainClient`` backed by ``substrate-interface``.

    Example:
        ```python
        client = SubstrateChainClient("ws://127.0.0.1:9944", pallet_name="Template")
        info = await client.connect()
        unsubscribe = await client.subscribe_new_heads(queue.put_nowait)
        auctions = await client.query_map("Auctions", block_hash=header.hash)
        await unsubscribe()
        await client.disconnect()
        ```
    """

    def __init__(self, url: str, *, pallet_name: str = DEFAULT_PALLET_NAME) -> None:
        """Initialize the client.

        Args:
            url: Node websocket endpoint (ws:// or wss://).
            pallet_name: Runtime name of the pallet holding the auction storage.
        """
        self._url = url
        self._pallet_name = pallet_name

        self._substrate: SubstrateInterface | None = None
        self._head_substrate: SubstrateInterface | None = None
        # Serializes use of the query connection across worker threads.
        self._query_lock = threading.Lock()
        self._closing = False

        self._on_connected: ConnectedCallback | None = None
        self._on_disconnected: DisconnectedCallback | None = None
        self._on_error: ErrorCallback | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def pallet_name(self) -> str:
        return self._pallet_name

    @property
    def is_connected(self) -> bool:
        return self._substrate is not None and not self._closing

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

    def _open(self) -> SubstrateInterface:
        # Reconnection is owned by the supervisor, not the library.
        return SubstrateInterface(url=self._url, auto_reconnect=False)

    def _read_chain_info(self, substrate: SubstrateInterface) -> ChainInfo:
        return ChainInfo(
            chain=str(substrate.chain),
            node_name=str(substrate.name),
            node_version=str(substrate.version),
        )

    def _locked(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self._query_lock:
            return fn(*args, **kwargs)

    def _require(self) -> SubstrateInterface:
        if self._substrate is None or self._closing:
            raise ChainConnectionError(f"Not connected to {self._url}")
        return self._substrate

    async def connect(self) -> ChainInfo:
        """Open the query and subscription connections.

        Raises:
            ChainConnectionError: If the node cannot be reached.
        """
        logger.info("Connecting to %s...", self._url)
        self._closing = False
        try:
            self._substrate = await asyncio.to_thread(self._open)
            self._head_substrate = await asyncio.to_thread(self._open)
            info = await asyncio.to_thread(self._locked, self._read_chain_info, self._substrate)
        except Exception as e:
            await self._close_handles()
            raise ChainConnectionError(f"Failed to connect to {self._url}: {e}") from e

        if self._on_connected:
            await self._on_connected(info)
        return info

    async def disconnect(self) -> None:
        """Close both connections. Does not emit a disconnected signal."""
        self._closing = True
        await self._close_handles()

    async def _close_handles(self) -> None:
        for substrate in (self._head_substrate, self._substrate):
            if substrate is None:
                continue
            try:
                await asyncio.to_thread(substrate.close)
            except Exception as e:
                logger.debug("Error closing connection to %s: %s", self._url, e)
        self._head_substrate = None
        self._substrate = None

    async def _handle_transport_drop(self, error: BaseException | None) -> None:
        if self._closing:
            return
        self._closing = True
        if error is not None:
            logger.warning("Chain transport error: %s", error)
            if self._on_error:
                await self._on_error(error)
        await self._close_handles()
        if self._on_disconnected:
            await self._on_disconnected(error)

    async def subscribe_new_heads(self, on_header: HeaderCallback) -> Unsubscribe:
        """Subscribe to new best-block headers.

        ``on_header`` is invoked on the event loop, once per header, in the
        order the node delivers them.

        Returns:
            Coroutine function that cancels the subscription.
        """
        head_substrate = self._head_substrate
        if head_substrate is None or self._closing:
            raise ChainConnectionError(f"Not connected to {self._url}")

        loop = asyncio.get_running_loop()
        stopped = threading.Event()

        def handler(obj: dict[str, Any], update_nr: int, subscription_id: str) -> str | None:
            if stopped.is_set():
                # A non-None result ends the library's subscription loop.
                return subscription_id
            raw = obj["header"]
            block_hash = raw.get("hash")
            if not block_hash:
                # Resolved by number on the query connection: on a best-block
                # fork this can name a sibling of the announced block.
                substrate = self._require()
                block_hash = self._locked(substrate.get_block_hash, int(scale_value(raw["number"])))
            header = BlockHeader.from_rpc(raw, block_hash=str(block_hash))
            loop.call_soon_threadsafe(on_header, header)
            return None

        async def run() -> None:
            try:
                await asyncio.to_thread(head_substrate.subscribe_block_headers, handler)
            except Exception as e:
                if not stopped.is_set():
                    await self._handle_transport_drop(e)
                return
            if not stopped.is_set():
                await self._handle_transport_drop(TransportDropError("Header subscription ended"))

        task = loop.create_task(run())

        async def unsubscribe() -> None:
            stopped.set()
            if task.done():
                with contextlib.suppress(asyncio.CancelledError):
                    task.result()

        logger.debug("Subscribed to new heads on %s", self._url)
        return unsubscribe

    async def query_map(self, storage_function: str, *, block_hash: str) -> list[tuple[Any, Any]]:
        """Read every entry of a storage map as of ``block_hash``."""
        substrate = self._require()

        def fetch() -> list[tuple[Any, Any]]:
            result = substrate.query_map(self._pallet_name, storage_function, block_hash=block_hash)
            return [(key, value) for key, value in result]

        try:
            return await asyncio.to_thread(self._locked, fetch)
        except TRANSPORT_ERRORS as e:
            await self._handle_transport_drop(e)
            raise

    async def query_value(self, storage_function: str, *, block_hash: str) -> Any:
        """Read a storage value as of ``block_hash``."""
        substrate = self._require()
        try:
            result = await asyncio.to_thread(
                self._locked,
                substrate.query,
                self._pallet_name,
                storage_function,
                block_hash=block_hash,
            )
        except TRANSPORT_ERRORS as e:
            await self._handle_transport_drop(e)
            raise
        return scale_value(result)
