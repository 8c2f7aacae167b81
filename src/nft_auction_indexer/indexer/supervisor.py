"""Connection supervisor: owns the chain connection and drives reconnection.

The supervisor is the only place connection state is mutated. It listens to
the client's connected / disconnected / error signals:
- connected: record the node identity
- disconnected: cancel the header subscription and reconnect with
  exponential backoff, re-arming the subscription once connected
- error: log and record it

A failed initial connect goes through the same backoff loop. The reconnect
counter is reset only once the subscription is re-armed. After
``max_attempts`` failed attempts the supervisor gives up with
``ReconnectExhaustedError``; the process is expected to exit so an operator or
process manager can intervene.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from nft_auction_indexer.errors import ChainConnectionError, ReconnectExhaustedError

if TYPE_CHECKING:
    from nft_auction_indexer.chain.client import ChainClient
    from nft_auction_indexer.chain.models import ChainInfo
    from nft_auction_indexer.indexer.subscriber import HeadSubscriber

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 30.0  # seconds
DEFAULT_MAX_ATTEMPTS = 5

ChainClientFactory = Callable[[], "ChainClient"]
SleepFunc = Callable[[float], Awaitable[None]]


def compute_backoff_delay(attempt: int, *, base_delay: float, max_delay: float) -> float:
    """Delay before reconnect ``attempt``: ``min(base * 2**attempt, max)``."""
    return min(base_delay * (2**attempt), max_delay)


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff parameters for reconnection."""

    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def delay_for(self, attempt: int) -> float:
        return compute_backoff_delay(attempt, base_delay=self.base_delay, max_delay=self.max_delay)


class SupervisorState(str, Enum):
    """Connection lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class SupervisorStats:
    """Statistics for the connection supervisor."""

    connects: int = 0
    disconnects: int = 0
    reconnect_attempts_total: int = 0
    transport_errors: int = 0
    connected_since: datetime | None = None
    chain_info: ChainInfo | None = None
    last_error: str | None = None


class ConnectionSupervisor:
    """Owns the chain client and its reconnection lifecycle.

    Example:
        ```python
        supervisor = ConnectionSupervisor(lambda: SubstrateChainClient(url))
        supervisor.attach_subscriber(subscriber)
        await supervisor.start()
        await supervisor.wait_closed()  # raises ReconnectExhaustedError on give-up
        await supervisor.shutdown()
        ```
    """

    def __init__(
        self,
        client_factory: ChainClientFactory,
        *,
        policy: ReconnectPolicy | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the supervisor.

        Args:
            client_factory: Creates a fresh, unconnected chain client.
            policy: Reconnect backoff parameters.
            sleep: Awaitable used for backoff delays.
        """
        self._client_factory = client_factory
        self._policy = policy or ReconnectPolicy()
        self._sleep = sleep

        self._client: ChainClient | None = None
        self._subscriber: HeadSubscriber | None = None
        self._reconnect_attempts = 0
        self._is_shutting_down = False
        self._started = False

        self._state = SupervisorState.DISCONNECTED
        self._stats = SupervisorStats()
        self._closed = asyncio.Event()
        self._fatal_error: ReconnectExhaustedError | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def client(self) -> ChainClient | None:
        return self._client

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def is_shutting_down(self) -> bool:
        return self._is_shutting_down

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def stats(self) -> SupervisorStats:
        return self._stats

    def require_client(self) -> ChainClient:
        """Return the connected client.

        Raises:
            ChainConnectionError: While disconnected or reconnecting.
        """
        if self._client is None:
            raise ChainConnectionError("Chain client is not connected")
        return self._client

    def attach_subscriber(self, subscriber: HeadSubscriber) -> None:
        self._subscriber = subscriber

    async def start(self) -> None:
        """Connect and arm the head subscriber.

        A failed initial connect is retried with the reconnect backoff.
        Returns early, without a connection, if shutdown is requested while
        retrying.

        Raises:
            ReconnectExhaustedError: If every connect attempt failed.
            RuntimeError: If already started.
        """
        if self._started:
            raise RuntimeError("Supervisor already started")
        self._started = True

        try:
            await self._establish()
            return
        except ChainConnectionError as e:
            self._stats.last_error = str(e)
            logger.error("Connection error: %s", e)

        if not await self._retry_connect() and self._fatal_error is not None:
            raise self._fatal_error

    async def wait_closed(self) -> None:
        """Block until shutdown is requested or reconnection is exhausted.

        Raises:
            ReconnectExhaustedError: If the supervisor gave up reconnecting.
        """
        await self._closed.wait()
        if self._fatal_error is not None:
            raise self._fatal_error

    def request_shutdown(self) -> None:
        """Mark the supervisor as shutting down and wake ``wait_closed``."""
        self._is_shutting_down = True
        self._closed.set()

    async def shutdown(self) -> None:
        """Cancel the subscription, drain the worker and disconnect.

        In-flight indexing is allowed to finish before the client closes.
        """
        self.request_shutdown()

        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._subscriber is not None:
            await self._subscriber.close()

        client, self._client = self._client, None
        if client is not None:
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning("Error disconnecting chain client: %s", e)

        if self._state != SupervisorState.FAILED:
            self._state = SupervisorState.STOPPED
        logger.info("Connection supervisor stopped")

    async def _connect(self) -> ChainClient:
        client = self._client_factory()

        async def on_connected(info: ChainInfo) -> None:
            await self._handle_connected(client, info)

        async def on_disconnected(error: BaseException | None) -> None:
            await self._handle_disconnected(client, error)

        async def on_error(error: BaseException) -> None:
            await self._handle_error(client, error)

        client.set_listeners(
            on_connected=on_connected,
            on_disconnected=on_disconnected,
            on_error=on_error,
        )

        self._state = SupervisorState.CONNECTING
        self._client = client
        try:
            await client.connect()
        except ChainConnectionError:
            self._client = None
            self._state = SupervisorState.DISCONNECTED
            raise
        except Exception as e:
            self._client = None
            self._state = SupervisorState.DISCONNECTED
            raise ChainConnectionError(f"Failed to connect: {e}") from e
        return client

    async def _handle_connected(self, client: ChainClient, info: ChainInfo) -> None:
        if client is not self._client:
            return
        self._state = SupervisorState.CONNECTED
        self._stats.connects += 1
        self._stats.connected_since = datetime.now(UTC)
        self._stats.chain_info = info
        logger.info("Connected to chain node")
        logger.info("Chain: %s", info.chain)
        logger.info("Node name: %s", info.node_name)
        logger.info("Node version: %s", info.node_version)

    async def _handle_error(self, client: ChainClient, error: BaseException) -> None:
        if client is not self._client:
            return
        self._stats.transport_errors += 1
        self._stats.last_error = str(error)
        logger.error("Chain transport error: %s", error)

    async def _handle_disconnected(self, client: ChainClient, error: BaseException | None) -> None:
        if client is not self._client:
            return
        self._client = None
        self._state = SupervisorState.DISCONNECTED
        self._stats.disconnects += 1
        logger.warning("Disconnected from chain node%s", f": {error}" if error else "")

        if self._is_shutting_down:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _establish(self) -> None:
        """Connect a fresh client and arm the subscriber on it.

        Raises:
            ChainConnectionError: If connecting or subscribing fails.
        """
        client = await self._connect()
        if self._subscriber is not None:
            try:
                await self._subscriber.arm(client)
            except Exception as e:
                self._client = None
                self._state = SupervisorState.DISCONNECTED
                with contextlib.suppress(Exception):
                    await client.disconnect()
                raise ChainConnectionError(f"Failed to start indexing: {e}") from e
        self._reconnect_attempts = 0

    async def _reconnect(self) -> None:
        if self._subscriber is not None:
            await self._subscriber.disarm()
        await self._retry_connect()

    async def _retry_connect(self) -> bool:
        """Back off and retry until connected, shut down or out of attempts.

        Returns:
            True once a client is connected and armed.
        """
        while not self._is_shutting_down:
            if self._reconnect_attempts >= self._policy.max_attempts:
                self._give_up()
                return False

            self._reconnect_attempts += 1
            self._stats.reconnect_attempts_total += 1
            delay = self._policy.delay_for(self._reconnect_attempts)
            self._state = SupervisorState.RECONNECTING
            logger.info(
                "Attempting to reconnect in %.0f seconds... (%d/%d)",
                delay,
                self._reconnect_attempts,
                self._policy.max_attempts,
            )
            await self._sleep(delay)
            if self._is_shutting_down:
                return False

            try:
                await self._establish()
            except ChainConnectionError as e:
                self._stats.last_error = str(e)
                logger.error("Reconnection failed: %s", e)
                continue
            return True
        return False

    def _give_up(self) -> None:
        self._state = SupervisorState.FAILED
        self._fatal_error = ReconnectExhaustedError(self._reconnect_attempts)
        logger.critical("Max reconnection attempts reached (%d). Exiting...", self._reconnect_attempts)
        self._closed.set()
