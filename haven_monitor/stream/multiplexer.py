import json
import uuid
import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple
from urllib.parse import urlparse

import websockets
from websockets.exceptions import WebSocketException

from haven_monitor.local.config import effective_settings as config
from haven_monitor.stream.aggregator import EventAggregator
from haven_monitor.stream.models import Subscription

log = logging.getLogger(__name__)

CONNECTION_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


def make_subscription_id(endpoint_url: str) -> str:
    """Builds 'viewer-<last path component or root>-<4 hex chars>'."""
    tail = urlparse(endpoint_url).path.rstrip("/").rsplit("/", 1)[-1]
    return f"viewer-{tail or 'root'}-{uuid.uuid4().hex[:4]}"


def build_request(subscription_id: str, kinds: Sequence[int], limit: int) -> str:
    return json.dumps(["REQ", subscription_id, {"kinds": list(kinds), "limit": limit}])


def default_connect(url: str):
    """Opens a websocket with the configured timeouts; usable as an async context manager."""
    return websockets.connect(
        url,
        open_timeout=config.WS_OPEN_TIMEOUT,
        ping_interval=config.WS_PING_INTERVAL,
        max_size=config.WS_MAX_MESSAGE_SIZE,
    )


class SubscriptionMultiplexer:
    """
    Keeps one websocket per endpoint and funnels every message to the aggregator.

    Each connection reconnects on its own with exponential backoff. All
    messages go through one queue drained by a single consumer task, so the
    aggregator never sees concurrent deliveries. `reset()` bumps a generation
    counter; queued messages from an older generation are discarded.

    `fetch` and `reset` must be called from the event loop thread.
    """

    def __init__(
        self,
        aggregator: EventAggregator,
        *,
        connect: Callable[[str], Any] = default_connect,
        kinds: Optional[Sequence[int]] = None,
        limit: Optional[int] = None,
        reconnect_initial_delay: Optional[float] = None,
        reconnect_max_delay: Optional[float] = None,
    ) -> None:
        self.aggregator = aggregator
        self.connect = connect
        self.kinds = tuple(config.SUBSCRIPTION_KINDS if kinds is None else kinds)
        self.limit = config.SUBSCRIPTION_LIMIT if limit is None else limit
        self.reconnect_initial_delay = (
            config.RECONNECT_INITIAL_DELAY if reconnect_initial_delay is None else reconnect_initial_delay
        )
        self.reconnect_max_delay = (
            config.RECONNECT_MAX_DELAY if reconnect_max_delay is None else reconnect_max_delay
        )

        self.subscriptions: Dict[str, Subscription] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._generation = 0
        self._queue: Optional["asyncio.Queue[Tuple[int, str]]"] = None
        self._consumer: Optional[asyncio.Task] = None

    #* --- Public API ---
    def fetch(self, endpoints: Iterable[str]) -> None:
        """
        Opens a connection for every endpoint not already subscribed.

        :param endpoints: Websocket URLs (e.g. 'ws://localhost:3355/inbox').
        """
        self._ensure_consumer()
        for url in endpoints:
            if url in self.subscriptions:
                continue
            subscription = Subscription(endpoint_url=url)
            self.subscriptions[url] = subscription
            self._tasks[url] = asyncio.get_running_loop().create_task(
                self._run_connection(subscription, self._generation),
                name=f"subscription:{url}",
            )
            log.info(f"Subscribing to {url}")

    def reset(self) -> None:
        """
        Tears down every connection and subscription.

        Messages already queued are dropped; nothing received before the reset
        reaches the aggregator afterwards.
        """
        self._generation += 1
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        for subscription in self.subscriptions.values():
            subscription.connected = False
            subscription.connection = None
        self.subscriptions.clear()
        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
        log.info("All subscriptions reset.")

    async def close(self) -> None:
        """Resets, waits for the connection tasks to finish and stops the consumer."""
        tasks = list(self._tasks.values())
        self.reset()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        self.aggregator.close()

    @property
    def connected_count(self) -> int:
        return sum(1 for s in self.subscriptions.values() if s.connected)

    #* --- Internals ---
    def _ensure_consumer(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self._consume(), name="subscription-consumer")

    async def _consume(self) -> None:
        while True:
            generation, raw = await self._queue.get()
            if generation != self._generation:
                continue
            try:
                self.aggregator.on_message(raw)
            except Exception as e:
                log.error(f"Failed to process subscription message: {e}", exc_info=True)

    async def _run_connection(self, subscription: Subscription, generation: int) -> None:
        url = subscription.endpoint_url
        delay = self.reconnect_initial_delay
        while generation == self._generation:
            try:
                async with self.connect(url) as ws:
                    subscription.connection = ws
                    subscription.connected = True
                    delay = self.reconnect_initial_delay
                    subscription.subscription_id = make_subscription_id(url)
                    await ws.send(build_request(subscription.subscription_id, self.kinds, self.limit))
                    log.debug(f"Sent subscription {subscription.subscription_id} to {url}")

                    async for raw in ws:
                        if generation != self._generation:
                            return
                        if not isinstance(raw, str):
                            continue
                        subscription.messages_received += 1
                        await self._queue.put((generation, raw))
                log.info(f"Connection to {url} closed by peer.")
            except asyncio.CancelledError:
                raise
            except CONNECTION_ERRORS as e:
                log.warning(f"Connection to {url} failed: {e}. Retrying in {delay:.1f}s.")
            except Exception as e:
                log.error(f"Unexpected error on {url}: {e}. Retrying in {delay:.1f}s.", exc_info=True)
            finally:
                subscription.connected = False
                subscription.connection = None

            if generation != self._generation:
                return
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.reconnect_max_delay)
