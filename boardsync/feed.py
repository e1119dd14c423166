"""
Change feed: publishes row-level insert/update/delete events after commit.

The store publishes into a ChangeFeed. Clients reach the feed through a
Transport, which models a realtime channel: join a named channel for a set
of tables, receive events through a listener, get told about errors through
``on_error``. LocalTransport is the in-process implementation; it delivers
every event on a joined table, including the ones caused by the listener's
own writes, and leaves project filtering to the receiving side.
"""
import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from .errors import TransportError
from .schema import ChangeEvent

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEvent], None]
ErrorHandler = Callable[[Exception], None]


class ChangeFeed:
    """Routes published row events to subscribers by table."""

    def __init__(self):
        self.subscribers: Dict[int, tuple] = {}  # token -> (tables, callback)
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, tables: Iterable[str], callback: Listener) -> int:
        """Register a callback for a set of tables. Returns an unsubscribe token."""
        token = next(self._tokens)
        with self._lock:
            self.subscribers[token] = (frozenset(tables), callback)
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self.subscribers.pop(token, None)

    def publish(self, event: ChangeEvent) -> None:
        """Deliver an event to every subscriber of its table. Never raises."""
        with self._lock:
            targets = [cb for tables, cb in self.subscribers.values() if event.table in tables]
        for callback in targets:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in {event.table} subscriber: {e}")

    def publish_all(self, events: Iterable[ChangeEvent]) -> None:
        for event in events:
            self.publish(event)


# ── Transport ────────────────────────────────────────────────────────────────

@dataclass
class ChannelLink:
    """A joined channel, as returned by Transport.join."""
    name: str
    tables: FrozenSet[str]
    token: Optional[int] = None
    on_error: Optional[ErrorHandler] = field(default=None, repr=False)
    loop: Optional[asyncio.AbstractEventLoop] = field(default=None, repr=False)


class Transport:
    """
    Realtime transport interface.

    ``join`` completes once the subscription is acknowledged and raises
    TransportError (or times out) when it cannot be. ``leave`` must be
    idempotent. ``project_hint`` is advisory; implementations may ignore it.
    """

    async def join(
        self,
        channel_name: str,
        tables: Iterable[str],
        listener: Listener,
        on_error: ErrorHandler,
        project_hint: Optional[str] = None,
    ) -> ChannelLink:
        raise NotImplementedError

    async def leave(self, link: ChannelLink) -> None:
        raise NotImplementedError


class LocalTransport(Transport):
    """
    In-process transport over a ChangeFeed.

    Events published from any thread are handed to the joining event loop
    with ``call_soon_threadsafe``.
    """

    def __init__(self, feed: ChangeFeed):
        self.feed = feed
        self.channels: Dict[str, ChannelLink] = {}
        self.join_count = 0

    async def join(self, channel_name, tables, listener, on_error, project_hint=None) -> ChannelLink:
        if channel_name in self.channels:
            raise TransportError(f"Channel {channel_name} already joined")

        loop = asyncio.get_running_loop()
        link = ChannelLink(
            name=channel_name,
            tables=frozenset(tables),
            on_error=on_error,
            loop=loop,
        )

        def _forward(event: ChangeEvent) -> None:
            if loop.is_closed():
                return
            loop.call_soon_threadsafe(listener, event)

        # Handshake round-trip
        await asyncio.sleep(0)
        self.join_count += 1
        link.token = self.feed.subscribe(link.tables, _forward)
        self.channels[channel_name] = link
        logger.debug(f"Joined {channel_name} for {sorted(link.tables)}")
        return link

    async def leave(self, link: ChannelLink) -> None:
        if link.token is not None:
            self.feed.unsubscribe(link.token)
            link.token = None
        if self.channels.get(link.name) is link:
            del self.channels[link.name]

    def live_channels(self, prefix: str = "") -> List[str]:
        return [name for name in self.channels if name.startswith(prefix)]

    def drop(self, channel_name: str, error: Optional[Exception] = None) -> None:
        """Simulate the server dropping a channel: unsubscribe and report the error."""
        link = self.channels.pop(channel_name, None)
        if link is None:
            return
        if link.token is not None:
            self.feed.unsubscribe(link.token)
            link.token = None
        exc = error or TransportError(f"Channel {channel_name} closed by server")
        if link.on_error is not None and link.loop is not None and not link.loop.is_closed():
            link.loop.call_soon_threadsafe(link.on_error, exc)

    def drop_all(self, error: Optional[Exception] = None) -> None:
        for name in list(self.channels):
            self.drop(name, error)
