"""
Realtime subscription manager.

Keeps at most one channel per (project, purpose) pair and delivers row events
to a callback that may be swapped at any time without touching the channel.
Transport failures never propagate to the caller: they turn into a status
change, a logged warning and a bounded retry schedule (first retry
immediately, then exponential backoff). After the retries run out the handle
stays offline until ``reconnect`` is called.
"""
import asyncio
import contextlib
import itertools
import logging
import secrets
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from .feed import ChannelLink, Transport
from .schema import ChangeEvent, ConnectionStatus, Operation

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, Operation, dict], None]
StatusCallback = Callable[[ConnectionStatus], None]


@dataclass
class RetryPolicy:
    """Reconnect schedule for dropped or failed channels."""
    max_attempts: int = 5      # Consecutive automatic retries before giving up
    base_delay: float = 1.0    # Seconds; second retry waits this long
    max_delay: float = 30.0
    timeout: float = 10.0      # Join acknowledgment timeout

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based). The first is immediate."""
        if attempt <= 1:
            return 0.0
        return min(self.base_delay * 2 ** (attempt - 2), self.max_delay)


class SubscriptionHandle:
    """
    One live subscription. Holds the current callback in a cell that the
    channel listener reads on every event.
    """

    def __init__(
        self,
        project_id: str,
        purpose: str,
        tables: FrozenSet[str],
        channel_name: str,
        callback: Optional[ChangeCallback],
        on_status: Optional[StatusCallback] = None,
        on_resync: Optional[Callable[[], None]] = None,
    ):
        self.project_id = project_id
        self.purpose = purpose
        self.tables = tables
        self.channel_name = channel_name
        self._callback = callback
        self.on_status = on_status
        self.on_resync = on_resync

        self.status = ConnectionStatus.OFFLINE
        self.closed = False
        self.attempts = 0          # Automatic retries in the current failure streak
        self.joins = 0             # Join attempts over the handle's lifetime
        self.link: Optional[ChannelLink] = None
        self.retry_task: Optional[asyncio.Task] = None
        self.generation = 0        # Bumped per join; stale error reports are ignored

    @property
    def key(self) -> Tuple[str, str]:
        return (self.project_id, self.purpose)

    @property
    def callback(self) -> Optional[ChangeCallback]:
        return self._callback

    def set_callback(self, callback: Optional[ChangeCallback]) -> None:
        """Swap the change callback. The channel is left as is."""
        self._callback = callback

    def _dispatch(self, event: ChangeEvent) -> None:
        if self.closed or event.table not in self.tables:
            return
        callback = self._callback
        if callback is None:
            return
        try:
            callback(event.table, event.operation, event.row)
        except Exception as e:
            logger.error(f"Error in change callback for {self.channel_name}: {e}")

    def __repr__(self):
        return f"<SubscriptionHandle {self.channel_name} {self.status.value}>"


def _safe_call(fn: Optional[Callable], *args, what: str = "callback") -> None:
    if fn is None:
        return
    try:
        fn(*args)
    except Exception as e:
        logger.error(f"Error in {what}: {e}")


class SubscriptionManager:
    """Opens, retries and closes realtime channels over a Transport."""

    def __init__(self, transport: Transport, retry: Optional[RetryPolicy] = None):
        self.transport = transport
        self.retry = retry or RetryPolicy()
        self.handles: Dict[Tuple[str, str], SubscriptionHandle] = {}
        self._counter = itertools.count(1)
        self._token = secrets.token_hex(4)

    def _channel_name(self, project_id: str, purpose: str) -> str:
        return f"project_{project_id}_{purpose}_{next(self._counter)}_{self._token}"

    async def open(
        self,
        project_id: str,
        tables: Iterable[str],
        on_change: Optional[ChangeCallback],
        purpose: str = "board",
        on_status: Optional[StatusCallback] = None,
        on_resync: Optional[Callable[[], None]] = None,
    ) -> SubscriptionHandle:
        """
        Subscribe to ``tables`` for a project.

        Re-opening an open (project, purpose) pair swaps the callbacks on the
        existing handle and returns it. A failed first join leaves the handle
        offline with a retry scheduled; nothing is raised.
        """
        key = (project_id, purpose)
        existing = self.handles.get(key)
        if existing is not None and not existing.closed:
            existing.set_callback(on_change)
            if on_status is not None:
                existing.on_status = on_status
            if on_resync is not None:
                existing.on_resync = on_resync
            return existing

        handle = SubscriptionHandle(
            project_id=project_id,
            purpose=purpose,
            tables=frozenset(tables),
            channel_name=self._channel_name(project_id, purpose),
            callback=on_change,
            on_status=on_status,
            on_resync=on_resync,
        )
        self.handles[key] = handle
        if not await self._join(handle):
            self._schedule_retry(handle)
        return handle

    def status(self, project_id: str, purpose: str = "board") -> Optional[ConnectionStatus]:
        handle = self.handles.get((project_id, purpose))
        return handle.status if handle else None

    def _set_status(self, handle: SubscriptionHandle, status: ConnectionStatus) -> None:
        if handle.status == status:
            return
        logger.debug(f"{handle.channel_name}: {handle.status.value} -> {status.value}")
        handle.status = status
        _safe_call(handle.on_status, status, what=f"status callback for {handle.channel_name}")

    async def _join(self, handle: SubscriptionHandle) -> bool:
        """One join attempt. Returns True once the channel is live."""
        handle.generation += 1
        generation = handle.generation
        handle.joins += 1
        resync = handle.joins > 1

        if handle.link is not None:
            await self._leave(handle)
        self._set_status(handle, ConnectionStatus.CONNECTING)

        def on_error(exc: Exception) -> None:
            self._on_transport_error(handle, generation, exc)

        try:
            link = await asyncio.wait_for(
                self.transport.join(
                    handle.channel_name,
                    handle.tables,
                    handle._dispatch,
                    on_error,
                    project_hint=handle.project_id,
                ),
                timeout=self.retry.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Join timed out for {handle.channel_name} after {self.retry.timeout}s")
            if generation == handle.generation and not handle.closed:
                self._set_status(handle, ConnectionStatus.OFFLINE)
            return False
        except Exception as e:
            logger.warning(f"Join failed for {handle.channel_name}: {e}")
            if generation == handle.generation and not handle.closed:
                self._set_status(handle, ConnectionStatus.OFFLINE)
            return False

        if handle.closed or generation != handle.generation:
            # Closed (or superseded) while the join was in flight
            with contextlib.suppress(Exception):
                await self.transport.leave(link)
            return False

        handle.link = link
        handle.attempts = 0
        self._set_status(handle, ConnectionStatus.LIVE)
        logger.info(f"Channel {handle.channel_name} live")
        if resync:
            _safe_call(handle.on_resync, what=f"resync callback for {handle.channel_name}")
        return True

    def _on_transport_error(self, handle: SubscriptionHandle, generation: int, exc: Exception) -> None:
        if handle.closed or generation != handle.generation:
            return
        logger.warning(f"Channel {handle.channel_name} lost: {exc}")
        self._set_status(handle, ConnectionStatus.OFFLINE)
        handle.attempts = 0
        self._schedule_retry(handle)

    def _schedule_retry(self, handle: SubscriptionHandle) -> None:
        if handle.closed:
            return
        if handle.retry_task is not None and not handle.retry_task.done():
            return
        handle.retry_task = asyncio.get_running_loop().create_task(self._retry_loop(handle))

    async def _retry_loop(self, handle: SubscriptionHandle) -> None:
        while not handle.closed:
            if handle.attempts >= self.retry.max_attempts:
                logger.warning(
                    f"Giving up on {handle.channel_name} after {handle.attempts} retries; "
                    f"waiting for manual reconnect"
                )
                return
            handle.attempts += 1
            delay = self.retry.delay_for(handle.attempts)
            if delay > 0:
                await asyncio.sleep(delay)
            if handle.closed:
                return
            logger.info(f"Reconnecting {handle.channel_name} (attempt {handle.attempts}/{self.retry.max_attempts})")
            if await self._join(handle):
                return

    async def _cancel_retry(self, handle: SubscriptionHandle) -> None:
        task, handle.retry_task = handle.retry_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _leave(self, handle: SubscriptionHandle) -> None:
        link, handle.link = handle.link, None
        if link is None:
            return
        try:
            await self.transport.leave(link)
        except Exception as e:
            logger.warning(f"Leave failed for {link.name}: {e}")

    async def reconnect(self, handle: SubscriptionHandle) -> bool:
        """
        Manual sync/reset: drop the current channel and join again, resetting
        the retry limit. Returns True when the channel is live again.
        """
        if handle.closed:
            return False
        await self._cancel_retry(handle)
        handle.attempts = 0
        if await self._join(handle):
            return True
        self._schedule_retry(handle)
        return False

    async def close(self, handle: SubscriptionHandle) -> None:
        """Unsubscribe and release the channel. Safe to call more than once."""
        if handle.closed:
            return
        handle.closed = True
        handle.generation += 1
        if self.handles.get(handle.key) is handle:
            del self.handles[handle.key]
        await self._cancel_retry(handle)
        await self._leave(handle)
        handle.status = ConnectionStatus.OFFLINE
        logger.debug(f"Closed {handle.channel_name}")

    async def close_all(self) -> None:
        for handle in list(self.handles.values()):
            await self.close(handle)
