"""
Activity fan-out bus.

A single owner task holds the subscriber set and serves three bounded
mailboxes: registrations, deregistrations and inbound events. Publishers
never block: when the inbound mailbox is full the event is dropped with a
warning. Each subscriber wraps one socket and serializes its writes.

Processes that do not own the bus publish through ``WebhookPublisher``,
which POSTs events to the dashboard's ``/api/activity`` intake.
"""

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

import httpx

from mcp_compose.core.activity.storage import ActivityStore
from mcp_compose.core.constants import (
    ACTIVITY_CONTROL_MAILBOX_SIZE,
    ACTIVITY_MAILBOX_SIZE,
    ACTIVITY_REPLAY_COUNT,
    ACTIVITY_RETENTION_DAYS,
    FANOUT_TIMEOUT,
    FANOUT_WRITE_TIMEOUT,
)
from mcp_compose.core.models import ActivityEvent
from mcp_compose.utils.logging import get_logger

logger = get_logger(__name__)

RETENTION_INTERVAL = 24 * 60 * 60
RESTART_BACKOFF = 1.0


class ActivityPublisher:
    """Anything events can be published to."""

    def publish(self, event: ActivityEvent) -> None:
        raise NotImplementedError

    def emit(
        self,
        level: str,
        type: str,
        message: str,
        server: Optional[str] = None,
        client: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Build an event and publish it. Never raises."""
        try:
            event = ActivityEvent(
                level=level,
                type=type,
                message=message,
                server=server,
                client=client,
                details=details or {},
            )
        except ValueError as e:
            logger.warning(f"Dropping malformed activity event: {e}")
            return
        self.publish(event)


class QueueSink:
    """In-process subscriber sink backed by an ``asyncio.Queue``."""

    def __init__(self, maxsize: int = 0):
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise ConnectionError("sink closed")
        await self.queue.put(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.closed = True


class Subscriber:
    """One registered consumer of the activity stream.

    ``sink`` is any object with ``async send_text(str)`` and ``async close()``,
    a Starlette ``WebSocket`` in the dashboard. The lock guarantees no two
    writes interleave on the sink.
    """

    def __init__(self, sink: Any, client: Optional[str] = None):
        self.sink = sink
        self.client = client
        self.index = 0
        self.lock = asyncio.Lock()
        self.closed = False
        self.done = asyncio.Event()

    async def write(self, payload: str, timeout: float = FANOUT_WRITE_TIMEOUT) -> None:
        await asyncio.wait_for(self.sink.send_text(payload), timeout=timeout)

    async def send(self, payload: str, timeout: float = FANOUT_WRITE_TIMEOUT) -> None:
        async with self.lock:
            await self.write(payload, timeout)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.done.set()
        try:
            await self.sink.close()
        except (RuntimeError, ConnectionError, OSError) as e:
            logger.debug(f"Error closing subscriber #{self.index}: {e}")


class ActivityBus(ActivityPublisher):
    """In-process broadcaster with optional durable spill."""

    def __init__(
        self,
        store: Optional[ActivityStore] = None,
        mailbox_size: int = ACTIVITY_MAILBOX_SIZE,
        replay_count: int = ACTIVITY_REPLAY_COUNT,
        retention: timedelta = timedelta(days=ACTIVITY_RETENTION_DAYS),
        fanout_timeout: float = FANOUT_TIMEOUT,
        write_timeout: float = FANOUT_WRITE_TIMEOUT,
    ):
        if retention.total_seconds() <= 0:
            raise ValueError("Retention must be a positive duration")

        self.store = store
        self.replay_count = replay_count
        self.retention = retention
        self.fanout_timeout = fanout_timeout
        self.write_timeout = write_timeout

        self._register: "asyncio.Queue[Subscriber]" = asyncio.Queue(ACTIVITY_CONTROL_MAILBOX_SIZE)
        self._unregister: "asyncio.Queue[Subscriber]" = asyncio.Queue(ACTIVITY_CONTROL_MAILBOX_SIZE)
        self._inbound: "asyncio.Queue[ActivityEvent]" = asyncio.Queue(mailbox_size)
        self._shutdown = asyncio.Event()

        self._subscribers: Set[Subscriber] = set()
        self._counter = 0
        self._task: Optional[asyncio.Task] = None
        self._retention_task: Optional[asyncio.Task] = None
        self._detached: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def start(self) -> None:
        """Start the owner task (and retention task when a store is set)."""
        if self.running:
            return
        self._shutdown.clear()
        self._task = asyncio.create_task(self._run())
        if self.store is not None and self._retention_task is None:
            self._retention_task = asyncio.create_task(self._retention_loop())
        logger.info("Activity broadcaster started")

    async def stop(self) -> None:
        """Close every subscriber and stop the owner task."""
        self._shutdown.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None
        if self._retention_task is not None:
            self._retention_task.cancel()
            try:
                await self._retention_task
            except asyncio.CancelledError:
                pass
            self._retention_task = None
        for task in list(self._detached):
            task.cancel()

    # Public mailbox API

    def publish(self, event: ActivityEvent) -> None:
        """Enqueue an event without blocking; drop it if the mailbox is full."""
        try:
            self._inbound.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"Activity mailbox full, dropping event: {event.message}",
                extra={"event_type": event.type},
            )

    async def subscribe(self, sink: Any, client: Optional[str] = None) -> Subscriber:
        """Register a sink; it receives events published from now on."""
        subscriber = Subscriber(sink, client)
        await self._register.put(subscriber)
        return subscriber

    async def unsubscribe(self, subscriber: Subscriber) -> None:
        """Deregister a subscriber. Safe to call more than once."""
        if subscriber.closed:
            return
        await self._unregister.put(subscriber)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait until every enqueued message has been handled."""
        async def _wait() -> None:
            await self._register.join()
            await self._unregister.join()
            await self._inbound.join()

        await asyncio.wait_for(_wait(), timeout=timeout)

    async def history(self, limit: int = 100, since: Optional[datetime] = None) -> List[ActivityEvent]:
        if self.store is None:
            return []
        return await asyncio.to_thread(self.store.recent, limit, since)

    async def stats(self) -> Dict[str, Any]:
        if self.store is None:
            return {}
        return await asyncio.to_thread(self.store.stats)

    # Owner task

    async def _run(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self._loop()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Activity broadcaster crashed, restarting")
                await asyncio.sleep(RESTART_BACKOFF)
        await self._close_all()

    async def _loop(self) -> None:
        mailboxes = {
            "register": self._register,
            "unregister": self._unregister,
            "event": self._inbound,
        }
        getters: Dict[str, asyncio.Task] = {}
        shutdown = asyncio.ensure_future(self._shutdown.wait())

        try:
            while True:
                for kind, queue in mailboxes.items():
                    if kind not in getters:
                        getters[kind] = asyncio.ensure_future(queue.get())

                done, _ = await asyncio.wait(
                    [shutdown, *getters.values()],
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if shutdown in done:
                    return

                for kind in ("register", "unregister", "event"):
                    task = getters.get(kind)
                    if task is None or task not in done:
                        continue
                    del getters[kind]
                    item = task.result()
                    try:
                        if kind == "register":
                            await self._handle_register(item)
                        elif kind == "unregister":
                            await self._handle_unregister(item)
                        else:
                            await self._handle_event(item)
                    finally:
                        mailboxes[kind].task_done()
        finally:
            shutdown.cancel()
            for kind, task in getters.items():
                if task.done() and not task.cancelled():
                    # Put back anything already dequeued so a restart sees it
                    mailboxes[kind].put_nowait(task.result())
                    mailboxes[kind].task_done()
                else:
                    task.cancel()

    async def _handle_register(self, subscriber: Subscriber) -> None:
        self._counter += 1
        subscriber.index = self._counter
        self._subscribers.add(subscriber)
        total = len(self._subscribers)
        logger.info(f"Activity client #{subscriber.index} registered (total: {total})")

        replay: List[ActivityEvent] = []
        if self.store is not None and self.replay_count > 0:
            try:
                replay = await asyncio.to_thread(self.store.recent, self.replay_count)
            except Exception as e:
                logger.warning(f"Activity replay unavailable: {e}")

        welcome = ActivityEvent(
            level="INFO",
            type="connection",
            message=f"Client #{subscriber.index} successfully registered to activity stream",
            details={"client_id": subscriber.index, "total_clients": total},
        )

        # Hold the lock now so live events queue behind the replay
        await subscriber.lock.acquire()
        task = asyncio.create_task(self._send_welcome(subscriber, list(reversed(replay)), welcome))
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)

    async def _send_welcome(
        self,
        subscriber: Subscriber,
        replay: List[ActivityEvent],
        welcome: ActivityEvent,
    ) -> None:
        try:
            for event in replay:
                await subscriber.write(json.dumps(event.to_wire()), self.write_timeout)
            await subscriber.write(json.dumps(welcome.to_wire()), self.write_timeout)
        except Exception as e:
            logger.warning(f"Failed to send welcome to client #{subscriber.index}: {e}")
        finally:
            subscriber.lock.release()

    async def _handle_unregister(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.discard(subscriber)
            logger.info(f"Activity client #{subscriber.index} unregistered (remaining: {len(self._subscribers)})")
        await subscriber.close()

    async def _handle_event(self, event: ActivityEvent) -> None:
        if self.store is not None:
            try:
                await asyncio.to_thread(self.store.record, event)
            except Exception as e:
                logger.warning(f"Failed to persist activity event: {e}")

        if not self._subscribers:
            logger.debug(f"No activity clients for: {event.message}")
            return

        payload = json.dumps(event.to_wire())
        subscribers = list(self._subscribers)
        results = await asyncio.gather(
            *(self._deliver(subscriber, payload) for subscriber in subscribers)
        )

        failed = [s for s, ok in zip(subscribers, results) if not ok]
        for subscriber in failed:
            self._subscribers.discard(subscriber)
            await subscriber.close()

        logger.debug(
            f"Activity delivered to {len(subscribers) - len(failed)}/{len(subscribers)} clients",
            extra={"event_type": event.type},
        )

    async def _deliver(self, subscriber: Subscriber, payload: str) -> bool:
        try:
            await asyncio.wait_for(
                subscriber.send(payload, self.write_timeout),
                timeout=self.fanout_timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Activity client #{subscriber.index} too slow, disconnecting")
        except Exception as e:
            logger.warning(f"Failed to send to activity client #{subscriber.index}: {e}")
        return False

    async def _close_all(self) -> None:
        for subscriber in list(self._subscribers):
            await subscriber.close()
        self._subscribers.clear()
        logger.info("Activity broadcaster stopped")

    async def _retention_loop(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.store.cleanup, self.retention)
            except Exception as e:
                logger.warning(f"Activity retention cleanup failed: {e}")
            await asyncio.sleep(RETENTION_INTERVAL)


class WebhookPublisher(ActivityPublisher):
    """Publishes events to a remote bus over HTTP, fire-and-forget."""

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._pending: Set[asyncio.Task] = set()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def publish(self, event: ActivityEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No event loop, activity webhook skipped")
            return
        task = loop.create_task(self._post(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, event: ActivityEvent) -> None:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            await self._get_client().post(self.url, json=event.to_wire(), headers=headers)
        except httpx.HTTPError as e:
            logger.debug(f"Failed to send activity to {self.url}: {e}")

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class NullPublisher(ActivityPublisher):
    """Discards events."""

    def publish(self, event: ActivityEvent) -> None:
        pass
