"""
Reconciler - decides which side effects are still owed for each request.

Consumes watch events and verified callbacks, consults the plugin data
store, drives the notification channel and proposes state transitions to
the upstream authority. Correct under duplicate and out-of-order delivery:
every decision is re-derived from the stored record and every mutation is
a compare-and-swap against the version just read.
"""

import asyncio
import logging
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, List, Optional, Union

from access import AccessRequest, RequestAuthority, RequestState
from db import PluginData, PluginDataStore
from errors import (
    AlreadyExists,
    RequestNotFound,
    StateConflict,
    TransientDependencyError,
    VersionConflict,
)
from plugins.base import Callback
from plugins.channels.base import NotificationChannel
from watcher import EventType, WatchEvent, compute_backoff

logger = logging.getLogger(__name__)

Log = Union[logging.Logger, logging.LoggerAdapter]


@dataclass
class ReconcilerConfig:
    """Configuration for the reconciler."""

    max_concurrent_reconciles: int = 8
    queue_size: int = 256

    # Transient failure retries on the event path
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 5.0
    retry_jitter_factor: float = 0.1

    # Grace period for in-flight work on shutdown
    drain_timeout: float = 10.0


class CallbackOutcome(Enum):
    """Result of applying a verified callback."""

    SUCCESS = "success"
    STALE = "stale"
    CONFLICT = "conflict"
    NOT_ACTIONABLE = "not_actionable"


class Reconciler:
    """
    Core state machine shared by every channel integration.

    Events are fanned out to a fixed pool of workers keyed by request ID,
    so events for one request are handled in order while different
    requests proceed concurrently.
    """

    def __init__(
        self,
        store: PluginDataStore,
        channel: NotificationChannel,
        authority: RequestAuthority,
        config: Optional[ReconcilerConfig] = None,
    ):
        self.store = store
        self.channel = channel
        self.authority = authority
        self.config = config or ReconcilerConfig()
        self._queues: List[asyncio.Queue] = []
        self._workers: List[asyncio.Task] = []

    # ==================== Event path ====================

    async def start(self, events: AsyncIterator[WatchEvent]) -> None:
        """
        Consume watch events until the stream ends or the task is cancelled.

        In-flight work is drained before returning.
        """
        self._start_workers()
        logger.info(
            f"Reconciler started with {self.config.max_concurrent_reconciles} workers"
        )
        try:
            async for event in events:
                await self.dispatch(event)
        finally:
            await self.drain()

    def _start_workers(self) -> None:
        self._queues = [
            asyncio.Queue(maxsize=self.config.queue_size)
            for _ in range(self.config.max_concurrent_reconciles)
        ]
        self._workers = [
            asyncio.create_task(self._worker(queue)) for queue in self._queues
        ]

    async def dispatch(self, event: WatchEvent) -> None:
        """Route an event to the worker that owns its request ID."""
        if event.event_type is EventType.INIT:
            logger.debug("Watch stream primed")
            return

        if not self._queues:
            await self.handle_event(event)
            return

        index = zlib.crc32(event.request_id.encode()) % len(self._queues)
        await self._queues[index].put(event)

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                if event is None:
                    return
                await self.handle_event(event)
            except Exception as e:
                logger.error(
                    f"Error reconciling request {event.request_id}: {e}",
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Stop the workers, giving queued events a grace period to finish."""
        if not self._workers:
            return

        for queue in self._queues:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass

        done, pending = await asyncio.wait(
            self._workers, timeout=self.config.drain_timeout
        )
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} workers after drain timeout")
            await asyncio.gather(*pending, return_exceptions=True)

        self._workers = []
        self._queues = []
        logger.info("Reconciler drained")

    async def handle_event(self, event: WatchEvent) -> None:
        """
        Reconcile one event, retrying transient dependency failures.

        Gives up after ``retry_attempts`` and logs the failure; never raises
        TransientDependencyError.
        """
        attempts = max(1, self.config.retry_attempts)
        for attempt in range(attempts):
            try:
                await self._reconcile_event(event)
                return
            except TransientDependencyError as e:
                if attempt + 1 >= attempts:
                    logger.error(
                        f"Giving up on {event.event_type.value} for request "
                        f"{event.request_id} after {attempts} attempts: {e}"
                    )
                    return
                delay = compute_backoff(
                    attempt,
                    self.config.retry_base_delay,
                    self.config.retry_max_delay,
                    self.config.retry_jitter_factor,
                )
                logger.warning(
                    f"Transient failure on request {event.request_id}, "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)

    async def _reconcile_event(self, event: WatchEvent) -> None:
        # One retry after losing a CAS race; the re-read inside decides
        # whether anything is still owed
        for _ in range(2):
            try:
                await self._apply_event(event)
                return
            except VersionConflict as e:
                logger.info(f"Lost update race on request {event.request_id}: {e}")
        logger.warning(
            f"Dropping {event.event_type.value} for request {event.request_id} "
            f"after repeated version conflicts"
        )

    async def _apply_event(self, event: WatchEvent) -> None:
        if event.event_type is EventType.DELETE:
            await self._resolve(event.request_id, RequestState.EXPIRED)
            return

        request = event.request
        if request.state is RequestState.PENDING:
            await self._notify(request)
        else:
            await self._resolve(request.id, request.state)

    async def _notify(self, request: AccessRequest) -> None:
        """Post a notification unless one was already posted."""
        if await self.store.get(request.id) is not None:
            logger.debug(f"Request {request.id} already notified")
            return

        handle = await self.channel.post(request)
        record = PluginData(
            request_id=request.id,
            handle=handle,
            user=request.user,
            roles=list(request.roles),
            reason=request.reason,
        )
        try:
            await self.store.create(request.id, record)
        except AlreadyExists:
            logger.info(f"Request {request.id} was notified by a concurrent delivery")
            return
        logger.info(f"Notified request {request.id} from {request.user}")

    async def _resolve(
        self,
        request_id: str,
        final_state: RequestState,
        resolved_by: Optional[str] = None,
        log: Log = logger,
    ) -> bool:
        """
        Show the final state on the notification and mark the record resolved.

        Returns False when there is nothing to do: no record (the request
        was never seen) or already resolved.

        Raises:
            VersionConflict: If another writer changed the record meanwhile.
        """
        current = await self.store.get(request_id)
        if current is None:
            log.debug(f"No plugin data for request {request_id}, nothing to resolve")
            return False

        record, version = current
        if record.resolved:
            log.debug(f"Request {request_id} already resolved as {record.resolution}")
            return False

        await self.channel.update(record.handle, final_state, record)
        try:
            await self.store.compare_and_swap(
                request_id, version, record.resolve(final_state.value, resolved_by)
            )
        except VersionConflict:
            await self._restore_winner(request_id, log)
            raise
        log.info(f"Resolved request {request_id} as {final_state.value}")
        return True

    async def _restore_winner(self, request_id: str, log: Log = logger) -> None:
        """
        Re-render the notification after losing a resolve race.

        Both writers update the notification before their CAS, so the
        loser's update may have landed last and shows the wrong state.
        """
        current = await self.store.get(request_id)
        if current is None:
            return
        record, _ = current
        if not record.resolved or not record.resolution:
            return
        log.info(
            f"Restoring {record.resolution} on notification of {request_id} "
            f"after losing resolve race"
        )
        await self.channel.update(
            record.handle, RequestState(record.resolution), record
        )

    # ==================== Callback path ====================

    async def handle_callback(
        self, callback: Callback, log: Log = logger
    ) -> CallbackOutcome:
        """
        Apply a verified approve/deny action.

        Raises:
            TransientDependencyError: If the authority or channel is unreachable.
        """
        request_id = callback.request_id
        current = await self.store.get(request_id)
        if current is None:
            log.warning(f"Callback for unknown request {request_id}")
            return CallbackOutcome.STALE

        record, _ = current
        if record.resolved:
            log.info(
                f"Callback for request {request_id} ignored, "
                f"already {record.resolution}"
            )
            return CallbackOutcome.STALE

        if not self.channel.is_actionable(record.handle):
            log.warning(f"Callback for non-actionable notification of {request_id}")
            return CallbackOutcome.NOT_ACTIONABLE

        final_state = callback.action.state
        delegator = self.channel.name
        if callback.actor:
            delegator = f"{self.channel.name}:{callback.actor}"

        try:
            await self.authority.set_request_state(request_id, final_state, delegator)
        except StateConflict as e:
            log.info(f"Authority refused {final_state.value} for {request_id}: {e}")
            return CallbackOutcome.CONFLICT
        except RequestNotFound:
            log.info(f"Request {request_id} is gone upstream, marking expired")
            final_state = RequestState.EXPIRED

        log.info(f"Request {request_id} {final_state.value} by {delegator}")

        # The authority's decision is final; a lost race here only means
        # someone else already updated the notification
        for _ in range(2):
            try:
                await self._resolve(request_id, final_state, delegator, log)
                return CallbackOutcome.SUCCESS
            except VersionConflict as e:
                log.info(f"Lost update race on request {request_id}: {e}")
        log.warning(f"Could not record resolution of {request_id} after retry")
        return CallbackOutcome.SUCCESS
