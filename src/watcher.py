"""
Event Watcher - reconnecting consumer of the upstream watch stream.

Turns the authority's raw watch stream into typed events and survives
stream failures by reconnecting with exponential backoff. There is no
resume cursor: after a reconnect the authority re-sends a put for every
matching request, so consumers must treat every put as possibly a
duplicate.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from access import AccessRequest, Filter, RequestAuthority
from errors import UpstreamAuthError, UpstreamConnectionError

logger = logging.getLogger(__name__)


def compute_backoff(
    attempt: int, base_delay: float, max_delay: float, jitter_factor: float = 0.1
) -> float:
    """
    Exponential backoff with jitter, capped at max_delay.

    Args:
        attempt: Zero-based retry attempt number
        base_delay: Delay for the first retry, in seconds
        max_delay: Upper bound before jitter, in seconds
        jitter_factor: Jitter of ±X applied to the delay (0.1 = ±10%)
    """
    delay = min(base_delay * (2 ** min(attempt, 10)), max_delay)
    return max(0.0, delay * (1 + (random.random() * 2 - 1) * jitter_factor))


class EventType(Enum):
    """Types of watch events."""

    INIT = "init"
    PUT = "put"
    DELETE = "delete"


@dataclass
class WatchEvent:
    """
    A single operation from the watch stream.

    ``request`` is None for INIT. For DELETE only ``request_id`` is set.
    """

    event_type: EventType
    request_id: str = ""
    request: Optional[AccessRequest] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WatchEvent":
        """
        Create an event from a raw watch stream operation.

        Raises:
            ValueError: If the operation or its request is malformed.
        """
        if not isinstance(data, dict):
            raise ValueError(f"watch event is not an object: {data!r}")
        event_type = EventType(str(data.get("op", "")).lower())
        if event_type is EventType.INIT:
            return cls(event_type=event_type)

        payload = data.get("request") or {}
        if not isinstance(payload, dict):
            raise ValueError(f"watch event request is not an object: {payload!r}")
        if event_type is EventType.DELETE:
            request_id = payload.get("id")
            if not request_id or not isinstance(request_id, str):
                raise ValueError(f"invalid delete request id: {request_id!r}")
            return cls(event_type=event_type, request_id=request_id)

        request = AccessRequest.from_dict(payload)
        return cls(event_type=event_type, request_id=request.id, request=request)


@dataclass
class WatcherConfig:
    """Reconnect behaviour for the watcher."""

    backoff_base_delay: float = 1.0
    backoff_max_delay: float = 60.0
    backoff_jitter_factor: float = 0.1


class Watcher:
    """
    Reconnecting watcher for pending access requests.

    Iterating ``events()`` yields WatchEvents forever, reconnecting on any
    stream failure. Only an UpstreamAuthError escapes the iterator.
    """

    def __init__(
        self,
        authority: RequestAuthority,
        filter: Optional[Filter] = None,
        config: Optional[WatcherConfig] = None,
    ):
        self.authority = authority
        self.filter = filter or Filter()
        self.config = config or WatcherConfig()
        self._primed = asyncio.Event()
        self._stopping = False

    @property
    def ready(self) -> bool:
        """True once the current stream has delivered INIT."""
        return self._primed.is_set()

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait until the watcher is primed, returning False on timeout."""
        try:
            await asyncio.wait_for(self._primed.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def stop(self) -> None:
        """Stop reconnecting once the current stream ends."""
        self._stopping = True

    async def events(self) -> AsyncIterator[WatchEvent]:
        attempt = 0
        while not self._stopping:
            try:
                async for raw in self.authority.watch_requests(self.filter):
                    try:
                        event = WatchEvent.from_dict(raw)
                    except (ValueError, TypeError, AttributeError) as e:
                        logger.warning(f"Ignoring malformed watch event {raw!r}: {e}")
                        continue

                    if event.event_type is EventType.INIT:
                        attempt = 0
                        self._primed.set()
                        logger.info("Watcher initialized")
                    yield event

                    if self._stopping:
                        return

            except UpstreamAuthError:
                self._primed.clear()
                logger.error("Upstream authority rejected watcher credentials")
                raise
            except (UpstreamConnectionError, asyncio.TimeoutError) as e:
                logger.warning(f"Watch stream lost: {e}")
            except Exception as e:
                logger.error(f"Unexpected watch stream error: {e}", exc_info=True)

            self._primed.clear()
            if self._stopping:
                break

            delay = compute_backoff(
                attempt,
                self.config.backoff_base_delay,
                self.config.backoff_max_delay,
                self.config.backoff_jitter_factor,
            )
            attempt += 1
            logger.info(f"Reconnecting watcher in {delay:.1f}s (attempt {attempt})")
            await asyncio.sleep(delay)
