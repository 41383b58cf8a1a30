"""
Access requests and the upstream authority client.

The upstream authority owns the access request lifecycle. This module
models the requests it publishes and provides an aiohttp client for its
watch stream and state transition API.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from errors import (
    RequestNotFound,
    StateConflict,
    TransientDependencyError,
    UpstreamAuthError,
    UpstreamConnectionError,
)

logger = logging.getLogger(__name__)


class RequestState(Enum):
    """Lifecycle state of an access request, as owned by the authority."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestState.PENDING


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class AccessRequest:
    """Snapshot of an access request."""

    id: str
    user: str = ""
    roles: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    state: RequestState = RequestState.PENDING
    created: Optional[datetime] = None
    expires: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessRequest":
        """
        Build a request from the authority's JSON representation.

        Raises:
            ValueError: If the ID is missing or any field has the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError(f"access request is not an object: {data!r}")
        request_id = data.get("id")
        if not request_id or not isinstance(request_id, str):
            raise ValueError(f"invalid access request id: {request_id!r}")
        state = data.get("state", RequestState.PENDING.value)
        if not isinstance(state, str):
            raise ValueError(f"invalid access request state: {state!r}")
        roles = data.get("roles") or []
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise ValueError(f"invalid access request roles: {roles!r}")
        return cls(
            id=request_id,
            user=data.get("user", ""),
            roles=sorted(set(roles)),
            reason=data.get("reason") or None,
            state=RequestState(state.lower()),
            created=_parse_time(data.get("created")),
            expires=_parse_time(data.get("expires")),
        )


@dataclass
class Filter:
    """Restricts the watch stream to requests in a given state."""

    state: RequestState = RequestState.PENDING

    def to_params(self) -> Dict[str, str]:
        return {"state": self.state.value}


class RequestAuthority(ABC):
    """The system of record for access requests."""

    @abstractmethod
    def watch_requests(self, filter: Filter) -> AsyncIterator[Dict[str, Any]]:
        """
        Open a watch stream and yield raw operation dicts.

        Each dict has an ``op`` key (``init``, ``put`` or ``delete``) and,
        except for ``init``, a ``request`` key.

        Raises:
            UpstreamAuthError: If credentials are rejected.
            UpstreamConnectionError: If the stream fails.
        """

    @abstractmethod
    async def set_request_state(
        self, request_id: str, state: RequestState, delegator: str = ""
    ) -> None:
        """
        Transition a pending request to a terminal state.

        Raises:
            RequestNotFound: If the request no longer exists.
            StateConflict: If the request is no longer pending.
            TransientDependencyError: If the authority cannot be reached.
        """

    async def close(self) -> None:
        """Release any held connections."""


class AccessClient(RequestAuthority):
    """HTTP client for the upstream authority API."""

    def __init__(self, base_url: str, token: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers())
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def watch_requests(self, filter: Filter) -> AsyncIterator[Dict[str, Any]]:
        url = f"{self.base_url}/v1/access-requests/watch"
        # No total timeout on a long-lived stream, only on connect/idle reads
        timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=self.timeout, sock_read=None
        )
        session = self._get_session()

        try:
            async with session.get(
                url, params=filter.to_params(), timeout=timeout
            ) as resp:
                if resp.status in (401, 403):
                    raise UpstreamAuthError(
                        f"Upstream rejected credentials (HTTP {resp.status})"
                    )
                if resp.status != 200:
                    raise UpstreamConnectionError(
                        f"Watch request failed with HTTP {resp.status}"
                    )

                logger.info(f"Watch stream opened: {url} {filter.to_params()}")
                async for raw_line in resp.content:
                    line = raw_line.strip()
                    if not line:
                        continue
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning(
                            f"Skipping malformed watch line: {line[:200]!r}"
                        )

        except aiohttp.ClientError as e:
            raise UpstreamConnectionError(f"Watch stream interrupted: {e}") from e

        raise UpstreamConnectionError("Watch stream closed by upstream")

    async def set_request_state(
        self, request_id: str, state: RequestState, delegator: str = ""
    ) -> None:
        url = f"{self.base_url}/v1/access-requests/{request_id}/state"
        payload = {"state": state.value, "delegator": delegator}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        session = self._get_session()

        try:
            async with session.put(url, json=payload, timeout=timeout) as resp:
                if resp.status in (200, 204):
                    logger.info(
                        f"Set request {request_id} to {state.value} "
                        f"(delegator: {delegator or 'none'})"
                    )
                    return
                body = await resp.text()
                if resp.status in (401, 403):
                    raise UpstreamAuthError(
                        f"Upstream rejected credentials (HTTP {resp.status})"
                    )
                if resp.status == 404:
                    raise RequestNotFound(f"Access request {request_id} not found")
                if resp.status == 409:
                    raise StateConflict(
                        f"Access request {request_id} is no longer pending: {body}"
                    )
                if resp.status == 429 or resp.status >= 500:
                    raise TransientDependencyError(
                        f"Upstream returned HTTP {resp.status} for {request_id}"
                    )
                raise StateConflict(
                    f"Upstream refused transition for {request_id} "
                    f"(HTTP {resp.status}): {body}"
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientDependencyError(
                f"Upstream unreachable while updating {request_id}: {e}"
            ) from e
