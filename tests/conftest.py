"""Pytest configuration and fixtures."""

import asyncio
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from access import AccessRequest, RequestAuthority, RequestState
from db import MemoryPluginDataStore, PluginData
from errors import RequestNotFound, StateConflict
from plugins.channels.base import Handle, NotificationChannel


class FakeChannel(NotificationChannel):
    """In-memory channel that records every post and update."""

    def __init__(self, actionable: bool = True):
        self.actionable = actionable
        self.posts: List[AccessRequest] = []
        self.updates: List[tuple] = []
        self.post_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.post_delay: float = 0.0

    @property
    def name(self) -> str:
        return "fake"

    @property
    def version(self) -> str:
        return "0.0.1"

    async def initialize(self, config: Dict[str, Any]) -> None:
        pass

    async def post(self, request: AccessRequest) -> Handle:
        if self.post_delay:
            await asyncio.sleep(self.post_delay)
        if self.post_error:
            raise self.post_error
        self.posts.append(request)
        return {"message_id": f"msg-{request.id}"}

    async def update(
        self, handle: Handle, final_state: RequestState, record: PluginData
    ) -> None:
        if self.update_error:
            raise self.update_error
        self.updates.append((handle, final_state))

    def is_actionable(self, handle: Handle) -> bool:
        return self.actionable


class FakeAuthority(RequestAuthority):
    """Authority that applies the first terminal transition and refuses later ones."""

    def __init__(self):
        self.states: Dict[str, RequestState] = {}
        self.calls: List[tuple] = []
        self.stream: List[Any] = []
        self.missing: set = set()
        self.delay: float = 0.0

    async def watch_requests(self, filter):
        for item in self.stream:
            if isinstance(item, Exception):
                raise item
            yield item

    async def set_request_state(
        self, request_id: str, state: RequestState, delegator: str = ""
    ) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.calls.append((request_id, state, delegator))
        if request_id in self.missing:
            raise RequestNotFound(f"Access request {request_id} not found")
        current = self.states.get(request_id, RequestState.PENDING)
        if current is not RequestState.PENDING:
            raise StateConflict(
                f"Access request {request_id} is already {current.value}"
            )
        self.states[request_id] = state

    async def close(self) -> None:
        pass


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def store():
    """Empty in-memory plugin data store."""
    return MemoryPluginDataStore()


@pytest.fixture
def channel():
    """Actionable fake channel."""
    return FakeChannel()


@pytest.fixture
def authority():
    """Fake upstream authority with every request pending."""
    return FakeAuthority()


@pytest.fixture
def sample_request():
    """A pending access request."""
    return AccessRequest(
        id="r1",
        user="alice",
        roles=["dba"],
        reason="incident 42",
        state=RequestState.PENDING,
    )


@pytest.fixture
def sample_request_data():
    """Upstream JSON for a pending access request."""
    return {
        "id": "r1",
        "user": "alice",
        "roles": ["dba"],
        "reason": "incident 42",
        "state": "pending",
        "created": "2024-01-01T00:00:00Z",
        "expires": "2024-01-01T01:00:00Z",
    }
