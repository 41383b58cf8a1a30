"""Unit tests for watcher.py - Reconnecting watch stream consumer."""

import pytest
from unittest.mock import AsyncMock, patch

from access import RequestAuthority, RequestState
from errors import UpstreamAuthError, UpstreamConnectionError
from watcher import (
    EventType,
    WatchEvent,
    Watcher,
    WatcherConfig,
    compute_backoff,
)


class ScriptedAuthority(RequestAuthority):
    """Authority whose successive watch streams are scripted in advance."""

    def __init__(self, streams):
        self.streams = list(streams)
        self.opened = 0

    async def watch_requests(self, filter):
        self.opened += 1
        items = self.streams.pop(0) if self.streams else []
        for item in items:
            if isinstance(item, Exception):
                raise item
            yield item
        raise UpstreamConnectionError("stream closed")

    async def set_request_state(self, request_id, state, delegator=""):
        pass


def init_op():
    return {"op": "init"}


def put_op(request_id, state="pending"):
    return {
        "op": "put",
        "request": {"id": request_id, "user": "alice", "roles": ["dba"], "state": state},
    }


def delete_op(request_id):
    return {"op": "delete", "request": {"id": request_id}}


async def collect(watcher, count):
    events = []
    async for event in watcher.events():
        events.append(event)
        if len(events) == count:
            watcher.stop()
    return events


class TestComputeBackoff:
    """Tests for exponential backoff."""

    def test_exponential_growth(self):
        assert compute_backoff(0, 1.0, 60.0, 0) == 1.0
        assert compute_backoff(1, 1.0, 60.0, 0) == 2.0
        assert compute_backoff(3, 1.0, 60.0, 0) == 8.0

    def test_capped(self):
        assert compute_backoff(20, 1.0, 60.0, 0) == 60.0

    def test_jitter_bounds(self):
        for _ in range(100):
            delay = compute_backoff(2, 1.0, 60.0, 0.1)
            assert 3.6 <= delay <= 4.4


class TestWatchEvent:
    """Tests for WatchEvent parsing."""

    def test_init(self):
        event = WatchEvent.from_dict(init_op())
        assert event.event_type is EventType.INIT
        assert event.request is None

    def test_put(self):
        event = WatchEvent.from_dict(put_op("r1"))
        assert event.event_type is EventType.PUT
        assert event.request_id == "r1"
        assert event.request.state is RequestState.PENDING
        assert event.request.roles == ["dba"]

    def test_delete(self):
        event = WatchEvent.from_dict(delete_op("r1"))
        assert event.event_type is EventType.DELETE
        assert event.request_id == "r1"
        assert event.request is None

    def test_unknown_op(self):
        with pytest.raises(ValueError):
            WatchEvent.from_dict({"op": "patch"})

    def test_delete_without_id(self):
        with pytest.raises(ValueError):
            WatchEvent.from_dict({"op": "delete", "request": {}})

    def test_put_unknown_state(self):
        with pytest.raises(ValueError):
            WatchEvent.from_dict(put_op("r1", state="escalated"))


class TestWatcher:
    """Tests for the Watcher."""

    @pytest.mark.asyncio
    async def test_yields_events_and_primes(self):
        authority = ScriptedAuthority([[init_op(), put_op("r1"), delete_op("r1")]])
        watcher = Watcher(authority)
        assert watcher.ready is False

        events = await collect(watcher, 3)

        assert [e.event_type for e in events] == [
            EventType.INIT,
            EventType.PUT,
            EventType.DELETE,
        ]
        assert watcher.ready is True

    @pytest.mark.asyncio
    async def test_reconnects_after_stream_loss(self):
        """Test a dropped stream is reopened and replayed puts come through."""
        authority = ScriptedAuthority(
            [
                [init_op(), put_op("r1")],
                [init_op(), put_op("r1"), put_op("r2")],
            ]
        )
        watcher = Watcher(authority, config=WatcherConfig(backoff_base_delay=0))

        with patch("watcher.asyncio.sleep", new_callable=AsyncMock) as sleep:
            events = await collect(watcher, 5)

        assert authority.opened == 2
        sleep.assert_called_once()
        assert [e.request_id for e in events if e.event_type is EventType.PUT] == [
            "r1",
            "r1",
            "r2",
        ]

    @pytest.mark.asyncio
    async def test_not_ready_while_reconnecting(self):
        authority = ScriptedAuthority([[init_op()], [init_op()]])
        watcher = Watcher(authority)
        readiness = []

        async def record_sleep(delay):
            readiness.append(watcher.ready)

        with patch("watcher.asyncio.sleep", side_effect=record_sleep):
            await collect(watcher, 2)

        assert readiness == [False]

    @pytest.mark.asyncio
    async def test_backoff_grows_until_init(self):
        """Test consecutive failures back off and INIT resets the attempt count."""
        authority = ScriptedAuthority(
            [[UpstreamConnectionError("refused")], [], [init_op()], [init_op()]]
        )
        watcher = Watcher(
            authority,
            config=WatcherConfig(
                backoff_base_delay=1.0, backoff_max_delay=60.0, backoff_jitter_factor=0
            ),
        )

        with patch("watcher.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await collect(watcher, 2)

        delays = [c.args[0] for c in sleep.call_args_list]
        assert delays == [1.0, 2.0, 1.0]

    @pytest.mark.asyncio
    async def test_malformed_events_skipped(self):
        authority = ScriptedAuthority(
            [[init_op(), {"op": "bogus"}, {"op": "put", "request": {}}, put_op("r1")]]
        )
        watcher = Watcher(authority)

        events = await collect(watcher, 2)

        assert [e.event_type for e in events] == [EventType.INIT, EventType.PUT]

    @pytest.mark.asyncio
    async def test_unexpected_error_reconnects(self):
        authority = ScriptedAuthority([[RuntimeError("boom")], [init_op()]])
        watcher = Watcher(authority)

        with patch("watcher.asyncio.sleep", new_callable=AsyncMock):
            events = await collect(watcher, 1)

        assert events[0].event_type is EventType.INIT
        assert authority.opened == 2

    @pytest.mark.asyncio
    async def test_auth_error_is_fatal(self):
        authority = ScriptedAuthority(
            [[init_op(), UpstreamAuthError("token revoked")]]
        )
        watcher = Watcher(authority)

        with pytest.raises(UpstreamAuthError):
            await collect(watcher, 10)

        assert watcher.ready is False

    @pytest.mark.asyncio
    async def test_wait_ready_timeout(self):
        watcher = Watcher(ScriptedAuthority([]))
        assert await watcher.wait_ready(timeout=0.01) is False

    @pytest.mark.asyncio
    async def test_stop_before_start(self):
        authority = ScriptedAuthority([[init_op()]])
        watcher = Watcher(authority)
        watcher.stop()

        events = [e async for e in watcher.events()]

        assert events == []
        assert authority.opened == 0

    @pytest.mark.asyncio
    async def test_null_state_skipped_without_reconnect(self):
        bad = {"op": "put", "request": {"id": "bad", "state": None}}
        authority = ScriptedAuthority([[init_op(), bad, put_op("good")]])
        watcher = Watcher(authority)

        events = await collect(watcher, 2)

        assert [e.request_id for e in events] == ["", "good"]
        assert authority.opened == 1

    @pytest.mark.asyncio
    async def test_wrongly_typed_records_skipped(self):
        authority = ScriptedAuthority(
            [
                [
                    init_op(),
                    {"op": "put", "request": "r1"},
                    {"op": "put", "request": {"id": 123, "state": "pending"}},
                    {"op": "delete", "request": {"id": 7}},
                    {"op": "put", "request": {"id": "r2", "roles": "dba"}},
                    "garbage",
                    put_op("good"),
                ]
            ]
        )
        watcher = Watcher(authority)

        events = await collect(watcher, 2)

        assert [e.request_id for e in events] == ["", "good"]
        assert authority.opened == 1


class TestWatchEventTypes:
    """Tests for type checking of upstream records."""

    @pytest.mark.parametrize(
        "raw",
        [
            {"op": "put", "request": {"id": 123}},
            {"op": "put", "request": {"id": "r1", "state": None}},
            {"op": "put", "request": ["r1"]},
            {"op": "delete", "request": {"id": 123}},
            ["op", "put"],
        ],
    )
    def test_wrong_types_raise_value_error(self, raw):
        with pytest.raises(ValueError):
            WatchEvent.from_dict(raw)
