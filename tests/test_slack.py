"""Unit tests for the Slack channel plugin."""

import json
import os
from urllib.parse import urlencode

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from access import AccessRequest, RequestState
from db import PluginData
from errors import ChannelError, DecodeError, TransientDependencyError
from plugins.base import Action
from plugins.channels.slack import SlackChannel
from plugins.channels.slack.channel import (
    ACTIONS_BLOCK_ID,
    APPROVE_ACTION_ID,
    DENY_ACTION_ID,
)


def mock_session(status=200, body=None, error=None):
    """Patch aiohttp.ClientSession so a single POST returns status/body."""
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=body or {})

    session = MagicMock()
    if error:
        session.post.side_effect = error
    else:
        session.post.return_value.__aenter__.return_value = resp

    patcher = patch("plugins.channels.slack.channel.aiohttp.ClientSession")
    session_cls = patcher.start()
    session_cls.return_value.__aenter__.return_value = session
    return patcher, session


def interaction(action_id=APPROVE_ACTION_ID, value="r1", user=None):
    payload = {
        "type": "block_actions",
        "user": user if user is not None else {"id": "U1", "username": "bob"},
        "actions": [
            {"action_id": action_id, "block_id": ACTIONS_BLOCK_ID, "value": value}
        ],
    }
    return urlencode({"payload": json.dumps(payload)}).encode()


@pytest.fixture
def slack():
    plugin = SlackChannel()
    plugin.token = "xoxb-test"
    plugin.channel = "C123"
    return plugin


@pytest.fixture
def request_r1():
    return AccessRequest(
        id="r1", user="alice", roles=["admin", "dba"], reason="incident 42"
    )


class TestSlackConfig:
    """Tests for Slack plugin configuration."""

    def test_name_and_version(self):
        plugin = SlackChannel()
        assert plugin.name == "slack"
        assert plugin.version == "1.0.0"

    def test_load_config_from_env(self):
        """Test configuration is read from SLACK_* variables."""
        env_vars = {
            "SLACK_TOKEN": "xoxb-env",
            "SLACK_CHANNEL": "C999",
            "SLACK_NOTIFY_ONLY": "true",
            "SLACK_TIMEOUT": "3",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            config = SlackChannel.load_config_from_env()
        assert config["token"] == "xoxb-env"
        assert config["channel"] == "C999"
        assert config["notify_only"] is True
        assert config["timeout"] == 3.0
        assert config["api_base_url"] == "https://slack.com/api"

    @pytest.mark.asyncio
    async def test_initialize_requires_channel(self):
        """Test a missing channel is a configuration error."""
        with pytest.raises(ValueError, match="SLACK_CHANNEL"):
            await SlackChannel().initialize({"token": "xoxb"})

    @pytest.mark.asyncio
    async def test_initialize_strips_api_url(self):
        plugin = SlackChannel()
        await plugin.initialize(
            {"channel": "C1", "api_base_url": "http://slack.local/api/"}
        )
        assert plugin.api_base_url == "http://slack.local/api"


class TestSlackBlocks:
    """Tests for message rendering."""

    def test_pending_has_buttons(self, slack):
        blocks = slack._blocks("r1", "alice", ["dba"], "why", RequestState.PENDING)
        actions = blocks[-1]
        assert actions["block_id"] == ACTIONS_BLOCK_ID
        assert [e["action_id"] for e in actions["elements"]] == [
            APPROVE_ACTION_ID,
            DENY_ACTION_ID,
        ]
        assert all(e["value"] == "r1" for e in actions["elements"])

    def test_resolved_has_no_buttons(self, slack):
        blocks = slack._blocks("r1", "alice", ["dba"], None, RequestState.APPROVED)
        assert all(b["type"] == "section" for b in blocks)
        assert "APPROVED" in blocks[1]["text"]["text"]
        assert "Reason" not in blocks[1]["text"]["text"]

    def test_notify_only_has_no_buttons(self, slack):
        slack.notify_only = True
        blocks = slack._blocks("r1", "alice", ["dba"], None, RequestState.PENDING)
        assert all(b["type"] == "section" for b in blocks)


class TestSlackApi:
    """Tests for Slack Web API calls."""

    @pytest.mark.asyncio
    async def test_post_returns_handle(self, slack, request_r1):
        patcher, session = mock_session(
            body={"ok": True, "channel": "C123", "ts": "1700000000.000100"}
        )
        try:
            handle = await slack.post(request_r1)
        finally:
            patcher.stop()

        assert handle == {"channel_id": "C123", "timestamp": "1700000000.000100"}
        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        headers = session.post.call_args.kwargs["headers"]
        assert url == "https://slack.com/api/chat.postMessage"
        assert payload["channel"] == "C123"
        assert headers["Authorization"] == "Bearer xoxb-test"

    @pytest.mark.asyncio
    async def test_update_rewrites_message(self, slack):
        record = PluginData(
            request_id="r1", user="alice", roles=["dba"], reason="incident 42"
        )
        handle = {"channel_id": "C123", "timestamp": "1.2"}
        patcher, session = mock_session(body={"ok": True})
        try:
            await slack.update(handle, RequestState.EXPIRED, record)
        finally:
            patcher.stop()

        payload = session.post.call_args.kwargs["json"]
        assert session.post.call_args.args[0].endswith("/chat.update")
        assert payload["channel"] == "C123"
        assert payload["ts"] == "1.2"
        assert "EXPIRED" in payload["blocks"][1]["text"]["text"]
        assert "r1" in payload["blocks"][1]["text"]["text"]

    @pytest.mark.asyncio
    async def test_rate_limited_is_transient(self, slack):
        patcher, _ = mock_session(status=429)
        try:
            with pytest.raises(TransientDependencyError):
                await slack._call("chat.postMessage", {})
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, slack):
        patcher, _ = mock_session(status=503)
        try:
            with pytest.raises(TransientDependencyError):
                await slack._call("chat.postMessage", {})
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_client_error_is_transient(self, slack):
        patcher, _ = mock_session(error=aiohttp.ClientConnectionError("refused"))
        try:
            with pytest.raises(TransientDependencyError):
                await slack._call("chat.postMessage", {})
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_ratelimited_error_body_is_transient(self, slack):
        patcher, _ = mock_session(body={"ok": False, "error": "ratelimited"})
        try:
            with pytest.raises(TransientDependencyError):
                await slack._call("chat.postMessage", {})
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_permanent_error_body(self, slack):
        patcher, _ = mock_session(body={"ok": False, "error": "channel_not_found"})
        try:
            with pytest.raises(ChannelError, match="channel_not_found"):
                await slack._call("chat.postMessage", {})
        finally:
            patcher.stop()


def form_payload(payload):
    return urlencode({"payload": json.dumps(payload)}).encode()


def users_info(email="bob@example.com"):
    return AsyncMock(
        return_value={"ok": True, "user": {"id": "U1", "profile": {"email": email}}}
    )


class TestSlackCallbacks:
    """Tests for interactive callback decoding."""

    @pytest.mark.asyncio
    async def test_decode_approve_resolves_email(self, slack):
        slack._call = users_info()

        callback = await slack.decode_callback(interaction())

        assert callback.action is Action.APPROVE
        assert callback.request_id == "r1"
        assert callback.actor == "bob@example.com"
        slack._call.assert_called_once_with("users.info", {"user": "U1"}, form=True)

    @pytest.mark.asyncio
    async def test_decode_falls_back_to_username(self, slack):
        """Test a user without a visible email is named by username."""
        slack._call = users_info(email="")

        callback = await slack.decode_callback(interaction())

        assert callback.actor == "bob"

    @pytest.mark.asyncio
    async def test_decode_lookup_failure_falls_back(self, slack):
        slack._call = AsyncMock(side_effect=ChannelError("user_not_found"))

        callback = await slack.decode_callback(
            interaction(DENY_ACTION_ID, "r7", user={"id": "U42"})
        )

        assert callback.action is Action.DENY
        assert callback.request_id == "r7"
        assert callback.actor == "U42"

    @pytest.mark.asyncio
    async def test_decode_lookup_transient_error_propagates(self, slack):
        slack._call = AsyncMock(side_effect=TransientDependencyError("ratelimited"))

        with pytest.raises(TransientDependencyError):
            await slack.decode_callback(interaction())

    @pytest.mark.asyncio
    async def test_users_info_is_form_encoded(self, slack):
        patcher, session = mock_session(
            body={"ok": True, "user": {"profile": {"email": "bob@example.com"}}}
        )
        try:
            email = await slack._lookup_email("U1")
        finally:
            patcher.stop()

        assert email == "bob@example.com"
        assert session.post.call_args.args[0].endswith("/users.info")
        assert session.post.call_args.kwargs["data"] == {"user": "U1"}
        assert "json" not in session.post.call_args.kwargs

    @pytest.mark.asyncio
    async def test_decode_not_form_encoded(self, slack):
        with pytest.raises(DecodeError):
            await slack.decode_callback(b'{"action": "approve"}')

    @pytest.mark.asyncio
    async def test_decode_payload_not_json(self, slack):
        with pytest.raises(DecodeError):
            await slack.decode_callback(urlencode({"payload": "{nope"}).encode())

    @pytest.mark.asyncio
    async def test_decode_unknown_action(self, slack):
        with pytest.raises(DecodeError, match="action_id"):
            await slack.decode_callback(interaction("escalate"))

    @pytest.mark.asyncio
    async def test_decode_missing_value(self, slack):
        with pytest.raises(DecodeError):
            await slack.decode_callback(interaction(value=""))

    @pytest.mark.asyncio
    async def test_decode_no_actions(self, slack):
        body = form_payload({"type": "block_actions"})
        with pytest.raises(DecodeError, match="no actions"):
            await slack.decode_callback(body)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            ["block_actions"],
            {"actions": {"x": 1}, "user": {"id": "U1"}},
            {"actions": [], "user": {"id": "U1"}},
            {"actions": ["approve_request"], "user": {"id": "U1"}},
            {
                "actions": [{"action_id": APPROVE_ACTION_ID, "value": 42}],
                "user": {"id": "U1"},
            },
            {
                "actions": [{"action_id": APPROVE_ACTION_ID, "value": "r1"}],
                "user": "U1",
            },
        ],
    )
    async def test_decode_wrongly_shaped_payload(self, slack, payload):
        """Test payloads of the wrong shape are decode errors, not crashes."""
        slack._call = users_info()
        with pytest.raises(DecodeError):
            await slack.decode_callback(form_payload(payload))

    def test_is_actionable(self, slack):
        assert slack.is_actionable({}) is True
        slack.notify_only = True
        assert slack.is_actionable({}) is False
