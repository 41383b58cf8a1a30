"""
Slack Channel Plugin - Implements NotificationChannel for Slack.

Posts one Block Kit message per access request with Approve / Deny
buttons, and rewrites the same message once the request is resolved.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import aiohttp

from access import AccessRequest, RequestState
from db import PluginData
from errors import ChannelError, DecodeError, TransientDependencyError
from plugins.base import Action, Callback
from plugins.channels.base import Handle, NotificationChannel

logger = logging.getLogger(__name__)

ACTIONS_BLOCK_ID = "approve_or_deny"
APPROVE_ACTION_ID = "approve_request"
DENY_ACTION_ID = "deny_request"

ACTION_IDS = {
    APPROVE_ACTION_ID: Action.APPROVE,
    DENY_ACTION_ID: Action.DENY,
}

STATUS_TEXT = {
    RequestState.PENDING: ":hourglass_flowing_sand: PENDING",
    RequestState.APPROVED: ":white_check_mark: APPROVED",
    RequestState.DENIED: ":x: DENIED",
    RequestState.EXPIRED: ":hourglass: EXPIRED",
}

# Slack errors that go away on their own
TRANSIENT_ERRORS = {
    "ratelimited",
    "service_unavailable",
    "request_timeout",
    "fatal_error",
}


class SlackChannel(NotificationChannel):
    """
    Notification channel posting to a single Slack channel.

    In notify-only mode messages carry no buttons and callbacks are never
    actionable.
    """

    def __init__(self):
        self.token: Optional[str] = None
        self.channel: str = ""
        self.api_base_url: str = "https://slack.com/api"
        self.notify_only: bool = False
        self.timeout: float = 5.0

    @property
    def name(self) -> str:
        return "slack"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load Slack plugin configuration from environment variables."""
        return {
            "token": os.getenv("SLACK_TOKEN", ""),
            "channel": os.getenv("SLACK_CHANNEL", ""),
            "api_base_url": os.getenv("SLACK_API_URL", "https://slack.com/api"),
            "notify_only": os.getenv("SLACK_NOTIFY_ONLY", "false").lower() == "true",
            "timeout": float(os.getenv("SLACK_TIMEOUT", "5")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the plugin with configuration."""
        self.token = config.get("token")
        self.channel = config.get("channel", self.channel)
        self.api_base_url = config.get("api_base_url", self.api_base_url).rstrip("/")
        self.notify_only = bool(config.get("notify_only", self.notify_only))
        self.timeout = float(config.get("timeout", self.timeout))

        if not self.token:
            logger.warning("Slack token not configured. Set SLACK_TOKEN.")
        if not self.channel:
            raise ValueError("Slack channel not configured. Set SLACK_CHANNEL.")

        logger.debug(
            f"Slack plugin initialized: channel={self.channel}, "
            f"notify_only={self.notify_only}"
        )

    def _blocks(
        self,
        request_id: str,
        user: str,
        roles: List[str],
        reason: Optional[str],
        state: RequestState,
    ) -> List[Dict[str, Any]]:
        fields = [
            f"*Request ID*: {request_id}",
            f"*User*: {user}",
            f"*Role(s)*: {', '.join(roles)}",
        ]
        if reason:
            fields.append(f"*Reason*: {reason}")
        fields.append(f"*Status*: {STATUS_TEXT[state]}")

        blocks: List[Dict[str, Any]] = [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "You have a new role request:"},
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "\n".join(fields)},
            },
        ]

        if state is RequestState.PENDING and not self.notify_only:
            blocks.append(
                {
                    "type": "actions",
                    "block_id": ACTIONS_BLOCK_ID,
                    "elements": [
                        {
                            "type": "button",
                            "action_id": APPROVE_ACTION_ID,
                            "text": {"type": "plain_text", "text": "Approve"},
                            "style": "primary",
                            "value": request_id,
                        },
                        {
                            "type": "button",
                            "action_id": DENY_ACTION_ID,
                            "text": {"type": "plain_text", "text": "Deny"},
                            "style": "danger",
                            "value": request_id,
                        },
                    ],
                }
            )
        return blocks

    async def _call(
        self, method: str, payload: Dict[str, Any], form: bool = False
    ) -> Dict[str, Any]:
        """
        Call a Slack Web API method and return the decoded response.

        Pass ``form=True`` for methods that take form-encoded arguments,
        such as ``users.info``.
        """
        url = f"{self.api_base_url}/{method}"
        headers = {"Authorization": f"Bearer {self.token}"}
        if form:
            body_args = {"data": payload}
        else:
            headers["Content-Type"] = "application/json; charset=utf-8"
            body_args = {"json": payload}
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, headers=headers, **body_args) as resp:
                    if resp.status == 429 or resp.status >= 500:
                        raise TransientDependencyError(
                            f"Slack {method} returned HTTP {resp.status}"
                        )
                    body = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientDependencyError(f"Slack {method} failed: {e}") from e

        if not body.get("ok"):
            error = body.get("error", "unknown_error")
            if error in TRANSIENT_ERRORS:
                raise TransientDependencyError(f"Slack {method} failed: {error}")
            raise ChannelError(f"Slack {method} failed: {error}")
        return body

    async def post(self, request: AccessRequest) -> Handle:
        body = await self._call(
            "chat.postMessage",
            {
                "channel": self.channel,
                "text": f"New role request {request.id} from {request.user}",
                "blocks": self._blocks(
                    request.id,
                    request.user,
                    request.roles,
                    request.reason,
                    RequestState.PENDING,
                ),
            },
        )
        logger.info(f"Posted Slack message for request {request.id}")
        return {"channel_id": body["channel"], "timestamp": body["ts"]}

    async def update(
        self, handle: Handle, final_state: RequestState, record: PluginData
    ) -> None:
        await self._call(
            "chat.update",
            {
                "channel": handle["channel_id"],
                "ts": handle["timestamp"],
                "text": f"Role request {final_state.value}",
                "blocks": self._blocks(
                    record.request_id,
                    record.user,
                    record.roles,
                    record.reason,
                    final_state,
                ),
            },
        )
        logger.info(
            f"Updated Slack message {handle['timestamp']} to {final_state.value}"
        )

    def is_actionable(self, handle: Handle) -> bool:
        return not self.notify_only

    async def decode_callback(self, body: bytes, content_type: str = "") -> Callback:
        """
        Decode an interactive ``block_actions`` callback.

        The actor is the clicking user's email address when Slack will
        tell us, otherwise their username or ID.
        """
        try:
            form = parse_qs(body.decode("utf-8"), strict_parsing=True)
            payload = json.loads(form["payload"][0])
        except (UnicodeDecodeError, ValueError, KeyError) as e:
            raise DecodeError(f"Malformed Slack interaction payload: {e}")
        if not isinstance(payload, dict):
            raise DecodeError("Slack interaction payload must be a JSON object")

        actions = payload.get("actions")
        if not isinstance(actions, list) or not actions:
            raise DecodeError("Slack interaction payload has no actions")
        if not isinstance(actions[0], dict):
            raise DecodeError("Slack interaction action must be a JSON object")

        action = ACTION_IDS.get(actions[0].get("action_id"))
        if action is None:
            raise DecodeError(
                f"Unknown Slack action_id: {actions[0].get('action_id')!r}"
            )
        request_id = actions[0].get("value")
        if not request_id or not isinstance(request_id, str):
            raise DecodeError("Slack action has no request ID value")

        user = payload.get("user") or {}
        if not isinstance(user, dict):
            raise DecodeError("Slack interaction user must be a JSON object")

        actor = await self._lookup_email(user.get("id"))
        if not actor:
            actor = user.get("username") or user.get("name") or user.get("id") or ""
        return Callback(action=action, request_id=request_id, actor=str(actor))

    async def _lookup_email(self, user_id: Optional[str]) -> Optional[str]:
        """Resolve a Slack user ID to an email address via users.info."""
        if not user_id or not isinstance(user_id, str):
            return None
        try:
            body = await self._call("users.info", {"user": user_id}, form=True)
        except ChannelError as e:
            # e.g. user_not_found
            logger.warning(f"Could not look up Slack user {user_id}: {e}")
            return None
        profile = (body.get("user") or {}).get("profile") or {}
        return profile.get("email") or None
