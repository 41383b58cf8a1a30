"""
Core plugin types and dataclasses.

This module contains shared types used across the plugin system.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from access import RequestState
from errors import DecodeError

logger = logging.getLogger(__name__)


class Action(Enum):
    """Actions a human can take on a notification."""

    APPROVE = "approve"
    DENY = "deny"

    @property
    def state(self) -> RequestState:
        """The terminal request state this action proposes."""
        if self is Action.APPROVE:
            return RequestState.APPROVED
        return RequestState.DENIED


@dataclass
class Callback:
    """A verified inbound action from a notification channel."""

    action: Action
    request_id: str
    actor: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Callback":
        """
        Build a callback from a ``{"action", "request_id", "user"}`` dict.

        Raises:
            DecodeError: If the action or target is missing or unknown.
        """
        if not isinstance(data, dict):
            raise DecodeError("Callback payload must be a JSON object")
        try:
            action = Action(str(data.get("action", "")).lower())
        except ValueError:
            raise DecodeError(f"Unknown callback action: {data.get('action')!r}")
        request_id = data.get("request_id")
        if not request_id or not isinstance(request_id, str):
            raise DecodeError("Callback payload has no request_id")
        return cls(
            action=action, request_id=request_id, actor=str(data.get("user") or "")
        )


def load_json(body: bytes) -> Any:
    """Parse a JSON request body, raising DecodeError on failure."""
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Malformed JSON payload: {e}")
