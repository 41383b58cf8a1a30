"""
Notification Channel Base - Abstract interface for notification providers.

A channel plugin posts a notification when an access request is created,
updates it once the request reaches a final state, and decodes the
provider's inbound callbacks. Exactly one channel is active per process,
selected by configuration.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from access import AccessRequest, RequestState
from db import PluginData
from plugins.base import Callback, load_json

# Opaque provider reference to a posted notification
Handle = Dict[str, str]


class NotificationChannel(ABC):
    """
    Abstract base class for notification channel plugins.

    Implementations raise TransientDependencyError for failures worth
    retrying (timeouts, rate limits, 5xx) and ChannelError for permanent
    provider errors.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'slack', 'jira')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def post(self, request: AccessRequest) -> Handle:
        """
        Post a notification for a new pending request.

        Args:
            request: The pending access request

        Returns:
            A handle identifying the posted notification.
        """
        pass

    @abstractmethod
    async def update(
        self, handle: Handle, final_state: RequestState, record: PluginData
    ) -> None:
        """
        Update a posted notification to show the request's final state.

        Args:
            handle: Handle returned by post()
            final_state: APPROVED, DENIED or EXPIRED
            record: Stored bookkeeping, used to re-render the notification
        """
        pass

    def is_actionable(self, handle: Handle) -> bool:
        """Whether humans may approve or deny through this notification."""
        return True

    async def decode_callback(
        self, body: bytes, content_type: str = ""
    ) -> Optional[Callback]:
        """
        Decode a verified callback body.

        Providers whose callbacks only name the changed object may call
        back into their API here to find the request, action and actor.
        The default accepts JSON ``{"action", "request_id", "user"}``.

        Raises:
            DecodeError: If the body can't be decoded into a Callback.
            TransientDependencyError: If a provider lookup fails transiently.
        """
        return Callback.from_dict(load_json(body))

    async def close(self) -> None:
        """Release any held connections."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Override this method in subclasses to define how the plugin
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}
