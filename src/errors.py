"""
Exceptions shared across the access relay.

Recoverable, per-request errors (logged, request skipped, loop continues):
    - UpstreamConnectionError: watch stream dropped, reconnect with backoff
    - TransientDependencyError: channel or authority slow/unreachable
    - VersionConflict / AlreadyExists: lost a CAS race on plugin data
    - StateConflict: authority refused a transition
    - RequestNotFound: authority no longer knows the request

Fatal errors (process must stop):
    - UpstreamAuthError: credentials rejected by the upstream authority

Inbound webhook errors (always rejected, never retried):
    - AuthenticationError, DecodeError
"""


class AccessRelayError(Exception):
    """Base class for all access relay errors."""

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)


# Upstream authority


class UpstreamConnectionError(AccessRelayError):
    """The upstream watch stream could not be opened or was interrupted."""


class UpstreamAuthError(AccessRelayError):
    """The upstream authority rejected our credentials."""


class RequestNotFound(AccessRelayError):
    """The upstream authority has no request with the given ID."""


class StateConflict(AccessRelayError):
    """The upstream authority refused a state transition."""


class TransientDependencyError(AccessRelayError):
    """A channel or the authority is temporarily unreachable or too slow."""


class ChannelError(AccessRelayError):
    """A notification provider returned a permanent error."""


# Plugin data store


class PluginDataError(AccessRelayError):
    """Base class for plugin data store errors."""


class VersionConflict(PluginDataError):
    """The stored version no longer matches the version the caller read."""


class AlreadyExists(PluginDataError):
    """A plugin data record already exists for the request."""


# Webhook ingestion


class WebhookError(AccessRelayError):
    """Base class for inbound callback errors."""


class AuthenticationError(WebhookError):
    """The callback signature or timestamp failed verification."""


class DecodeError(WebhookError):
    """The callback payload could not be decoded into an action."""
