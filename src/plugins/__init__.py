"""
Plugin system for the access relay.

This package provides the plugin architecture for notification channels.
"""

from plugins.base import Action, Callback
from plugins.channels.base import Handle, NotificationChannel
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "Action",
    "Callback",
    "Handle",
    "NotificationChannel",
    "PluginRegistry",
    "get_registry",
]
