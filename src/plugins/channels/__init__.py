"""
Notification channel plugins.

Channel plugins deliver notifications to one provider (chat, ticketing,
on-call). Third-party channels are discovered via Python entry points
(group: 'access_relay.channels').
"""

from plugins.channels.base import Handle, NotificationChannel

__all__ = ["Handle", "NotificationChannel"]
