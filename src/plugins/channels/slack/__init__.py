"""
Slack Channel Plugin.

Posts interactive Block Kit messages and decodes their button callbacks.
"""

from plugins.channels.slack.channel import SlackChannel

__all__ = ["SlackChannel"]
