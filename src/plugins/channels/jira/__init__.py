"""
Jira Channel Plugin.

Tracks access requests as Jira issues.
"""

from plugins.channels.jira.channel import JiraChannel

__all__ = ["JiraChannel"]
