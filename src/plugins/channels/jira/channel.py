"""
Jira Channel Plugin - Implements NotificationChannel for Jira.

Each access request becomes an issue carrying the request ID as an issue
property. When the request resolves, the issue is moved through the
workflow transition whose target status matches the final state.

Humans decide by moving the issue to Approved or Denied; Jira reports
that through its issue-updated webhook, which is decoded back into an
approve or deny callback.
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional

import aiohttp

from access import AccessRequest, RequestState
from db import PluginData
from errors import ChannelError, DecodeError, TransientDependencyError
from plugins.base import Action, Callback, load_json
from plugins.channels.base import Handle, NotificationChannel

logger = logging.getLogger(__name__)

REQUEST_ID_PROPERTY_KEY = "accessRequestId"
ISSUE_UPDATED_EVENT = "jira:issue_updated"

STATUS_ACTIONS = {
    "approved": Action.APPROVE,
    "denied": Action.DENY,
}


class JiraChannel(NotificationChannel):
    """Notification channel backed by Jira issues."""

    def __init__(self):
        self.url: str = ""
        self.username: str = ""
        self.api_token: Optional[str] = None
        self.project: str = ""
        self.issue_type: str = "Task"
        self.timeout: float = 10.0

    @property
    def name(self) -> str:
        return "jira"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load Jira plugin configuration from environment variables."""
        return {
            "url": os.getenv("JIRA_URL", ""),
            "username": os.getenv("JIRA_USERNAME", ""),
            "api_token": os.getenv("JIRA_API_TOKEN", ""),
            "project": os.getenv("JIRA_PROJECT", ""),
            "issue_type": os.getenv("JIRA_ISSUE_TYPE", "Task"),
            "timeout": float(os.getenv("JIRA_TIMEOUT", "10")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the plugin with configuration."""
        self.url = config.get("url", self.url).rstrip("/")
        self.username = config.get("username", self.username)
        self.api_token = config.get("api_token")
        self.project = config.get("project", self.project)
        self.issue_type = config.get("issue_type", self.issue_type)
        self.timeout = float(config.get("timeout", self.timeout))

        if not self.url or not self.project:
            raise ValueError(
                "Jira URL and project must be set (JIRA_URL, JIRA_PROJECT)"
            )
        if not self.api_token:
            logger.warning("Jira API token not configured. Set JIRA_API_TOKEN.")

        logger.debug(f"Jira plugin initialized: url={self.url}, project={self.project}")

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send a request to the Jira REST API and return the JSON body."""
        url = f"{self.url}/rest/api/2/{path}"
        auth = aiohttp.BasicAuth(self.username, self.api_token or "")
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(auth=auth, timeout=timeout) as session:
                async with session.request(method, url, json=payload) as resp:
                    if resp.status == 429 or resp.status >= 500:
                        raise TransientDependencyError(
                            f"Jira {method} {path} returned HTTP {resp.status}"
                        )
                    if resp.status >= 400:
                        body = await resp.text()
                        raise ChannelError(
                            f"Jira {method} {path} failed "
                            f"(HTTP {resp.status}): {body}"
                        )
                    if resp.status == 204:
                        return {}
                    return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientDependencyError(f"Jira {method} {path} failed: {e}") from e

    async def post(self, request: AccessRequest) -> Handle:
        description = [
            f"User: {request.user}",
            f"Roles: {', '.join(request.roles)}",
        ]
        if request.reason:
            description.append(f"Reason: {request.reason}")

        issue = await self._request(
            "POST",
            "issue",
            {
                "fields": {
                    "project": {"key": self.project},
                    "issuetype": {"name": self.issue_type},
                    "summary": f"{request.user} requested {', '.join(request.roles)}",
                    "description": "\n".join(description),
                },
                "properties": [
                    {"key": REQUEST_ID_PROPERTY_KEY, "value": request.id},
                ],
            },
        )
        logger.info(f"Created Jira issue {issue['key']} for request {request.id}")
        return {"issue_id": issue["id"], "issue_key": issue["key"]}

    async def update(
        self, handle: Handle, final_state: RequestState, record: PluginData
    ) -> None:
        issue_id = handle["issue_id"]
        body = await self._request("GET", f"issue/{issue_id}/transitions")

        for transition in body.get("transitions", []):
            if transition.get("to", {}).get("name", "").lower() == final_state.value:
                await self._request(
                    "POST",
                    f"issue/{issue_id}/transitions",
                    {"transition": {"id": transition["id"]}},
                )
                logger.info(
                    f"Moved Jira issue {handle.get('issue_key', issue_id)} "
                    f"to {final_state.value}"
                )
                return

        # Already there, e.g. moved by another replica or by hand
        issue = await self._request("GET", f"issue/{issue_id}?fields=status")
        status = issue.get("fields", {}).get("status", {}).get("name", "")
        if status.lower() == final_state.value:
            return

        raise ChannelError(
            f"Jira issue {issue_id} has no transition to {final_state.value!r}"
        )

    async def decode_callback(
        self, body: bytes, content_type: str = ""
    ) -> Optional[Callback]:
        """
        Decode a Jira ``jira:issue_updated`` webhook.

        Jira only says which issue changed, so the issue is fetched with
        its changelog and request ID property. Moving an issue to
        Approved or Denied is the approve or deny action; the actor is
        whoever made that status change. Returns None for updates that
        don't decide a request.
        """
        payload = load_json(body)
        if not isinstance(payload, dict):
            raise DecodeError("Jira webhook payload must be a JSON object")

        event = payload.get("webhookEvent")
        if event != ISSUE_UPDATED_EVENT:
            logger.debug(f"Ignoring Jira webhook event {event!r}")
            return None

        issue_ref = payload.get("issue")
        if not isinstance(issue_ref, dict):
            raise DecodeError("Jira webhook has no issue")
        issue_id = issue_ref.get("id")
        if not issue_id or not isinstance(issue_id, str):
            raise DecodeError("Jira webhook issue has no id")

        issue = await self.get_issue(issue_id)

        request_id = (issue.get("properties") or {}).get(REQUEST_ID_PROPERTY_KEY)
        if not isinstance(request_id, str) or not request_id:
            logger.debug(f"Jira issue {issue_id} is not an access request")
            return None

        status = ((issue.get("fields") or {}).get("status") or {}).get("name", "")
        action = STATUS_ACTIONS.get(status.lower())
        if action is None:
            logger.debug(f"Jira issue {issue_id} moved to {status!r}, nothing to do")
            return None

        author = last_status_change_by(issue, status.lower())
        if author is None:
            raise DecodeError(
                f"Cannot find a {status.lower()!r} status change in the "
                f"changelog of Jira issue {issue_id}"
            )
        actor = (
            author.get("emailAddress")
            or author.get("name")
            or author.get("accountId")
            or author.get("displayName")
            or ""
        )
        return Callback(action=action, request_id=request_id, actor=actor)

    async def get_issue(self, issue_id: str) -> Dict[str, Any]:
        """Fetch an issue with its changelog and request ID property."""
        return await self._request(
            "GET",
            f"issue/{issue_id}?expand=changelog,transitions"
            f"&properties={REQUEST_ID_PROPERTY_KEY}",
        )


def last_status_change_by(
    issue: Dict[str, Any], status: str
) -> Optional[Dict[str, Any]]:
    """Return the author of the changelog entry that set ``status``."""
    changelog = issue.get("changelog")
    if not isinstance(changelog, dict):
        return None
    for entry in changelog.get("histories") or []:
        for item in entry.get("items") or []:
            if (
                item.get("fieldtype") == "jira"
                and item.get("field") == "status"
                and str(item.get("toString", "")).lower() == status
            ):
                return entry.get("author") or {}
    return None
