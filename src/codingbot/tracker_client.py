"""Ticket-tracker API client.

Mirrors session activities onto the tracker's agent-session thread and
moves issues between workflow states, via the Linear GraphQL API over
httpx. Callers treat every call as best-effort; this client does not
retry.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from codingbot.config import LINEAR_GRAPHQL_URL
from codingbot.models import ActivityContent

logger = logging.getLogger(__name__)

_CREATE_ACTIVITY = """
mutation AgentActivityCreate($input: AgentActivityCreateInput!) {
  agentActivityCreate(input: $input) {
    success
    agentActivity { id }
  }
}
"""

_UPDATE_ISSUE = """
mutation IssueUpdate($id: String!, $input: IssueUpdateInput!) {
  issueUpdate(id: $id, input: $input) {
    success
  }
}
"""


class TrackerError(RuntimeError):
    """The tracker answered with GraphQL errors."""


class TrackerClient:
    """Async client for the tracker's GraphQL API."""

    def __init__(self, *, access_token: str | None = None, api_url: str = LINEAR_GRAPHQL_URL):
        self.access_token = access_token
        self.api_url = api_url
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        headers = {"Content-Type": "application/json", "User-Agent": "coding-bot/0.1.0"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        else:
            logger.warning("No tracker access token configured — API calls will be rejected")
        self._client = httpx.AsyncClient(headers=headers, timeout=30.0)
        logger.info("Tracker client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Tracker client not started")
        return self._client

    async def create_activity(self, session_id: str, content: ActivityContent) -> str | None:
        """Post an activity to an agent session. Returns the new activity id."""
        data = await self._graphql(
            _CREATE_ACTIVITY,
            {"input": {"agentSessionId": session_id, "content": content.to_payload()}},
        )
        result = data.get("agentActivityCreate") or {}
        if not result.get("success"):
            raise TrackerError(f"agentActivityCreate was not successful for session {session_id}")
        return (result.get("agentActivity") or {}).get("id")

    async def update_issue_state(self, issue_id: str, state_id: str) -> None:
        """Move an issue to another workflow state."""
        data = await self._graphql(_UPDATE_ISSUE, {"id": issue_id, "input": {"stateId": state_id}})
        if not (data.get("issueUpdate") or {}).get("success"):
            raise TrackerError(f"issueUpdate was not successful for issue {issue_id}")
        logger.info("Issue %s moved to state %s", issue_id, state_id)

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        resp = await self.client.post(self.api_url, json={"query": query, "variables": variables})
        resp.raise_for_status()
        body = resp.json()
        if body.get("errors"):
            messages = "; ".join(e.get("message", "unknown error") for e in body["errors"])
            raise TrackerError(messages)
        return body.get("data") or {}
