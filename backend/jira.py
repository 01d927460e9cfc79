"""Jira REST v2 client for filing tickets created from meeting transcripts."""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

import httpx

from standup.config import config, require
from standup.errors import TrackerError
from standup.task_schema import FiledIssue, TicketRequest

logger = logging.getLogger(__name__)

VALID_PRIORITIES = ("Highest", "High", "Medium", "Low", "Lowest")

_PRIORITY_ALIASES = {
    "highest": "Highest",
    "highest priority": "Highest",
    "high": "High",
    "high priority": "High",
    "medium": "Medium",
    "medium priority": "Medium",
    "normal": "Medium",
    "standard": "Medium",
    "low": "Low",
    "low priority": "Low",
    "lowest": "Lowest",
    "lowest priority": "Lowest",
    "minimal": "Lowest",
}


def normalize_priority(value: Optional[str]) -> str:
    if not value:
        return "Medium"
    priority = _PRIORITY_ALIASES.get(str(value).strip().lower())
    if priority is None:
        logger.warning("[Jira] Invalid priority %r, defaulting to Medium", value)
        return "Medium"
    return priority


def format_estimate(hours: Optional[float]) -> Optional[str]:
    """Jira originalEstimate: whole hours, or minutes below one hour."""
    if not hours or hours <= 0:
        return None
    if hours >= 1:
        return f"{round(hours)}h"
    return f"{round(hours * 60)}m"


def load_participant_mapping(raw: Optional[str] = None) -> Dict[str, str]:
    """Participant name -> Jira accountId, from a JSON object string or a JSON file path."""
    raw = raw if raw is not None else config['jira_participant_mapping']
    if not raw:
        return {}
    text = raw.strip()
    if not text.startswith("{"):
        with open(text, "r", encoding="utf-8") as f:
            text = f.read()
    mapping = json.loads(text)
    return {str(k): str(v) for k, v in mapping.items()}



class JiraTracker:
    """Creates Jira issues. Clients are built once and reused across a run."""

    def __init__(self, base_url: Optional[str] = None, email: Optional[str] = None,
                 api_token: Optional[str] = None, project_key: Optional[str] = None,
                 participant_mapping: Optional[Dict[str, str]] = None,
                 story_points_field: Optional[str] = None,
                 timeout: Optional[int] = None,
                 client: Optional[httpx.Client] = None) -> None:
        self.base_url = require('jira_url', base_url).strip().rstrip("/")
        if not self.base_url.startswith(("http://", "https://")):
            raise TrackerError(f"Invalid JIRA_URL '{self.base_url}': must start with http:// or https://")
        self.project_key = require('jira_project_key', project_key)
        self.story_points_field = story_points_field or config['jira_story_points_field']
        self.participant_mapping = participant_mapping if participant_mapping is not None else load_participant_mapping()

        if client is None:
            client = httpx.Client(
                base_url=self.base_url,
                auth=(require('jira_email', email), require('jira_api_token', api_token)),
                headers={"Accept": "application/json", "Content-Type": "application/json"},
                timeout=timeout or config['jira_timeout'],
            )
        self._client = client

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "JiraTracker":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def build_fields(self, request: TicketRequest) -> dict:
        labels = ["coding" if request.type == "Coding" else "non-coding"]
        if request.is_future_plan:
            labels.append("future-plan")
        labels.extend(l for l in request.labels if l not in labels)

        fields: dict = {
            "project": {"key": self.project_key},
            "summary": request.title,
            "description": request.description,
            "issuetype": {"name": "Task"},
            "labels": labels,
            "priority": {"name": normalize_priority(request.priority)},
        }

        estimate = format_estimate(request.estimated_time)
        if estimate:
            fields["timetracking"] = {"originalEstimate": estimate}

        if request.story_points is not None and request.story_points > 0:
            fields[self.story_points_field] = request.story_points

        account_id = self.participant_mapping.get(request.assignee)
        if account_id and not request.is_future_plan:
            fields["assignee"] = {"accountId": account_id}
        elif not request.is_future_plan:
            logger.info("[Jira] No account mapping for %s; issue left unassigned", request.assignee)
        return fields

    def create_issue(self, request: TicketRequest) -> FiledIssue:
        try:
            resp = self._client.post("/rest/api/2/issue", json={"fields": self.build_fields(request)})
            resp.raise_for_status()
            key = resp.json()["key"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            detail = ""
            if isinstance(e, httpx.HTTPStatusError):
                detail = f" ({e.response.status_code}: {e.response.text[:200]})"
            raise TrackerError(f"Jira issue creation failed for '{request.title}'{detail}: {e}") from e

        issue = FiledIssue(issue_key=key, issue_url=f"{self.base_url}/browse/{key}")
        logger.info("[Jira] Created %s for %s", key, request.assignee)

        # Board tickets go to "To Do"; future plans stay in the backlog
        if not request.is_future_plan:
            self.transition_issue(key, "To Do")
        return issue

    def transition_issue(self, issue_key: str, target_status: str) -> bool:
        """Moves an issue to the named status. Failures are logged, not raised."""
        try:
            resp = self._client.get(f"/rest/api/2/issue/{issue_key}/transitions")
            resp.raise_for_status()
            transitions = resp.json().get("transitions", [])
            match = next(
                (t for t in transitions
                 if t.get("name", "").lower() == target_status.lower()
                 or t.get("to", {}).get("name", "").lower() == target_status.lower()),
                None,
            )
            if match is None:
                logger.debug("[Jira] No '%s' transition available for %s", target_status, issue_key)
                return False
            resp = self._client.post(
                f"/rest/api/2/issue/{issue_key}/transitions",
                json={"transition": {"id": match["id"]}},
            )
            resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("[Jira] Transition of %s to '%s' failed: %s", issue_key, target_status, e)
            return False

    def test_connection(self) -> bool:
        try:
            resp = self._client.get("/rest/api/2/myself")
            resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error("[Jira] Connection test failed: %s", e)
            return False
