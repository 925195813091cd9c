"""
GetJiraIssue tool.

Reads issues from a public Jira instance through the REST search API
(`/rest/api/2/search` with a `key in (...)` JQL query). No credentials
are sent, so only publicly visible issues resolve.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

import httpx
from pydantic import Field

from parley.errors import ToolResolveError
from parley.llm.context import LLMContext
from parley.llm.tools import Tool, ToolArgs, schema_from_model

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 50
SEARCH_PATH = "/rest/api/2/search"
RESULT_SEPARATOR = "------\n"

_VALID_KEY = re.compile(r"^[A-Za-z0-9]+-[0-9]+$")

FETCHED_FIELDS = [
    "summary",
    "description",
    "status",
    "assignee",
    "created",
    "updated",
    "issuetype",
    "labels",
    "reporter",
    "creator",
    "priority",
    "duedate",
    "timetracking",
    "comment",
]


class GetJiraIssueArgs(ToolArgs):
    instance_url: str = Field(description="The URL of the Jira instance to get the issue from. Example: 'https://mattermost.atlassian.net'")
    issue_keys: list[str] = Field(description="The issue keys of the Jira issues to get. Example: 'MM-1234'")


def _rfc1123(value: str | None) -> str:
    if not value:
        return ""
    try:
        parsed = datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f%z")
    except ValueError:
        try:
            parsed = datetime.strptime(value, "%Y-%m-%d")
        except ValueError:
            return value
    return parsed.strftime("%a, %d %b %Y %H:%M:%S %Z").strip()


def _name(obj: dict | None, key: str = "name") -> str:
    return (obj or {}).get(key, "") or ""


def format_issue(issue: dict) -> str:
    lines = [f"Issue Key: {issue.get('key', '')}"]
    fields = issue.get("fields")
    if not fields:
        return lines[0] + "\n"

    lines.append(f"Summary: {fields.get('summary') or ''}")
    lines.append(f"Description: {fields.get('description') or ''}")
    lines.append(f"Status: {_name(fields.get('status')) or 'Unknown'}")
    lines.append(f"Assignee: {_name(fields.get('assignee'), 'displayName') or 'Unassigned'}")
    lines.append(f"Created: {_rfc1123(fields.get('created'))}")
    lines.append(f"Updated: {_rfc1123(fields.get('updated'))}")

    if _name(fields.get("issuetype")):
        lines.append(f"Type: {_name(fields.get('issuetype'))}")
    if fields.get("labels") is not None:
        lines.append(f"Labels: {', '.join(fields['labels'])}")
    if fields.get("reporter"):
        lines.append(f"Reporter: {_name(fields['reporter'], 'displayName')}")
    elif fields.get("creator"):
        lines.append(f"Creator: {_name(fields['creator'], 'displayName')}")
    if fields.get("priority"):
        lines.append(f"Priority: {_name(fields['priority'])}")
    if fields.get("duedate"):
        lines.append(f"Due Date: {_rfc1123(fields['duedate'])}")

    tracking = fields.get("timetracking") or {}
    if tracking.get("originalEstimate"):
        lines.append(f"Original Estimate: {tracking['originalEstimate']}")
    if tracking.get("timeSpent"):
        lines.append(f"Time Spent: {tracking['timeSpent']}")
    if tracking.get("remainingEstimate"):
        lines.append(f"Remaining Estimate: {tracking['remainingEstimate']}")

    for comment in (fields.get("comment") or {}).get("comments", []):
        author = _name(comment.get("author"), "displayName")
        lines.append(f"Comment from {author} at {comment.get('created', '')}: {comment.get('body', '')}")

    return "\n".join(lines) + "\n"


class JiraIssueTool:
    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def tool(self) -> Tool:
        return Tool(
            name="GetJiraIssue",
            description="Retrieve a single Jira issue by issue key.",
            schema=schema_from_model(GetJiraIssueArgs),
            resolver=self.resolve,
        )

    async def fetch_issues(self, instance_url: str, keys: list[str]) -> list[dict]:
        params = {"jql": f"key in ({','.join(keys)})", "fields": ",".join(FETCHED_FIELDS)}
        url = instance_url.rstrip("/") + SEARCH_PATH
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(url, params=params)
            resp.raise_for_status()
            data = resp.json()
        issues = data.get("issues")
        if issues is None:
            raise ToolResolveError("failed to get issue: issue not found")
        return issues

    async def resolve(self, context: LLMContext, get_args) -> str:
        args: GetJiraIssueArgs = get_args(GetJiraIssueArgs)
        for key in args.issue_keys:
            if len(key) > MAX_KEY_LENGTH or not _VALID_KEY.match(key):
                raise ToolResolveError("invalid issue key")
        if not args.instance_url.startswith(("http://", "https://")):
            raise ToolResolveError("invalid instance url")

        try:
            issues = await self.fetch_issues(args.instance_url, args.issue_keys)
        except httpx.HTTPError as e:
            logger.warning("Jira request to %s failed: %s", args.instance_url, e)
            raise ToolResolveError(f"failed to get issue: {e}") from e

        return "".join(format_issue(issue) + RESULT_SEPARATOR for issue in issues)
