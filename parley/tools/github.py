"""GetGithubIssue tool, served by the GitHub plugin running on the same host."""

from __future__ import annotations

import json
import logging
import re
from urllib.parse import quote

from pydantic import Field

from parley.errors import ToolResolveError
from parley.host.base import HostPlatform
from parley.llm.context import LLMContext
from parley.llm.tools import Tool, ToolArgs, schema_from_model

logger = logging.getLogger(__name__)

GITHUB_PLUGIN_ID = "github"
MAX_OWNER_LENGTH = 39
MAX_REPO_LENGTH = 100

_VALID_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")


class GetGithubIssueArgs(ToolArgs):
    repo_owner: str = Field(description="The owner of the repository to get issues from. Example: 'mattermost'")
    repo_name: str = Field(description="The name of the repository to get issues from. Example: 'mattermost-plugin-ai'")
    number: int = Field(description="The issue number to get. Example: '1'")


def format_issue(issue: dict) -> str:
    return (
        f"Title: {issue.get('title', '')}\n"
        f"Number: {issue.get('number', 0)}\n"
        f"State: {issue.get('state', '')}\n"
        f"Submitter: {(issue.get('user') or {}).get('login', '')}\n"
        f"Is Pull Request: {'true' if issue.get('pull_request') else 'false'}\n"
        f"Body: {issue.get('body') or ''}"
    )


class GithubIssueTool:
    def __init__(self, host: HostPlatform):
        self.host = host

    def tool(self) -> Tool:
        return Tool(
            name="GetGithubIssue",
            description="Retrieve a single GitHub issue by owner, repo, and issue number.",
            schema=schema_from_model(GetGithubIssueArgs),
            resolver=self.resolve,
        )

    async def resolve(self, context: LLMContext, get_args) -> str:
        args: GetGithubIssueArgs = get_args(GetGithubIssueArgs)

        if len(args.repo_owner) > MAX_OWNER_LENGTH or len(args.repo_name) > MAX_REPO_LENGTH:
            raise ToolResolveError("invalid repo owner or repo name")
        if not _VALID_NAME.match(args.repo_owner) or not _VALID_NAME.match(args.repo_name):
            raise ToolResolveError("invalid repo owner or repo name")
        if args.number < 1:
            raise ToolResolveError("invalid issue number")
        if context.requesting_user is None:
            raise ToolResolveError("no requesting user")

        path = (
            f"/{GITHUB_PLUGIN_ID}/api/v1/issue?owner={quote(args.repo_owner)}"
            f"&repo={quote(args.repo_name)}&number={args.number}"
        )
        status, body = await self.host.plugin_http(
            "GET", path, headers={"Mattermost-User-ID": context.requesting_user.id}
        )
        if status != 200:
            logger.warning("GitHub plugin returned %d: %s", status, body[:300])
            raise ToolResolveError(f"failed to get issue, status code: {status}")

        try:
            issue = json.loads(body)
        except json.JSONDecodeError as e:
            raise ToolResolveError(f"failed to decode response: {e}") from e
        return format_issue(issue)
