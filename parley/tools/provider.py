"""
Built-in tools offered to bots.

Tools are only offered in DMs with a bot: tool calls need the requester's
approval, and a DM is the one place where the approval UI is shown to
exactly that user.
"""

from __future__ import annotations

import logging

from parley.host.base import HostPlatform
from parley.llm.tools import Tool
from parley.tools.github import GITHUB_PLUGIN_ID, GithubIssueTool
from parley.tools.jira import JiraIssueTool
from parley.tools.lookup_user import LookupUserTool
from parley.tools.search_server import SearchServerTool

logger = logging.getLogger(__name__)


class ToolProvider:
    def __init__(self, host: HostPlatform, search=None, enable_jira: bool = True):
        self.host = host
        self.search = search
        self.github_available = False
        self._search_tool = SearchServerTool(host, search)
        self._lookup_tool = LookupUserTool(host)
        self._github_tool = GithubIssueTool(host)
        self._jira_tool = JiraIssueTool() if enable_jira else None

    async def refresh(self) -> None:
        """Re-check which sibling plugins are running."""
        try:
            self.github_available = await self.host.is_plugin_running(GITHUB_PLUGIN_ID)
        except Exception as e:
            logger.warning("Unable to check GitHub plugin status: %s", e)
            self.github_available = False

    def get_tools(self, is_dm: bool, bot=None) -> list[Tool]:
        if not is_dm:
            return []

        tools = []
        if self.search is not None:
            tools.append(self._search_tool.tool())
        tools.append(self._lookup_tool.tool())
        if self.github_available:
            tools.append(self._github_tool.tool())
        if self._jira_tool is not None:
            tools.append(self._jira_tool.tool())
        return tools
