"""
MCP (Model Context Protocol) tool servers, one client set per user.

Each configured server is spoken to with JSON-RPC 2.0 over HTTP POST
(`initialize`, `tools/list`, `tools/call`); replies may come back as a
plain JSON body or as a single-event `text/event-stream`. Every request
carries the requesting user's ID so servers can act on their behalf.

Clients are created lazily on a user's first request and closed by a
periodic sweep once idle for `idle_timeout_minutes`. Tool names are
prefixed with the server ID so two servers can expose the same tool.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass, field

import httpx

from parley.errors import ToolResolveError
from parley.llm.tools import Tool

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-Mattermost-UserID"
PROTOCOL_VERSION = "2025-03-26"
SWEEP_INTERVAL_SECONDS = 5 * 60
DEFAULT_IDLE_TIMEOUT_MINUTES = 30
TOOL_NAME_SEPARATOR = "__"


@dataclass
class MCPServerConfig:
    base_url: str
    headers: dict = field(default_factory=dict)


@dataclass
class MCPConfig:
    enabled: bool = False
    servers: dict[str, MCPServerConfig] = field(default_factory=dict)
    idle_timeout_minutes: int = DEFAULT_IDLE_TIMEOUT_MINUTES

    @classmethod
    def from_dict(cls, d: dict | None) -> "MCPConfig":
        d = d or {}
        servers = {}
        for server_id, s in (d.get("servers") or {}).items():
            s = s or {}
            servers[server_id] = MCPServerConfig(
                base_url=s.get("base_url", ""),
                headers=dict(s.get("headers") or {}),
            )
        timeout = int(d.get("idle_timeout_minutes") or 0)
        return cls(
            enabled=bool(d.get("enabled", False)),
            servers=servers,
            idle_timeout_minutes=timeout if timeout > 0 else DEFAULT_IDLE_TIMEOUT_MINUTES,
        )


class MCPServerConnection:
    """JSON-RPC session with one server for one user."""

    _ids = itertools.count(1)

    def __init__(self, server_id: str, config: MCPServerConfig, user_id: str, timeout: float = 30.0):
        self.server_id = server_id
        self.config = config
        self.user_id = user_id
        self.tools: dict[str, dict] = {}
        self.session_id = ""
        self._client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            USER_ID_HEADER: self.user_id,
            **self.config.headers,
        }
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id
        return headers

    @staticmethod
    def _decode(resp: httpx.Response) -> dict:
        if resp.headers.get("content-type", "").startswith("text/event-stream"):
            for line in resp.text.splitlines():
                if line.startswith("data:"):
                    return json.loads(line[5:].strip())
            raise ToolResolveError("empty event stream from MCP server")
        return resp.json()

    async def _post(self, payload: dict) -> dict | None:
        resp = await self._client.post(self.config.base_url, json=payload, headers=self._headers())
        resp.raise_for_status()
        if "Mcp-Session-Id" in resp.headers:
            self.session_id = resp.headers["Mcp-Session-Id"]
        if resp.status_code == 202 or not resp.content:
            return None
        return self._decode(resp)

    async def request(self, method: str, params: dict | None = None) -> dict:
        body = await self._post({
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or {},
        })
        if body is None:
            raise ToolResolveError(f"no response to {method}")
        if "error" in body:
            err = body["error"] or {}
            raise ToolResolveError(f"MCP error {err.get('code')}: {err.get('message')}")
        return body.get("result") or {}

    async def connect(self) -> None:
        info = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "parley", "version": "1.0"},
        })
        logger.debug("MCP server %s initialised: %s", self.server_id, info.get("serverInfo"))
        await self._post({"jsonrpc": "2.0", "method": "notifications/initialized"})

        result = await self.request("tools/list")
        for tool in result.get("tools", []):
            self.tools[tool["name"]] = tool

    async def call_tool(self, name: str, arguments: dict) -> str:
        result = await self.request("tools/call", {"name": name, "arguments": arguments})
        texts = [c.get("text", "") for c in result.get("content", []) if c.get("type") == "text"]
        text = "\n".join(texts)
        if result.get("isError"):
            raise ToolResolveError(text or f"tool {name} failed")
        return text

    async def close(self) -> None:
        await self._client.aclose()


class MCPUserClient:
    def __init__(self, user_id: str):
        self.user_id = user_id
        self.connections: dict[str, MCPServerConnection] = {}
        self.last_activity = time.monotonic()

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    async def connect_all(self, servers: dict[str, MCPServerConfig]) -> None:
        for server_id, cfg in servers.items():
            if not cfg.base_url:
                logger.warning("Skipping MCP server %s with empty base_url", server_id)
                continue
            conn = MCPServerConnection(server_id, cfg, self.user_id)
            try:
                await conn.connect()
            except Exception as e:
                logger.error("Failed to connect user %s to MCP server %s: %s", self.user_id, server_id, e)
                await conn.close()
                continue
            self.connections[server_id] = conn

        if not self.connections:
            raise ToolResolveError("no MCP servers were successfully connected")

    def get_tools(self) -> list[Tool]:
        tools = []
        for server_id, conn in self.connections.items():
            for name, spec in conn.tools.items():
                schema = spec.get("inputSchema") or {"type": "object", "properties": {}}
                tools.append(Tool(
                    name=f"{server_id}{TOOL_NAME_SEPARATOR}{name}",
                    description=spec.get("description", ""),
                    schema=schema,
                    resolver=self._resolver(conn, name),
                ))
        return tools

    def _resolver(self, conn: MCPServerConnection, name: str):
        async def resolve(context, get_args) -> str:
            self.touch()
            args = get_args(dict)
            try:
                return await conn.call_tool(name, args)
            except httpx.HTTPError as e:
                raise ToolResolveError(f"MCP call {name} failed: {e}") from e

        return resolve

    async def close(self) -> None:
        for server_id, conn in self.connections.items():
            try:
                await conn.close()
            except Exception as e:
                logger.error("Failed to close MCP client %s for %s: %s", server_id, self.user_id, e)
        self.connections = {}


class MCPClientManager:
    def __init__(self, config: MCPConfig):
        self.config = config
        self._clients: dict[str, MCPUserClient] = {}
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None

    @property
    def idle_timeout_seconds(self) -> float:
        return self.config.idle_timeout_minutes * 60

    def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
            await self.sweep()

    async def sweep(self) -> None:
        """Close clients idle longer than the timeout."""
        now = time.monotonic()
        async with self._lock:
            idle = [uid for uid, c in self._clients.items() if now - c.last_activity > self.idle_timeout_seconds]
            for user_id in idle:
                client = self._clients.pop(user_id)
                logger.debug("Closing inactive MCP client for %s", user_id)
                await client.close()

    async def _client_for_user(self, user_id: str) -> MCPUserClient:
        async with self._lock:
            client = self._clients.get(user_id)
            if client is not None:
                client.touch()
                return client
            client = MCPUserClient(user_id)
            await client.connect_all(self.config.servers)
            self._clients[user_id] = client
            return client

    async def get_tools_for_user(self, user_id: str) -> list[Tool]:
        if not self.config.enabled or not self.config.servers:
            return []
        client = await self._client_for_user(user_id)
        return client.get_tools()

    async def reinit(self, config: MCPConfig) -> None:
        await self.close()
        self.config = config
        self.start()

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        async with self._lock:
            for client in self._clients.values():
                await client.close()
            self._clients = {}
