"""
FastAPI application: the HTTP surface of parley.

The chat server proxies plugin HTTP requests here with the acting user in
the `Mattermost-User-Id` header. Sibling plugins call the inter-plugin
completion endpoint with a shared secret instead.

Routes:
  POST /inter-plugin/v1/completion
  POST /post/{post_id}/stop | regenerate | tool_call | analyze | react
  POST /post/{post_id}/summarize_transcription
  POST /channel/{channel_id}/interval
  POST /search, POST /search/run
  GET  /ai_threads
  POST /admin/reindex, GET /admin/reindex/status, POST /admin/reindex/cancel
"""

import asyncio
import hmac
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from parley.analysis.channels import PRESET_PROMPTS, handle_interval_request
from parley.analysis.react import react_to_post
from parley.analysis.threads import prompt_for_analysis
from parley.bots.permissions import check_usage_restrictions
from parley.config import get_config, register_listener
from parley.conversations.conversations import PERMISSION_READ_CHANNEL
from parley.conversations.regeneration import handle_regenerate
from parley.conversations.tool_handling import handle_tool_call
from parley.errors import (
    AlreadyStreamingError,
    InvalidPresetError,
    JobAlreadyRunningError,
    JobNotRunningError,
    NotFoundError,
    ParleyError,
    PermissionLostError,
    UsageRestrictionError,
)
from parley.host.models import PROP_REQUESTER, Channel, HostPost
from parley.service import Service

USER_ID_HEADER = "Mattermost-User-Id"
INTER_PLUGIN_SECRET_HEADER = "X-Inter-Plugin-Secret"

# Widest range an interval request may cover
MAX_INTERVAL_MS = 14 * 24 * 60 * 60 * 1000

logger = logging.getLogger(__name__)


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


class HTTPError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


def _status_for(err: ParleyError) -> int:
    if isinstance(err, (UsageRestrictionError, PermissionLostError)):
        return 403
    if isinstance(err, (AlreadyStreamingError, JobAlreadyRunningError)):
        return 409
    if isinstance(err, NotFoundError):
        return 404
    if isinstance(err, (InvalidPresetError, JobNotRunningError)):
        return 400
    return 500


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        raise HTTPError(400, "invalid JSON")
    if not isinstance(body, dict):
        raise HTTPError(400, "body must be a JSON object")
    return body


def _user_id(request: Request) -> str:
    user_id = request.headers.get(USER_ID_HEADER, "")
    if not user_id:
        raise HTTPError(401, "not authorized")
    return user_id


def create_app(service: Service) -> FastAPI:
    host = service.host

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _setup_logging(service.cfg)
        logger.info("Starting parley")
        await service.start()

        loop = asyncio.get_running_loop()

        def _on_config(cfg: dict):
            asyncio.run_coroutine_threadsafe(service.on_config_change(cfg), loop)

        register_listener(_on_config)
        yield
        await service.stop()
        logger.info("parley stopped")

    app = FastAPI(title="parley", lifespan=lifespan)

    @app.exception_handler(HTTPError)
    async def _http_error(request: Request, exc: HTTPError):
        return JSONResponse({"error": str(exc)}, status_code=exc.status_code)

    @app.exception_handler(ParleyError)
    async def _parley_error(request: Request, exc: ParleyError):
        status = _status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        body = {"error": str(exc)}
        if isinstance(exc, JobAlreadyRunningError) and exc.status is not None:
            body["status"] = exc.status.to_dict()
        return JSONResponse(body, status_code=status)

    # ---------------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------------

    async def _readable_channel(user_id: str, channel_id: str) -> Channel:
        channel = await host.get_channel(channel_id)
        if not await host.has_permission_to_channel(user_id, channel.id, PERMISSION_READ_CHANNEL):
            raise HTTPError(403, "user doesn't have permission to read channel")
        return channel

    async def _authorized_post(user_id: str, post_id: str) -> tuple[HostPost, Channel]:
        post = await host.get_post(post_id)
        channel = await _readable_channel(user_id, post.channel_id)
        return post, channel

    def _bot_for(body: dict):
        bot = service.bots.get_bot_by_username_or_first(body.get("bot_username", ""))
        if bot is None:
            raise HTTPError(400, "no bots available")
        return bot

    # ---------------------------------------------------------------------------
    # Inter-plugin
    # ---------------------------------------------------------------------------

    @app.post("/inter-plugin/v1/completion")
    async def inter_plugin_completion(request: Request):
        secret = (service.cfg.get("inter_plugin") or {}).get("secret", "")
        given = request.headers.get(INTER_PLUGIN_SECRET_HEADER, "")
        if not secret or not hmac.compare_digest(secret, given):
            raise HTTPError(401, "not authorized")

        body = await _json_body(request)
        if not body.get("userPrompt") or not body.get("requesterUserID"):
            raise HTTPError(400, "userPrompt and requesterUserID are required")

        response = await service.completion_for_inter_plugin(
            system_prompt=body.get("systemPrompt", ""),
            user_prompt=body["userPrompt"],
            requester_user_id=body["requesterUserID"],
            bot_username=body.get("botUsername", ""),
            parameters=body.get("parameters"),
        )
        return JSONResponse({"response": response})

    # ---------------------------------------------------------------------------
    # Posts
    # ---------------------------------------------------------------------------

    @app.post("/post/{post_id}/stop")
    async def stop(post_id: str, request: Request):
        user_id = _user_id(request)
        post, _ = await _authorized_post(user_id, post_id)
        if service.bots.get_bot_by_id(post.user_id) is None:
            raise HTTPError(400, "not a bot post")
        if post.prop_str(PROP_REQUESTER) != user_id:
            raise HTTPError(403, "only the original poster can stop the stream")
        service.streaming.stop_streaming(post.id)
        return JSONResponse({"ok": True})

    @app.post("/post/{post_id}/regenerate")
    async def regenerate(post_id: str, request: Request):
        user_id = _user_id(request)
        post, channel = await _authorized_post(user_id, post_id)
        await handle_regenerate(service.conversations, service.meetings, user_id, post, channel)
        return JSONResponse({"ok": True})

    @app.post("/post/{post_id}/tool_call")
    async def tool_call(post_id: str, request: Request):
        user_id = _user_id(request)
        body = await _json_body(request)
        accepted = body.get("accepted_tool_ids")
        if not isinstance(accepted, list):
            raise HTTPError(400, "accepted_tool_ids must be a list")

        post, channel = await _authorized_post(user_id, post_id)
        created = await handle_tool_call(service.conversations, user_id, post, channel, accepted)
        return JSONResponse({"post_id": created.id if created else ""})

    @app.post("/post/{post_id}/analyze")
    async def analyze(post_id: str, request: Request):
        user_id = _user_id(request)
        body = await _json_body(request)
        analysis_type = body.get("analysis_type", "")
        try:
            prompt_for_analysis(analysis_type)
        except ParleyError:
            raise HTTPError(400, f"invalid analysis type: {analysis_type}")

        post, channel = await _authorized_post(user_id, post_id)
        bot = _bot_for(body)
        await check_usage_restrictions(host, user_id, bot, channel)

        created = await service.threads.analyze_thread(user_id, bot, post, channel, analysis_type)
        return JSONResponse({"post_id": created.id, "channel_id": created.channel_id})

    @app.post("/post/{post_id}/react")
    async def react(post_id: str, request: Request):
        user_id = _user_id(request)
        body = await _json_body(request)
        post, channel = await _authorized_post(user_id, post_id)
        bot = _bot_for(body)
        await check_usage_restrictions(host, user_id, bot, channel)

        user = await host.get_user(user_id)
        context = await service.context_factory.build_for_user_request(bot, user, channel)
        emoji = await react_to_post(host, bot, post.id, post.message, context, service.prompts)
        return JSONResponse({"emoji": emoji})

    @app.post("/post/{post_id}/summarize_transcription")
    async def summarize_transcription(post_id: str, request: Request):
        user_id = _user_id(request)
        body = await _json_body(request)
        post, channel = await _authorized_post(user_id, post_id)
        bot = _bot_for(body)
        await check_usage_restrictions(host, user_id, bot, channel)

        user = await host.get_user(user_id)
        created = await service.meetings.summarize_transcript_post(bot, user, post, channel)
        return JSONResponse({"post_id": created.id, "channel_id": created.channel_id})

    # ---------------------------------------------------------------------------
    # Channels
    # ---------------------------------------------------------------------------

    @app.post("/channel/{channel_id}/interval")
    async def interval(channel_id: str, request: Request):
        user_id = _user_id(request)
        body = await _json_body(request)
        try:
            start_time = int(body.get("start_time", 0))
            end_time = int(body.get("end_time", 0))
        except (TypeError, ValueError):
            raise HTTPError(400, "start_time and end_time must be integers")
        preset = body.get("preset_prompt", "")

        if end_time != 0 and start_time >= end_time:
            raise HTTPError(400, "start_time must be before end_time")
        if end_time != 0 and end_time - start_time > MAX_INTERVAL_MS:
            raise HTTPError(400, "time range too large")
        if preset not in PRESET_PROMPTS:
            raise HTTPError(400, f"invalid preset prompt: {preset}")

        channel = await _readable_channel(user_id, channel_id)
        bot = _bot_for(body)
        await check_usage_restrictions(host, user_id, bot, channel)

        result = await handle_interval_request(
            service.conversations, user_id, bot, channel, start_time, end_time, preset
        )
        return JSONResponse(result)

    # ---------------------------------------------------------------------------
    # Search
    # ---------------------------------------------------------------------------

    def _search_args(body: dict) -> dict:
        query = body.get("query", "")
        if not isinstance(query, str) or not query.strip():
            raise HTTPError(400, "query cannot be empty")
        return {
            "query": query,
            "team_id": body.get("team_id", ""),
            "channel_id": body.get("channel_id", ""),
            "max_results": int(body.get("max_results") or 0),
        }

    @app.post("/search")
    async def search(request: Request):
        user_id = _user_id(request)
        body = await _json_body(request)
        if not service.search.enabled:
            raise HTTPError(503, "search functionality is not configured")
        bot = _bot_for(body)
        result = await service.search.search_query(user_id, bot, **_search_args(body))
        return JSONResponse(result)

    @app.post("/search/run")
    async def search_run(request: Request):
        user_id = _user_id(request)
        body = await _json_body(request)
        if not service.search.enabled:
            raise HTTPError(503, "search functionality is not configured")
        bot = _bot_for(body)
        result = await service.search.run_search(user_id, bot, **_search_args(body))
        return JSONResponse(result)

    # ---------------------------------------------------------------------------
    # Conversations
    # ---------------------------------------------------------------------------

    @app.get("/ai_threads")
    async def ai_threads(request: Request):
        user_id = _user_id(request)
        threads = await service.conversations.get_ai_threads(user_id)
        return JSONResponse([t.to_dict() for t in threads])

    # ---------------------------------------------------------------------------
    # Admin
    # ---------------------------------------------------------------------------

    async def _require_admin(request: Request) -> str:
        user_id = _user_id(request)
        user = await host.get_user(user_id)
        if not user.is_system_admin:
            raise HTTPError(403, "must be a system admin")
        return user_id

    @app.post("/admin/reindex")
    async def reindex_start(request: Request):
        await _require_admin(request)
        status = await service.reindex.start()
        return JSONResponse(status.to_dict())

    @app.get("/admin/reindex/status")
    async def reindex_status(request: Request):
        await _require_admin(request)
        status = await service.reindex.get_status()
        return JSONResponse(status.to_dict())

    @app.post("/admin/reindex/cancel")
    async def reindex_cancel(request: Request):
        await _require_admin(request)
        status = await service.reindex.cancel()
        return JSONResponse(status.to_dict())

    return app


def run(service: Service):
    """Serve the app with uvicorn using the server block of the config."""
    cfg = get_config()
    server_cfg = cfg.get("server", {})
    uvicorn.run(
        create_app(service),
        host=server_cfg.get("host", "0.0.0.0"),
        port=int(server_cfg.get("port", 8065)),
        log_config=None,
    )
