"""Plain-text rendering of chat threads for prompts."""

from __future__ import annotations

import json

from parley.host.models import HostPost, ThreadData


def post_body(post: HostPost) -> str:
    """Message text followed by any message attachments, one part per line."""
    attachments = post.attachments
    if not attachments:
        return post.message

    rendered = []
    for attachment in attachments:
        if not isinstance(attachment, dict):
            continue
        parts = []
        for key in ("pretext", "title", "text"):
            if attachment.get(key):
                parts.append(f"{attachment[key]}\n")
        for fld in attachment.get("fields") or []:
            if isinstance(fld, dict) and fld.get("title"):
                parts.append(f"{fld['title']}: {json.dumps(fld.get('value'))}\n")
        if attachment.get("footer"):
            parts.append(f"{attachment['footer']}\n")
        rendered.append("".join(parts))
    return post.message + "\n" + "\n".join(rendered)


def format_thread(data: ThreadData) -> str:
    out = []
    for post in data.posts:
        user = data.users_by_id.get(post.user_id)
        username = user.username if user else "unknown"
        out.append(f"{username}: {post_body(post)}\n\n")
    return "".join(out)
