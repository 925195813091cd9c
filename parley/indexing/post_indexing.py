"""
Live indexing of posts into the embedding search.
"""

from __future__ import annotations

import logging

from parley.host.models import POST_TYPE_DEFAULT, Channel, HostPost
from parley.storage.backends.base import PostDocument
from parley.storage.embedding_search import EmbeddingSearch

logger = logging.getLogger(__name__)


def should_index_post(bots, post: HostPost, channel: Channel | None) -> bool:
    if not post.message:
        return False
    if bots.is_any_bot(post.user_id):
        return False
    if post.type != POST_TYPE_DEFAULT:
        return False
    if post.delete_at != 0:
        return False
    # Conversations with the bots themselves stay out of search
    if channel is not None and bots.get_bot_for_dm_channel(channel) is not None:
        return False
    return True


class PostIndexer:
    def __init__(self, search: EmbeddingSearch | None, bots):
        self.search = search
        self.bots = bots

    async def index_post(self, post: HostPost, channel: Channel) -> bool:
        """Store post if it is eligible. Returns whether it was stored."""
        if self.search is None or not should_index_post(self.bots, post, channel):
            return False

        doc = PostDocument(
            post_id=post.id,
            create_at=post.create_at,
            team_id=channel.team_id,
            channel_id=post.channel_id,
            user_id=post.user_id,
            content=post.message,
        )
        try:
            await self.search.store([doc])
        except Exception as e:
            logger.error("Failed to index post %s: %s", post.id, e)
            return False
        return True

    async def delete_post(self, post_id: str) -> None:
        if self.search is None:
            return
        try:
            await self.search.delete([post_id])
        except Exception as e:
            logger.error("Failed to remove post %s from index: %s", post_id, e)
