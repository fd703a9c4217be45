from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from commonroom.logging import get_logger
from commonroom.service.auth import AuthService, IdentityContext
from commonroom.service.errors import ChannelNotFound, NotFoundError, PermissionDenied
from commonroom.service.permissions import can_post, can_view
from commonroom.storage.models import Channel, Post

logger = get_logger(__name__)

VIEW = "view"
POST = "post"


class ChannelStore(Protocol):
    def get_channel(self, channel_id: int) -> Optional[Channel]: ...

    def get_post(self, post_id: int) -> Optional[Post]: ...


@dataclass(frozen=True)
class ChannelGrant:
    """An identity that has been cleared for an action on one channel."""

    identity: IdentityContext
    channel: Channel
    action: str


class ChannelAccess:
    """Runs identity resolution and the permission check for channel-scoped calls.

    Nothing is cached between calls: role and channel type are re-read on
    every request.
    """

    def __init__(self, auth: AuthService, store: ChannelStore) -> None:
        self.auth = auth
        self.store = store

    def authorize(self, authorization: Optional[str], channel_id: Any, action: str) -> ChannelGrant:
        return self.grant(self.auth.resolve_identity(authorization), channel_id, action)

    def grant(self, identity: IdentityContext, channel_id: Any, action: str) -> ChannelGrant:
        """Authorize an already resolved identity for ``action`` on a channel."""
        channel = self.store.get_channel(channel_id)
        if channel is None:
            raise ChannelNotFound("channel not found", detail={"channel_id": channel_id})
        return self.check(identity, channel, action)

    def check(self, identity: IdentityContext, channel: Channel, action: str) -> ChannelGrant:
        if action == VIEW:
            allowed = can_view(channel.channel_type, identity.role)
        elif action == POST:
            allowed = can_post(channel.channel_type, identity.role)
        else:
            raise ValueError(f"unknown channel action {action!r}")
        if not allowed:
            logger.info(
                "channel_access_denied",
                user_id=identity.user_id,
                role=identity.role,
                channel_id=channel.id,
                channel_type=channel.channel_type,
                action=action,
            )
            raise PermissionDenied(
                f"role may not {action} in this channel",
                detail={"channel_id": channel.id, "action": action},
            )
        return ChannelGrant(identity=identity, channel=channel, action=action)

    def authorize_post(
        self, authorization: Optional[str], post_id: Any, action: str = VIEW
    ) -> tuple[ChannelGrant, Post]:
        """Authorize ``action`` on the channel that owns ``post_id``."""
        return self.grant_for_post(self.auth.resolve_identity(authorization), post_id, action)

    def grant_for_post(
        self, identity: IdentityContext, post_id: Any, action: str = VIEW
    ) -> tuple[ChannelGrant, Post]:
        post = self.store.get_post(post_id)
        if post is None:
            raise NotFoundError("post not found", detail={"post_id": post_id})
        channel = self.store.get_channel(post.channel_id)
        if channel is None:
            raise ChannelNotFound("channel not found", detail={"channel_id": post.channel_id})
        return self.check(identity, channel, action), post
