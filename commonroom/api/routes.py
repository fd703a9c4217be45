from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query

from commonroom.api.schemas import (
    AIResponseBody,
    AIResponseEnvelope,
    CategoryRequest,
    CategoryResponse,
    ChannelRequest,
    ChannelResponse,
    CommentRequest,
    CommentResponse,
    DeletedResponse,
    Envelope,
    LikeResponse,
    LoginRequest,
    PostListResponse,
    PostRequest,
    PostResponse,
    RegisterRequest,
    RoleUpdateRequest,
    StudyPostRequest,
    StudyPostResponse,
    TokenResponse,
    UserResponse,
)
from commonroom.logging import get_logger
from commonroom.service.access import POST, VIEW, ChannelGrant
from commonroom.service.auth import IdentityContext
from commonroom.service.errors import (
    ChannelNotFound,
    NotFoundError,
    PermissionDenied,
)
from commonroom.service.permissions import can_post, parse_channel_type, visible_channels
from commonroom.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


# -- dependencies --------------------------------------------------------------


async def get_identity(authorization: Optional[str] = Header(None)) -> IdentityContext:
    return get_runtime().auth.resolve_identity(authorization)


async def get_admin_identity(
    identity: IdentityContext = Depends(get_identity),
) -> IdentityContext:
    if not identity.is_admin:
        raise PermissionDenied("admin access required")
    return identity


async def require_channel_view(
    identity: IdentityContext = Depends(get_identity),
    channel_id: int = Path(..., ge=1),
) -> ChannelGrant:
    # identity is a sub-dependency so a missing credential fails before path validation
    return get_runtime().access.grant(identity, channel_id, VIEW)


async def require_channel_post(
    identity: IdentityContext = Depends(get_identity),
    channel_id: int = Path(..., ge=1),
) -> ChannelGrant:
    return get_runtime().access.grant(identity, channel_id, POST)


def _page(limit: Optional[int], offset: int) -> tuple[int, int]:
    settings = get_runtime().settings
    resolved = min(limit or settings.default_page_size, settings.max_page_size)
    return resolved, max(offset, 0)


# -- auth ----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a trial account and return an access token."""
    user, token = get_runtime().auth.register(body.username, body.email, body.password)
    return Envelope(
        status="ok",
        data=TokenResponse(access_token=token, user=UserResponse.from_user(user)),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    user, token = get_runtime().auth.login(body.email, body.password)
    return Envelope(
        status="ok",
        data=TokenResponse(access_token=token, user=UserResponse.from_user(user)),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(identity: IdentityContext = Depends(get_identity)):
    user = get_runtime().store.get_user(identity.user_id)
    if user is None:
        raise NotFoundError("user not found", detail={"user_id": identity.user_id})
    return Envelope(status="ok", data=UserResponse.from_user(user))


# -- admin ---------------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: Optional[int] = Query(None, ge=1),
    identity: IdentityContext = Depends(get_admin_identity),
):
    resolved, _ = _page(limit, 0)
    users = get_runtime().store.list_users(limit=resolved)
    return Envelope(status="ok", data=[UserResponse.from_user(u) for u in users])


@router.put("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: RoleUpdateRequest,
    user_id: int = Path(..., ge=1),
    identity: IdentityContext = Depends(get_admin_identity),
):
    """Change a user's role. Takes effect on the user's next request."""
    user = get_runtime().auth.set_user_role(user_id, body.role.value)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    logger.info("admin_role_update", admin_id=identity.user_id, user_id=user_id, role=user.role)
    return Envelope(status="ok", data=UserResponse.from_user(user))


# -- categories and channels -----------------------------------------------------


@router.get("/categories", response_model=Envelope, tags=["channels"])
async def list_categories(identity: IdentityContext = Depends(get_identity)):
    categories = get_runtime().store.list_categories()
    return Envelope(status="ok", data=[CategoryResponse.from_category(c) for c in categories])


@router.post("/categories", response_model=Envelope, status_code=201, tags=["channels"])
async def create_category(
    body: CategoryRequest, identity: IdentityContext = Depends(get_admin_identity)
):
    category = get_runtime().store.create_category(body.name, display_order=body.display_order)
    return Envelope(status="ok", data=CategoryResponse.from_category(category))


@router.get("/categories/{category_id}/channels", response_model=Envelope, tags=["channels"])
async def list_channels(
    category_id: int = Path(..., ge=1),
    identity: IdentityContext = Depends(get_identity),
):
    """List the category's channels the caller's role may view."""
    store = get_runtime().store
    if store.get_category(category_id) is None:
        raise NotFoundError("category not found", detail={"category_id": category_id})
    channels = visible_channels(store.list_channels(category_id), identity.role)
    return Envelope(
        status="ok",
        data=[
            ChannelResponse.from_channel(c, can_post=can_post(c.channel_type, identity.role))
            for c in channels
        ],
    )


@router.post(
    "/categories/{category_id}/channels",
    response_model=Envelope,
    status_code=201,
    tags=["channels"],
)
async def create_channel(
    body: ChannelRequest,
    category_id: int = Path(..., ge=1),
    identity: IdentityContext = Depends(get_admin_identity),
):
    channel_type = parse_channel_type(body.channel_type)
    store = get_runtime().store
    if store.get_category(category_id) is None:
        raise NotFoundError("category not found", detail={"category_id": category_id})
    channel = store.create_channel(
        category_id, body.name, channel_type.value, description=body.description
    )
    logger.info("channel_created", channel_id=channel.id, channel_type=channel.channel_type)
    return Envelope(status="ok", data=ChannelResponse.from_channel(channel))


@router.get("/channels/{channel_id}", response_model=Envelope, tags=["channels"])
async def get_channel(grant: ChannelGrant = Depends(require_channel_view)):
    return Envelope(
        status="ok",
        data=ChannelResponse.from_channel(
            grant.channel,
            can_post=can_post(grant.channel.channel_type, grant.identity.role),
        ),
    )


@router.delete("/channels/{channel_id}", response_model=Envelope, tags=["channels"])
async def delete_channel(
    channel_id: int = Path(..., ge=1),
    identity: IdentityContext = Depends(get_admin_identity),
):
    if not get_runtime().store.delete_channel(channel_id):
        raise ChannelNotFound("channel not found", detail={"channel_id": channel_id})
    return Envelope(status="ok", data=DeletedResponse(id=channel_id))


# -- posts ---------------------------------------------------------------------


@router.get("/channels/{channel_id}/posts", response_model=Envelope, tags=["posts"])
async def list_posts(
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    grant: ChannelGrant = Depends(require_channel_view),
):
    resolved, offset = _page(limit, offset)
    views = get_runtime().store.list_posts(
        grant.channel.id, limit=resolved, offset=offset, viewer_id=grant.identity.user_id
    )
    return Envelope(
        status="ok",
        data=PostListResponse(
            items=[PostResponse.from_view(v) for v in views], limit=resolved, offset=offset
        ),
    )


@router.post(
    "/channels/{channel_id}/posts", response_model=Envelope, status_code=201, tags=["posts"]
)
async def create_post(body: PostRequest, grant: ChannelGrant = Depends(require_channel_post)):
    post = get_runtime().store.create_post(
        grant.identity.user_id, grant.channel.id, body.content, image_url=body.image_url
    )
    logger.info("post_created", post_id=post.id, channel_id=post.channel_id)
    return Envelope(status="ok", data=PostResponse.from_post(post))


@router.post(
    "/channels/{channel_id}/study-posts",
    response_model=Envelope,
    status_code=201,
    tags=["posts"],
)
async def create_study_post(
    body: StudyPostRequest, grant: ChannelGrant = Depends(require_channel_post)
):
    """Create a study-log post.

    Tags are extracted before the post is stored. When an AI reply is
    requested it is generated in the background; poll
    ``GET /v1/posts/{post_id}/ai-response`` for it.
    """
    runtime = get_runtime()
    post, tags = await runtime.study_log.create_study_post(
        grant,
        body.content,
        ai_response_enabled=body.ai_response_enabled,
        target_language=body.target_language,
        image_url=body.image_url,
    )
    return Envelope(
        status="ok",
        data=StudyPostResponse(
            post=PostResponse.from_post(post),
            tags=tags,
            ai_enabled=body.ai_response_enabled and runtime.ai_enabled,
        ),
    )


@router.get("/posts/{post_id}/ai-response", response_model=Envelope, tags=["posts"])
async def get_ai_response(
    post_id: int = Path(..., ge=1),
    identity: IdentityContext = Depends(get_identity),
):
    runtime = get_runtime()
    runtime.access.grant_for_post(identity, post_id, VIEW)
    response = runtime.study_log.latest_ai_response(post_id)
    return Envelope(
        status="ok",
        data=AIResponseEnvelope(
            ai_response=AIResponseBody.from_response(response) if response else None
        ),
    )


@router.delete("/posts/{post_id}", response_model=Envelope, tags=["posts"])
async def delete_post(
    post_id: int = Path(..., ge=1),
    identity: IdentityContext = Depends(get_identity),
):
    store = get_runtime().store
    post = store.get_post(post_id)
    if post is None:
        raise NotFoundError("post not found", detail={"post_id": post_id})
    if post.user_id != identity.user_id and not identity.is_admin:
        raise PermissionDenied("only the author or an admin may delete this post")
    store.delete_post(post_id)
    logger.info("post_deleted", post_id=post_id, deleted_by=identity.user_id)
    return Envelope(status="ok", data=DeletedResponse(id=post_id))


@router.post("/posts/{post_id}/like", response_model=Envelope, tags=["posts"])
async def toggle_like(
    post_id: int = Path(..., ge=1),
    identity: IdentityContext = Depends(get_identity),
):
    runtime = get_runtime()
    grant, post = runtime.access.grant_for_post(identity, post_id, VIEW)
    liked = runtime.store.toggle_like(grant.identity.user_id, post.id)
    return Envelope(status="ok", data=LikeResponse(post_id=post.id, liked=liked))


# -- comments ------------------------------------------------------------------


@router.get("/posts/{post_id}/comments", response_model=Envelope, tags=["comments"])
async def list_comments(
    post_id: int = Path(..., ge=1),
    identity: IdentityContext = Depends(get_identity),
):
    runtime = get_runtime()
    runtime.access.grant_for_post(identity, post_id, VIEW)
    comments = runtime.store.list_comments(post_id)
    return Envelope(status="ok", data=[CommentResponse.from_comment(c) for c in comments])


@router.post(
    "/posts/{post_id}/comments", response_model=Envelope, status_code=201, tags=["comments"]
)
async def create_comment(
    body: CommentRequest,
    post_id: int = Path(..., ge=1),
    identity: IdentityContext = Depends(get_identity),
):
    runtime = get_runtime()
    grant, post = runtime.access.grant_for_post(identity, post_id, VIEW)
    comment = runtime.store.create_comment(post.id, grant.identity.user_id, body.content)
    return Envelope(status="ok", data=CommentResponse.from_comment(comment))


@router.delete("/comments/{comment_id}", response_model=Envelope, tags=["comments"])
async def delete_comment(
    comment_id: int = Path(..., ge=1),
    identity: IdentityContext = Depends(get_identity),
):
    store = get_runtime().store
    comment = store.get_comment(comment_id)
    if comment is None:
        raise NotFoundError("comment not found", detail={"comment_id": comment_id})
    if comment.user_id != identity.user_id and not identity.is_admin:
        raise PermissionDenied("only the author or an admin may delete this comment")
    store.delete_comment(comment_id)
    return Envelope(status="ok", data=DeletedResponse(id=comment_id))
