from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from commonroom.service.permissions import ChannelType, Role
from commonroom.storage.models import (
    AIResponse,
    Category,
    Channel,
    Comment,
    Post,
    PostView,
    User,
)

MAX_CONTENT_LENGTH = 10000

_VALID_ERROR_CODES = frozenset({
    "unauthenticated",
    "identity_not_found",
    "permission_denied",
    "channel_not_found",
    "invalid_channel_type",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_text(value: str, field_name: str) -> str:
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError(f"{field_name} must not be empty")
    return normalized


def _require_content(value: str, field_name: str) -> str:
    """Reject blank user content; the original text is kept as written."""
    if not value.strip():
        raise ValueError(f"{field_name} must not be empty")
    return value


# -- requests -----------------------------------------------------------------


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return _validate_text(value, "username")

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RoleUpdateRequest(BaseModel):
    role: Role


class CategoryRequest(BaseModel):
    name: str = Field(..., max_length=100)
    display_order: Optional[int] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_text(value, "name")


class ChannelRequest(BaseModel):
    name: str = Field(..., max_length=100)
    # Validated against ChannelType in the route so bad values map to
    # invalid_channel_type rather than a generic schema error.
    channel_type: str
    description: str = Field(default="", max_length=500)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_text(value, "name")


class PostRequest(BaseModel):
    content: str = Field(..., max_length=MAX_CONTENT_LENGTH)
    image_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("content")
    @classmethod
    def _validate_content(cls, value: str) -> str:
        return _require_content(value, "content")


class StudyPostRequest(PostRequest):
    model_config = ConfigDict(populate_by_name=True)

    ai_response_enabled: bool = Field(default=False, alias="aiResponseEnabled")
    target_language: Literal["English", "Japanese"] = Field(
        default="English", alias="targetLanguage"
    )


class CommentRequest(BaseModel):
    content: str = Field(..., max_length=2000)

    @field_validator("content")
    @classmethod
    def _validate_content(cls, value: str) -> str:
        return _require_content(value, "content")


# -- responses ----------------------------------------------------------------


class UserResponse(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    role: str
    created_at: datetime
    bio: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def from_user(cls, user: User, *, include_email: bool = True) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email if include_email else None,
            role=user.role,
            created_at=user.created_at,
            bio=user.bio,
            avatar_url=user.avatar_url,
        )


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


class CategoryResponse(BaseModel):
    id: int
    name: str
    display_order: int
    is_collapsed: bool
    created_at: datetime

    @classmethod
    def from_category(cls, category: Category) -> "CategoryResponse":
        return cls(
            id=category.id,
            name=category.name,
            display_order=category.display_order,
            is_collapsed=category.is_collapsed,
            created_at=category.created_at,
        )


class ChannelResponse(BaseModel):
    id: int
    name: str
    description: str
    category_id: int
    channel_type: str
    display_order: int
    created_at: datetime
    can_post: Optional[bool] = None

    @classmethod
    def from_channel(cls, channel: Channel, *, can_post: Optional[bool] = None) -> "ChannelResponse":
        return cls(
            id=channel.id,
            name=channel.name,
            description=channel.description,
            category_id=channel.category_id,
            channel_type=channel.channel_type,
            display_order=channel.display_order,
            created_at=channel.created_at,
            can_post=can_post,
        )


class PostResponse(BaseModel):
    id: int
    user_id: int
    channel_id: int
    content: str
    image_url: Optional[str] = None
    is_study_log: bool
    ai_response_enabled: bool
    target_language: Optional[str] = None
    study_tags: List[str] = Field(default_factory=list)
    created_at: datetime
    author_username: Optional[str] = None
    author_role: Optional[str] = None
    like_count: int = 0
    comment_count: int = 0
    user_liked: bool = False

    @classmethod
    def from_post(cls, post: Post) -> "PostResponse":
        return cls(
            id=post.id,
            user_id=post.user_id,
            channel_id=post.channel_id,
            content=post.content,
            image_url=post.image_url,
            is_study_log=post.is_study_log,
            ai_response_enabled=post.ai_response_enabled,
            target_language=post.target_language,
            study_tags=list(post.study_tags),
            created_at=post.created_at,
        )

    @classmethod
    def from_view(cls, view: PostView) -> "PostResponse":
        return cls.from_post(view.post).model_copy(
            update={
                "author_username": view.author_username,
                "author_role": view.author_role,
                "like_count": view.like_count,
                "comment_count": view.comment_count,
                "user_liked": view.user_liked,
            }
        )


class PostListResponse(BaseModel):
    items: List[PostResponse]
    limit: int
    offset: int


class StudyPostResponse(BaseModel):
    post: PostResponse
    tags: List[str]
    ai_enabled: bool


class AIResponseBody(BaseModel):
    id: int
    post_id: int
    content: str
    response_type: str
    target_language: str
    generated_at: datetime

    @classmethod
    def from_response(cls, response: AIResponse) -> "AIResponseBody":
        return cls(
            id=response.id,
            post_id=response.post_id,
            content=response.content,
            response_type=response.response_type,
            target_language=response.target_language,
            generated_at=response.generated_at,
        )


class AIResponseEnvelope(BaseModel):
    ai_response: Optional[AIResponseBody] = None


class CommentResponse(BaseModel):
    id: int
    post_id: int
    user_id: int
    content: str
    created_at: datetime

    @classmethod
    def from_comment(cls, comment: Comment) -> "CommentResponse":
        return cls(
            id=comment.id,
            post_id=comment.post_id,
            user_id=comment.user_id,
            content=comment.content,
            created_at=comment.created_at,
        )


class LikeResponse(BaseModel):
    post_id: int
    liked: bool


class DeletedResponse(BaseModel):
    id: int
    deleted: bool = True


CHANNEL_TYPES = [t.value for t in ChannelType]
