from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    username: str
    email: str
    role: str = "trial"
    created_at: datetime = field(default_factory=utcnow)
    bio: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass
class Category:
    id: int
    name: str
    display_order: int = 0
    is_collapsed: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Channel:
    id: int
    name: str
    category_id: int
    # Kept as the raw stored string; parsed by the permission engine so that
    # bad data surfaces as InvalidChannelType instead of failing on load.
    channel_type: str
    description: str = ""
    display_order: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Post:
    id: int
    user_id: int
    channel_id: int
    content: str
    created_at: datetime = field(default_factory=utcnow)
    image_url: Optional[str] = None
    is_study_log: bool = False
    ai_response_enabled: bool = False
    target_language: Optional[str] = None
    study_tags: List[str] = field(default_factory=list)


@dataclass
class Comment:
    id: int
    post_id: int
    user_id: int
    content: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AIResponse:
    id: int
    post_id: int
    content: str
    target_language: str
    generated_at: datetime = field(default_factory=utcnow)
    response_type: str = "study_support"


@dataclass
class PostView:
    """A post joined with its author and engagement counters for listings."""

    post: Post
    author_username: Optional[str]
    author_role: Optional[str]
    like_count: int = 0
    comment_count: int = 0
    user_liked: bool = False
