from __future__ import annotations

import json
import threading
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from commonroom.logging import get_logger
from commonroom.storage.errors import ConstraintViolation, MissingReference
from commonroom.storage.models import (
    AIResponse,
    Category,
    Channel,
    Comment,
    Post,
    PostView,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory store persisted to a JSON snapshot under ``fs_root``.

    Lookups are exact: ``get_user(5)`` and ``get_user("5")`` are different
    keys, matching how a relational store compares typed columns.
    """

    def __init__(self, fs_root: str = "/tmp/commonroom") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, Tuple[str, str]] = {}
        self.categories: Dict[int, Category] = {}
        self.channels: Dict[int, Channel] = {}
        self.posts: Dict[int, Post] = {}
        self.comments: Dict[int, Comment] = {}
        self.likes: Set[Tuple[int, int]] = set()
        self.ai_responses: Dict[int, AIResponse] = {}
        self._seq: Dict[str, int] = {}
        # RLock so nested helpers can re-enter within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _next_id(self, kind: str) -> int:
        with self._data_lock:
            value = self._seq.get(kind, 0) + 1
            self._seq[kind] = value
            return value

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "trial",
        bio: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", field="email")
                if existing.username == username:
                    raise ConstraintViolation("username already exists", field="username")
            user = User(
                id=self._next_id("users"),
                username=username,
                email=email,
                role=role,
                bio=bio,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: Any) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return user
        return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return user
        return None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.id)[:limit]

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReference("user", user_id)
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: int) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- categories and channels -------------------------------------------

    def create_category(self, name: str, *, display_order: Optional[int] = None) -> Category:
        with self._data_lock:
            if display_order is None:
                display_order = max(
                    (c.display_order for c in self.categories.values()), default=-1
                ) + 1
            category = Category(
                id=self._next_id("categories"), name=name, display_order=display_order
            )
            self.categories[category.id] = category
            self._persist_state()
            return category

    def get_category(self, category_id: int) -> Optional[Category]:
        with self._data_lock:
            return self.categories.get(category_id)

    def list_categories(self) -> List[Category]:
        with self._data_lock:
            return sorted(self.categories.values(), key=lambda c: (c.display_order, c.id))

    def create_channel(
        self,
        category_id: int,
        name: str,
        channel_type: str,
        *,
        description: str = "",
    ) -> Channel:
        with self._data_lock:
            if category_id not in self.categories:
                raise MissingReference("category", category_id)
            display_order = max(
                (
                    c.display_order
                    for c in self.channels.values()
                    if c.category_id == category_id
                ),
                default=-1,
            ) + 1
            channel = Channel(
                id=self._next_id("channels"),
                name=name,
                category_id=category_id,
                channel_type=channel_type,
                description=description,
                display_order=display_order,
            )
            self.channels[channel.id] = channel
            self._persist_state()
            return channel

    def get_channel(self, channel_id: int) -> Optional[Channel]:
        with self._data_lock:
            return self.channels.get(channel_id)

    def list_channels(self, category_id: int) -> List[Channel]:
        with self._data_lock:
            return sorted(
                (c for c in self.channels.values() if c.category_id == category_id),
                key=lambda c: (c.display_order, c.created_at),
            )

    def delete_channel(self, channel_id: int) -> bool:
        with self._data_lock:
            if self.channels.pop(channel_id, None) is None:
                return False
            for post_id in [p.id for p in self.posts.values() if p.channel_id == channel_id]:
                self._delete_post_locked(post_id)
            self._persist_state()
            return True

    # -- posts -------------------------------------------------------------

    def create_post(
        self,
        user_id: int,
        channel_id: int,
        content: str,
        *,
        image_url: Optional[str] = None,
        is_study_log: bool = False,
        ai_response_enabled: bool = False,
        target_language: Optional[str] = None,
        study_tags: Optional[Sequence[str]] = None,
    ) -> Post:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReference("user", user_id)
            if channel_id not in self.channels:
                raise MissingReference("channel", channel_id)
            post = Post(
                id=self._next_id("posts"),
                user_id=user_id,
                channel_id=channel_id,
                content=content,
                image_url=image_url,
                is_study_log=is_study_log,
                ai_response_enabled=ai_response_enabled,
                target_language=target_language,
                study_tags=list(study_tags or []),
            )
            self.posts[post.id] = post
            self._persist_state()
            return post

    def get_post(self, post_id: int) -> Optional[Post]:
        with self._data_lock:
            return self.posts.get(post_id)

    def list_posts(
        self,
        channel_id: int,
        *,
        limit: int = 20,
        offset: int = 0,
        viewer_id: Optional[int] = None,
    ) -> List[PostView]:
        with self._data_lock:
            posts = sorted(
                (p for p in self.posts.values() if p.channel_id == channel_id),
                key=lambda p: (p.created_at, p.id),
                reverse=True,
            )
            return [self._post_view(p, viewer_id) for p in posts[offset : offset + limit]]

    def get_post_view(self, post_id: int, *, viewer_id: Optional[int] = None) -> Optional[PostView]:
        with self._data_lock:
            post = self.posts.get(post_id)
            return self._post_view(post, viewer_id) if post else None

    def _post_view(self, post: Post, viewer_id: Optional[int]) -> PostView:
        author = self.users.get(post.user_id)
        return PostView(
            post=post,
            author_username=author.username if author else None,
            author_role=author.role if author else None,
            like_count=sum(1 for _, pid in self.likes if pid == post.id),
            comment_count=sum(1 for c in self.comments.values() if c.post_id == post.id),
            user_liked=(viewer_id, post.id) in self.likes if viewer_id is not None else False,
        )

    def delete_post(self, post_id: int) -> bool:
        with self._data_lock:
            deleted = self._delete_post_locked(post_id)
            if deleted:
                self._persist_state()
            return deleted

    def _delete_post_locked(self, post_id: int) -> bool:
        if self.posts.pop(post_id, None) is None:
            return False
        for comment_id in [c.id for c in self.comments.values() if c.post_id == post_id]:
            self.comments.pop(comment_id, None)
        self.likes = {(uid, pid) for uid, pid in self.likes if pid != post_id}
        # AI responses are left in place: a reply generated for a deleted
        # post is tolerated rather than cascaded.
        return True

    def toggle_like(self, user_id: int, post_id: int) -> bool:
        """Flip the like state and return whether the post is now liked."""
        with self._data_lock:
            if post_id not in self.posts:
                raise MissingReference("post", post_id)
            key = (user_id, post_id)
            if key in self.likes:
                self.likes.discard(key)
                liked = False
            else:
                self.likes.add(key)
                liked = True
            self._persist_state()
            return liked

    # -- comments ----------------------------------------------------------

    def create_comment(self, post_id: int, user_id: int, content: str) -> Comment:
        with self._data_lock:
            if post_id not in self.posts:
                raise MissingReference("post", post_id)
            if user_id not in self.users:
                raise MissingReference("user", user_id)
            comment = Comment(
                id=self._next_id("comments"), post_id=post_id, user_id=user_id, content=content
            )
            self.comments[comment.id] = comment
            self._persist_state()
            return comment

    def get_comment(self, comment_id: int) -> Optional[Comment]:
        with self._data_lock:
            return self.comments.get(comment_id)

    def list_comments(self, post_id: int) -> List[Comment]:
        with self._data_lock:
            return sorted(
                (c for c in self.comments.values() if c.post_id == post_id),
                key=lambda c: (c.created_at, c.id),
            )

    def delete_comment(self, comment_id: int) -> bool:
        with self._data_lock:
            if self.comments.pop(comment_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- AI responses ------------------------------------------------------

    def add_ai_response(
        self,
        post_id: int,
        content: str,
        target_language: str,
        *,
        response_type: str = "study_support",
    ) -> AIResponse:
        # No post existence check: the detached writer may outlive its post.
        with self._data_lock:
            response = AIResponse(
                id=self._next_id("ai_responses"),
                post_id=post_id,
                content=content,
                target_language=target_language,
                response_type=response_type,
            )
            self.ai_responses[response.id] = response
            self._persist_state()
            return response

    def list_ai_responses(self, post_id: int) -> List[AIResponse]:
        with self._data_lock:
            return sorted(
                (r for r in self.ai_responses.values() if r.post_id == post_id),
                key=lambda r: (r.generated_at, r.id),
            )

    def get_latest_ai_response(self, post_id: int) -> Optional[AIResponse]:
        responses = self.list_ai_responses(post_id)
        return responses[-1] if responses else None

    # -- snapshot ------------------------------------------------------------

    @staticmethod
    def _dump(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _restore(cls, raw: dict, *datetime_fields: str):
        values = dict(raw)
        for name in datetime_fields:
            if values.get(name):
                values[name] = datetime.fromisoformat(values[name])
        return cls(**values)

    def _persist_state(self) -> None:
        state = {
            "seq": self._seq,
            "users": [self._dump(u) for u in self.users.values()],
            "credentials": [
                {"user_id": uid, "password_hash": rec[0], "password_algo": rec[1]}
                for uid, rec in self.credentials.items()
            ],
            "categories": [self._dump(c) for c in self.categories.values()],
            "channels": [self._dump(c) for c in self.channels.values()],
            "posts": [self._dump(p) for p in self.posts.values()],
            "comments": [self._dump(c) for c in self.comments.values()],
            "likes": [list(pair) for pair in sorted(self.likes)],
            "ai_responses": [self._dump(r) for r in self.ai_responses.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.error("memory_store_load_failed", path=str(path), error=str(exc))
            return False
        self._seq = {k: int(v) for k, v in state.get("seq", {}).items()}
        for raw in state.get("users", []):
            user = self._restore(User, raw, "created_at")
            self.users[user.id] = user
        for raw in state.get("credentials", []):
            self.credentials[raw["user_id"]] = (raw["password_hash"], raw["password_algo"])
        for raw in state.get("categories", []):
            category = self._restore(Category, raw, "created_at")
            self.categories[category.id] = category
        for raw in state.get("channels", []):
            channel = self._restore(Channel, raw, "created_at")
            self.channels[channel.id] = channel
        for raw in state.get("posts", []):
            post = self._restore(Post, raw, "created_at")
            self.posts[post.id] = post
        for raw in state.get("comments", []):
            comment = self._restore(Comment, raw, "created_at")
            self.comments[comment.id] = comment
        self.likes = {(int(uid), int(pid)) for uid, pid in state.get("likes", [])}
        for raw in state.get("ai_responses", []):
            response = self._restore(AIResponse, raw, "generated_at")
            self.ai_responses[response.id] = response
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            channels=len(self.channels),
            posts=len(self.posts),
        )
        return True
