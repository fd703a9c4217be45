from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id BIGSERIAL PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL UNIQUE,
    role TEXT NOT NULL DEFAULT 'trial',
    bio TEXT,
    avatar_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS user_credential (
    user_id BIGINT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
    password_hash TEXT NOT NULL,
    password_algo TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS category (
    id BIGSERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    display_order INTEGER NOT NULL DEFAULT 0,
    is_collapsed BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS channel (
    id BIGSERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    category_id BIGINT NOT NULL REFERENCES category(id) ON DELETE CASCADE,
    channel_type TEXT NOT NULL,
    display_order INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS post (
    id BIGSERIAL PRIMARY KEY,
    user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    channel_id BIGINT NOT NULL REFERENCES channel(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    image_url TEXT,
    is_study_log BOOLEAN NOT NULL DEFAULT FALSE,
    ai_response_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    target_language TEXT,
    study_tags JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS post_channel_created_idx ON post (channel_id, created_at DESC);
CREATE TABLE IF NOT EXISTS post_comment (
    id BIGSERIAL PRIMARY KEY,
    post_id BIGINT NOT NULL REFERENCES post(id) ON DELETE CASCADE,
    user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS post_like (
    user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    post_id BIGINT NOT NULL REFERENCES post(id) ON DELETE CASCADE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, post_id)
);
-- post_id carries no foreign key: replies may be written after the post is gone
CREATE TABLE IF NOT EXISTS ai_response (
    id BIGSERIAL PRIMARY KEY,
    post_id BIGINT NOT NULL,
    content TEXT NOT NULL,
    response_type TEXT NOT NULL DEFAULT 'study_support',
    target_language TEXT NOT NULL,
    generated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS ai_response_post_idx ON ai_response (post_id, generated_at DESC);
"""

_POST_VIEW_SELECT = """
SELECT p.*, u.username AS author_username, u.role AS author_role,
       (SELECT count(*) FROM post_like l WHERE l.post_id = p.id) AS like_count,
       (SELECT count(*) FROM post_comment c WHERE c.post_id = p.id) AS comment_count,
       EXISTS (SELECT 1 FROM post_like l WHERE l.post_id = p.id AND l.user_id = %s) AS user_liked
FROM post p LEFT JOIN app_user u ON u.id = p.user_id
"""


class PostgresStore:
    """Postgres-backed store for users, channels, posts and AI replies."""

    def __init__(self, dsn: str, fs_root: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _to_user(row: dict) -> User:
        return User(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            role=row.get("role", "trial"),
            created_at=row["created_at"],
            bio=row.get("bio"),
            avatar_url=row.get("avatar_url"),
        )

    @staticmethod
    def _to_category(row: dict) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            display_order=row.get("display_order", 0),
            is_collapsed=row.get("is_collapsed", False),
            created_at=row["created_at"],
        )

    @staticmethod
    def _to_channel(row: dict) -> Channel:
        return Channel(
            id=row["id"],
            name=row["name"],
            category_id=row["category_id"],
            channel_type=row["channel_type"],
            description=row.get("description") or "",
            display_order=row.get("display_order", 0),
            created_at=row["created_at"],
        )

    @staticmethod
    def _to_post(row: dict) -> Post:
        tags = row.get("study_tags") or []
        if isinstance(tags, str):
            tags = json.loads(tags)
        return Post(
            id=row["id"],
            user_id=row["user_id"],
            channel_id=row["channel_id"],
            content=row["content"],
            created_at=row["created_at"],
            image_url=row.get("image_url"),
            is_study_log=row.get("is_study_log", False),
            ai_response_enabled=row.get("ai_response_enabled", False),
            target_language=row.get("target_language"),
            study_tags=[str(t) for t in tags],
        )

    def _to_post_view(self, row: dict) -> PostView:
        return PostView(
            post=self._to_post(row),
            author_username=row.get("author_username"),
            author_role=row.get("author_role"),
            like_count=int(row.get("like_count") or 0),
            comment_count=int(row.get("comment_count") or 0),
            user_liked=bool(row.get("user_liked")),
        )

    @staticmethod
    def _to_comment(row: dict) -> Comment:
        return Comment(
            id=row["id"],
            post_id=row["post_id"],
            user_id=row["user_id"],
            content=row["content"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _to_ai_response(row: dict) -> AIResponse:
        return AIResponse(
            id=row["id"],
            post_id=row["post_id"],
            content=row["content"],
            target_language=row["target_language"],
            generated_at=row["generated_at"],
            response_type=row.get("response_type", "study_support"),
        )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "trial",
        bio: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (username, email, role, bio)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (username, email, role, bio),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", field=field)
        return self._to_user(row)

    def get_user(self, user_id: Any) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
        except errors.DataError:
            # id supplied in a representation the column cannot take
            return None
        return self._to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY id LIMIT %s", (limit,)
            ).fetchall()
        return [self._to_user(r) for r in rows]

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._to_user(row) if row else None

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise MissingReference("user", user_id)

    def get_password_record(self, user_id: int) -> Optional[Tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # -- categories and channels -------------------------------------------

    def create_category(self, name: str, *, display_order: Optional[int] = None) -> Category:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO category (name, display_order)
                VALUES (%s, COALESCE(%s, (SELECT COALESCE(max(display_order), -1) + 1 FROM category)))
                RETURNING *
                """,
                (name, display_order),
            ).fetchone()
        return self._to_category(row)

    def get_category(self, category_id: int) -> Optional[Category]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM category WHERE id = %s", (category_id,)
            ).fetchone()
        return self._to_category(row) if row else None

    def list_categories(self) -> List[Category]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM category ORDER BY display_order, id"
            ).fetchall()
        return [self._to_category(r) for r in rows]

    def create_channel(
        self,
        category_id: int,
        name: str,
        channel_type: str,
        *,
        description: str = "",
    ) -> Channel:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO channel (name, description, category_id, channel_type, display_order)
                    VALUES (%s, %s, %s, %s,
                            (SELECT COALESCE(max(display_order), -1) + 1 FROM channel WHERE category_id = %s))
                    RETURNING *
                    """,
                    (name, description, category_id, channel_type, category_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise MissingReference("category", category_id)
        return self._to_channel(row)

    def get_channel(self, channel_id: int) -> Optional[Channel]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM channel WHERE id = %s", (channel_id,)
            ).fetchone()
        return self._to_channel(row) if row else None

    def list_channels(self, category_id: int) -> List[Channel]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM channel WHERE category_id = %s ORDER BY display_order, created_at",
                (category_id,),
            ).fetchall()
        return [self._to_channel(r) for r in rows]

    def delete_channel(self, channel_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM channel WHERE id = %s", (channel_id,))
            return cur.rowcount > 0

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO post (user_id, channel_id, content, image_url, is_study_log,
                                      ai_response_enabled, target_language, study_tags)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        channel_id,
                        content,
                        image_url,
                        is_study_log,
                        ai_response_enabled,
                        target_language,
                        json.dumps(list(study_tags or [])),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "channel" in constraint:
                raise MissingReference("channel", channel_id)
            raise MissingReference("user", user_id)
        return self._to_post(row)

    def get_post(self, post_id: int) -> Optional[Post]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM post WHERE id = %s", (post_id,)).fetchone()
        return self._to_post(row) if row else None

    def list_posts(
        self,
        channel_id: int,
        *,
        limit: int = 20,
        offset: int = 0,
        viewer_id: Optional[int] = None,
    ) -> List[PostView]:
        with self._connect() as conn:
            rows = conn.execute(
                _POST_VIEW_SELECT
                + " WHERE p.channel_id = %s ORDER BY p.created_at DESC, p.id DESC LIMIT %s OFFSET %s",
                (viewer_id, channel_id, limit, offset),
            ).fetchall()
        return [self._to_post_view(r) for r in rows]

    def get_post_view(self, post_id: int, *, viewer_id: Optional[int] = None) -> Optional[PostView]:
        with self._connect() as conn:
            row = conn.execute(
                _POST_VIEW_SELECT + " WHERE p.id = %s", (viewer_id, post_id)
            ).fetchone()
        return self._to_post_view(row) if row else None

    def delete_post(self, post_id: int) -> bool:
        # comments and likes cascade; ai_response rows are left in place
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM post WHERE id = %s", (post_id,))
            return cur.rowcount > 0

    def toggle_like(self, user_id: int, post_id: int) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM post_like WHERE user_id = %s AND post_id = %s",
                    (user_id, post_id),
                )
                if cur.rowcount > 0:
                    return False
                conn.execute(
                    "INSERT INTO post_like (user_id, post_id) VALUES (%s, %s)",
                    (user_id, post_id),
                )
                return True
        except errors.ForeignKeyViolation:
            raise MissingReference("post", post_id)

    # -- comments ----------------------------------------------------------

    def create_comment(self, post_id: int, user_id: int, content: str) -> Comment:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO post_comment (post_id, user_id, content)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (post_id, user_id, content),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise MissingReference("post", post_id)
        return self._to_comment(row)

    def get_comment(self, comment_id: int) -> Optional[Comment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM post_comment WHERE id = %s", (comment_id,)
            ).fetchone()
        return self._to_comment(row) if row else None

    def list_comments(self, post_id: int) -> List[Comment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM post_comment WHERE post_id = %s ORDER BY created_at, id",
                (post_id,),
            ).fetchall()
        return [self._to_comment(r) for r in rows]

    def delete_comment(self, comment_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM post_comment WHERE id = %s", (comment_id,))
            return cur.rowcount > 0

    # -- AI responses ------------------------------------------------------

    def add_ai_response(
        self,
        post_id: int,
        content: str,
        target_language: str,
        *,
        response_type: str = "study_support",
    ) -> AIResponse:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO ai_response (post_id, content, response_type, target_language)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (post_id, content, response_type, target_language),
            ).fetchone()
        return self._to_ai_response(row)

    def list_ai_responses(self, post_id: int) -> List[AIResponse]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM ai_response WHERE post_id = %s ORDER BY generated_at, id",
                (post_id,),
            ).fetchall()
        return [self._to_ai_response(r) for r in rows]

    def get_latest_ai_response(self, post_id: int) -> Optional[AIResponse]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM ai_response WHERE post_id = %s
                ORDER BY generated_at DESC, id DESC LIMIT 1
                """,
                (post_id,),
            ).fetchone()
        return self._to_ai_response(row) if row else None
