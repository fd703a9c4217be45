import pytest

from commonroom.storage.errors import ConstraintViolation, MissingReference
from commonroom.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def seeded(store):
    category = store.create_category("General")
    channel = store.create_channel(category.id, "chat", "all_post_all_view")
    author = store.create_user("aki", "aki@example.com", role="member_ja")
    return store, channel, author


class TestUsers:
    def test_ids_are_sequential_ints(self, store):
        first = store.create_user("a", "a@example.com")
        second = store.create_user("b", "b@example.com")
        assert (first.id, second.id) == (1, 2)
        assert first.role == "trial"

    def test_lookup_is_exact(self, store):
        user = store.create_user("a", "a@example.com")
        assert store.get_user(user.id) is user
        assert store.get_user(str(user.id)) is None

    def test_duplicate_username_and_email(self, store):
        store.create_user("a", "a@example.com")
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("a", "other@example.com")
        assert excinfo.value.detail["field"] == "username"
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("other", "a@example.com")
        assert excinfo.value.detail["field"] == "email"

    def test_update_role_missing_user(self, store):
        assert store.update_user_role(99, "admin") is None


class TestPosts:
    def test_post_requires_existing_user_and_channel(self, seeded):
        store, channel, author = seeded
        with pytest.raises(MissingReference):
            store.create_post(999, channel.id, "hi")
        with pytest.raises(MissingReference):
            store.create_post(author.id, 999, "hi")

    def test_listing_newest_first_with_counts(self, seeded):
        store, channel, author = seeded
        other = store.create_user("ben", "ben@example.com", role="member_en")
        older = store.create_post(author.id, channel.id, "one")
        newer = store.create_post(author.id, channel.id, "two")
        store.create_comment(older.id, other.id, "nice")
        assert store.toggle_like(other.id, older.id) is True

        views = store.list_posts(channel.id, viewer_id=other.id)
        assert [v.post.id for v in views] == [newer.id, older.id]
        older_view = views[1]
        assert older_view.like_count == 1
        assert older_view.comment_count == 1
        assert older_view.user_liked is True
        assert older_view.author_username == "aki"
        assert views[0].user_liked is False

    def test_pagination(self, seeded):
        store, channel, author = seeded
        for i in range(5):
            store.create_post(author.id, channel.id, f"post {i}")
        page = store.list_posts(channel.id, limit=2, offset=2)
        assert [v.post.content for v in page] == ["post 2", "post 1"]

    def test_like_toggles(self, seeded):
        store, channel, author = seeded
        post = store.create_post(author.id, channel.id, "hi")
        assert store.toggle_like(author.id, post.id) is True
        assert store.toggle_like(author.id, post.id) is False
        assert store.get_post_view(post.id).like_count == 0

    def test_delete_cascades_comments_and_likes_not_ai_responses(self, seeded):
        store, channel, author = seeded
        post = store.create_post(author.id, channel.id, "hi", is_study_log=True)
        comment = store.create_comment(post.id, author.id, "c")
        store.toggle_like(author.id, post.id)
        store.add_ai_response(post.id, "reply", "English")

        assert store.delete_post(post.id) is True
        assert store.get_comment(comment.id) is None
        assert store.likes == set()
        assert store.get_latest_ai_response(post.id).content == "reply"
        assert store.delete_post(post.id) is False

    def test_delete_channel_removes_posts(self, seeded):
        store, channel, author = seeded
        post = store.create_post(author.id, channel.id, "hi")
        assert store.delete_channel(channel.id) is True
        assert store.get_post(post.id) is None


class TestAIResponses:
    def test_latest_wins(self, store):
        store.add_ai_response(1, "old", "English")
        store.add_ai_response(1, "new", "English")
        store.add_ai_response(2, "other", "Japanese")
        assert store.get_latest_ai_response(1).content == "new"
        assert len(store.list_ai_responses(1)) == 2

    def test_none_when_absent(self, store):
        assert store.get_latest_ai_response(1) is None


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    category = store.create_category("General")
    channel = store.create_channel(category.id, "chat", "class1_post_class1_view")
    user = store.create_user("aki", "aki@example.com", role="class1_member")
    store.save_password(user.id, "hash", "argon2id")
    post = store.create_post(
        user.id, channel.id, "hi", is_study_log=True, target_language="Japanese", study_tags=["x"]
    )
    store.toggle_like(user.id, post.id)
    store.add_ai_response(post.id, "reply", "Japanese")

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_user(user.id).role == "class1_member"
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.get_channel(channel.id).channel_type == "class1_post_class1_view"
    restored = reloaded.get_post(post.id)
    assert restored.study_tags == ["x"]
    assert restored.created_at == post.created_at
    assert reloaded.get_post_view(post.id).like_count == 1
    assert reloaded.get_latest_ai_response(post.id).content == "reply"
    # sequences continue past restored ids
    assert reloaded.create_user("new", "new@example.com").id == user.id + 1
