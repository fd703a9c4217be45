import pytest

from commonroom.config import Settings
from commonroom.service.access import POST, VIEW, ChannelAccess
from commonroom.service.auth import AuthService
from commonroom.service.errors import (
    ChannelNotFound,
    IdentityNotFound,
    InvalidChannelType,
    NotFoundError,
    PermissionDenied,
    Unauthenticated,
)
from commonroom.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth(store):
    return AuthService(store, Settings(jwt_secret="channel-access-secret-" + "x" * 32))


@pytest.fixture
def access(auth, store):
    return ChannelAccess(auth, store)


@pytest.fixture
def category(store):
    return store.create_category("General")


def _bearer(auth, user):
    return f"Bearer {auth.issue_token(user)}"


def test_view_and_post_granted(access, auth, store, category):
    channel = store.create_channel(category.id, "chat", "all_post_all_view")
    user = store.create_user("mia", "mia@example.com", role="member_ja")
    grant = access.authorize(_bearer(auth, user), channel.id, POST)
    assert grant.channel.id == channel.id
    assert grant.identity.user_id == user.id
    assert grant.action == POST


def test_trial_denied_post_but_allowed_view(access, auth, store, category):
    channel = store.create_channel(category.id, "chat", "all_post_all_view")
    trial = store.create_user("tom", "tom@example.com", role="trial")
    assert access.authorize(_bearer(auth, trial), channel.id, VIEW).identity.role == "trial"
    with pytest.raises(PermissionDenied):
        access.authorize(_bearer(auth, trial), channel.id, POST)


def test_missing_credential_fails_before_channel_lookup(access, store):
    # channel 999 does not exist; the credential check still comes first
    with pytest.raises(Unauthenticated):
        access.authorize(None, 999, VIEW)


def test_unknown_channel(access, auth, store):
    user = store.create_user("mia", "mia@example.com", role="admin")
    with pytest.raises(ChannelNotFound) as excinfo:
        access.authorize(_bearer(auth, user), 999, VIEW)
    assert excinfo.value.status_code == 404


def test_invalid_channel_type_is_not_a_denial(access, auth, store, category):
    channel = store.create_channel(category.id, "legacy", "everyone_everything")
    user = store.create_user("mia", "mia@example.com", role="admin")
    with pytest.raises(InvalidChannelType) as excinfo:
        access.authorize(_bearer(auth, user), channel.id, VIEW)
    assert not isinstance(excinfo.value, PermissionDenied)
    assert excinfo.value.status_code == 400


def test_deleted_user_token(access, auth, store, category):
    channel = store.create_channel(category.id, "chat", "all_post_all_view")
    user = store.create_user("gone", "gone@example.com", role="member_en")
    token = _bearer(auth, user)
    store.users.pop(user.id)
    with pytest.raises(IdentityNotFound):
        access.authorize(token, channel.id, VIEW)


def test_role_change_applies_to_next_request(access, auth, store, category):
    channel = store.create_channel(category.id, "staff", "admin_only_instructors_view")
    user = store.create_user("ken", "ken@example.com", role="member_en")
    token = _bearer(auth, user)
    with pytest.raises(PermissionDenied):
        access.authorize(token, channel.id, VIEW)
    store.update_user_role(user.id, "instructor_en")
    assert access.authorize(token, channel.id, VIEW).identity.role == "instructor_en"


def test_authorize_post_uses_owning_channel(access, auth, store, category):
    channel = store.create_channel(category.id, "class1", "class1_post_class1_view")
    author = store.create_user("amy", "amy@example.com", role="class1_member")
    outsider = store.create_user("bo", "bo@example.com", role="member_en")
    post = store.create_post(author.id, channel.id, "hello")
    grant, found = access.authorize_post(_bearer(auth, author), post.id)
    assert found.id == post.id
    assert grant.channel.id == channel.id
    with pytest.raises(PermissionDenied):
        access.authorize_post(_bearer(auth, outsider), post.id)


def test_authorize_post_missing_post(access, auth, store):
    user = store.create_user("amy", "amy@example.com", role="admin")
    with pytest.raises(NotFoundError):
        access.authorize_post(_bearer(auth, user), 12345)


def test_unknown_action_is_a_programming_error(access, auth, store, category):
    channel = store.create_channel(category.id, "chat", "all_post_all_view")
    user = store.create_user("mia", "mia@example.com", role="admin")
    with pytest.raises(ValueError):
        access.authorize(_bearer(auth, user), channel.id, "edit")


def test_grant_for_resolved_identity(access, auth, store, category):
    channel = store.create_channel(category.id, "chat", "all_post_all_view")
    user = store.create_user("mia", "mia@example.com", role="trial")
    identity = auth.resolve_identity(_bearer(auth, user))
    assert access.grant(identity, channel.id, VIEW).channel.id == channel.id
    with pytest.raises(PermissionDenied):
        access.grant(identity, channel.id, POST)
    with pytest.raises(ChannelNotFound):
        access.grant(identity, 999, VIEW)
