"""Channel policy table: every (channel type, role) pair, plus bad data."""

import pytest

from commonroom.service.errors import InvalidChannelType
from commonroom.service.permissions import (
    POLICIES,
    ChannelType,
    Role,
    can_post,
    can_view,
    visible_channels,
)
from commonroom.storage.models import Channel

ADMIN = "admin"
IEN = "instructor_en"
IJA = "instructor_ja"
C1 = "class1_member"
MEN = "member_en"
MJA = "member_ja"
TRIAL = "trial"
ALL = {ADMIN, IEN, IJA, C1, MEN, MJA, TRIAL}

EXPECTED = {
    "admin_only_instructors_view": ({ADMIN, IEN, IJA}, {ADMIN}),
    "admin_only_all_view": (ALL, {ADMIN}),
    "instructors_post_all_view": (ALL, {ADMIN, IEN, IJA}),
    "all_post_all_view": (ALL, ALL - {TRIAL}),
    "class1_post_class1_view": ({ADMIN, IEN, IJA, C1}, {ADMIN, IEN, IJA, C1}),
}

PAIRS = [(ct, role) for ct in EXPECTED for role in sorted(ALL)]


@pytest.mark.parametrize("channel_type,role", PAIRS)
def test_can_view_matches_table(channel_type, role):
    assert can_view(channel_type, role) is (role in EXPECTED[channel_type][0])


@pytest.mark.parametrize("channel_type,role", PAIRS)
def test_can_post_matches_table(channel_type, role):
    assert can_post(channel_type, role) is (role in EXPECTED[channel_type][1])


@pytest.mark.parametrize("channel_type", list(ChannelType))
def test_trial_never_posts(channel_type):
    assert can_post(channel_type, Role.TRIAL) is False


def test_trial_cannot_post_in_open_channel():
    assert can_view("all_post_all_view", "trial") is True
    assert can_post("all_post_all_view", "trial") is False


def test_class1_member_cannot_view_instructor_channel():
    assert can_view("admin_only_instructors_view", "class1_member") is False


def test_every_channel_type_has_a_policy():
    assert set(POLICIES) == set(ChannelType)


@pytest.mark.parametrize("bad", ["", "public", "ALL_POST_ALL_VIEW", "admin_only"])
def test_unknown_channel_type_raises(bad):
    with pytest.raises(InvalidChannelType):
        can_view(bad, "admin")
    with pytest.raises(InvalidChannelType):
        can_post(bad, "admin")


def test_unknown_channel_type_checked_before_role():
    with pytest.raises(InvalidChannelType):
        can_post("nope", "not-a-role")


def test_unknown_role_is_denied():
    assert can_view("all_post_all_view", "superuser") is False
    assert can_post("all_post_all_view", "superuser") is False


def test_enum_members_accepted():
    assert can_post(ChannelType.INSTRUCTORS_POST_ALL_VIEW, Role.INSTRUCTOR_JA) is True


def _channel(channel_id, channel_type):
    return Channel(id=channel_id, name=f"c{channel_id}", category_id=1, channel_type=channel_type)


def test_visible_channels_filters_by_role():
    channels = [
        _channel(1, "all_post_all_view"),
        _channel(2, "admin_only_instructors_view"),
        _channel(3, "class1_post_class1_view"),
    ]
    assert [c.id for c in visible_channels(channels, "member_en")] == [1]
    assert [c.id for c in visible_channels(channels, "class1_member")] == [1, 3]
    assert [c.id for c in visible_channels(channels, "admin")] == [1, 2, 3]


def test_visible_channels_skips_invalid_types():
    channels = [_channel(1, "all_post_all_view"), _channel(2, "mystery")]
    assert [c.id for c in visible_channels(channels, "admin")] == [1]
