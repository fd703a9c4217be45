"""Channel view/post policy keyed by channel type and role.

Both decisions are pure functions of ``(channel_type, role)``. The policy
table has exactly one entry per :class:`ChannelType`; a member added to the
enumeration without a policy fails at import time.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Union

from commonroom.logging import get_logger
from commonroom.service.errors import InvalidChannelType
from commonroom.storage.models import Channel

logger = get_logger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    INSTRUCTOR_EN = "instructor_en"
    INSTRUCTOR_JA = "instructor_ja"
    CLASS1_MEMBER = "class1_member"
    MEMBER_EN = "member_en"
    MEMBER_JA = "member_ja"
    TRIAL = "trial"


class ChannelType(str, Enum):
    ADMIN_ONLY_INSTRUCTORS_VIEW = "admin_only_instructors_view"
    ADMIN_ONLY_ALL_VIEW = "admin_only_all_view"
    INSTRUCTORS_POST_ALL_VIEW = "instructors_post_all_view"
    ALL_POST_ALL_VIEW = "all_post_all_view"
    CLASS1_POST_CLASS1_VIEW = "class1_post_class1_view"


class ChannelPolicy(NamedTuple):
    view: FrozenSet[Role]
    post: FrozenSet[Role]


EVERYONE: FrozenSet[Role] = frozenset(Role)
ADMINS: FrozenSet[Role] = frozenset({Role.ADMIN})
STAFF: FrozenSet[Role] = frozenset({Role.ADMIN, Role.INSTRUCTOR_EN, Role.INSTRUCTOR_JA})
CLASS1: FrozenSet[Role] = STAFF | {Role.CLASS1_MEMBER}

POLICIES: Dict[ChannelType, ChannelPolicy] = {
    ChannelType.ADMIN_ONLY_INSTRUCTORS_VIEW: ChannelPolicy(view=STAFF, post=ADMINS),
    ChannelType.ADMIN_ONLY_ALL_VIEW: ChannelPolicy(view=EVERYONE, post=ADMINS),
    ChannelType.INSTRUCTORS_POST_ALL_VIEW: ChannelPolicy(view=EVERYONE, post=STAFF),
    ChannelType.ALL_POST_ALL_VIEW: ChannelPolicy(view=EVERYONE, post=EVERYONE - {Role.TRIAL}),
    ChannelType.CLASS1_POST_CLASS1_VIEW: ChannelPolicy(view=CLASS1, post=CLASS1),
}

_missing = set(ChannelType) - set(POLICIES)
if _missing:
    raise RuntimeError(
        "channel types without a policy: " + ", ".join(sorted(t.value for t in _missing))
    )

# Roles that may never post, whatever the channel policy says.
POST_EXCLUDED_ROLES: FrozenSet[Role] = frozenset({Role.TRIAL})


def parse_channel_type(value: Union[str, ChannelType]) -> ChannelType:
    try:
        return ChannelType(value)
    except ValueError:
        raise InvalidChannelType(
            "channel has an unrecognized type", detail={"channel_type": str(value)}
        ) from None


def parse_role(value: Union[str, Role, None]) -> Role | None:
    """Return the matching role, or ``None`` for an unknown role string."""
    try:
        return Role(value)
    except ValueError:
        logger.warning("unknown_role", role=value)
        return None


def can_view(channel_type: Union[str, ChannelType], role: Union[str, Role]) -> bool:
    policy = POLICIES[parse_channel_type(channel_type)]
    parsed = parse_role(role)
    return parsed is not None and parsed in policy.view


def can_post(channel_type: Union[str, ChannelType], role: Union[str, Role]) -> bool:
    policy = POLICIES[parse_channel_type(channel_type)]
    parsed = parse_role(role)
    if parsed is None or parsed in POST_EXCLUDED_ROLES:
        return False
    return parsed in policy.post


def visible_channels(channels: Iterable[Channel], role: Union[str, Role]) -> List[Channel]:
    """Filter a channel listing to what ``role`` may view.

    Channels carrying an invalid type are dropped from the listing and logged;
    fetching such a channel directly still raises :class:`InvalidChannelType`.
    """
    visible: List[Channel] = []
    for channel in channels:
        try:
            allowed = can_view(channel.channel_type, role)
        except InvalidChannelType:
            logger.error(
                "channel_type_invalid",
                channel_id=channel.id,
                channel_type=channel.channel_type,
            )
            continue
        if allowed:
            visible.append(channel)
    return visible
