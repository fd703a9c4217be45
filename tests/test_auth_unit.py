"""Unit tests for the auth service.

Covers password hashing, token signing and the identity resolver's
corroboration order.
"""

import time

import pytest

from commonroom.config import Settings
from commonroom.service.auth import AuthService
from commonroom.service.errors import IdentityNotFound, Unauthenticated, ValidationError
from commonroom.storage.errors import ConstraintViolation
from commonroom.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, settings=settings)


@pytest.fixture
def member(memory_store):
    return memory_store.create_user("alice", "alice@example.com", role="member_en")


class TextKeyStore(MemoryStore):
    """Store whose id lookups only match the textual form of an id."""

    def get_user(self, user_id):
        if isinstance(user_id, str) and user_id.isdigit():
            return super().get_user(int(user_id))
        return None


def _payload(settings, **overrides):
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "sub": 1,
        "username": "alice",
        "role": "member_en",
        "iat": now,
        "exp": now + 600,
        "token_type": "access",
    }
    payload.update(overrides)
    return payload


class TestPasswords:
    def test_hash_is_salted_argon2id(self, auth_service):
        hash1, algo = auth_service._hash_password("TestPassword123!")
        hash2, _ = auth_service._hash_password("TestPassword123!")
        assert algo == "argon2id"
        assert hash1 != hash2
        assert "TestPassword123!" not in hash1

    def test_verify_password(self, auth_service, member):
        auth_service.save_password(member.id, "TestPassword123!")
        assert auth_service.verify_password(member.id, "TestPassword123!") is True
        assert auth_service.verify_password(member.id, "wrong") is False

    def test_verify_without_record(self, auth_service, member):
        assert auth_service.verify_password(member.id, "anything") is False


class TestRegisterAndLogin:
    def test_register_creates_trial_user(self, auth_service):
        user, token = auth_service.register("bob", "Bob@Example.com", "Password123")
        assert user.role == "trial"
        assert user.email == "bob@example.com"
        identity = auth_service.resolve_identity(f"Bearer {token}")
        assert identity.user_id == user.id
        assert identity.role == "trial"

    def test_register_duplicate_email(self, auth_service):
        auth_service.register("bob", "bob@example.com", "Password123")
        with pytest.raises(ConstraintViolation):
            auth_service.register("bobby", "bob@example.com", "Password123")

    def test_register_requires_fields(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.register("  ", "bob@example.com", "Password123")

    def test_login_round_trip(self, auth_service):
        user, _ = auth_service.register("bob", "bob@example.com", "Password123")
        logged_in, token = auth_service.login("bob@example.com", "Password123")
        assert logged_in.id == user.id
        assert auth_service.resolve_identity(f"Bearer {token}").user_id == user.id

    def test_login_wrong_password(self, auth_service):
        auth_service.register("bob", "bob@example.com", "Password123")
        with pytest.raises(Unauthenticated):
            auth_service.login("bob@example.com", "nope-nope")

    def test_set_user_role_rejects_unknown_role(self, auth_service, member):
        with pytest.raises(ValidationError):
            auth_service.set_user_role(member.id, "overlord")


class TestTokenValidation:
    @pytest.mark.parametrize("header", [None, "", "Bearer ", "Basic abc", "token-without-scheme"])
    def test_missing_or_non_bearer_header(self, auth_service, header):
        with pytest.raises(Unauthenticated):
            auth_service.resolve_identity(header)

    def test_malformed_token(self, auth_service):
        with pytest.raises(Unauthenticated):
            auth_service.resolve_identity("Bearer not.a.jwt")

    def test_tampered_signature(self, auth_service, member):
        token = auth_service.issue_token(member)
        head, body, sig = token.split(".")
        forged = f"{head}.{body}.{'A' * len(sig)}"
        with pytest.raises(Unauthenticated):
            auth_service.resolve_identity(f"Bearer {forged}")

    def test_token_signed_with_other_secret(self, memory_store, member, settings):
        other = AuthService(
            memory_store, settings.model_copy(update={"jwt_secret": "x" * 48})
        )
        token = other.issue_token(member)
        with pytest.raises(Unauthenticated):
            AuthService(memory_store, settings).resolve_identity(f"Bearer {token}")

    def test_expired_token_rejected_even_if_user_exists(self, auth_service, settings, member):
        payload = _payload(settings, sub=member.id, exp=int(time.time()) - 3600)
        token = auth_service._encode_jwt(payload)
        with pytest.raises(Unauthenticated):
            auth_service.resolve_identity(f"Bearer {token}")

    def test_clock_skew_leeway(self, auth_service, settings, member):
        payload = _payload(settings, sub=member.id, exp=int(time.time()) - 30)
        token = auth_service._encode_jwt(payload)
        assert auth_service.resolve_identity(f"Bearer {token}").user_id == member.id

    def test_wrong_audience(self, auth_service, settings, member):
        token = auth_service._encode_jwt(_payload(settings, sub=member.id, aud="someone-else"))
        with pytest.raises(Unauthenticated):
            auth_service.resolve_identity(f"Bearer {token}")

    def test_wrong_token_type(self, auth_service, settings, member):
        token = auth_service._encode_jwt(_payload(settings, sub=member.id, token_type="refresh"))
        with pytest.raises(Unauthenticated):
            auth_service.resolve_identity(f"Bearer {token}")


class TestIdentityCorroboration:
    def test_match_by_id_as_given(self, auth_service, member):
        identity = auth_service.resolve_identity(f"Bearer {auth_service.issue_token(member)}")
        assert identity.matched_by == "id"
        assert identity.username == "alice"

    def test_numeric_string_sub_matches_by_numeric_form(self, auth_service, settings, member):
        token = auth_service._encode_jwt(_payload(settings, sub=str(member.id)))
        identity = auth_service.resolve_identity(f"Bearer {token}")
        assert identity.user_id == member.id
        assert identity.matched_by == "numeric_id"

    def test_string_form_only_match(self, tmp_path, settings):
        store = TextKeyStore(fs_root=str(tmp_path))
        user = store.create_user("carol", "carol@example.com", role="class1_member")
        auth = AuthService(store, settings)
        token = auth._encode_jwt(_payload(settings, sub=user.id, username="nobody", role="trial"))
        identity = auth.resolve_identity(f"Bearer {token}")
        assert identity.matched_by == "string_id"
        assert identity.role == "class1_member"
        assert identity.token_role == "trial"

    def test_username_fallback(self, auth_service, settings, member):
        token = auth_service._encode_jwt(_payload(settings, sub=9999, username="alice"))
        identity = auth_service.resolve_identity(f"Bearer {token}")
        assert identity.user_id == member.id
        assert identity.matched_by == "username"

    def test_non_numeric_sub_falls_through_to_username(self, auth_service, settings, member):
        token = auth_service._encode_jwt(_payload(settings, sub="abc", username="alice"))
        assert auth_service.resolve_identity(f"Bearer {token}").user_id == member.id

    @pytest.mark.parametrize("sub", [1.9, "١", " 1 ", "+1", True, [1], {"id": 1}])
    def test_inexact_sub_never_coerced_to_an_id(self, auth_service, settings, member, sub):
        token = auth_service._encode_jwt(_payload(settings, sub=sub, username="nobody"))
        with pytest.raises(IdentityNotFound):
            auth_service.resolve_identity(f"Bearer {token}")

    def test_whole_float_sub_matches(self, auth_service, settings, member):
        token = auth_service._encode_jwt(_payload(settings, sub=float(member.id), username="nobody"))
        assert auth_service.resolve_identity(f"Bearer {token}").user_id == member.id

    def test_no_match_raises_identity_not_found(self, auth_service, settings, member):
        token = auth_service._encode_jwt(_payload(settings, sub=424242, username="ghost"))
        with pytest.raises(IdentityNotFound):
            auth_service.resolve_identity(f"Bearer {token}")

    def test_durable_role_overrides_token_role(self, auth_service, memory_store, member):
        token = auth_service.issue_token(member)
        memory_store.update_user_role(member.id, "admin")
        identity = auth_service.resolve_identity(f"Bearer {token}")
        assert identity.role == "admin"
        assert identity.token_role == "member_en"
        assert identity.is_admin

    def test_durable_username_overrides_token_username(self, auth_service, settings, member):
        token = auth_service._encode_jwt(_payload(settings, sub=member.id, username="stale-name"))
        assert auth_service.resolve_identity(f"Bearer {token}").username == "alice"

    def test_no_negative_caching(self, auth_service, memory_store, settings):
        token = auth_service._encode_jwt(_payload(settings, sub=1, username="late"))
        with pytest.raises(IdentityNotFound):
            auth_service.resolve_identity(f"Bearer {token}")
        memory_store.create_user("late", "late@example.com", role="member_ja")
        assert auth_service.resolve_identity(f"Bearer {token}").username == "late"
