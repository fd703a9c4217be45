from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from commonroom.config import Settings
from commonroom.logging import get_logger
from commonroom.service.errors import IdentityNotFound, Unauthenticated, ValidationError
from commonroom.service.permissions import Role
from commonroom.storage.models import User

logger = get_logger(__name__)

_ASCII_DIGITS = re.compile(r"[0-9]+")


def _numeric_id(value: Any) -> Optional[int]:
    """Integer form of a ``sub`` claim, or ``None`` when it is not an exact id.

    Only whole numbers and plain ASCII digit strings qualify; floats with a
    fractional part, padded or non-ASCII digits and booleans do not.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str) and _ASCII_DIGITS.fullmatch(value):
        return int(value)
    return None


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "trial",
        bio: Optional[str] = None,
    ) -> User: ...

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[Tuple[str, str]]: ...

    def get_user(self, user_id: Any) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_role(self, user_id: int, role: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...


@dataclass(frozen=True)
class IdentityContext:
    """Corroborated identity for one request.

    ``role`` and ``username`` come from the durable user record;
    ``token_role`` is what the credential claimed when it was issued.
    """

    user_id: int
    username: str
    role: str
    token_role: Optional[str] = None
    matched_by: str = "id"

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


class AuthService:
    """Token issuing, verification and identity corroboration."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- accounts ----------------------------------------------------------

    def register(self, username: str, email: str, password: str) -> Tuple[User, str]:
        username = username.strip()
        email = email.strip().lower()
        if not username or not email or not password:
            raise ValidationError("username, email and password are required")
        user = self.store.create_user(username, email, role=Role.TRIAL.value)
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return user, self.issue_token(user)

    def login(self, email: str, password: str) -> Tuple[User, str]:
        user = self.store.get_user_by_email(email.strip().lower())
        if not user or not self.verify_password(user.id, password):
            self.logger.warning("login_failed")
            raise Unauthenticated("invalid email or password")
        self.logger.info("login_succeeded", user_id=user.id)
        return user, self.issue_token(user)

    def set_user_role(self, user_id: int, role: str) -> Optional[User]:
        try:
            Role(role)
        except ValueError:
            raise ValidationError("unknown role", detail={"role": role}) from None
        user = self.store.update_user_role(user_id, role)
        if user:
            self.logger.info("user_role_changed", user_id=user_id, role=role)
        return user

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: int, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, user_id: int, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- tokens ------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue_token(self, user: User, *, ttl_minutes: Optional[int] = None) -> str:
        now = self._now()
        ttl = ttl_minutes if ttl_minutes is not None else self.settings.access_token_ttl_minutes
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "username": user.username,
            "role": user.role,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=ttl)).timestamp()),
            "token_type": "access",
        }
        return self._encode_jwt(payload)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    # -- identity resolution -------------------------------------------------

    def _lookup_candidates(self, payload: dict[str, Any]) -> Iterator[Tuple[str, Callable[[], Optional[User]]]]:
        sub = payload.get("sub")
        tried: List[Any] = []

        def by_id(value: Any) -> Callable[[], Optional[User]]:
            return lambda: self.store.get_user(value)

        # only scalar ids are looked up; booleans never name a user
        if isinstance(sub, bool) or not isinstance(sub, (int, float, str)):
            sub = None
        candidates: List[Tuple[str, Any]] = [("id", sub)]
        numeric = _numeric_id(sub)
        if numeric is not None:
            candidates.append(("numeric_id", numeric))
        if sub is not None:
            candidates.append(("string_id", str(sub)))

        for name, value in candidates:
            if value is None:
                continue
            # skip repeats, treating 5 and "5" as distinct
            if any(type(prev) is type(value) and prev == value for prev in tried):
                continue
            tried.append(value)
            yield name, by_id(value)

        username = payload.get("username")
        if isinstance(username, str) and username:
            yield "username", lambda: self.store.get_user_by_username(username)

    def resolve_identity(self, authorization: Optional[str]) -> IdentityContext:
        """Verify a bearer credential and corroborate it against the user store.

        Lookup order is: the ``sub`` claim as given, ``sub`` as an integer,
        ``sub`` as a string, then the ``username`` claim. The first match
        wins and its durable role and username replace the token's copies.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise Unauthenticated("missing bearer credential")
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            raise Unauthenticated("invalid or expired credential")

        for strategy, lookup in self._lookup_candidates(payload):
            user = lookup()
            if user is None:
                continue
            if strategy != "id":
                self.logger.info(
                    "identity_fallback_match", strategy=strategy, user_id=user.id
                )
            return IdentityContext(
                user_id=user.id,
                username=user.username,
                role=user.role,
                token_role=payload.get("role"),
                matched_by=strategy,
            )

        self.logger.warning("identity_not_found", sub=str(payload.get("sub")))
        raise IdentityNotFound("credential does not match any user")
