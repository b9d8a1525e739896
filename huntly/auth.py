"""
Authentication and authorization.

Two disjoint credential channels:

  X-API-Key header  → hashed API key lookup, permission scopes, optional
                      single-project restriction
  auth-token cookie → HS256 session token issued at login (7 days)

AuthGate.authorize() never raises: every failure, including internal errors,
collapses to None so callers can answer a uniform 401.
"""
import hashlib
import hmac
import logging
import secrets
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

import bcrypt
from jose import JWTError, jwt

from .config import Config
from .errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from .schema import (
    DEFAULT_KEY_PERMISSIONS,
    ApiKey,
    ApiKeyAuth,
    MemberStatus,
    SessionAuth,
    User,
    has_permission,
    is_valid_permission,
    utc_now,
)
from .store import CrmStore, new_id

logger = logging.getLogger(__name__)

AuthResult = Union[SessionAuth, ApiKeyAuth]

API_KEY_PREFIX = "hntly_"
PREFIX_BODY_CHARS = 8
KEY_BYTES = 32  # 256 bits
ALGORITHM = "HS256"
MIN_PASSWORD_LENGTH = 6
BCRYPT_MAX_BYTES = 72

EXPIRY_CHOICES = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
    "never": None,
}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# API key material
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass(frozen=True)
class IssuedKey:
    """Output of issue_api_key(). Only key_hash and prefix are ever stored."""
    raw_key: str
    key_hash: str
    prefix: str


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hex digest of the full raw key."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def key_prefix(raw_key: str) -> Optional[str]:
    """Public display prefix of a raw key, or None if the key is malformed."""
    if not raw_key.startswith(API_KEY_PREFIX):
        return None
    if len(raw_key) < len(API_KEY_PREFIX) + PREFIX_BODY_CHARS:
        return None
    return raw_key[:len(API_KEY_PREFIX) + PREFIX_BODY_CHARS]


def issue_api_key() -> IssuedKey:
    body = secrets.token_urlsafe(KEY_BYTES)
    raw_key = f"{API_KEY_PREFIX}{body}"
    return IssuedKey(
        raw_key=raw_key,
        key_hash=hash_api_key(raw_key),
        prefix=f"{API_KEY_PREFIX}{body[:PREFIX_BODY_CHARS]}",
    )


def verify_api_key(raw_key: str, stored_hash: str) -> bool:
    """Constant-time comparison of a presented key against a stored hash."""
    return hmac.compare_digest(hash_api_key(raw_key), stored_hash)


def validate_permissions(permissions: Any) -> List[str]:
    if not isinstance(permissions, list):
        raise ValidationError("permissions must be a list")
    for permission in permissions:
        if not isinstance(permission, str) or not is_valid_permission(permission):
            raise ValidationError(f"Invalid permission: {permission}")
    return list(dict.fromkeys(permissions))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Passwords
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def hash_password(password: str, rounds: int = 10) -> str:
    secret = password.encode("utf-8")
    if len(secret) > BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes")
    return bcrypt.hashpw(secret, bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_password(password: str, digest: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), digest.encode("ascii"))
    except ValueError:
        # Oversized password or a corrupt digest
        return False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Session tokens
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SessionTokens:
    """Signs and verifies stateless session tokens."""

    def __init__(self, secret: str, days: int = 7):
        if not secret:
            raise ValueError("session token secret is empty")
        self._secret = secret
        self.lifetime = timedelta(days=days)

    def create(self, user_id: str, email: str, member_id: Optional[str] = None) -> str:
        now = utc_now()
        claims = {
            "userId": user_id,
            "email": email,
            "memberId": member_id,
            "iat": now,
            "exp": now + self.lifetime,
        }
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> Optional[SessionAuth]:
        """Decoded identity, or None for a bad signature, expiry or missing claims."""
        try:
            claims = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except JWTError:
            return None
        user_id, email = claims.get("userId"), claims.get("email")
        if not user_id or not email:
            return None
        return SessionAuth(user_id=user_id, email=email, member_id=claims.get("memberId"))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# AuthGate
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def has_project_access(auth: Optional[AuthResult], project_id: str) -> bool:
    """Sessions see every project; API keys see all or exactly their own."""
    if isinstance(auth, SessionAuth):
        return True
    if isinstance(auth, ApiKeyAuth):
        return auth.internal_project_id is None or auth.internal_project_id == project_id
    return False


def _discard_touch_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.warning(f"Could not record API key usage: {exc}")


class AuthGate:
    """
    Resolves who is calling and whether they may proceed.

    Also owns the account flows that mint credentials: login, registration,
    password change and API key issuance.
    """

    def __init__(self, store: CrmStore, config: Config, executor: Optional[ThreadPoolExecutor] = None):
        config.validate()
        self.store = store
        self.config = config
        self.tokens = SessionTokens(config.jwt_secret, config.session_days)
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="api-key-usage")

    def close(self) -> None:
        """Wait for pending usage writes and stop the background executor."""
        self._executor.shutdown(wait=True)

    # ── Verdicts ──

    def authorize(self, api_key: Optional[str] = None, session_token: Optional[str] = None,
                  required_permission: Optional[str] = None) -> Optional[AuthResult]:
        """
        A presented API key is always judged on its own; the session cookie is
        only consulted when no key header was sent. required_permission only
        constrains API keys.
        """
        try:
            if api_key:
                return self._authorize_api_key(api_key.strip(), required_permission)
            if session_token:
                return self.tokens.verify(session_token)
            return None
        except Exception:
            logger.warning("Authorization error, denying request", exc_info=True)
            return None

    def authorize_request(self, request, required_permission: Optional[str] = None) -> Optional[AuthResult]:
        return self.authorize(
            api_key=request.headers.get(self.config.api_key_header),
            session_token=request.cookies.get(self.config.cookie_name),
            required_permission=required_permission,
        )

    def _authorize_api_key(self, raw_key: str, required_permission: Optional[str]) -> Optional[ApiKeyAuth]:
        prefix = key_prefix(raw_key)
        if prefix is None:
            return None
        presented = hash_api_key(raw_key)
        match = None
        for candidate in self.store.find_active_api_keys(prefix):
            if hmac.compare_digest(presented, candidate.key_hash):
                match = candidate
        if match is None:
            logger.debug(f"Unknown or inactive API key {prefix}…")
            return None
        if match.is_expired():
            logger.debug(f"Expired API key {match.id}")
            return None
        if required_permission and not has_permission(match.permissions, required_permission):
            logger.debug(f"API key {match.id} lacks a required permission")
            return None
        self.record_usage(match.id)
        return ApiKeyAuth(
            key_id=match.id,
            name=match.name,
            permissions=tuple(match.permissions),
            internal_project_id=match.internal_project_id,
        )

    def record_usage(self, key_id: str) -> Optional[Future]:
        """Fire-and-forget last_used_at write; failures are logged and dropped."""
        try:
            future = self._executor.submit(self.store.touch_api_key, key_id, utc_now())
        except RuntimeError as e:
            # Executor already shut down
            logger.warning(f"Could not record API key usage: {e}")
            return None
        future.add_done_callback(_discard_touch_failure)
        return future

    # ── Account flows ──

    def login(self, email: str, password: str) -> Tuple[User, str]:
        if not email or not password:
            raise ValidationError("Email and password are required")
        user = self.store.get_user_by_email(email)
        if user is None or not verify_password(password, user.password_hash):
            raise AuthenticationError("Invalid email or password")
        if user.member and user.member.status is not MemberStatus.ACTIVE:
            raise ForbiddenError("Your account is inactive. Contact an administrator.")
        token = self.tokens.create(user.id, user.email, user.member_id)
        logger.info(f"User {user.id} signed in")
        return user, token

    def register(self, email: str, password: str, member_id: Optional[str] = None) -> User:
        if not email or not password:
            raise ValidationError("Email and password are required")
        _check_password_length(password)
        digest = hash_password(password, self.config.bcrypt_rounds)
        return self.store.create_user(email, digest, member_id or None)

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        if not current_password or not new_password:
            raise ValidationError("Current and new password are required")
        _check_password_length(new_password)
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect")
        self.store.set_password(user.id, hash_password(new_password, self.config.bcrypt_rounds))

    # ── API key management ──

    def create_api_key(self, name: str, permissions: Optional[List[str]] = None,
                       internal_project_id: Optional[str] = None, expires_in: Optional[str] = None,
                       created_by_id: Optional[str] = None) -> Tuple[ApiKey, str]:
        """Persist a new key and return it with the raw key, which is never recoverable again."""
        if not name or not str(name).strip():
            raise ValidationError("name is required")
        permissions = validate_permissions(
            DEFAULT_KEY_PERMISSIONS if permissions is None else permissions
        )
        if internal_project_id and not self.store.get_project(internal_project_id, internal=True):
            raise NotFoundError("Internal project not found")
        key_expiry = EXPIRY_CHOICES.get(expires_in or "never", None)
        if expires_in and expires_in not in EXPIRY_CHOICES:
            raise ValidationError(f"Invalid expiry: {expires_in}")

        issued = issue_api_key()
        now = utc_now()
        key = ApiKey(
            id=new_id(),
            name=str(name).strip(),
            prefix=issued.prefix,
            key_hash=issued.key_hash,
            permissions=permissions,
            internal_project_id=internal_project_id or None,
            expires_at=now + key_expiry if key_expiry else None,
            created_by_id=created_by_id,
            created_at=now,
            updated_at=now,
        )
        self.store.create_api_key(key)
        logger.info(f"Issued API key {key.id} ({key.prefix}…)")
        return key, issued.raw_key

    def update_api_key(self, key_id: str, fields: Dict[str, Any]) -> ApiKey:
        key = self.store.get_api_key(key_id)
        if key is None:
            raise NotFoundError("API key not found")
        if fields.get("name") is not None:
            if not str(fields["name"]).strip():
                raise ValidationError("name cannot be empty")
            key.name = str(fields["name"]).strip()
        if fields.get("permissions") is not None:
            key.permissions = validate_permissions(fields["permissions"])
        if "internal_project_id" in fields:
            project_id = fields["internal_project_id"] or None
            if project_id and not self.store.get_project(project_id, internal=True):
                raise NotFoundError("Internal project not found")
            key.internal_project_id = project_id
        if fields.get("is_active") is not None:
            key.is_active = bool(fields["is_active"])
        return self.store.update_api_key(key)

    def delete_api_key(self, key_id: str) -> None:
        self.store.delete_api_key(key_id)
        logger.info(f"Deleted API key {key_id}")


def _check_password_length(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
