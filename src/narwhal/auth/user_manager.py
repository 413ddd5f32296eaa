"""
User authentication manager.

Combines user database and token handling for the complete login, refresh
and logout flow.
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from loguru import logger

from ..errors import bad_request, forbidden, not_found, unauthorized
from .database import UserDatabase
from .jwt_handler import TokenManager, identity_from_claims
from .models import Session, TokenPair, User
from .permissions import Role

USERNAME_MIN = 3
USERNAME_MAX = 64
PASSWORD_MIN = 8
DEFAULT_ROLES = (Role.USER.value,)

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class UserManager:
    """
    User authentication manager.

    Provides:
    - User login/logout
    - Refresh token rotation backed by revocable sessions
    - User administration (create, delete, role assignment)

    Blocking (SQLite and bcrypt); async callers run it in a worker thread.
    """

    def __init__(
        self,
        db: UserDatabase,
        tokens: TokenManager,
        valid_roles: Iterable[str] = tuple(r.value for r in Role),
    ):
        """
        Initialize manager.

        Args:
            db: User database
            tokens: Token manager used to mint and verify tokens
            valid_roles: Role names that may be assigned to users
        """
        self.db = db
        self.tokens = tokens
        self.valid_roles = frozenset(valid_roles)

    def login(self, username_or_email: str, password: str) -> Tuple[TokenPair, User]:
        """
        Authenticate user and issue tokens.

        Args:
            username_or_email: Username, or email when it contains "@"
            password: Plain text password

        Returns:
            (token pair, user)

        Raises:
            AppError: UNAUTHORIZED for unknown users and wrong passwords,
                FORBIDDEN for inactive accounts
        """
        if "@" in username_or_email:
            user = self.db.get_user_by_email(username_or_email)
        else:
            user = self.db.get_user_by_username(username_or_email)

        if not user or not self.db.verify_password(user, password):
            logger.warning(f"Login failed: invalid credentials for '{username_or_email}'")
            raise unauthorized("invalid credentials")

        if not user.is_active:
            logger.warning(f"Login failed: user '{user.username}' is inactive")
            raise forbidden("account is disabled")

        pair = self._issue_pair(user)
        logger.success(f"User logged in: {user.username}")
        return pair, user

    def refresh(self, refresh_token: str) -> Tuple[TokenPair, User]:
        """
        Exchange a refresh token for a new token pair.

        The presented token's session is revoked, so each refresh token can
        be used once.

        Raises:
            TokenError: Token does not verify
            AppError: UNAUTHORIZED if the session is unknown, revoked or
                expired, or the user is gone or inactive
        """
        subject = self.tokens.verify_refresh(refresh_token)
        jti = self.tokens.refresh_token_id(refresh_token)

        session = self.db.get_session_by_jti(jti)
        if session is None or session.revoked or session.user_id != subject:
            logger.warning(f"Refresh rejected: no live session for token {jti}")
            raise unauthorized("invalid refresh token")
        if session.expires_at <= datetime.now(timezone.utc):
            raise unauthorized("invalid refresh token")

        user = self.db.get_user_by_id(subject)
        if not user or not user.is_active:
            logger.warning(f"Refresh rejected: user {subject} not found or inactive")
            raise unauthorized("invalid refresh token")

        if not self.db.revoke_session(jti):
            logger.warning(f"Refresh rejected: token {jti} was already used")
            raise unauthorized("invalid refresh token")

        pair = self._issue_pair(user)
        logger.debug(f"Tokens refreshed for user {user.username}")
        return pair, user

    def logout(self, user_id: str, refresh_token: str) -> bool:
        """
        Revoke the session bound to a refresh token.

        Calling it again for the same token is harmless.

        Returns:
            True if a live session was revoked

        Raises:
            TokenError: Token does not verify
        """
        jti = self.tokens.refresh_token_id(refresh_token)
        session = self.db.get_session_by_jti(jti)
        if session is None or session.user_id != user_id:
            return False

        revoked = self.db.revoke_session(jti)
        if revoked:
            logger.info(f"User logged out: {user_id}")
        return revoked

    # ========================================================================
    # Administration
    # ========================================================================

    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        roles: Optional[List[str]] = None,
    ) -> User:
        """
        Validate and create a user.

        Args:
            username: 3 to 64 characters of letters, digits, "_", "." or "-"
            email: Email address
            password: At least 8 characters
            roles: Role names (defaults to ["user"])

        Returns:
            Created user

        Raises:
            AppError: BAD_REQUEST on validation failure, CONFLICT on a
                duplicate username or email
        """
        username, email, roles = self._validate(username, email, password, roles)
        return self.db.create_user(username, email, password, roles)

    def create_first_user(
        self,
        username: str,
        email: str,
        password: str,
        roles: Optional[List[str]] = None,
    ) -> User:
        """
        Create the first user of an empty store.

        Raises:
            AppError: FORBIDDEN once any user exists, otherwise as create_user
        """
        if self.db.count_users() > 0:
            raise forbidden("users already exist")
        username, email, roles = self._validate(username, email, password, roles)
        return self.db.create_first_user(username, email, password, roles)

    def _validate(
        self,
        username: str,
        email: str,
        password: str,
        roles: Optional[List[str]],
    ) -> Tuple[str, str, List[str]]:
        username = username.strip()
        email = email.strip()
        roles = list(roles) if roles else list(DEFAULT_ROLES)

        if not USERNAME_MIN <= len(username) <= USERNAME_MAX or not _USERNAME_RE.match(username):
            raise bad_request(f"username must be {USERNAME_MIN}-{USERNAME_MAX} characters of letters, digits, '_', '.', '-'")
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise bad_request("invalid email address")
        if len(password) < PASSWORD_MIN:
            raise bad_request(f"password must be at least {PASSWORD_MIN} characters")
        unknown = [role for role in roles if role not in self.valid_roles]
        if unknown:
            raise bad_request(f"unknown role: {unknown[0]}")

        return username, email, roles

    def get_user(self, user_id: str) -> User:
        user = self.db.get_user_by_id(user_id)
        if user is None:
            raise not_found("user not found")
        return user

    def delete_user(self, user_id: str) -> None:
        if not self.db.delete_user(user_id):
            raise not_found("user not found")

    def assign_role(self, user_id: str, role: str) -> User:
        if role not in self.valid_roles:
            raise bad_request(f"unknown role: {role}")
        self.get_user(user_id)
        self.db.assign_role(user_id, role)
        logger.info(f"Role '{role}' assigned to user {user_id}")
        return self.get_user(user_id)

    def _issue_pair(self, user: User) -> TokenPair:
        identity = identity_from_claims(user.user_id, user.username, user.email, user.roles)
        access_token = self.tokens.issue_access(identity)

        jti = str(uuid.uuid4())
        refresh_token = self.tokens.issue_refresh(user.user_id, token_id=jti)

        now = datetime.now(timezone.utc)
        self.db.create_session(Session(
            session_id=str(uuid.uuid4()),
            user_id=user.user_id,
            token_jti=jti,
            created_at=now,
            expires_at=now + self.tokens.refresh_ttl,
        ))

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.tokens.access_ttl.total_seconds()),
            expires_at=now + self.tokens.access_ttl,
        )
