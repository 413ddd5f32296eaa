"""
JWT token generation and validation.

Mints and verifies the two bearer credentials used by narwhal services:
short-lived access tokens carrying the caller identity, and longer-lived
refresh tokens carrying only the subject.

Tokens are HS256 JWTs (HMAC-SHA256 over the base64url header and payload).
Verification tolerates CLOCK_SKEW_LEEWAY seconds of clock skew on ``exp``,
``nbf`` and ``iat``, so a token is still accepted up to 60 seconds after its
nominal expiry.
"""

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Union

import jwt
from loguru import logger

from ..errors import AppError, ErrorKind
from .models import Identity, TokenKind

ALGORITHM = "HS256"
DEFAULT_ISSUER = "narwhal-library-service"
DEFAULT_ACCESS_TTL = timedelta(minutes=15)
DEFAULT_REFRESH_TTL = timedelta(days=7)
MIN_ACCESS_TTL = timedelta(minutes=1)
CLOCK_SKEW_LEEWAY = 60  # seconds
SECRET_BYTES = 32

Secret = Union[str, bytes]


class TokenError(AppError):
    """
    Token verification failure.

    The public message is always "invalid token"; the specific cause is kept
    in ``reason`` for debug logging only.
    """

    def __init__(self, reason: str):
        super().__init__(ErrorKind.UNAUTHORIZED, "invalid token")
        self.reason = reason


def generate_secret() -> bytes:
    """
    Generate a random 256-bit signing secret.

    For development bootstrap only; production deployments must configure
    their own secret.
    """
    logger.warning("Generated a random JWT secret; tokens will not survive a restart")
    return secrets.token_bytes(SECRET_BYTES)


class TokenManager:
    """
    JWT token manager.

    Creates and validates access and refresh tokens. Instances are immutable
    after construction and safe to share between concurrent requests.
    """

    def __init__(
        self,
        access_secret: Secret,
        refresh_secret: Optional[Secret] = None,
        issuer: str = DEFAULT_ISSUER,
        access_ttl: timedelta = DEFAULT_ACCESS_TTL,
        refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
    ):
        """
        Initialize manager.

        Args:
            access_secret: Secret for signing access tokens
            refresh_secret: Secret for signing refresh tokens (defaults to access_secret)
            issuer: Value of the ``iss`` claim, checked on verify
            access_ttl: Access token lifetime (at least one minute)
            refresh_ttl: Refresh token lifetime (not shorter than access_ttl)

        Raises:
            ValueError: If a secret is empty or the lifetimes are invalid
        """
        if not access_secret:
            raise ValueError("access secret must not be empty")
        if refresh_secret is not None and not refresh_secret:
            raise ValueError("refresh secret must not be empty")
        if access_ttl < MIN_ACCESS_TTL:
            raise ValueError("access token lifetime must be at least 1 minute")
        if refresh_ttl < access_ttl:
            raise ValueError("refresh token lifetime must not be shorter than access token lifetime")
        if not issuer:
            raise ValueError("issuer must not be empty")

        self._access_secret = access_secret
        self._refresh_secret = refresh_secret if refresh_secret is not None else access_secret
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def issue_access(self, identity: Identity) -> str:
        """
        Create an access token for an identity.

        Args:
            identity: Caller identity; subject, username, email, roles and
                scopes are embedded in the token

        Returns:
            Signed JWT string
        """
        now = datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "sub": identity.subject,
            "iat": now,
            "nbf": now,
            "exp": now + self.access_ttl,
            "jti": str(uuid.uuid4()),
            "user_id": identity.subject,
            "username": identity.username,
            "email": identity.email,
            "roles": sorted(identity.roles),
            "scopes": list(identity.scopes),
            "token_type": TokenKind.ACCESS.value,
        }

        token = jwt.encode(payload, self._access_secret, algorithm=ALGORITHM)
        logger.debug(f"Access token created for user {identity.username or identity.subject}")
        return token

    def issue_refresh(self, subject: str, token_id: Optional[str] = None) -> str:
        """
        Create a refresh token.

        Args:
            subject: User ID
            token_id: JWT ID to embed (random when omitted); sessions use it
                to bind the token to a revocable record

        Returns:
            Signed JWT string
        """
        if not subject:
            raise ValueError("subject must not be empty")

        now = datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "sub": subject,
            "iat": now,
            "nbf": now,
            "exp": now + self.refresh_ttl,
            "jti": token_id or str(uuid.uuid4()),
            "token_type": TokenKind.REFRESH.value,
        }
        return jwt.encode(payload, self._refresh_secret, algorithm=ALGORITHM)

    def verify_access(self, token: str) -> Identity:
        """
        Verify an access token.

        Args:
            token: JWT string without the "Bearer " prefix

        Returns:
            Decoded Identity

        Raises:
            TokenError: Bad signature, wrong kind, wrong issuer, expired,
                or malformed claims
        """
        payload = self._decode(token, self._access_secret, TokenKind.ACCESS)

        roles = payload.get("roles", [])
        scopes = payload.get("scopes", [])
        if not _is_str_list(roles) or not _is_str_list(scopes):
            raise TokenError("malformed roles or scopes claim")

        user_id = payload.get("user_id", payload["sub"])
        if user_id != payload["sub"]:
            raise TokenError("user_id does not match subject")

        return Identity(
            subject=payload["sub"],
            username=str(payload.get("username", "")),
            email=str(payload.get("email", "")),
            roles=frozenset(roles),
            scopes=tuple(scopes),
            token_kind=TokenKind.ACCESS,
            issuer=payload["iss"],
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            token_id=str(payload.get("jti", "")),
        )

    def verify_refresh(self, token: str) -> str:
        """
        Verify a refresh token.

        Args:
            token: JWT string

        Returns:
            Subject (user ID)

        Raises:
            TokenError: On any verification failure
        """
        payload = self._decode(token, self._refresh_secret, TokenKind.REFRESH)
        return payload["sub"]

    def refresh_token_id(self, token: str) -> str:
        """
        Return the jti of a verified refresh token.

        Raises:
            TokenError: On any verification failure
        """
        payload = self._decode(token, self._refresh_secret, TokenKind.REFRESH)
        jti = payload.get("jti")
        if not jti:
            raise TokenError("refresh token has no jti")
        return jti

    def _decode(self, token: str, secret: Secret, kind: TokenKind) -> dict:
        if not token:
            raise TokenError("empty token")

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                leeway=CLOCK_SKEW_LEEWAY,
                options={"require": ["exp", "iat", "iss", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            logger.debug(f"Rejected {kind.value} token: expired")
            raise TokenError("token expired")
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected {kind.value} token: {e}")
            raise TokenError(str(e))

        if payload.get("token_type") != kind.value:
            logger.debug(f"Rejected token: expected {kind.value}, got {payload.get('token_type')!r}")
            raise TokenError("wrong token kind")
        if not isinstance(payload["sub"], str) or not payload["sub"]:
            raise TokenError("empty subject")

        return payload


def _is_str_list(value: object) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def identity_from_claims(
    subject: str,
    username: str = "",
    email: str = "",
    roles: Iterable[str] = (),
) -> Identity:
    """Convenience constructor used when minting tokens for a stored user."""
    return Identity(subject=subject, username=username, email=email, roles=frozenset(roles))
