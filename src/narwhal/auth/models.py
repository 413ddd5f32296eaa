"""
Authentication data models.

Data classes for caller identity, users, and refresh-token sessions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple


class TokenKind(str, Enum):
    """Kind of signed credential."""
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class Identity:
    """
    Verified caller identity, decoded from an access token.

    Attributes:
        subject: Stable user identifier (user UUID)
        username: Username at the time the token was minted
        email: User email
        roles: Role names; order is irrelevant
        scopes: Reserved for future use
        token_kind: Kind of token the identity came from
        issuer: Token issuer
        issued_at: Issue time (UTC)
        expires_at: Expiry time (UTC)
        token_id: JWT ID (jti claim)
    """
    subject: str
    username: str = ""
    email: str = ""
    roles: FrozenSet[str] = frozenset()
    scopes: Tuple[str, ...] = ()
    token_kind: TokenKind = TokenKind.ACCESS
    issuer: str = ""
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    token_id: str = ""

    def __post_init__(self):
        if not self.subject:
            raise ValueError("identity subject must not be empty")
        # Accept any iterable of roles from callers
        if not isinstance(self.roles, frozenset):
            object.__setattr__(self, "roles", frozenset(self.roles))
        if not isinstance(self.scopes, tuple):
            object.__setattr__(self, "scopes", tuple(self.scopes))

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class TokenPair:
    """
    Access/refresh pair returned by login and refresh.

    Attributes:
        access_token: Signed access token
        refresh_token: Signed refresh token
        expires_in: Access token lifetime in seconds
        expires_at: Access token expiry (UTC)
        token_type: Always "Bearer"
    """
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: datetime
    token_type: str = "Bearer"


@dataclass
class User:
    """
    User account.

    Attributes:
        user_id: Unique user identifier (UUID)
        username: Unique username
        email: Unique email address
        password_hash: Bcrypt hashed password
        created_at: Account creation timestamp
        is_active: Whether account is active
        roles: Role names assigned to the user
    """
    user_id: str
    username: str
    email: str
    password_hash: str
    created_at: datetime
    is_active: bool = True
    roles: List[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


@dataclass
class Session:
    """
    Refresh-token session.

    Attributes:
        session_id: Unique session identifier
        user_id: Owning user
        token_jti: JWT ID of the refresh token bound to this session
        created_at: Session creation time
        expires_at: Session expiry time
        revoked: Whether the session was revoked by logout or rotation
    """
    session_id: str
    user_id: str
    token_jti: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
