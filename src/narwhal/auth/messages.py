"""
Wire messages for narwhal.user.v1.UserService.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from ..rpc import Empty, Message  # noqa: F401


class UserInfo(Message):
    id: str = ""
    username: str = ""
    email: str = ""
    roles: List[str] = Field(default_factory=list)
    is_active: bool = False
    created: Optional[datetime] = None


class LoginRequest(Message):
    username: str = ""
    password: str = ""


class TokenResponse(Message):
    access_token: str = ""
    refresh_token: str = ""
    token_type: str = "Bearer"
    expires_in: int = 0
    expires_at: Optional[datetime] = None
    user: Optional[UserInfo] = None


class RefreshTokenRequest(Message):
    refresh_token: str = ""


class LogoutRequest(Message):
    refresh_token: str = ""


class CreateUserRequest(Message):
    username: str = ""
    email: str = ""
    password: str = ""
    roles: List[str] = Field(default_factory=list)


class GetUserRequest(Message):
    id: str = ""


class DeleteUserRequest(Message):
    id: str = ""


class AssignRoleRequest(Message):
    user_id: str = ""
    role: str = ""
