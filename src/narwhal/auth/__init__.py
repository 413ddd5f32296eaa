"""
Authentication module for narwhal.

Provides JWT access/refresh tokens, RBAC, the gRPC auth interceptor and the
user service.
"""

from .models import Identity, TokenKind, TokenPair, User, Session
from .database import UserDatabase
from .jwt_handler import TokenError, TokenManager, generate_secret
from .user_manager import UserManager
from .context import bind_identity, current_identity, current_roles, current_user_id, current_username
from .interceptor import AuthInterceptor, AuthRejected, extract_bearer_token
from .permissions import (
    Action,
    BuiltinRBAC,
    Permission,
    PermissionDeniedError,
    RBACEngine,
    Resource,
    Role,
    METHOD_PERMISSIONS,
    PUBLIC_METHODS,
    ROLE_PERMISSIONS,
)
from .policy import FileRBAC, PolicyLoadError, create_rbac
from .service import UserHandler, add_user_service

__all__ = [
    # Models and storage
    "Identity",
    "TokenKind",
    "TokenPair",
    "User",
    "Session",
    "UserDatabase",
    # Tokens
    "TokenError",
    "TokenManager",
    "generate_secret",
    "UserManager",
    # Request context and interceptor
    "bind_identity",
    "current_identity",
    "current_roles",
    "current_user_id",
    "current_username",
    "AuthInterceptor",
    "AuthRejected",
    "extract_bearer_token",
    # RBAC
    "Action",
    "BuiltinRBAC",
    "FileRBAC",
    "Permission",
    "PermissionDeniedError",
    "PolicyLoadError",
    "RBACEngine",
    "Resource",
    "Role",
    "METHOD_PERMISSIONS",
    "PUBLIC_METHODS",
    "ROLE_PERMISSIONS",
    "create_rbac",
    # gRPC service
    "UserHandler",
    "add_user_service",
]
