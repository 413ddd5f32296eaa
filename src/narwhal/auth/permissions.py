"""
Role-Based Access Control (RBAC) for narwhal services.

This module provides:
- The closed sets of resources and actions
- The built-in role -> permission table and its evaluator
- The static RPC method -> required permission table used by the interceptor
"""

import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

WILDCARD = "*"

LIBRARY_SERVICE = "narwhal.library.v1.LibraryService"
USER_SERVICE = "narwhal.user.v1.UserService"


class Resource(str, Enum):
    """Protected resource families."""
    SYSTEM = "system"
    USER = "user"
    LIBRARY = "library"
    MEDIA = "media"
    STREAMING = "streaming"
    TRANSCODING = "transcoding"
    ACQUISITION = "acquisition"
    ANALYTICS = "analytics"


class Action(str, Enum):
    """Operations on a resource."""
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    ADMIN = "admin"


class Role(str, Enum):
    """
    Built-in roles.
    """
    ADMIN = "admin"     # Wildcard: every resource, every action
    USER = "user"       # Read access to libraries, media, streams, analytics
    GUEST = "guest"     # Read access to media only


_RESOURCES = {r.value for r in Resource}
_ACTIONS = {a.value for a in Action}


class Permission(BaseModel):
    """
    A (resource, action) pair.

    Both parts come from the closed sets above; ``("*", "*")`` is the
    wildcard that grants every pair.
    """
    model_config = ConfigDict(frozen=True)

    resource: str
    action: str

    @field_validator("resource")
    @classmethod
    def _check_resource(cls, value: str) -> str:
        if value != WILDCARD and value not in _RESOURCES:
            raise ValueError(f"unknown resource: {value!r}")
        return value

    @field_validator("action")
    @classmethod
    def _check_action(cls, value: str) -> str:
        if value != WILDCARD and value not in _ACTIONS:
            raise ValueError(f"unknown action: {value!r}")
        return value

    @property
    def is_wildcard(self) -> bool:
        return self.resource == WILDCARD and self.action == WILDCARD

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}"


def perm(resource: str, action: str) -> Permission:
    """Shorthand constructor accepting enum members or plain strings."""
    return Permission(resource=str(getattr(resource, "value", resource)),
                      action=str(getattr(action, "value", action)))


ALL_PERMISSIONS = perm(WILDCARD, WILDCARD)

# Seed policy for built-in mode
ROLE_PERMISSIONS: Dict[str, FrozenSet[Permission]] = {
    Role.ADMIN.value: frozenset({ALL_PERMISSIONS}),
    Role.USER.value: frozenset({
        perm(Resource.LIBRARY, Action.READ),
        perm(Resource.MEDIA, Action.READ),
        perm(Resource.STREAMING, Action.READ),
        perm(Resource.ANALYTICS, Action.READ),
    }),
    Role.GUEST.value: frozenset({
        perm(Resource.MEDIA, Action.READ),
    }),
}


def _method(service: str, name: str) -> str:
    return f"/{service}/{name}"


# Required permission per fully-qualified RPC method.
# Methods not listed here only require an authenticated caller.
METHOD_PERMISSIONS: Dict[str, Permission] = {
    # Library operations
    _method(LIBRARY_SERVICE, "CreateLibrary"): perm(Resource.LIBRARY, Action.WRITE),
    _method(LIBRARY_SERVICE, "UpdateLibrary"): perm(Resource.LIBRARY, Action.WRITE),
    _method(LIBRARY_SERVICE, "ScanLibrary"): perm(Resource.LIBRARY, Action.WRITE),
    _method(LIBRARY_SERVICE, "DeleteLibrary"): perm(Resource.LIBRARY, Action.DELETE),
    _method(LIBRARY_SERVICE, "GetLibrary"): perm(Resource.LIBRARY, Action.READ),
    _method(LIBRARY_SERVICE, "ListLibraries"): perm(Resource.LIBRARY, Action.READ),

    # Media operations
    _method(LIBRARY_SERVICE, "GetMedia"): perm(Resource.MEDIA, Action.READ),
    _method(LIBRARY_SERVICE, "ListMedia"): perm(Resource.MEDIA, Action.READ),
    _method(LIBRARY_SERVICE, "SearchMedia"): perm(Resource.MEDIA, Action.READ),
    _method(LIBRARY_SERVICE, "StreamMedia"): perm(Resource.MEDIA, Action.READ),
    _method(LIBRARY_SERVICE, "UpdateMedia"): perm(Resource.MEDIA, Action.WRITE),
    _method(LIBRARY_SERVICE, "DeleteMedia"): perm(Resource.MEDIA, Action.DELETE),

    # Metadata operations
    _method(LIBRARY_SERVICE, "GetMetadata"): perm(Resource.MEDIA, Action.READ),
    _method(LIBRARY_SERVICE, "UpdateMetadata"): perm(Resource.MEDIA, Action.WRITE),
    _method(LIBRARY_SERVICE, "RefreshMetadata"): perm(Resource.MEDIA, Action.WRITE),

    # User administration
    _method(USER_SERVICE, "GetUser"): perm(Resource.USER, Action.READ),
    _method(USER_SERVICE, "DeleteUser"): perm(Resource.USER, Action.DELETE),
    _method(USER_SERVICE, "AssignRole"): perm(Resource.USER, Action.ADMIN),
}

# Methods that bypass authentication entirely
PUBLIC_METHODS: FrozenSet[str] = frozenset({
    _method(USER_SERVICE, "Login"),
    _method(USER_SERVICE, "RefreshToken"),
    _method(USER_SERVICE, "CreateUser"),
    "/grpc.health.v1.Health/Check",
    "/grpc.health.v1.Health/Watch",
})

# Any method of these services is public
PUBLIC_SERVICE_PREFIXES: Tuple[str, ...] = (
    "/grpc.reflection.v1alpha.ServerReflection/",
    "/grpc.reflection.v1.ServerReflection/",
)


def is_public_method(method: str, extra: Iterable[str] = ()) -> bool:
    """Return True if ``method`` skips authentication."""
    if method in PUBLIC_METHODS or method in extra:
        return True
    return method.startswith(PUBLIC_SERVICE_PREFIXES)


def required_permission(method: str) -> Optional[Permission]:
    """Look up the permission required by a fully-qualified RPC method."""
    return METHOD_PERMISSIONS.get(method)


class PermissionDeniedError(Exception):
    """
    Raised when roles do not grant a required permission.

    Attributes:
        roles: Roles that were evaluated
        permission: The permission that was required
    """

    def __init__(self, roles: Iterable[str], permission: Permission):
        self.roles = sorted(roles)
        self.permission = permission
        super().__init__(f"permission denied: {permission}")


class RBACEngine(ABC):
    """
    Decides whether a set of roles grants a (resource, action) pair.

    Both back-ends share these semantics: access is allowed iff at least one
    role grants the exact pair or the wildcard.
    """

    @abstractmethod
    def check_permission(self, role: str, resource: str, action: str) -> bool:
        """Check a single role."""

    @abstractmethod
    def role_permissions(self, role: str) -> Set[Permission]:
        """All permissions held by a role."""

    @abstractmethod
    def add_permission(self, role: str, resource: str, action: str) -> None:
        """Grant a permission to a role."""

    @abstractmethod
    def remove_permission(self, role: str, resource: str, action: str) -> None:
        """Revoke a permission from a role."""

    @abstractmethod
    def roles(self) -> List[str]:
        """Role names known to the policy."""

    def authorize(self, roles: Iterable[str], resource: str, action: str) -> bool:
        """
        Decide access for a caller.

        Args:
            roles: Caller role names (case-sensitive)
            resource: Resource name
            action: Action name

        Returns:
            True if any role grants the permission
        """
        return any(self.check_permission(role, resource, action) for role in roles)

    def require(self, roles: Iterable[str], resource: str, action: str) -> None:
        """
        Require a permission.

        Raises:
            PermissionDeniedError: If no role grants it
        """
        roles = list(roles)
        if not self.authorize(roles, resource, action):
            raise PermissionDeniedError(roles, perm(resource, action))


class BuiltinRBAC(RBACEngine):
    """
    Table-driven RBAC evaluator.

    Starts from ROLE_PERMISSIONS; grants added at runtime stay in memory.
    """

    def __init__(self, seed: Optional[Dict[str, Iterable[Permission]]] = None):
        seed = ROLE_PERMISSIONS if seed is None else seed
        self._lock = threading.RLock()
        self._permissions: Dict[str, Set[Permission]] = {
            role: set(grants) for role, grants in seed.items()
        }

    def check_permission(self, role: str, resource: str, action: str) -> bool:
        with self._lock:
            grants = self._permissions.get(role)
            if not grants:
                return False
            if ALL_PERMISSIONS in grants:
                return True
            return any(p.resource == resource and p.action == action for p in grants)

    def role_permissions(self, role: str) -> Set[Permission]:
        with self._lock:
            return set(self._permissions.get(role, set()))

    def add_permission(self, role: str, resource: str, action: str) -> None:
        with self._lock:
            self._permissions.setdefault(role, set()).add(perm(resource, action))

    def remove_permission(self, role: str, resource: str, action: str) -> None:
        with self._lock:
            self._permissions.get(role, set()).discard(perm(resource, action))

    def roles(self) -> List[str]:
        with self._lock:
            return sorted(self._permissions)
