"""
Request-scoped caller identity.

The auth interceptor binds the verified Identity for the duration of one
RPC; handlers read it back through the typed accessors below.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import FrozenSet, Iterator, Optional

from .models import Identity

_identity_ctx: ContextVar[Optional[Identity]] = ContextVar("narwhal_identity", default=None)


def current_identity() -> Optional[Identity]:
    """Identity bound to the current request, or None."""
    return _identity_ctx.get()


def current_user_id() -> Optional[str]:
    identity = _identity_ctx.get()
    return identity.subject if identity else None


def current_username() -> Optional[str]:
    identity = _identity_ctx.get()
    return identity.username if identity else None


def current_roles() -> FrozenSet[str]:
    identity = _identity_ctx.get()
    return identity.roles if identity else frozenset()


@contextmanager
def bind_identity(identity: Optional[Identity]) -> Iterator[None]:
    """
    Bind an identity for the enclosed block.

    Args:
        identity: Identity to expose to the accessors (None clears it)
    """
    token = _identity_ctx.set(identity)
    try:
        yield
    finally:
        _identity_ctx.reset(token)
