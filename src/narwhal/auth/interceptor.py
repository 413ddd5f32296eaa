"""
gRPC server-side authentication and authorization.

Every inbound call that is not on the public allowlist must carry exactly
one ``authorization: Bearer <token>`` metadata entry. The token is verified
with the TokenManager, the caller identity is bound to the request context
for the lifetime of the call (including the whole response stream for
streaming RPCs), and the method's required permission is checked against the
RBAC engine before the handler runs.
"""

from typing import Iterable, Optional, Sequence, Tuple

import grpc
from grpc import aio
from loguru import logger

from .context import bind_identity
from .jwt_handler import TokenError, TokenManager
from .models import Identity
from .permissions import RBACEngine, is_public_method, required_permission

BEARER_PREFIX = "Bearer "
AUTHORIZATION_KEY = "authorization"

Metadata = Sequence[Tuple[str, str]]


class AuthRejected(Exception):
    """Call must be rejected with ``code`` and ``message``."""

    def __init__(self, code: grpc.StatusCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def extract_bearer_token(metadata: Optional[Metadata]) -> str:
    """
    Pull the bearer token out of request metadata.

    Args:
        metadata: Invocation metadata as (key, value) pairs

    Returns:
        Token without the "Bearer " prefix

    Raises:
        AuthRejected: Zero or several authorization entries, a non-Bearer
            scheme, or an empty token
    """
    values = [value for key, value in (metadata or ()) if key.lower() == AUTHORIZATION_KEY]
    if len(values) != 1:
        raise AuthRejected(grpc.StatusCode.UNAUTHENTICATED, "missing/invalid authorization header")

    header = values[0]
    if isinstance(header, bytes):
        header = header.decode("utf-8", errors="replace")
    if not header.startswith(BEARER_PREFIX):
        raise AuthRejected(grpc.StatusCode.UNAUTHENTICATED, "missing/invalid authorization header")

    token = header[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthRejected(grpc.StatusCode.UNAUTHENTICATED, "missing/invalid authorization header")
    return token


class AuthInterceptor(aio.ServerInterceptor):
    """
    Authenticates and authorizes every non-public RPC.

    Holds no mutable state; TokenManager and the RBAC engine are shared
    read-only between concurrent calls.
    """

    def __init__(
        self,
        tokens: TokenManager,
        rbac: RBACEngine,
        public_methods: Iterable[str] = (),
    ):
        """
        Initialize interceptor.

        Args:
            tokens: Verifies access tokens
            rbac: Evaluates method permissions
            public_methods: Extra fully-qualified methods that skip authentication
        """
        self.tokens = tokens
        self.rbac = rbac
        self.public_methods = frozenset(public_methods)

    def authenticate(self, method: str, metadata: Optional[Metadata]) -> Identity:
        """
        Verify the caller and check the method's permission.

        Args:
            method: Fully-qualified method name ("/pkg.Service/Method")
            metadata: Invocation metadata

        Returns:
            Verified identity

        Raises:
            AuthRejected: UNAUTHENTICATED or PERMISSION_DENIED
        """
        token = extract_bearer_token(metadata)

        try:
            identity = self.tokens.verify_access(token)
        except TokenError as e:
            logger.warning(f"Rejected call to {method}: invalid token")
            logger.debug(f"Token rejection reason for {method}: {e.reason}")
            raise AuthRejected(grpc.StatusCode.UNAUTHENTICATED, "invalid token")

        required = required_permission(method)
        if required is not None and not self.rbac.authorize(identity.roles, required.resource, required.action):
            logger.warning(
                f"Permission denied: user {identity.username or identity.subject} "
                f"roles={sorted(identity.roles)} method={method} requires {required}"
            )
            raise AuthRejected(grpc.StatusCode.PERMISSION_DENIED, f"permission denied: {required}")

        return identity

    async def _admit(self, method: str, metadata: Optional[Metadata], context) -> Identity:
        try:
            return self.authenticate(method, metadata)
        except AuthRejected as e:
            await context.abort(e.code, e.message)
            raise  # abort() always raises; keeps the return type honest

    async def intercept_service(self, continuation, handler_call_details):
        method = handler_call_details.method or ""
        handler = await continuation(handler_call_details)
        if handler is None or is_public_method(method, self.public_methods):
            return handler

        metadata = handler_call_details.invocation_metadata

        if handler.unary_unary:
            inner = handler.unary_unary

            async def unary_unary(request, context):
                identity = await self._admit(method, metadata, context)
                with bind_identity(identity):
                    return await inner(request, context)

            return grpc.unary_unary_rpc_method_handler(
                unary_unary,
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )

        if handler.unary_stream:
            inner = handler.unary_stream

            async def unary_stream(request, context):
                identity = await self._admit(method, metadata, context)
                with bind_identity(identity):
                    async for response in inner(request, context):
                        yield response

            return grpc.unary_stream_rpc_method_handler(
                unary_stream,
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )

        if handler.stream_unary:
            inner = handler.stream_unary

            async def stream_unary(request_iterator, context):
                identity = await self._admit(method, metadata, context)
                with bind_identity(identity):
                    return await inner(request_iterator, context)

            return grpc.stream_unary_rpc_method_handler(
                stream_unary,
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )

        if handler.stream_stream:
            inner = handler.stream_stream

            async def stream_stream(request_iterator, context):
                identity = await self._admit(method, metadata, context)
                with bind_identity(identity):
                    async for response in inner(request_iterator, context):
                        yield response

            return grpc.stream_stream_rpc_method_handler(
                stream_stream,
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )

        return handler
