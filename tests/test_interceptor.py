"""
Tests for bearer extraction and the authentication interceptor.
"""

import grpc
import pytest

from narwhal.auth import AuthInterceptor, AuthRejected, current_identity, extract_bearer_token
from narwhal.auth.permissions import LIBRARY_SERVICE, USER_SERVICE

from conftest import AbortError, FakeContext, HandlerCallDetails, make_identity


def _bearer(token: str):
    return (("authorization", f"Bearer {token}"),)


class TestExtractBearerToken:
    def test_valid(self):
        """The token follows the Bearer prefix."""
        assert extract_bearer_token(_bearer("abc.def")) == "abc.def"

    def test_key_is_case_insensitive(self):
        """Metadata keys match regardless of case."""
        assert extract_bearer_token((("Authorization", "Bearer tok"),)) == "tok"

    @pytest.mark.parametrize("metadata", [
        (),
        None,
        (("authorization", "Basic dXNlcjpwYXNz"),),
        (("authorization", "Bearer "),),
        (("authorization", "bearer tok"),),
        (("authorization", "Bearer a"), ("authorization", "Bearer b")),
    ])
    def test_rejected(self, metadata):
        """Missing, duplicated, empty and non-Bearer headers are refused."""
        with pytest.raises(AuthRejected) as exc:
            extract_bearer_token(metadata)
        assert exc.value.code == grpc.StatusCode.UNAUTHENTICATED
        assert exc.value.message == "missing/invalid authorization header"


class TestAuthenticate:
    def test_valid_token(self, tokens, rbac):
        """A valid token yields its identity."""
        interceptor = AuthInterceptor(tokens, rbac)
        token = tokens.issue_access(make_identity(roles=("user",)))

        identity = interceptor.authenticate(f"/{LIBRARY_SERVICE}/GetLibrary", _bearer(token))

        assert identity.username == "alice"
        assert identity.roles == frozenset({"user"})

    def test_invalid_token(self, tokens, rbac):
        """Bad tokens are UNAUTHENTICATED with a generic message."""
        interceptor = AuthInterceptor(tokens, rbac)

        with pytest.raises(AuthRejected) as exc:
            interceptor.authenticate(f"/{LIBRARY_SERVICE}/GetLibrary", _bearer("not-a-jwt"))
        assert exc.value.code == grpc.StatusCode.UNAUTHENTICATED
        assert exc.value.message == "invalid token"

    def test_permission_denied(self, tokens, rbac):
        """Missing permissions are PERMISSION_DENIED."""
        interceptor = AuthInterceptor(tokens, rbac)
        token = tokens.issue_access(make_identity(roles=("user",)))

        with pytest.raises(AuthRejected) as exc:
            interceptor.authenticate(f"/{LIBRARY_SERVICE}/CreateLibrary", _bearer(token))
        assert exc.value.code == grpc.StatusCode.PERMISSION_DENIED
        assert "library:write" in exc.value.message

    def test_unlisted_method_needs_only_authentication(self, tokens, rbac):
        """Methods without a table entry admit any authenticated caller."""
        interceptor = AuthInterceptor(tokens, rbac)
        token = tokens.issue_access(make_identity(roles=("guest",)))

        identity = interceptor.authenticate(f"/{USER_SERVICE}/GetCurrentUser", _bearer(token))

        assert identity.has_role("guest")


class TestInterceptService:
    @staticmethod
    def _unary_continuation(seen):
        async def behavior(request, context):
            seen.append(current_identity())
            return "ok"

        async def continuation(details):
            return grpc.unary_unary_rpc_method_handler(behavior)

        return continuation

    @staticmethod
    def _stream_continuation(seen):
        async def behavior(request, context):
            for i in range(3):
                seen.append(current_identity())
                yield i

        async def continuation(details):
            return grpc.unary_stream_rpc_method_handler(behavior)

        return continuation

    @pytest.mark.asyncio
    async def test_binds_identity(self, tokens, rbac):
        """The handler sees the caller identity; it is cleared afterwards."""
        interceptor = AuthInterceptor(tokens, rbac)
        token = tokens.issue_access(make_identity(roles=("admin",)))
        seen = []
        details = HandlerCallDetails(f"/{LIBRARY_SERVICE}/CreateLibrary", _bearer(token))

        handler = await interceptor.intercept_service(self._unary_continuation(seen), details)
        result = await handler.unary_unary(None, FakeContext())

        assert result == "ok"
        assert seen[0].username == "alice"
        assert current_identity() is None

    @pytest.mark.asyncio
    async def test_aborts_before_handler(self, tokens, rbac):
        """Rejected calls never reach the handler."""
        interceptor = AuthInterceptor(tokens, rbac)
        seen = []
        context = FakeContext()
        details = HandlerCallDetails(f"/{LIBRARY_SERVICE}/GetLibrary")

        handler = await interceptor.intercept_service(self._unary_continuation(seen), details)
        with pytest.raises(AbortError):
            await handler.unary_unary(None, context)

        assert context.aborted[0] == grpc.StatusCode.UNAUTHENTICATED
        assert seen == []

    @pytest.mark.asyncio
    async def test_permission_denied_aborts(self, tokens, rbac):
        """Authenticated callers without the permission are refused."""
        interceptor = AuthInterceptor(tokens, rbac)
        token = tokens.issue_access(make_identity(roles=("guest",)))
        context = FakeContext()
        details = HandlerCallDetails(f"/{LIBRARY_SERVICE}/DeleteLibrary", _bearer(token))

        handler = await interceptor.intercept_service(self._unary_continuation([]), details)
        with pytest.raises(AbortError):
            await handler.unary_unary(None, context)

        assert context.aborted[0] == grpc.StatusCode.PERMISSION_DENIED

    @pytest.mark.asyncio
    async def test_public_method_passthrough(self, tokens, rbac):
        """Public methods run without credentials or identity."""
        interceptor = AuthInterceptor(tokens, rbac)
        seen = []
        details = HandlerCallDetails(f"/{USER_SERVICE}/Login")

        handler = await interceptor.intercept_service(self._unary_continuation(seen), details)
        result = await handler.unary_unary(None, FakeContext())

        assert result == "ok"
        assert seen == [None]

    @pytest.mark.asyncio
    async def test_stream_keeps_identity(self, tokens, rbac):
        """Identity stays bound for every streamed response."""
        interceptor = AuthInterceptor(tokens, rbac)
        token = tokens.issue_access(make_identity(roles=("user",)))
        seen = []
        details = HandlerCallDetails(f"/{LIBRARY_SERVICE}/StreamMedia", _bearer(token))

        handler = await interceptor.intercept_service(self._stream_continuation(seen), details)
        responses = [r async for r in handler.unary_stream(None, FakeContext())]

        assert responses == [0, 1, 2]
        assert all(identity is not None and identity.username == "alice" for identity in seen)

    @pytest.mark.asyncio
    async def test_unknown_method(self, tokens, rbac):
        """Unregistered methods are left to the server."""
        interceptor = AuthInterceptor(tokens, rbac)

        async def continuation(details):
            return None

        handler = await interceptor.intercept_service(continuation, HandlerCallDetails("/x.Y/Z"))

        assert handler is None
