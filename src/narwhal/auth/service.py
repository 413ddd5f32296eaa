"""
gRPC handler for narwhal.user.v1.UserService.

Login, RefreshToken and CreateUser are public at the transport level.
CreateUser is open only while the user table is empty (bootstrapping the
first administrator); afterwards it checks for an administrator token
itself.
"""

import asyncio

import grpc
from loguru import logger

from ..errors import AppError, is_forbidden
from ..rpc import abort_with, method_handler, translate_errors
from . import messages as pb
from .context import current_user_id
from .interceptor import AuthRejected, extract_bearer_token
from .jwt_handler import TokenError, TokenManager
from .models import TokenPair, User
from .permissions import USER_SERVICE, Action, RBACEngine, Resource
from .user_manager import UserManager


def user_to_wire(user: User) -> pb.UserInfo:
    return pb.UserInfo(
        id=user.user_id,
        username=user.username,
        email=user.email,
        roles=list(user.roles),
        is_active=user.is_active,
        created=user.created_at,
    )


def token_response(pair: TokenPair, user: User) -> pb.TokenResponse:
    return pb.TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        expires_at=pair.expires_at,
        user=user_to_wire(user),
    )


class UserHandler:
    """User service endpoints."""

    def __init__(self, manager: UserManager, tokens: TokenManager, rbac: RBACEngine):
        """
        Initialize handler.

        Args:
            manager: User manager (blocking; run in worker threads)
            tokens: Verifies administrator tokens on CreateUser
            rbac: Checks the user:admin permission on CreateUser
        """
        self.manager = manager
        self.tokens = tokens
        self.rbac = rbac

    async def _require_user(self, context) -> str:
        user_id = current_user_id()
        if not user_id:
            await context.abort(grpc.StatusCode.UNAUTHENTICATED, "user not authenticated")
        return user_id

    async def _require_admin(self, context) -> None:
        try:
            token = extract_bearer_token(context.invocation_metadata())
            identity = self.tokens.verify_access(token)
        except AuthRejected as e:
            await context.abort(e.code, e.message)
        except TokenError:
            await context.abort(grpc.StatusCode.UNAUTHENTICATED, "invalid token")

        if not self.rbac.authorize(identity.roles, Resource.USER.value, Action.ADMIN.value):
            logger.warning(f"CreateUser denied for {identity.username or identity.subject}")
            await context.abort(grpc.StatusCode.PERMISSION_DENIED, f"permission denied: {Resource.USER.value}:{Action.ADMIN.value}")

    async def Login(self, request: pb.LoginRequest, context) -> pb.TokenResponse:
        if not request.username or not request.password:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, "username and password are required")

        async with translate_errors(context, "log in"):
            pair, user = await asyncio.to_thread(self.manager.login, request.username, request.password)
        return token_response(pair, user)

    async def RefreshToken(self, request: pb.RefreshTokenRequest, context) -> pb.TokenResponse:
        if not request.refresh_token:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, "refresh token is required")

        async with translate_errors(context, "refresh token"):
            pair, user = await asyncio.to_thread(self.manager.refresh, request.refresh_token)
        return token_response(pair, user)

    async def Logout(self, request: pb.LogoutRequest, context) -> pb.Empty:
        user_id = await self._require_user(context)
        if not request.refresh_token:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, "refresh token is required")

        async with translate_errors(context, "log out"):
            await asyncio.to_thread(self.manager.logout, user_id, request.refresh_token)
        return pb.Empty()

    async def CreateUser(self, request: pb.CreateUserRequest, context) -> pb.UserInfo:
        args = (request.username, request.email, request.password, list(request.roles))

        try:
            user = await asyncio.to_thread(self.manager.create_first_user, *args)
        except AppError as e:
            if not is_forbidden(e):
                await abort_with(context, e, "create user")
        else:
            return user_to_wire(user)

        await self._require_admin(context)
        async with translate_errors(context, "create user"):
            user = await asyncio.to_thread(self.manager.create_user, *args)
        return user_to_wire(user)

    async def GetCurrentUser(self, request: pb.Empty, context) -> pb.UserInfo:
        user_id = await self._require_user(context)
        async with translate_errors(context, "get user"):
            user = await asyncio.to_thread(self.manager.get_user, user_id)
        return user_to_wire(user)

    async def GetUser(self, request: pb.GetUserRequest, context) -> pb.UserInfo:
        await self._require_user(context)
        async with translate_errors(context, "get user"):
            user = await asyncio.to_thread(self.manager.get_user, request.id)
        return user_to_wire(user)

    async def DeleteUser(self, request: pb.DeleteUserRequest, context) -> pb.Empty:
        user_id = await self._require_user(context)
        if request.id == user_id:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, "cannot delete the calling user")

        async with translate_errors(context, "delete user"):
            await asyncio.to_thread(self.manager.delete_user, request.id)
        return pb.Empty()

    async def AssignRole(self, request: pb.AssignRoleRequest, context) -> pb.UserInfo:
        await self._require_user(context)
        async with translate_errors(context, "assign role"):
            user = await asyncio.to_thread(self.manager.assign_role, request.user_id, request.role)
        return user_to_wire(user)


METHODS = {
    "Login": pb.LoginRequest,
    "RefreshToken": pb.RefreshTokenRequest,
    "Logout": pb.LogoutRequest,
    "CreateUser": pb.CreateUserRequest,
    "GetCurrentUser": pb.Empty,
    "GetUser": pb.GetUserRequest,
    "DeleteUser": pb.DeleteUserRequest,
    "AssignRole": pb.AssignRoleRequest,
}


def user_service_handler(handler: UserHandler) -> grpc.GenericRpcHandler:
    method_handlers = {
        name: method_handler(getattr(handler, name), request_type)
        for name, request_type in METHODS.items()
    }
    return grpc.method_handlers_generic_handler(USER_SERVICE, method_handlers)


def add_user_service(handler: UserHandler, server) -> None:
    server.add_generic_rpc_handlers((user_service_handler(handler),))
