"""
RPC plumbing shared by the service handlers.

Messages are pydantic models carried as UTF-8 JSON inside gRPC frames.
This module provides the serializer pairs and method handler factory used
when registering endpoints, and the single translation point from AppError
kinds to gRPC status codes.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Type, TypeVar, Union

import grpc
from grpc import aio
from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import AppError, ErrorKind

M = TypeVar("M", bound=BaseModel)

STATUS_BY_KIND: Dict[ErrorKind, grpc.StatusCode] = {
    ErrorKind.NOT_FOUND: grpc.StatusCode.NOT_FOUND,
    ErrorKind.CONFLICT: grpc.StatusCode.ALREADY_EXISTS,
    ErrorKind.BAD_REQUEST: grpc.StatusCode.INVALID_ARGUMENT,
    ErrorKind.UNAUTHORIZED: grpc.StatusCode.UNAUTHENTICATED,
    ErrorKind.FORBIDDEN: grpc.StatusCode.PERMISSION_DENIED,
    ErrorKind.INTERNAL: grpc.StatusCode.INTERNAL,
    ErrorKind.UNIMPLEMENTED: grpc.StatusCode.UNIMPLEMENTED,
}


class Message(BaseModel):
    """Base for wire messages; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")


class Empty(Message):
    pass


class MessageDecodeError(ValueError):
    """Request bytes are not a valid message."""


def serializer(message: BaseModel) -> bytes:
    """Serialize a response message to JSON bytes."""
    return message.model_dump_json().encode("utf-8")


def deserializer(model: Type[M]) -> Callable[[bytes], M]:
    """
    Build a strict deserializer for a message type.

    Args:
        model: pydantic message class

    Returns:
        Callable turning JSON bytes into a ``model`` instance; raises
        MessageDecodeError on invalid input
    """
    def deserialize(data: bytes) -> M:
        if not data:
            return model()
        try:
            return model.model_validate_json(data)
        except ValidationError as e:
            raise MessageDecodeError(f"invalid {model.__name__}: {e.error_count()} error(s)") from e

    deserialize.__name__ = f"deserialize_{model.__name__}"
    return deserialize


class MalformedRequest:
    """Stands in for request bytes that did not decode."""

    def __init__(self, model: Type[BaseModel], reason: str):
        self.model = model
        self.reason = reason

    def __repr__(self) -> str:
        return f"MalformedRequest({self.model.__name__}, {self.reason!r})"


def request_deserializer(model: Type[M]) -> Callable[[bytes], Union[M, MalformedRequest]]:
    """
    Build a server-side request deserializer.

    Decode failures yield a MalformedRequest instead of raising, so the call
    still runs through the interceptors and is refused as INVALID_ARGUMENT
    by the registered handler (see method_handler).
    """
    strict = deserializer(model)

    def deserialize(data: bytes) -> Union[M, MalformedRequest]:
        try:
            return strict(data)
        except MessageDecodeError as e:
            return MalformedRequest(model, str(e))

    deserialize.__name__ = f"deserialize_request_{model.__name__}"
    return deserialize


def method_handler(behavior, request_type: Type[BaseModel], streaming: bool = False) -> grpc.RpcMethodHandler:
    """
    Register a unary-request endpoint.

    Args:
        behavior: Handler coroutine, or async generator when streaming
        request_type: pydantic request message class
        streaming: Server-streaming response

    Returns:
        Method handler that rejects undecodable requests with INVALID_ARGUMENT
    """
    if streaming:
        async def unary_stream(request, context):
            if isinstance(request, MalformedRequest):
                await context.abort(grpc.StatusCode.INVALID_ARGUMENT, request.reason)
            async for response in behavior(request, context):
                yield response

        return grpc.unary_stream_rpc_method_handler(
            unary_stream,
            request_deserializer=request_deserializer(request_type),
            response_serializer=serializer,
        )

    async def unary_unary(request, context):
        if isinstance(request, MalformedRequest):
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, request.reason)
        return await behavior(request, context)

    return grpc.unary_unary_rpc_method_handler(
        unary_unary,
        request_deserializer=request_deserializer(request_type),
        response_serializer=serializer,
    )


def status_for(err: BaseException) -> grpc.StatusCode:
    """Map an exception to the gRPC status returned to the caller."""
    if isinstance(err, AppError):
        return STATUS_BY_KIND.get(err.kind, grpc.StatusCode.INTERNAL)
    return grpc.StatusCode.INTERNAL


async def abort_with(context, err: BaseException, operation: str) -> None:
    """
    Abort the call for a service error.

    Typed errors keep their (caller-safe) message. Anything else is logged
    with full detail and reported as INTERNAL with a sanitized message.

    Args:
        context: gRPC servicer context
        err: Error raised by the service layer
        operation: Short description used in the sanitized message,
            e.g. "get library"
    """
    code = status_for(err)
    if code == grpc.StatusCode.INTERNAL:
        logger.opt(exception=err).error(f"Failed to {operation}: {err!r}")
        await context.abort(code, f"failed to {operation}")
    await context.abort(code, err.message)  # type: ignore[attr-defined]


@asynccontextmanager
async def translate_errors(context, operation: str) -> AsyncIterator[None]:
    """
    Abort the call for any service error raised in the block.

    Aborts already in flight pass through unchanged.
    """
    try:
        yield
    except (grpc.RpcError, aio.AbortError):
        raise
    except Exception as e:
        await abort_with(context, e, operation)
