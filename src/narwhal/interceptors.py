"""
Transport-level gRPC interceptors: access logging and exception mapping.
"""

import time
from typing import Tuple

import grpc
from grpc import aio
from loguru import logger

from .errors import AppError
from .rpc import status_for


def split_method(full: str) -> Tuple[str, str]:
    # "/package.Service/Method" -> ("package.Service", "Method")
    _, _, rest = full.partition("/")
    service, sep, method = rest.partition("/")
    if not sep:
        return "", full
    return service, method


def _code_name(context, default: str) -> str:
    code = context.code() if hasattr(context, "code") else None
    return code.name if isinstance(code, grpc.StatusCode) else default


class AccessLogInterceptor(aio.ServerInterceptor):
    """One log line per completed RPC with status and latency."""

    async def intercept_service(self, continuation, handler_call_details):
        handler = await continuation(handler_call_details)
        if handler is None:
            return handler

        method = handler_call_details.method or ""
        service, name = split_method(method)

        def _log(context, started: float, default_code: str) -> None:
            elapsed_ms = (time.monotonic() - started) * 1000
            code = _code_name(context, default_code)
            peer = context.peer() if hasattr(context, "peer") else "-"
            logger.info(f"{service}/{name} {code} {elapsed_ms:.1f}ms peer={peer}")

        if handler.unary_unary:
            inner = handler.unary_unary

            async def unary_unary(request, context):
                started = time.monotonic()
                try:
                    response = await inner(request, context)
                except BaseException:
                    _log(context, started, "UNKNOWN")
                    raise
                _log(context, started, "OK")
                return response

            return grpc.unary_unary_rpc_method_handler(
                unary_unary,
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )

        if handler.unary_stream:
            inner = handler.unary_stream

            async def unary_stream(request, context):
                started = time.monotonic()
                try:
                    async for response in inner(request, context):
                        yield response
                except BaseException:
                    _log(context, started, "UNKNOWN")
                    raise
                _log(context, started, "OK")

            return grpc.unary_stream_rpc_method_handler(
                unary_stream,
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )

        return handler


class ExceptionMappingInterceptor(aio.ServerInterceptor):
    """
    Converts exceptions escaping a handler into gRPC statuses.

    AppError keeps its kind and message; anything else becomes INTERNAL
    without leaking internals. Aborts and cancellations pass through.
    """

    async def _map(self, method: str, err: Exception, context) -> None:
        if isinstance(err, AppError):
            await context.abort(status_for(err), err.message)
        logger.opt(exception=err).error(f"Unhandled exception in {method}: {err!r}")
        await context.abort(grpc.StatusCode.INTERNAL, "internal server error")

    async def intercept_service(self, continuation, handler_call_details):
        handler = await continuation(handler_call_details)
        if handler is None:
            return handler

        method = handler_call_details.method or ""

        if handler.unary_unary:
            inner = handler.unary_unary

            async def unary_unary(request, context):
                try:
                    return await inner(request, context)
                except (grpc.RpcError, aio.AbortError):
                    raise
                except Exception as e:
                    await self._map(method, e, context)

            return grpc.unary_unary_rpc_method_handler(
                unary_unary,
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )

        if handler.unary_stream:
            inner = handler.unary_stream

            async def unary_stream(request, context):
                try:
                    async for response in inner(request, context):
                        yield response
                except (grpc.RpcError, aio.AbortError):
                    raise
                except Exception as e:
                    await self._map(method, e, context)

            return grpc.unary_stream_rpc_method_handler(
                unary_stream,
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )

        return handler
