"""
Server assembly and lifecycle.

Builds the grpc.aio server with the interceptor chain, the library and user
services, gRPC health checking and reflection, and runs it next to a small
aiohttp health probe until SIGINT or SIGTERM.
"""

import asyncio
import signal
from dataclasses import dataclass, field
from typing import Optional

from aiohttp import web
from grpc import aio
from grpc_health.v1 import health, health_pb2, health_pb2_grpc
from grpc_reflection.v1alpha import reflection
from loguru import logger

from .auth import (
    AuthInterceptor,
    RBACEngine,
    Role,
    TokenManager,
    UserDatabase,
    UserHandler,
    UserManager,
    add_user_service,
    create_rbac,
    generate_secret,
)
from .auth.permissions import LIBRARY_SERVICE, USER_SERVICE
from .config import Settings
from .interceptors import AccessLogInterceptor, ExceptionMappingInterceptor
from .library import DefaultLibraryService, LibraryHandler, LibraryRepository, Scanner, add_library_service
from .pagination import CursorCodec

MIN_SHUTDOWN_GRACE = 15.0
MAX_SHUTDOWN_GRACE = 30.0

SERVICE_NAMES = (LIBRARY_SERVICE, USER_SERVICE)


def clamp_grace(seconds: float) -> float:
    """Shutdown grace period limited to 15..30 seconds."""
    return min(max(seconds, MIN_SHUTDOWN_GRACE), MAX_SHUTDOWN_GRACE)


@dataclass
class Application:
    """
    A built, bound (but not yet started) service instance.

    Attributes:
        settings: Effective settings
        server: grpc.aio server
        port: Bound gRPC port (resolved when 0 was requested)
        health: gRPC health servicer
        tokens: Token manager shared by interceptor and user service
        rbac: RBAC engine
        library_service: Library domain service
        users: User manager
        serving: True between start() and stop()
    """
    settings: Settings
    server: aio.Server
    port: int
    health: health.aio.HealthServicer
    tokens: TokenManager
    rbac: RBACEngine
    library_service: DefaultLibraryService
    users: UserManager
    serving: bool = field(default=False)

    async def start(self) -> None:
        await self.server.start()
        for name in ("",) + SERVICE_NAMES:
            await self.health.set(name, health_pb2.HealthCheckResponse.SERVING)
        self.serving = True
        logger.success(f"gRPC server listening on port {self.port}")

    async def stop(self, grace: Optional[float] = None) -> None:
        """
        Stop serving.

        Health flips to NOT_SERVING first, then in-flight calls get
        ``grace`` seconds before they are cancelled.
        """
        if grace is None:
            grace = clamp_grace(self.settings.server.shutdown_grace)

        self.serving = False
        await self.health.enter_graceful_shutdown()
        logger.info(f"Stopping gRPC server (grace {grace:.0f}s)")
        await self.server.stop(grace)
        await self.library_service.close()
        logger.info("gRPC server stopped")


def build_tokens(settings: Settings) -> TokenManager:
    secret = settings.auth.jwt_secret or generate_secret()
    return TokenManager(
        access_secret=secret,
        refresh_secret=settings.auth.refresh_secret or None,
        issuer=settings.auth.issuer,
        access_ttl=settings.auth.access_token_duration,
        refresh_ttl=settings.auth.refresh_token_duration,
    )


def build_server(
    settings: Settings,
    scanner: Optional[Scanner] = None,
    tokens: Optional[TokenManager] = None,
    rbac: Optional[RBACEngine] = None,
) -> Application:
    """
    Assemble the gRPC server and its dependencies and bind its port.

    Args:
        settings: Validated settings
        scanner: Library scanner (defaults to a no-op)
        tokens: Token manager override (built from settings when omitted)
        rbac: RBAC engine override (built from settings when omitted)

    Returns:
        Application ready to start()

    Raises:
        PolicyLoadError: RBAC file mode could not load its policy
        RuntimeError: The gRPC port could not be bound
    """
    tokens = tokens or build_tokens(settings)
    rbac = rbac or create_rbac(
        settings.auth.rbac_type,
        settings.auth.rbac_model_path,
        settings.auth.rbac_policy_path,
    )
    cursors = CursorCodec(
        settings.pagination.cursor_encryption_key,
        ttl=settings.pagination.cursor_expiration,
        default_page_size=settings.pagination.default_page_size,
        max_page_size=settings.pagination.max_page_size,
    )

    repository = LibraryRepository(settings.database.path)
    library_service = DefaultLibraryService(repository, scanner)

    user_db = UserDatabase(settings.database.path)
    user_db.cleanup_expired_sessions()
    users = UserManager(user_db, tokens, rbac.roles() or [r.value for r in Role])

    # Order matters: logging sees the final status, auth runs innermost
    interceptors = [
        AccessLogInterceptor(),
        ExceptionMappingInterceptor(),
        AuthInterceptor(tokens, rbac),
    ]
    max_bytes = settings.server.max_message_mb * 1024 * 1024
    server = aio.server(
        interceptors=interceptors,
        options=(
            ("grpc.max_send_message_length", max_bytes),
            ("grpc.max_receive_message_length", max_bytes),
        ),
    )

    add_library_service(LibraryHandler(library_service, cursors), server)
    add_user_service(UserHandler(users, tokens, rbac), server)

    health_servicer = health.aio.HealthServicer()
    health_pb2_grpc.add_HealthServicer_to_server(health_servicer, server)

    # Only services with protobuf descriptors can be reflected
    if settings.server.enable_reflection:
        reflection.enable_server_reflection((health.SERVICE_NAME, reflection.SERVICE_NAME), server)

    address = f"{settings.server.host}:{settings.server.grpc_port}"
    port = server.add_insecure_port(address)
    if port == 0:
        raise RuntimeError(f"Failed to bind gRPC on {address}")

    return Application(
        settings=settings,
        server=server,
        port=port,
        health=health_servicer,
        tokens=tokens,
        rbac=rbac,
        library_service=library_service,
        users=users,
    )


# ============================================================================
# HTTP probe
# ============================================================================

def build_probe_app(app: Application) -> web.Application:
    """aiohttp application exposing /healthz and /readyz."""

    async def healthz(request):
        return web.json_response({
            'status': 'healthy',
            'service': app.settings.service.name,
        })

    async def readyz(request):
        if app.serving:
            return web.json_response({'status': 'ready'})
        return web.json_response({'status': 'not_ready'}, status=503)

    probe = web.Application()
    probe.router.add_get('/healthz', healthz)
    probe.router.add_get('/readyz', readyz)
    return probe


async def start_probe(app: Application) -> web.AppRunner:
    """Start the HTTP probe server."""
    runner = web.AppRunner(build_probe_app(app))
    await runner.setup()

    site = web.TCPSite(runner, app.settings.server.host, app.settings.server.http_port)
    await site.start()

    logger.info(f"Health probe running on {app.settings.server.host}:{app.settings.server.http_port}")
    return runner


# ============================================================================
# Entry point
# ============================================================================

async def serve(settings: Settings, scanner: Optional[Scanner] = None) -> None:
    """Run the service until SIGINT or SIGTERM, then shut down gracefully."""
    app = build_server(settings, scanner)
    await app.start()
    probe = await start_probe(app)

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def _on_signal(signame: str):
        logger.info(f"Received {signame}, shutting down...")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig.name)

    try:
        await stop.wait()
    finally:
        await app.stop()
        await probe.cleanup()
        logger.info("Server stopped")
