"""
Command line entry point.

    python -m narwhal serve [--config PATH] [--port N]
    python -m narwhal create-user USERNAME EMAIL --password P [--role admin]
    python -m narwhal generate-secret
"""

import argparse
import asyncio
import secrets
import sys

from loguru import logger

from .auth import TokenManager, UserDatabase, UserManager
from .auth.jwt_handler import SECRET_BYTES
from .config import load_settings
from .errors import AppError, ConfigError
from .log import setup_logging
from .server import serve


def cmd_serve(args) -> int:
    settings = load_settings(args.service, config_path=args.config)
    if args.port is not None:
        settings.server.grpc_port = args.port
    setup_logging(settings.logging.level, settings.logging.json_logs)

    logger.info(f"Starting {settings.service.name} service ({settings.service.environment})")
    asyncio.run(serve(settings))
    return 0


def cmd_create_user(args) -> int:
    settings = load_settings(args.service, config_path=args.config)
    setup_logging(settings.logging.level, settings.logging.json_logs)

    # Token settings are irrelevant here; the manager only needs the store
    tokens = TokenManager(settings.auth.jwt_secret or secrets.token_bytes(SECRET_BYTES))
    manager = UserManager(UserDatabase(settings.database.path), tokens)
    try:
        user = manager.create_user(args.username, args.email, args.password, args.role or None)
    except AppError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 1

    print(f"Created user {user.username} ({user.user_id}) with roles: {', '.join(user.roles)}")
    return 0


def cmd_generate_secret(args) -> int:
    print(secrets.token_urlsafe(SECRET_BYTES))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="narwhal", description="narwhal library service")
    parser.add_argument(
        "--service",
        default="library",
        help="Service name; selects configs/<service>.yaml and the env prefix (default: library)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the gRPC server")
    serve_parser.add_argument("--config", help="Base config file (default: configs/<service>.yaml)")
    serve_parser.add_argument("--port", type=int, help="Override server.grpc_port")
    serve_parser.set_defaults(func=cmd_serve)

    user_parser = subparsers.add_parser("create-user", help="Create a user in the local database")
    user_parser.add_argument("username")
    user_parser.add_argument("email")
    user_parser.add_argument("--password", required=True)
    user_parser.add_argument(
        "--role",
        action="append",
        help="Role to assign; repeatable (default: user)"
    )
    user_parser.add_argument("--config", help="Base config file")
    user_parser.set_defaults(func=cmd_create_user)

    secret_parser = subparsers.add_parser("generate-secret", help="Print a random 256-bit secret")
    secret_parser.set_defaults(func=cmd_generate_secret)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
