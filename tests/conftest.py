"""
Shared fixtures for the narwhal test suite.
"""

from datetime import timedelta

import grpc
import pytest
import pytest_asyncio
from loguru import logger

from narwhal.auth import BuiltinRBAC, Identity, TokenManager, UserDatabase, UserManager
from narwhal.library import DefaultLibraryService, LibraryHandler, LibraryRepository
from narwhal.pagination import CursorCodec

TEST_SECRET = "test-access-secret-0123456789abcdef"
TEST_REFRESH_SECRET = "test-refresh-secret-0123456789abcdef"
CURSOR_KEY = b"k" * 32


class AbortError(grpc.RpcError):
    """Raised by FakeContext.abort, like grpc.aio does."""

    def __init__(self, code: grpc.StatusCode, details: str):
        super().__init__(f"{code.name}: {details}")
        self.code = code
        self.details = details


class FakeContext:
    """Minimal grpc.aio.ServicerContext stand-in."""

    def __init__(self, metadata=(), cancelled: bool = False):
        self.metadata = tuple(metadata)
        self._cancelled = cancelled
        self._code = None
        self.aborted = None

    async def abort(self, code, details=""):
        self.aborted = (code, details)
        self._code = code
        raise AbortError(code, details)

    def invocation_metadata(self):
        return self.metadata

    def peer(self):
        return "ipv4:127.0.0.1:50000"

    def code(self):
        return self._code

    def set_code(self, code):
        self._code = code

    def cancelled(self):
        return self._cancelled

    def cancel(self):
        self._cancelled = True


class HandlerCallDetails:
    """grpc.HandlerCallDetails stand-in."""

    def __init__(self, method: str, metadata=()):
        self.method = method
        self.invocation_metadata = tuple(metadata)


def make_identity(roles=("admin",), subject="11111111-1111-1111-1111-111111111111", username="alice"):
    return Identity(subject=subject, username=username, email=f"{username}@example.com", roles=frozenset(roles))


@pytest.fixture
def tokens():
    return TokenManager(
        TEST_SECRET,
        TEST_REFRESH_SECRET,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
    )


@pytest.fixture
def rbac():
    return BuiltinRBAC()


@pytest.fixture
def cursors():
    return CursorCodec(CURSOR_KEY)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "narwhal.db"


@pytest.fixture
def repository(db_path):
    return LibraryRepository(db_path)


@pytest_asyncio.fixture
async def library_service(repository):
    service = DefaultLibraryService(repository)
    yield service
    await service.close()


@pytest.fixture
def handler(library_service, cursors):
    return LibraryHandler(library_service, cursors)


@pytest.fixture
def user_db(db_path):
    return UserDatabase(db_path)


@pytest.fixture
def users(user_db, tokens):
    return UserManager(user_db, tokens)


@pytest.fixture
def context():
    return FakeContext()


@pytest.fixture
def log_records():
    """Loguru records emitted while the test runs."""
    records = []
    sink_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(sink_id)


def levels(records):
    return [record["level"].name for record in records]
