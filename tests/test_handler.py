"""
Tests for the library gRPC handler, called directly with a fake context.
"""

import asyncio
import base64
import functools

import grpc
import pytest

from narwhal.auth import bind_identity
from narwhal.library import DefaultLibraryService, Library, LibraryHandler, Media
from narwhal.library import messages as pb
from narwhal.library.handler import delete_physical_file

from conftest import AbortError, FakeContext, levels, make_identity

MISSING_ID = "22222222-2222-2222-2222-222222222222"


def as_admin(test):
    @functools.wraps(test)
    async def wrapper(*args, **kwargs):
        with bind_identity(make_identity(roles=("admin",))):
            return await test(*args, **kwargs)
    return wrapper


def _seed_libraries(repository, count):
    for i in range(count):
        repository.create_library(Library(name=f"Library {i:03d}", path=f"/media/lib{i:03d}"))


class TestAuthChecks:
    @pytest.mark.asyncio
    async def test_no_identity(self, handler, context):
        """Endpoints refuse to run without a bound identity."""
        with pytest.raises(AbortError):
            await handler.ListLibraries(pb.ListLibrariesRequest(), context)

        assert context.aborted == (grpc.StatusCode.UNAUTHENTICATED, "user not authenticated")

    @pytest.mark.asyncio
    @as_admin
    async def test_invalid_ids(self, handler):
        """Non-UUID identifiers are INVALID_ARGUMENT."""
        for call, what in (
            (handler.GetLibrary(pb.GetLibraryRequest(id="abc"), FakeContext()), "library"),
            (handler.GetMedia(pb.GetMediaRequest(id=""), FakeContext()), "media"),
        ):
            with pytest.raises(AbortError) as exc:
                await call
            assert exc.value.code == grpc.StatusCode.INVALID_ARGUMENT
            assert exc.value.details == f"invalid {what} ID"


class TestLibraryEndpoints:
    @pytest.mark.asyncio
    @as_admin
    async def test_create_and_get(self, handler, context):
        """A created library can be fetched by id."""
        created = await handler.CreateLibrary(pb.CreateLibraryRequest(
            name="Movies",
            path="/media/movies",
            type=pb.MediaType.MEDIA_TYPE_MOVIE,
            auto_scan=True,
            scan_interval_minutes=60,
        ), context)

        fetched = await handler.GetLibrary(pb.GetLibraryRequest(id=created.id), context)

        assert fetched.name == "Movies"
        assert fetched.type == pb.MediaType.MEDIA_TYPE_MOVIE
        assert fetched.scan_interval_minutes == 60
        assert fetched.created is not None

    @pytest.mark.asyncio
    @as_admin
    async def test_uppercase_id_accepted(self, handler, context):
        """Identifiers are normalized before lookup."""
        created = await handler.CreateLibrary(pb.CreateLibraryRequest(name="M", path="/m"), context)

        fetched = await handler.GetLibrary(pb.GetLibraryRequest(id=created.id.upper()), context)

        assert fetched.id == created.id

    @pytest.mark.asyncio
    @as_admin
    async def test_create_conflict(self, handler):
        """Duplicate paths are ALREADY_EXISTS."""
        await handler.CreateLibrary(pb.CreateLibraryRequest(name="A", path="/a"), FakeContext())

        context = FakeContext()
        with pytest.raises(AbortError):
            await handler.CreateLibrary(pb.CreateLibraryRequest(name="B", path="/a"), context)
        assert context.aborted == (grpc.StatusCode.ALREADY_EXISTS, "library path already exists")

    @pytest.mark.asyncio
    @as_admin
    async def test_relative_path_rejected(self, handler, context):
        """Relative library paths are INVALID_ARGUMENT."""
        with pytest.raises(AbortError):
            await handler.CreateLibrary(pb.CreateLibraryRequest(name="M", path="media/m"), context)
        assert context.aborted == (grpc.StatusCode.INVALID_ARGUMENT, "library path must be absolute")

    @pytest.mark.asyncio
    @as_admin
    async def test_get_missing(self, handler, context):
        """Unknown libraries are NOT_FOUND."""
        with pytest.raises(AbortError):
            await handler.GetLibrary(pb.GetLibraryRequest(id=MISSING_ID), context)
        assert context.aborted == (grpc.StatusCode.NOT_FOUND, "library not found")

    @pytest.mark.asyncio
    @as_admin
    async def test_pagination(self, handler, repository, context):
        """Three pages of 50, 50 and 25 cover 125 libraries."""
        _seed_libraries(repository, 125)
        sizes = []
        names = []
        token = ""

        while True:
            response = await handler.ListLibraries(pb.ListLibrariesRequest(
                pagination=pb.PaginationRequest(page_size=50, page_token=token),
            ), context)
            sizes.append(len(response.libraries))
            names.extend(lib.name for lib in response.libraries)
            assert response.pagination.total_items == 125
            token = response.pagination.next_page_token
            if not token:
                break

        assert sizes == [50, 50, 25]
        assert len(set(names)) == 125

    @pytest.mark.asyncio
    @as_admin
    async def test_tampered_token_restarts(self, handler, repository, context, log_records):
        """A page token with one flipped byte yields the first page and a warning."""
        _seed_libraries(repository, 5)

        first = await handler.ListLibraries(pb.ListLibrariesRequest(pagination=pb.PaginationRequest(page_size=2)), context)
        token = first.pagination.next_page_token
        sealed = bytearray(base64.urlsafe_b64decode(token + "=" * (-len(token) % 4)))
        sealed[len(sealed) // 2] ^= 0x01
        tampered = base64.urlsafe_b64encode(bytes(sealed)).decode("ascii").rstrip("=")

        response = await handler.ListLibraries(pb.ListLibrariesRequest(
            pagination=pb.PaginationRequest(page_size=2, page_token=tampered),
        ), context)

        assert [lib.name for lib in response.libraries] == ["Library 000", "Library 001"]
        assert response.pagination.prev_page_token == ""
        warnings = [r["message"] for r in log_records if r["level"].name == "WARNING"]
        assert any("authentication failed" in message for message in warnings)
        assert "ERROR" not in levels(log_records)

    @pytest.mark.asyncio
    @as_admin
    async def test_type_filter(self, handler, repository, context):
        """Type filters apply before pagination."""
        repository.create_library(Library(name="Movies", path="/movies", type="movie"))
        repository.create_library(Library(name="Shows", path="/shows", type="tv_show"))

        response = await handler.ListLibraries(
            pb.ListLibrariesRequest(type_filter=pb.MediaType.MEDIA_TYPE_SERIES), context
        )

        assert [lib.name for lib in response.libraries] == ["Shows"]
        assert response.pagination.total_items == 1

    @pytest.mark.asyncio
    @as_admin
    async def test_update(self, handler, context):
        """Masked updates change only the named fields."""
        created = await handler.CreateLibrary(pb.CreateLibraryRequest(name="A", path="/a"), context)

        updated = await handler.UpdateLibrary(pb.UpdateLibraryRequest(
            id=created.id,
            library=pb.Library(name="Renamed", path="/ignored"),
            update_mask=pb.FieldMask(paths=["name"]),
        ), context)

        assert updated.name == "Renamed"
        assert updated.path == "/a"

    @pytest.mark.asyncio
    @as_admin
    async def test_update_requires_body(self, handler, context):
        """An update without library data is rejected."""
        with pytest.raises(AbortError):
            await handler.UpdateLibrary(pb.UpdateLibraryRequest(id=MISSING_ID), context)
        assert context.aborted == (grpc.StatusCode.INVALID_ARGUMENT, "library data is required")

    @pytest.mark.asyncio
    @as_admin
    async def test_delete(self, handler, context):
        """Deleted libraries are gone."""
        created = await handler.CreateLibrary(pb.CreateLibraryRequest(name="A", path="/a"), context)

        assert await handler.DeleteLibrary(pb.DeleteLibraryRequest(id=created.id), context) == pb.Empty()
        with pytest.raises(AbortError):
            await handler.GetLibrary(pb.GetLibraryRequest(id=created.id), context)

    @pytest.mark.asyncio
    @as_admin
    async def test_scan(self, handler, library_service, context):
        """Scans start and report the library id as scan id."""
        created = await handler.CreateLibrary(pb.CreateLibraryRequest(name="A", path="/a"), context)

        response = await handler.ScanLibrary(pb.ScanLibraryRequest(id=created.id), context)

        assert response.status == pb.ScanStatus.STATUS_STARTED
        assert response.scan_id == created.id
        assert response.message == "scan started successfully"
        await library_service.wait_for_scan(created.id)


class TestScanConflict:
    @pytest.mark.asyncio
    @as_admin
    async def test_in_progress(self, repository, cursors):
        """A second scan request reports the running scan."""
        gate = asyncio.Event()

        async def scanner(library, result):
            await gate.wait()

        service = DefaultLibraryService(repository, scanner)
        handler = LibraryHandler(service, cursors)
        library = repository.create_library(Library(name="A", path="/a"))

        first = await handler.ScanLibrary(pb.ScanLibraryRequest(id=library.id), FakeContext())
        second = await handler.ScanLibrary(pb.ScanLibraryRequest(id=library.id), FakeContext())

        assert first.status == pb.ScanStatus.STATUS_STARTED
        assert second.status == pb.ScanStatus.STATUS_IN_PROGRESS
        assert second.message == "scan already in progress"

        gate.set()
        await service.wait_for_scan(library.id)


class TestMediaEndpoints:
    @pytest.fixture
    def library(self, repository):
        return repository.create_library(Library(name="Movies", path="/media/movies"))

    @pytest.mark.asyncio
    @as_admin
    async def test_get_media(self, handler, repository, library, context):
        """Metadata is attached on request."""
        media = repository.create_media(Media(library_id=library.id, title="Heat", description="LA crime"))

        bare = await handler.GetMedia(pb.GetMediaRequest(id=media.id), context)
        full = await handler.GetMedia(pb.GetMediaRequest(id=media.id, include_metadata=True), context)

        assert bare.metadata is None
        assert full.metadata.description == "LA crime"

    @pytest.mark.asyncio
    @as_admin
    async def test_list_media(self, handler, repository, library, context):
        """Library listings carry totals and page tokens."""
        for i in range(3):
            repository.create_media(Media(library_id=library.id, title=f"Film {i}"))

        response = await handler.ListMedia(pb.ListMediaRequest(
            library_id=library.id,
            pagination=pb.PaginationRequest(page_size=2),
        ), context)

        assert [m.title for m in response.media] == ["Film 0", "Film 1"]
        assert response.pagination.total_items == 3
        assert response.pagination.next_page_token

    @pytest.mark.asyncio
    @as_admin
    async def test_list_media_unknown_library(self, handler, context):
        """Listing an unknown library is NOT_FOUND."""
        with pytest.raises(AbortError):
            await handler.ListMedia(pb.ListMediaRequest(library_id=MISSING_ID), context)
        assert context.aborted[0] == grpc.StatusCode.NOT_FOUND

    @pytest.mark.asyncio
    @as_admin
    async def test_search(self, handler, repository, library, context):
        """Search matches titles case-insensitively."""
        repository.create_media(Media(library_id=library.id, title="Alien"))
        repository.create_media(Media(library_id=library.id, title="Heat"))

        response = await handler.SearchMedia(pb.SearchMediaRequest(query="ALIEN"), context)

        assert [m.title for m in response.results] == ["Alien"]
        assert response.total_results == 1

    @pytest.mark.asyncio
    @as_admin
    async def test_stream(self, handler, repository, library, context):
        """Streaming yields every item across batches."""
        for i in range(130):
            repository.create_media(Media(library_id=library.id, title=f"Film {i:03d}"))

        items = [m async for m in handler.StreamMedia(pb.StreamMediaRequest(library_id=library.id), context)]

        assert len(items) == 130
        assert items[0].title == "Film 000"
        assert items[-1].title == "Film 129"

    @pytest.mark.asyncio
    @as_admin
    async def test_stream_stops_when_cancelled(self, handler, repository, library):
        """A cancelled client stops the stream."""
        for i in range(5):
            repository.create_media(Media(library_id=library.id, title=f"Film {i}"))
        context = FakeContext()
        received = []

        async for media in handler.StreamMedia(pb.StreamMediaRequest(library_id=library.id), context):
            received.append(media)
            if len(received) == 2:
                context.cancel()

        assert len(received) == 2

    @pytest.mark.asyncio
    @as_admin
    async def test_update_media(self, handler, repository, library, context):
        """Media updates return the new state."""
        media = repository.create_media(Media(library_id=library.id, title="Heat"))

        updated = await handler.UpdateMedia(pb.UpdateMediaRequest(
            id=media.id,
            media=pb.Media(metadata=pb.Metadata(rating=8.3)),
            update_mask=pb.FieldMask(paths=["metadata.rating"]),
        ), context)

        assert updated.title == "Heat"
        assert updated.metadata.rating == 8.3

    @pytest.mark.asyncio
    @as_admin
    async def test_delete_media_removes_file(self, handler, repository, library, tmp_path, context):
        """The file is removed when asked to."""
        path = tmp_path / "heat.mkv"
        path.write_bytes(b"\x00" * 16)
        media = repository.create_media(Media(library_id=library.id, title="Heat", file_path=str(path)))

        await handler.DeleteMedia(pb.DeleteMediaRequest(id=media.id, delete_file=True), context)

        assert not path.exists()
        assert repository.get_media(media.id) is None

    @pytest.mark.asyncio
    @as_admin
    async def test_delete_media_keeps_file(self, handler, repository, library, tmp_path, context):
        """Files stay unless deletion is requested."""
        path = tmp_path / "heat.mkv"
        path.write_bytes(b"x")
        media = repository.create_media(Media(library_id=library.id, title="Heat", file_path=str(path)))

        await handler.DeleteMedia(pb.DeleteMediaRequest(id=media.id), context)

        assert path.exists()

    @pytest.mark.asyncio
    @as_admin
    async def test_delete_media_file_failure_is_not_fatal(self, handler, repository, library, tmp_path, context):
        """A directory path does not fail the call."""
        media = repository.create_media(Media(library_id=library.id, title="Heat", file_path=str(tmp_path)))

        assert await handler.DeleteMedia(pb.DeleteMediaRequest(id=media.id, delete_file=True), context) == pb.Empty()
        assert tmp_path.exists()

    @pytest.mark.asyncio
    @as_admin
    async def test_delete_missing_media(self, handler, context):
        """Unknown media is NOT_FOUND."""
        with pytest.raises(AbortError):
            await handler.DeleteMedia(pb.DeleteMediaRequest(id=MISSING_ID), context)
        assert context.aborted == (grpc.StatusCode.NOT_FOUND, "media not found")


class TestMetadataEndpoints:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("name, request_type", [
        ("GetMetadata", pb.GetMetadataRequest),
        ("UpdateMetadata", pb.UpdateMetadataRequest),
        ("RefreshMetadata", pb.RefreshMetadataRequest),
    ])
    @as_admin
    async def test_unimplemented(self, handler, context, name, request_type):
        """Metadata endpoints are UNIMPLEMENTED."""
        with pytest.raises(AbortError):
            await getattr(handler, name)(request_type(media_id=MISSING_ID), context)
        assert context.aborted == (grpc.StatusCode.UNIMPLEMENTED, "not implemented")


class TestDeletePhysicalFile:
    def test_relative_path(self):
        """Relative paths are refused."""
        with pytest.raises(ValueError, match="absolute"):
            delete_physical_file("movies/heat.mkv")

    def test_directory(self, tmp_path):
        """Directories are refused."""
        with pytest.raises(ValueError, match="directory"):
            delete_physical_file(str(tmp_path))

    def test_missing_file(self, tmp_path):
        """A missing file counts as deleted."""
        delete_physical_file(str(tmp_path / "gone.mkv"))
