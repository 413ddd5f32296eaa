"""
gRPC handler for narwhal.library.v1.LibraryService.

Authentication and authorization happen in the interceptor chain; each
endpoint still refuses to run without a bound caller identity. Endpoints
validate identifiers, translate requests into domain calls, and convert
the results back to wire messages.
"""

import asyncio
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple

import grpc
from loguru import logger

from ..auth.context import current_roles, current_user_id
from ..errors import is_conflict
from ..pagination.cursor import CursorCodec
from ..rpc import translate_errors
from . import converter
from . import messages as pb
from .service import LibraryService

STREAM_BATCH_SIZE = 100


def _parse_uuid(value: str) -> Optional[str]:
    try:
        return str(uuid.UUID(value))
    except (ValueError, AttributeError, TypeError):
        return None


def delete_physical_file(path: str) -> None:
    """
    Remove a media file from disk.

    A missing file counts as deleted.

    Raises:
        ValueError: Relative path or a directory
        OSError: stat or unlink failed
    """
    target = Path(path)
    if not target.is_absolute():
        raise ValueError("path must be absolute")
    try:
        if target.is_dir():
            raise ValueError("cannot delete directory")
        target.unlink()
    except FileNotFoundError:
        return


class LibraryHandler:
    """
    Library service endpoints.

    Stateless; safe to serve concurrent calls.
    """

    def __init__(self, service: LibraryService, cursors: CursorCodec):
        """
        Initialize handler.

        Args:
            service: Library domain service
            cursors: Page token codec
        """
        self.service = service
        self.cursors = cursors

    async def check_auth(self, context) -> Tuple[str, frozenset]:
        """Caller id and roles, aborting with UNAUTHENTICATED when absent."""
        user_id = current_user_id()
        if not user_id:
            await context.abort(grpc.StatusCode.UNAUTHENTICATED, "user not authenticated")
        return user_id, current_roles()

    async def _require_id(self, context, value: str, what: str) -> str:
        parsed = _parse_uuid(value)
        if parsed is None:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, f"invalid {what} ID")
        return parsed

    def _page(self, pagination: Optional[pb.PaginationRequest]) -> Tuple[int, int]:
        if pagination is None:
            return 0, self.cursors.default_page_size
        return (
            self.cursors.offset_or_zero(pagination.page_token),
            self.cursors.resolve_page_size(pagination.page_size),
        )

    def _page_response(self, offset: int, page_size: int, total: int) -> pb.PaginationResponse:
        return pb.PaginationResponse(
            next_page_token=self.cursors.next_page_token(offset, page_size, total),
            prev_page_token=self.cursors.prev_page_token(offset, page_size, total),
            total_items=total,
        )

    # ========================================================================
    # Libraries
    # ========================================================================

    async def CreateLibrary(self, request: pb.CreateLibraryRequest, context) -> pb.Library:
        user_id, _ = await self.check_auth(context)

        library = converter.create_request_to_library(request)
        async with translate_errors(context, "create library"):
            library = await self.service.create_library(library)

        logger.info(f"Library {library.id} created by {user_id}")
        return converter.library_to_wire(library)

    async def GetLibrary(self, request: pb.GetLibraryRequest, context) -> pb.Library:
        await self.check_auth(context)
        library_id = await self._require_id(context, request.id, "library")

        async with translate_errors(context, "get library"):
            library = await self.service.get_library(library_id)
        return converter.library_to_wire(library)

    async def ListLibraries(self, request: pb.ListLibrariesRequest, context) -> pb.ListLibrariesResponse:
        await self.check_auth(context)

        async with translate_errors(context, "list libraries"):
            libraries = await self.service.list_libraries()

        if request.type_filter != pb.MediaType.MEDIA_TYPE_UNSPECIFIED:
            libraries = [
                library for library in libraries
                if converter.media_type_to_wire(library.type) == request.type_filter
            ]

        total = len(libraries)
        offset, page_size = self._page(request.pagination)
        offset = min(offset, total)
        page = libraries[offset:offset + page_size]

        return pb.ListLibrariesResponse(
            libraries=converter.libraries_to_wire(page),
            pagination=self._page_response(offset, page_size, total),
        )

    async def UpdateLibrary(self, request: pb.UpdateLibraryRequest, context) -> pb.Library:
        await self.check_auth(context)
        library_id = await self._require_id(context, request.id, "library")
        if request.library is None:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, "library data is required")

        update = converter.library_update(request.library, request.update_mask)
        async with translate_errors(context, "update library"):
            library = await self.service.update_library(library_id, update)
        return converter.library_to_wire(library)

    async def DeleteLibrary(self, request: pb.DeleteLibraryRequest, context) -> pb.Empty:
        user_id, _ = await self.check_auth(context)
        library_id = await self._require_id(context, request.id, "library")

        async with translate_errors(context, "delete library"):
            await self.service.delete_library(library_id)

        logger.info(f"Library {library_id} deleted by {user_id}")
        return pb.Empty()

    async def ScanLibrary(self, request: pb.ScanLibraryRequest, context) -> pb.ScanLibraryResponse:
        await self.check_auth(context)
        library_id = await self._require_id(context, request.id, "library")

        async with translate_errors(context, "scan library"):
            try:
                await self.service.scan_library(library_id)
            except Exception as e:
                if not is_conflict(e):
                    raise
                return pb.ScanLibraryResponse(
                    scan_id=library_id,
                    status=pb.ScanStatus.STATUS_IN_PROGRESS,
                    message="scan already in progress",
                )

        return pb.ScanLibraryResponse(
            scan_id=library_id,
            status=pb.ScanStatus.STATUS_STARTED,
            message="scan started successfully",
        )

    # ========================================================================
    # Media
    # ========================================================================

    async def GetMedia(self, request: pb.GetMediaRequest, context) -> pb.Media:
        await self.check_auth(context)
        media_id = await self._require_id(context, request.id, "media")

        async with translate_errors(context, "get media"):
            media = await self.service.get_media(media_id)
        return converter.media_to_wire(media, request.include_metadata, request.include_episodes)

    async def ListMedia(self, request: pb.ListMediaRequest, context) -> pb.ListMediaResponse:
        await self.check_auth(context)
        library_id = None
        if request.library_id:
            library_id = await self._require_id(context, request.library_id, "library")

        media_type = None
        if request.type_filter != pb.MediaType.MEDIA_TYPE_UNSPECIFIED:
            media_type = converter.media_type_to_domain(request.type_filter)
        offset, page_size = self._page(request.pagination)

        async with translate_errors(context, "list media"):
            if library_id:
                items, total = await self.service.list_media_by_library(
                    library_id, media_type, request.status_filter or None, offset, page_size
                )
            else:
                items, total = await self.service.search_media("", media_type, None, offset, page_size)

        offset = min(offset, total)
        return pb.ListMediaResponse(
            media=[converter.media_to_wire(item, include_metadata=True) for item in items],
            pagination=self._page_response(offset, page_size, total),
        )

    async def SearchMedia(self, request: pb.SearchMediaRequest, context) -> pb.SearchMediaResponse:
        await self.check_auth(context)
        library_id = None
        if request.library_id:
            library_id = await self._require_id(context, request.library_id, "library")

        media_type = None
        if request.type_filter != pb.MediaType.MEDIA_TYPE_UNSPECIFIED:
            media_type = converter.media_type_to_domain(request.type_filter)
        offset, page_size = self._page(request.pagination)

        async with translate_errors(context, "search media"):
            items, total = await self.service.search_media(
                request.query.strip(), media_type, library_id, offset, page_size
            )

        offset = min(offset, total)
        return pb.SearchMediaResponse(
            results=[converter.media_to_wire(item, include_metadata=True) for item in items],
            total_results=total,
            pagination=self._page_response(offset, page_size, total),
        )

    async def StreamMedia(self, request: pb.StreamMediaRequest, context) -> AsyncIterator[pb.Media]:
        """Yield every media item of a library (or of all libraries), one per message."""
        await self.check_auth(context)
        library_id = None
        if request.library_id:
            library_id = await self._require_id(context, request.library_id, "library")

        media_type = None
        if request.type_filter != pb.MediaType.MEDIA_TYPE_UNSPECIFIED:
            media_type = converter.media_type_to_domain(request.type_filter)

        offset = 0
        sent = 0
        while True:
            async with translate_errors(context, "stream media"):
                if library_id:
                    items, total = await self.service.list_media_by_library(
                        library_id, media_type, None, offset, STREAM_BATCH_SIZE
                    )
                else:
                    items, total = await self.service.search_media(
                        "", media_type, None, offset, STREAM_BATCH_SIZE
                    )

            for item in items:
                if context.cancelled():
                    logger.info(f"StreamMedia cancelled by client after {sent} item(s)")
                    return
                yield converter.media_to_wire(item)
                sent += 1
                # Let cancellation be observed between items
                await asyncio.sleep(0)

            offset += len(items)
            if not items or offset >= total:
                return

    async def UpdateMedia(self, request: pb.UpdateMediaRequest, context) -> pb.Media:
        await self.check_auth(context)
        media_id = await self._require_id(context, request.id, "media")
        if request.media is None:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, "media data is required")

        update = converter.media_update(request.media, request.update_mask)
        async with translate_errors(context, "update media"):
            media = await self.service.update_media(media_id, update)
        return converter.media_to_wire(media, include_metadata=True)

    async def DeleteMedia(self, request: pb.DeleteMediaRequest, context) -> pb.Empty:
        await self.check_auth(context)
        media_id = await self._require_id(context, request.id, "media")

        file_path = ""
        if request.delete_file:
            async with translate_errors(context, "get media"):
                file_path = (await self.service.get_media(media_id)).file_path

        async with translate_errors(context, "delete media"):
            await self.service.delete_media(media_id)

        # The database row is gone either way; file removal is best-effort
        if request.delete_file and file_path:
            try:
                await asyncio.to_thread(delete_physical_file, file_path)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to delete physical file {file_path} for media {media_id}: {e}")
            else:
                logger.info(f"Deleted physical file {file_path} for media {media_id}")

        return pb.Empty()

    # ========================================================================
    # Metadata
    # ========================================================================

    async def GetMetadata(self, request: pb.GetMetadataRequest, context) -> pb.Metadata:
        await context.abort(grpc.StatusCode.UNIMPLEMENTED, "not implemented")

    async def UpdateMetadata(self, request: pb.UpdateMetadataRequest, context) -> pb.Metadata:
        await context.abort(grpc.StatusCode.UNIMPLEMENTED, "not implemented")

    async def RefreshMetadata(self, request: pb.RefreshMetadataRequest, context) -> pb.RefreshMetadataResponse:
        await context.abort(grpc.StatusCode.UNIMPLEMENTED, "not implemented")
