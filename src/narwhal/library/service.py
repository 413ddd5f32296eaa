"""
Library domain service.

``LibraryService`` is the contract the gRPC handler depends on;
``DefaultLibraryService`` implements it over a ``LibraryRepository``.
Blocking SQLite calls run in worker threads so the event loop is never
held by storage.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from ..errors import bad_request, conflict, not_found
from .domain import (
    Library,
    LibraryUpdate,
    Media,
    MediaUpdate,
    ScanResult,
    ScanStatus,
    utcnow,
)
from .repository import LibraryRepository

# Fills in the counters of a running scan; raising marks the scan failed.
Scanner = Callable[[Library, ScanResult], Awaitable[None]]


async def noop_scanner(library: Library, result: ScanResult) -> None:
    """Default scanner: records an empty scan without touching the filesystem."""
    logger.debug(f"No scanner configured; skipping crawl of {library.path}")


class LibraryService(ABC):
    """Library and media operations. Errors are raised as AppError."""

    # Libraries

    @abstractmethod
    async def create_library(self, library: Library) -> Library:
        pass

    @abstractmethod
    async def get_library(self, library_id: str) -> Library:
        pass

    @abstractmethod
    async def list_libraries(self, enabled: Optional[bool] = None) -> List[Library]:
        pass

    @abstractmethod
    async def update_library(self, library_id: str, update: LibraryUpdate) -> Library:
        pass

    @abstractmethod
    async def delete_library(self, library_id: str) -> None:
        pass

    @abstractmethod
    async def scan_library(self, library_id: str) -> ScanResult:
        """Start a scan; raises CONFLICT while one is running for the library."""

    # Media

    @abstractmethod
    async def get_media(self, media_id: str) -> Media:
        pass

    @abstractmethod
    async def list_media_by_library(
        self,
        library_id: str,
        media_type: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Media], int]:
        pass

    @abstractmethod
    async def search_media(
        self,
        query: str,
        media_type: Optional[str] = None,
        library_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Media], int]:
        pass

    @abstractmethod
    async def update_media(self, media_id: str, update: MediaUpdate) -> Media:
        pass

    @abstractmethod
    async def delete_media(self, media_id: str) -> None:
        pass


class DefaultLibraryService(LibraryService):
    """
    Repository-backed service.

    Scans run as background tasks owned by the service; at most one scan
    per library runs at any time.
    """

    def __init__(self, repository: LibraryRepository, scanner: Optional[Scanner] = None):
        """
        Initialize service.

        Args:
            repository: Library store
            scanner: Coroutine that crawls a library (defaults to a no-op)
        """
        self.repository = repository
        self.scanner = scanner or noop_scanner
        self._scans: Dict[str, asyncio.Task] = {}

    # ========================================================================
    # Libraries
    # ========================================================================

    async def create_library(self, library: Library) -> Library:
        if not library.name or not library.path:
            raise bad_request("library name and path are required")
        if not Path(library.path).is_absolute():
            raise bad_request("library path must be absolute")

        existing = await asyncio.to_thread(self.repository.get_library_by_path, library.path)
        if existing is not None:
            raise conflict("library path already exists")

        return await asyncio.to_thread(self.repository.create_library, library)

    async def get_library(self, library_id: str) -> Library:
        library = await asyncio.to_thread(self.repository.get_library, library_id)
        if library is None:
            raise not_found("library not found")
        return library

    async def list_libraries(self, enabled: Optional[bool] = None) -> List[Library]:
        libraries = await asyncio.to_thread(self.repository.list_libraries)
        if enabled is None:
            return libraries
        return [library for library in libraries if library.enabled == enabled]

    async def update_library(self, library_id: str, update: LibraryUpdate) -> Library:
        if update.path is not None and not Path(update.path).is_absolute():
            raise bad_request("library path must be absolute")

        library = await asyncio.to_thread(self.repository.update_library, library_id, update)
        if library is None:
            raise not_found("library not found")
        logger.info(f"Library updated: {library.name} ({library_id})")
        return library

    async def delete_library(self, library_id: str) -> None:
        deleted = await asyncio.to_thread(self.repository.delete_library, library_id)
        if not deleted:
            raise not_found("library not found")

    async def scan_library(self, library_id: str) -> ScanResult:
        library = await self.get_library(library_id)

        # No await between the check and the registration
        if self.is_scanning(library_id):
            raise conflict("scan already in progress")

        result = ScanResult(library_id=library_id)
        task = asyncio.create_task(self._perform_scan(library, result), name=f"scan-{library_id}")
        self._scans[library_id] = task
        task.add_done_callback(lambda t: self._forget_scan(library_id, t))
        return result

    # ========================================================================
    # Scans
    # ========================================================================

    def is_scanning(self, library_id: str) -> bool:
        task = self._scans.get(library_id)
        return task is not None and not task.done()

    async def wait_for_scan(self, library_id: str) -> None:
        """Wait for the running scan of a library, if any, to finish."""
        task = self._scans.get(library_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        """Cancel running scans and wait for them to unwind."""
        tasks = [task for task in self._scans.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} running scan(s)")

    def _forget_scan(self, library_id: str, task: asyncio.Task) -> None:
        if self._scans.get(library_id) is task:
            del self._scans[library_id]

    async def _perform_scan(self, library: Library, result: ScanResult) -> None:
        await asyncio.to_thread(self.repository.record_scan, result)
        logger.info(f"Starting library scan: {library.name} ({library.path})")

        try:
            await self.scanner(library, result)
        except asyncio.CancelledError:
            result.status = ScanStatus.FAILED.value
            result.error_message = "scan cancelled"
            result.completed_at = utcnow()
            await asyncio.shield(asyncio.to_thread(self.repository.record_scan, result))
            raise
        except Exception as e:
            logger.opt(exception=e).error(f"Library scan failed: {library.id}")
            result.status = ScanStatus.FAILED.value
            result.error_message = str(e)
            result.completed_at = utcnow()
            await asyncio.to_thread(self.repository.record_scan, result)
            return

        result.status = ScanStatus.COMPLETED.value
        result.completed_at = utcnow()
        await asyncio.to_thread(self.repository.record_scan, result)
        await asyncio.to_thread(self.repository.mark_library_scanned, library.id, result.completed_at)

        logger.info(
            f"Library scan completed: {library.name} "
            f"(scanned={result.files_scanned}, added={result.files_added}, updated={result.files_updated})"
        )

    # ========================================================================
    # Media
    # ========================================================================

    async def get_media(self, media_id: str) -> Media:
        media = await asyncio.to_thread(self.repository.get_media, media_id)
        if media is None:
            raise not_found("media not found")
        return media

    async def list_media_by_library(
        self,
        library_id: str,
        media_type: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Media], int]:
        await self.get_library(library_id)
        return await asyncio.to_thread(
            self.repository.list_media, library_id, media_type, status, offset, limit
        )

    async def search_media(
        self,
        query: str,
        media_type: Optional[str] = None,
        library_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Media], int]:
        return await asyncio.to_thread(
            self.repository.search_media, query, media_type, library_id, offset, limit
        )

    async def update_media(self, media_id: str, update: MediaUpdate) -> Media:
        media = await asyncio.to_thread(self.repository.update_media, media_id, update)
        if media is None:
            raise not_found("media not found")
        return media

    async def delete_media(self, media_id: str) -> None:
        deleted = await asyncio.to_thread(self.repository.delete_media, media_id)
        if not deleted:
            raise not_found("media not found")
