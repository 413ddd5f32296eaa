"""
Media library service: domain model, storage, service contract and gRPC handler.
"""

from .domain import Episode, Library, LibraryUpdate, Media, MediaUpdate, ScanResult
from .repository import LibraryRepository
from .service import DefaultLibraryService, LibraryService, Scanner, noop_scanner
from .handler import LibraryHandler
from .grpc_service import add_library_service

__all__ = [
    "Episode",
    "Library",
    "LibraryUpdate",
    "Media",
    "MediaUpdate",
    "ScanResult",
    "LibraryRepository",
    "DefaultLibraryService",
    "LibraryService",
    "Scanner",
    "noop_scanner",
    "LibraryHandler",
    "add_library_service",
]
