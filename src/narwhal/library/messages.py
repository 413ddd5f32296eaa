"""
Wire messages for narwhal.library.v1.LibraryService.

Field names follow the protocol schema. Messages travel as JSON; every
field has a default so an empty body decodes to the zero message.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from ..rpc import Empty, Message  # noqa: F401


class MediaType(str, Enum):
    MEDIA_TYPE_UNSPECIFIED = "MEDIA_TYPE_UNSPECIFIED"
    MEDIA_TYPE_MOVIE = "MEDIA_TYPE_MOVIE"
    MEDIA_TYPE_SERIES = "MEDIA_TYPE_SERIES"
    MEDIA_TYPE_MUSIC = "MEDIA_TYPE_MUSIC"


class ScanStatus(str, Enum):
    STATUS_UNSPECIFIED = "STATUS_UNSPECIFIED"
    STATUS_STARTED = "STATUS_STARTED"
    STATUS_IN_PROGRESS = "STATUS_IN_PROGRESS"
    STATUS_COMPLETED = "STATUS_COMPLETED"
    STATUS_FAILED = "STATUS_FAILED"


class FieldMask(Message):
    paths: List[str] = Field(default_factory=list)


class PaginationRequest(Message):
    page_size: int = 0
    page_token: str = ""


class PaginationResponse(Message):
    next_page_token: str = ""
    prev_page_token: str = ""
    total_items: int = 0


# Libraries

class Library(Message):
    id: str = ""
    name: str = ""
    path: str = ""
    type: MediaType = MediaType.MEDIA_TYPE_UNSPECIFIED
    auto_scan: bool = False
    scan_interval_minutes: int = 0
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    last_scanned: Optional[datetime] = None


class CreateLibraryRequest(Message):
    name: str = ""
    path: str = ""
    type: MediaType = MediaType.MEDIA_TYPE_UNSPECIFIED
    auto_scan: bool = False
    scan_interval_minutes: int = 0


class GetLibraryRequest(Message):
    id: str = ""


class ListLibrariesRequest(Message):
    pagination: Optional[PaginationRequest] = None
    type_filter: MediaType = MediaType.MEDIA_TYPE_UNSPECIFIED


class ListLibrariesResponse(Message):
    libraries: List[Library] = Field(default_factory=list)
    pagination: PaginationResponse = Field(default_factory=PaginationResponse)


class UpdateLibraryRequest(Message):
    id: str = ""
    library: Optional[Library] = None
    update_mask: Optional[FieldMask] = None


class DeleteLibraryRequest(Message):
    id: str = ""


class ScanLibraryRequest(Message):
    id: str = ""


class ScanLibraryResponse(Message):
    scan_id: str = ""
    status: ScanStatus = ScanStatus.STATUS_UNSPECIFIED
    message: str = ""


# Media

class Metadata(Message):
    id: str = ""
    media_id: str = ""
    imdb_id: str = ""
    tmdb_id: str = ""
    tvdb_id: str = ""
    description: str = ""
    rating: float = 0.0
    genres: List[str] = Field(default_factory=list)
    cast: List[str] = Field(default_factory=list)
    directors: List[str] = Field(default_factory=list)
    release_date: Optional[datetime] = None
    poster_url: str = ""
    backdrop_url: str = ""
    trailer_url: str = ""


class Episode(Message):
    id: str = ""
    media_id: str = ""
    season_number: int = 0
    episode_number: int = 0
    title: str = ""
    path: str = ""
    duration_seconds: int = 0
    air_date: Optional[datetime] = None
    added: Optional[datetime] = None


class Media(Message):
    id: str = ""
    library_id: str = ""
    title: str = ""
    type: MediaType = MediaType.MEDIA_TYPE_UNSPECIFIED
    path: str = ""
    size_bytes: int = 0
    duration_seconds: int = 0
    resolution: str = ""
    codec: str = ""
    bitrate: int = 0
    added: Optional[datetime] = None
    modified: Optional[datetime] = None
    last_scanned: Optional[datetime] = None
    metadata: Optional[Metadata] = None
    episodes: List[Episode] = Field(default_factory=list)


class GetMediaRequest(Message):
    id: str = ""
    include_metadata: bool = False
    include_episodes: bool = False


class ListMediaRequest(Message):
    library_id: str = ""
    type_filter: MediaType = MediaType.MEDIA_TYPE_UNSPECIFIED
    status_filter: str = ""
    pagination: Optional[PaginationRequest] = None


class ListMediaResponse(Message):
    media: List[Media] = Field(default_factory=list)
    pagination: PaginationResponse = Field(default_factory=PaginationResponse)


class SearchMediaRequest(Message):
    query: str = ""
    type_filter: MediaType = MediaType.MEDIA_TYPE_UNSPECIFIED
    library_id: str = ""
    pagination: Optional[PaginationRequest] = None


class SearchMediaResponse(Message):
    results: List[Media] = Field(default_factory=list)
    total_results: int = 0
    pagination: PaginationResponse = Field(default_factory=PaginationResponse)


class StreamMediaRequest(Message):
    library_id: str = ""
    type_filter: MediaType = MediaType.MEDIA_TYPE_UNSPECIFIED


class UpdateMediaRequest(Message):
    id: str = ""
    media: Optional[Media] = None
    update_mask: Optional[FieldMask] = None


class DeleteMediaRequest(Message):
    id: str = ""
    delete_file: bool = False


# Metadata (not implemented server-side)

class GetMetadataRequest(Message):
    media_id: str = ""


class UpdateMetadataRequest(Message):
    media_id: str = ""
    metadata: Optional[Metadata] = None
    update_mask: Optional[FieldMask] = None


class RefreshMetadataRequest(Message):
    media_id: str = ""
    force: bool = False


class RefreshMetadataResponse(Message):
    status: str = ""
    message: str = ""
