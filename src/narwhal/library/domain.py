"""
Library domain model.

Data classes for libraries, media items, episodes and scan results.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class MediaType(str, Enum):
    """Domain spelling of media types."""
    MOVIE = "movie"
    TV_SHOW = "tv_show"
    MUSIC = "music"


class ScanStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Library:
    """
    A media library rooted at a directory.

    Attributes:
        id: Library UUID
        name: Unique display name
        path: Unique absolute directory path
        type: Media type stored in the library ("movie", "tv_show", "music")
        enabled: Whether scheduled scans are enabled
        scan_interval: Seconds between scheduled scans
        last_scan_at: Completion time of the last scan
        created_at: Creation time
        updated_at: Last modification time
    """
    name: str
    path: str
    type: str = MediaType.MOVIE.value
    enabled: bool = True
    scan_interval: int = 3600
    id: str = field(default_factory=new_id)
    last_scan_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Episode:
    """
    Episode of a series.

    Attributes:
        media_id: Owning media item
        season_number: Season number (1-based)
        episode_number: Episode number within the season
        title: Episode title
        file_path: Absolute path to the episode file
        runtime: Runtime in minutes
        air_date: Original air date
    """
    media_id: str
    season_number: int
    episode_number: int
    title: str = ""
    file_path: str = ""
    runtime: int = 0
    air_date: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Media:
    """
    A media item inside a library.

    Attributes:
        library_id: Owning library
        title: Display title
        type: Media type (domain spelling)
        status: Processing status ("pending", "available", ...)
        file_path: Absolute path to the media file
        file_size: File size in bytes
        runtime: Runtime in minutes
        resolution: Video resolution, e.g. "1920x1080"
        video_codec: Video codec name
        bitrate: Bitrate in kbit/s
        description: Synopsis
        genres: Genre names
        rating: Rating on a 0-10 scale
        release_date: Release date as received from metadata sources
        episodes: Episodes ordered by (season_number, episode_number)
    """
    library_id: str
    title: str
    type: str = MediaType.MOVIE.value
    status: str = "pending"
    file_path: str = ""
    file_size: int = 0
    runtime: int = 0
    resolution: str = ""
    video_codec: str = ""
    bitrate: int = 0
    description: str = ""
    genres: List[str] = field(default_factory=list)
    rating: float = 0.0
    release_date: str = ""
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_scanned_at: Optional[datetime] = None
    episodes: List[Episode] = field(default_factory=list)


@dataclass
class ScanResult:
    """
    One library scan.

    Attributes:
        library_id: Scanned library
        status: running, completed or failed
        files_scanned: Files inspected
        files_added: New media items
        files_updated: Existing media items refreshed
        error_message: Failure description for failed scans
    """
    library_id: str
    status: str = ScanStatus.RUNNING.value
    files_scanned: int = 0
    files_added: int = 0
    files_updated: int = 0
    error_message: str = ""
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass
class LibraryUpdate:
    """Partial library update; None fields are left unchanged."""
    name: Optional[str] = None
    path: Optional[str] = None
    enabled: Optional[bool] = None
    scan_interval: Optional[int] = None

    def is_empty(self) -> bool:
        return all(v is None for v in (self.name, self.path, self.enabled, self.scan_interval))


@dataclass
class MediaUpdate:
    """Partial media update; None fields are left unchanged."""
    title: Optional[str] = None
    file_path: Optional[str] = None
    description: Optional[str] = None
    genres: Optional[List[str]] = None
    rating: Optional[float] = None

    def is_empty(self) -> bool:
        return all(
            v is None
            for v in (self.title, self.file_path, self.description, self.genres, self.rating)
        )
