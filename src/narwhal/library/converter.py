"""
Conversion between wire messages and the library domain model.

Everything here is a pure function. Unknown enumeration values fall back
to documented defaults instead of raising, and unparseable dates become
None.
"""

from datetime import datetime, timezone
from typing import List, Optional

from . import domain
from . import messages as pb

DEFAULT_SCAN_INTERVAL = 3600

_TO_DOMAIN = {
    pb.MediaType.MEDIA_TYPE_MOVIE: domain.MediaType.MOVIE.value,
    pb.MediaType.MEDIA_TYPE_SERIES: domain.MediaType.TV_SHOW.value,
    pb.MediaType.MEDIA_TYPE_MUSIC: domain.MediaType.MUSIC.value,
}

_TO_WIRE = {
    "movie": pb.MediaType.MEDIA_TYPE_MOVIE,
    "tv_show": pb.MediaType.MEDIA_TYPE_SERIES,
    "series": pb.MediaType.MEDIA_TYPE_SERIES,
    "music": pb.MediaType.MEDIA_TYPE_MUSIC,
}


# ==================== Enumerations ====================

def media_type_to_domain(media_type: pb.MediaType) -> str:
    """Wire media type to domain spelling; UNSPECIFIED becomes "movie"."""
    return _TO_DOMAIN.get(media_type, domain.MediaType.MOVIE.value)


def media_type_to_wire(media_type: str) -> pb.MediaType:
    """Domain media type to wire; unknown values become UNSPECIFIED."""
    return _TO_WIRE.get(media_type, pb.MediaType.MEDIA_TYPE_UNSPECIFIED)


# ==================== Dates ====================

def parse_date(value: str) -> Optional[datetime]:
    """
    Parse a release or air date.

    Accepts, in order, ``YYYY-MM-DD``, RFC 3339 with a ``Z`` suffix and
    RFC 3339 with a numeric offset. Date-only values are taken as UTC
    midnight.

    Args:
        value: Date string

    Returns:
        Aware datetime, or None if no format matches
    """
    if not value:
        return None
    value = value.strip()

    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        pass

    if value.endswith(("Z", "z")):
        try:
            return datetime.fromisoformat(value[:-1]).replace(tzinfo=timezone.utc)
        except ValueError:
            return None

    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    # RFC 3339 requires an offset
    return parsed if parsed.tzinfo is not None else None


# ==================== Libraries ====================

def library_to_wire(library: domain.Library) -> pb.Library:
    return pb.Library(
        id=library.id,
        name=library.name,
        path=library.path,
        type=media_type_to_wire(library.type),
        auto_scan=library.enabled,
        scan_interval_minutes=library.scan_interval // 60,
        created=library.created_at,
        updated=library.updated_at,
        last_scanned=library.last_scan_at,
    )


def libraries_to_wire(libraries: List[domain.Library]) -> List[pb.Library]:
    return [library_to_wire(library) for library in libraries]


def create_request_to_library(request: pb.CreateLibraryRequest) -> domain.Library:
    """
    Build a new domain library from a create request.

    A non-positive interval falls back to one hour.
    """
    interval = request.scan_interval_minutes * 60 if request.scan_interval_minutes > 0 else DEFAULT_SCAN_INTERVAL
    return domain.Library(
        name=request.name.strip(),
        path=request.path.strip(),
        type=media_type_to_domain(request.type),
        enabled=request.auto_scan,
        scan_interval=interval,
    )


def library_update(library: pb.Library, mask: Optional[pb.FieldMask]) -> domain.LibraryUpdate:
    """
    Build a partial update from a wire library and optional field mask.

    With a mask only the listed paths are considered; without one every
    field is. Empty strings and non-positive intervals are skipped either
    way, while ``auto_scan`` is always applied when considered.

    Args:
        library: Library carrying the new values
        mask: Field mask (``name``, ``path``, ``auto_scan``,
            ``scan_interval_minutes``); unknown paths are ignored

    Returns:
        LibraryUpdate
    """
    paths = set(mask.paths) if mask is not None and mask.paths else None

    def wanted(path: str) -> bool:
        return paths is None or path in paths

    update = domain.LibraryUpdate()
    if wanted("name") and library.name:
        update.name = library.name
    if wanted("path") and library.path:
        update.path = library.path
    if wanted("auto_scan"):
        update.enabled = library.auto_scan
    if wanted("scan_interval_minutes") and library.scan_interval_minutes > 0:
        update.scan_interval = library.scan_interval_minutes * 60
    return update


# ==================== Media ====================

def episode_to_wire(episode: domain.Episode) -> pb.Episode:
    return pb.Episode(
        id=episode.id,
        media_id=episode.media_id,
        season_number=episode.season_number,
        episode_number=episode.episode_number,
        title=episode.title,
        path=episode.file_path,
        duration_seconds=episode.runtime * 60,
        air_date=episode.air_date,
        added=episode.created_at,
    )


def metadata_to_wire(media: domain.Media) -> pb.Metadata:
    return pb.Metadata(
        media_id=media.id,
        description=media.description,
        rating=media.rating,
        genres=list(media.genres),
        release_date=parse_date(media.release_date),
    )


def media_to_wire(
    media: domain.Media,
    include_metadata: bool = False,
    include_episodes: bool = False,
) -> pb.Media:
    """
    Convert a domain media item.

    Args:
        media: Domain media
        include_metadata: Attach the metadata block
        include_episodes: Attach episodes (series only carry any)

    Returns:
        Wire media
    """
    message = pb.Media(
        id=media.id,
        library_id=media.library_id,
        title=media.title,
        type=media_type_to_wire(media.type),
        path=media.file_path,
        size_bytes=media.file_size,
        duration_seconds=media.runtime * 60,
        resolution=media.resolution,
        codec=media.video_codec,
        bitrate=media.bitrate,
        added=media.created_at,
        modified=media.updated_at,
        last_scanned=media.last_scanned_at,
    )
    if include_metadata:
        message.metadata = metadata_to_wire(media)
    if include_episodes:
        message.episodes = [episode_to_wire(e) for e in media.episodes]
    return message


def media_update(media: pb.Media, mask: Optional[pb.FieldMask]) -> domain.MediaUpdate:
    """
    Build a partial update from a wire media item and optional field mask.

    Recognized paths are ``title``, ``path``, ``metadata.description``,
    ``metadata.genres`` and ``metadata.rating``. Empty values and
    non-positive ratings are never applied.
    """
    paths = set(mask.paths) if mask is not None and mask.paths else None

    def wanted(path: str) -> bool:
        return paths is None or path in paths

    update = domain.MediaUpdate()
    if wanted("title") and media.title:
        update.title = media.title
    if wanted("path") and media.path:
        update.file_path = media.path

    metadata = media.metadata
    if metadata is not None:
        if wanted("metadata.description") and metadata.description:
            update.description = metadata.description
        if wanted("metadata.genres") and metadata.genres:
            update.genres = list(metadata.genres)
        if wanted("metadata.rating") and metadata.rating > 0:
            update.rating = metadata.rating
    return update
