"""
SQLite storage for libraries, media, episodes and scan history.

Thread-safe: every operation opens its own connection under a shared
RLock. Deletes are soft; rows with ``deleted_at`` set are invisible to
every read.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from loguru import logger

from ..errors import conflict
from .domain import Episode, Library, LibraryUpdate, Media, MediaUpdate, ScanResult, utcnow


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class LibraryRepository:
    """
    Thread-safe library store.

    The database path must name a file; ``:memory:`` would give every
    operation its own empty database.
    """

    def __init__(self, db_path: Union[str, Path]):
        """
        Initialize repository.

        Args:
            db_path: Path to SQLite database file (parent directories are created)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._lock, self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS libraries (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    path TEXT NOT NULL,
                    type TEXT NOT NULL,
                    enabled INTEGER DEFAULT 1,
                    scan_interval INTEGER NOT NULL,
                    last_scan_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    deleted_at TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS media (
                    id TEXT PRIMARY KEY,
                    library_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    file_path TEXT,
                    file_size INTEGER DEFAULT 0,
                    runtime INTEGER DEFAULT 0,
                    resolution TEXT,
                    video_codec TEXT,
                    bitrate INTEGER DEFAULT 0,
                    description TEXT,
                    genres TEXT,
                    rating REAL DEFAULT 0,
                    release_date TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_scanned_at TEXT,
                    deleted_at TEXT,
                    FOREIGN KEY (library_id) REFERENCES libraries(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS episodes (
                    id TEXT PRIMARY KEY,
                    media_id TEXT NOT NULL,
                    season_number INTEGER NOT NULL,
                    episode_number INTEGER NOT NULL,
                    title TEXT,
                    file_path TEXT,
                    runtime INTEGER DEFAULT 0,
                    air_date TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (media_id) REFERENCES media(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS scan_history (
                    id TEXT PRIMARY KEY,
                    library_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    files_scanned INTEGER DEFAULT 0,
                    files_added INTEGER DEFAULT 0,
                    files_updated INTEGER DEFAULT 0,
                    error_message TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    FOREIGN KEY (library_id) REFERENCES libraries(id)
                )
            """)

            # Uniqueness only among live rows
            cursor.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_libraries_path ON libraries(path) WHERE deleted_at IS NULL"
            )
            cursor.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_libraries_name ON libraries(name) WHERE deleted_at IS NULL"
            )
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_media_library ON media(library_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_episodes_media ON episodes(media_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_scan_history_library ON scan_history(library_id)")

        logger.info(f"Library database initialized: {self.db_path}")

    # ========================================================================
    # Library Operations
    # ========================================================================

    def create_library(self, library: Library) -> Library:
        """
        Insert a library.

        Raises:
            AppError: CONFLICT if a live library has the same name or path
        """
        with self._lock, self._connect() as conn:
            try:
                conn.execute("""
                    INSERT INTO libraries (id, name, path, type, enabled, scan_interval,
                                           last_scan_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    library.id,
                    library.name,
                    library.path,
                    library.type,
                    1 if library.enabled else 0,
                    library.scan_interval,
                    _ts(library.last_scan_at),
                    _ts(library.created_at),
                    _ts(library.updated_at),
                ))
            except sqlite3.IntegrityError as e:
                raise conflict("library with this name or path already exists") from e

        logger.info(f"Library created: {library.name} ({library.path})")
        return library

    def get_library(self, library_id: str) -> Optional[Library]:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM libraries WHERE id = ? AND deleted_at IS NULL", (library_id,)
            ).fetchone()
        return self._row_to_library(row) if row else None

    def get_library_by_path(self, path: str) -> Optional[Library]:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM libraries WHERE path = ? AND deleted_at IS NULL", (path,)
            ).fetchone()
        return self._row_to_library(row) if row else None

    def list_libraries(self) -> List[Library]:
        """All live libraries, oldest first."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM libraries WHERE deleted_at IS NULL ORDER BY created_at, name"
            ).fetchall()
        return [self._row_to_library(row) for row in rows]

    def update_library(self, library_id: str, update: LibraryUpdate) -> Optional[Library]:
        """
        Apply a partial update.

        Returns:
            Updated library, or None if it does not exist

        Raises:
            AppError: CONFLICT if the new name or path is taken
        """
        assignments = []
        params: list = []
        if update.name is not None:
            assignments.append("name = ?")
            params.append(update.name)
        if update.path is not None:
            assignments.append("path = ?")
            params.append(update.path)
        if update.enabled is not None:
            assignments.append("enabled = ?")
            params.append(1 if update.enabled else 0)
        if update.scan_interval is not None:
            assignments.append("scan_interval = ?")
            params.append(update.scan_interval)
        assignments.append("updated_at = ?")
        params.append(_ts(utcnow()))

        with self._lock:
            with self._connect() as conn:
                try:
                    cursor = conn.execute(
                        f"UPDATE libraries SET {', '.join(assignments)} WHERE id = ? AND deleted_at IS NULL",
                        (*params, library_id),
                    )
                except sqlite3.IntegrityError as e:
                    raise conflict("library with this name or path already exists") from e
                if cursor.rowcount == 0:
                    return None
            return self.get_library(library_id)

    def mark_library_scanned(self, library_id: str, when: Optional[datetime] = None):
        when = when or utcnow()
        with self._lock, self._connect() as conn:
            conn.execute(
                "UPDATE libraries SET last_scan_at = ?, updated_at = ? WHERE id = ?",
                (_ts(when), _ts(when), library_id),
            )

    def delete_library(self, library_id: str) -> bool:
        """
        Soft-delete a library and its media.

        Returns:
            True if a live library was deleted
        """
        now = _ts(utcnow())
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "UPDATE libraries SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (now, library_id),
            )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                "UPDATE media SET deleted_at = ? WHERE library_id = ? AND deleted_at IS NULL",
                (now, library_id),
            )

        logger.info(f"Library deleted: {library_id}")
        return True

    # ========================================================================
    # Media Operations
    # ========================================================================

    def create_media(self, media: Media) -> Media:
        """Insert a media item together with its episodes."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                INSERT INTO media (id, library_id, title, type, status, file_path, file_size,
                                   runtime, resolution, video_codec, bitrate, description,
                                   genres, rating, release_date, created_at, updated_at,
                                   last_scanned_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                media.id,
                media.library_id,
                media.title,
                media.type,
                media.status,
                media.file_path,
                media.file_size,
                media.runtime,
                media.resolution,
                media.video_codec,
                media.bitrate,
                media.description,
                json.dumps(media.genres),
                media.rating,
                media.release_date,
                _ts(media.created_at),
                _ts(media.updated_at),
                _ts(media.last_scanned_at),
            ))
            for episode in media.episodes:
                self._insert_episode(conn, episode)

        logger.debug(f"Media created: {media.title} in library {media.library_id}")
        return media

    def add_episode(self, episode: Episode) -> Episode:
        with self._lock, self._connect() as conn:
            self._insert_episode(conn, episode)
        return episode

    def _insert_episode(self, conn: sqlite3.Connection, episode: Episode):
        conn.execute("""
            INSERT INTO episodes (id, media_id, season_number, episode_number, title,
                                  file_path, runtime, air_date, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            episode.id,
            episode.media_id,
            episode.season_number,
            episode.episode_number,
            episode.title,
            episode.file_path,
            episode.runtime,
            _ts(episode.air_date),
            _ts(episode.created_at),
        ))

    def get_media(self, media_id: str) -> Optional[Media]:
        """Live media item with episodes ordered by season and episode."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM media WHERE id = ? AND deleted_at IS NULL", (media_id,)
            ).fetchone()
            if row is None:
                return None
            episodes = conn.execute(
                "SELECT * FROM episodes WHERE media_id = ? ORDER BY season_number, episode_number",
                (media_id,),
            ).fetchall()

        media = self._row_to_media(row)
        media.episodes = [self._row_to_episode(e) for e in episodes]
        return media

    def list_media(
        self,
        library_id: str,
        media_type: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Media], int]:
        """
        One page of a library's media, ordered by title.

        Returns:
            (items, total matching items)
        """
        where = ["library_id = ?", "deleted_at IS NULL"]
        params: list = [library_id]
        if media_type:
            where.append("type = ?")
            params.append(media_type)
        if status:
            where.append("status = ?")
            params.append(status)
        return self._page(" AND ".join(where), params, offset, limit)

    def search_media(
        self,
        query: str,
        media_type: Optional[str] = None,
        library_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Media], int]:
        """
        Case-insensitive substring search over title and description.

        An empty query matches everything.

        Returns:
            (items, total matching items)
        """
        where = ["deleted_at IS NULL"]
        params: list = []
        if query:
            pattern = f"%{_escape_like(query)}%"
            where.append("(title LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\')")
            params.extend([pattern, pattern])
        if media_type:
            where.append("type = ?")
            params.append(media_type)
        if library_id:
            where.append("library_id = ?")
            params.append(library_id)
        return self._page(" AND ".join(where), params, offset, limit)

    def _page(self, where: str, params: list, offset: int, limit: int) -> Tuple[List[Media], int]:
        with self._lock, self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM media WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM media WHERE {where} ORDER BY title, id LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_media(row) for row in rows], total

    def update_media(self, media_id: str, update: MediaUpdate) -> Optional[Media]:
        """
        Apply a partial update.

        Returns:
            Updated media, or None if it does not exist
        """
        assignments = []
        params: list = []
        if update.title is not None:
            assignments.append("title = ?")
            params.append(update.title)
        if update.file_path is not None:
            assignments.append("file_path = ?")
            params.append(update.file_path)
        if update.description is not None:
            assignments.append("description = ?")
            params.append(update.description)
        if update.genres is not None:
            assignments.append("genres = ?")
            params.append(json.dumps(update.genres))
        if update.rating is not None:
            assignments.append("rating = ?")
            params.append(update.rating)
        assignments.append("updated_at = ?")
        params.append(_ts(utcnow()))

        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE media SET {', '.join(assignments)} WHERE id = ? AND deleted_at IS NULL",
                    (*params, media_id),
                )
                if cursor.rowcount == 0:
                    return None
            return self.get_media(media_id)

    def delete_media(self, media_id: str) -> bool:
        """Soft-delete a media item. Returns True if a live item was deleted."""
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "UPDATE media SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (_ts(utcnow()), media_id),
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Media deleted: {media_id}")
        return deleted

    # ========================================================================
    # Scan History
    # ========================================================================

    def record_scan(self, result: ScanResult) -> ScanResult:
        """Insert or replace a scan record."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO scan_history (id, library_id, status, files_scanned,
                                                     files_added, files_updated, error_message,
                                                     started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                result.id,
                result.library_id,
                result.status,
                result.files_scanned,
                result.files_added,
                result.files_updated,
                result.error_message,
                _ts(result.started_at),
                _ts(result.completed_at),
            ))
        return result

    def latest_scan(self, library_id: str) -> Optional[ScanResult]:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM scan_history WHERE library_id = ? ORDER BY started_at DESC LIMIT 1",
                (library_id,),
            ).fetchone()
        if row is None:
            return None
        return ScanResult(
            id=row["id"],
            library_id=row["library_id"],
            status=row["status"],
            files_scanned=row["files_scanned"],
            files_added=row["files_added"],
            files_updated=row["files_updated"],
            error_message=row["error_message"] or "",
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    # ========================================================================
    # Row mapping
    # ========================================================================

    @staticmethod
    def _row_to_library(row: sqlite3.Row) -> Library:
        return Library(
            id=row["id"],
            name=row["name"],
            path=row["path"],
            type=row["type"],
            enabled=bool(row["enabled"]),
            scan_interval=row["scan_interval"],
            last_scan_at=_parse_ts(row["last_scan_at"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_media(row: sqlite3.Row) -> Media:
        return Media(
            id=row["id"],
            library_id=row["library_id"],
            title=row["title"],
            type=row["type"],
            status=row["status"],
            file_path=row["file_path"] or "",
            file_size=row["file_size"] or 0,
            runtime=row["runtime"] or 0,
            resolution=row["resolution"] or "",
            video_codec=row["video_codec"] or "",
            bitrate=row["bitrate"] or 0,
            description=row["description"] or "",
            genres=json.loads(row["genres"]) if row["genres"] else [],
            rating=row["rating"] or 0.0,
            release_date=row["release_date"] or "",
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            last_scanned_at=_parse_ts(row["last_scanned_at"]),
        )

    @staticmethod
    def _row_to_episode(row: sqlite3.Row) -> Episode:
        return Episode(
            id=row["id"],
            media_id=row["media_id"],
            season_number=row["season_number"],
            episode_number=row["episode_number"],
            title=row["title"] or "",
            file_path=row["file_path"] or "",
            runtime=row["runtime"] or 0,
            air_date=_parse_ts(row["air_date"]),
            created_at=_parse_ts(row["created_at"]),
        )
