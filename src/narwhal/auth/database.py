"""
SQLite database for user management.

Thread-safe user database with users, role assignments, and refresh-token
sessions.
"""

import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

import bcrypt
from loguru import logger

from ..errors import conflict, forbidden
from .models import Session, User


class UserDatabase:
    """
    Thread-safe user database.

    Manages users, role assignments, and sessions using SQLite.
    All operations are protected by threading.RLock for thread safety.
    """

    def __init__(self, db_path: Union[str, Path]):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file (parent directories are created)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    email TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    is_active INTEGER DEFAULT 1
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_roles (
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    assigned_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, role),
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    token_jti TEXT UNIQUE NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    revoked INTEGER DEFAULT 0,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_user_roles_user ON user_roles(user_id)")

            conn.commit()
            conn.close()

            logger.info(f"User database initialized: {self.db_path}")

    # ========================================================================
    # User Operations
    # ========================================================================

    def create_user(self, username: str, email: str, password: str, roles: List[str]) -> User:
        """
        Create new user with hashed password.

        Args:
            username: Unique username
            email: Unique email
            password: Plain text password (will be hashed)
            roles: Role names to assign

        Returns:
            Created User object

        Raises:
            AppError: CONFLICT if username or email already exists
        """
        user = self._new_user(username, email, password, roles)
        self._insert_user(user, first_only=False)
        logger.info(f"User created: {username} (roles: {', '.join(user.roles) or 'none'})")
        return user

    def create_first_user(self, username: str, email: str, password: str, roles: List[str]) -> User:
        """
        Create a user only if the table is empty.

        The emptiness check and the insert are one statement, so of several
        concurrent callers at most one succeeds.

        Raises:
            AppError: FORBIDDEN if any user already exists
        """
        user = self._new_user(username, email, password, roles)
        self._insert_user(user, first_only=True)
        logger.warning(f"Bootstrapped first user: {username} (roles: {', '.join(user.roles) or 'none'})")
        return user

    def _new_user(self, username: str, email: str, password: str, roles: List[str]) -> User:
        password_hash = bcrypt.hashpw(
            password.encode('utf-8'),
            bcrypt.gensalt()
        ).decode('utf-8')

        return User(
            user_id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash,
            created_at=datetime.now(timezone.utc),
            is_active=True,
            roles=list(dict.fromkeys(roles)),
        )

    def _insert_user(self, user: User, first_only: bool):
        insert = """
            INSERT INTO users (user_id, username, email, password_hash, created_at, is_active)
            SELECT ?, ?, ?, ?, ?, ?
        """
        if first_only:
            insert += " WHERE NOT EXISTS (SELECT 1 FROM users)"

        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            try:
                cursor = conn.cursor()
                cursor.execute(insert, (
                    user.user_id,
                    user.username,
                    user.email,
                    user.password_hash,
                    user.created_at.isoformat(),
                    1,
                ))
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise forbidden("users already exist")
                cursor.executemany(
                    "INSERT INTO user_roles (user_id, role, assigned_at) VALUES (?, ?, ?)",
                    [(user.user_id, role, user.created_at.isoformat()) for role in user.roles],
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise conflict("username or email already exists") from e
            finally:
                conn.close()

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user("email", email)

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self._get_user("user_id", user_id)

    def _get_user(self, column: str, value: str) -> Optional[User]:
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()

            cursor.execute(f"""
                SELECT user_id, username, email, password_hash, created_at, is_active
                FROM users WHERE {column} = ?
            """, (value,))
            row = cursor.fetchone()
            conn.close()

            if not row:
                return None

            return User(
                user_id=row[0],
                username=row[1],
                email=row[2],
                password_hash=row[3],
                created_at=datetime.fromisoformat(row[4]),
                is_active=bool(row[5]),
                roles=self.get_user_roles(row[0]),
            )

    def verify_password(self, user: User, password: str) -> bool:
        """
        Verify password against user's hash.

        Args:
            user: User object
            password: Plain text password to verify

        Returns:
            True if password matches, False otherwise
        """
        return bcrypt.checkpw(
            password.encode('utf-8'),
            user.password_hash.encode('utf-8')
        )

    def count_users(self) -> int:
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            count = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            conn.close()
            return count

    def delete_user(self, user_id: str) -> bool:
        """
        Delete user with role assignments and sessions.

        Returns:
            True if the user existed
        """
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()

            cursor.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
            cursor.execute("DELETE FROM user_roles WHERE user_id = ?", (user_id,))
            cursor.execute("DELETE FROM users WHERE user_id = ?", (user_id,))

            conn.commit()
            success = cursor.rowcount > 0
            conn.close()

            if success:
                logger.info(f"User deleted: {user_id}")
            return success

    # ========================================================================
    # Role Operations
    # ========================================================================

    def get_user_roles(self, user_id: str) -> List[str]:
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()
            cursor.execute(
                "SELECT role FROM user_roles WHERE user_id = ? ORDER BY assigned_at, role", (user_id,)
            )
            roles = [row[0] for row in cursor.fetchall()]
            conn.close()
            return roles

    def assign_role(self, user_id: str, role: str) -> bool:
        """
        Assign a role to a user.

        Returns:
            True if the role was newly assigned
        """
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO user_roles (user_id, role, assigned_at) VALUES (?, ?, ?)",
                (user_id, role, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
            success = cursor.rowcount > 0
            conn.close()
            return success

    # ========================================================================
    # Session Operations
    # ========================================================================

    def create_session(self, session: Session) -> bool:
        """
        Create new session.

        Args:
            session: Session object

        Returns:
            True if creation succeeded
        """
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()

            cursor.execute("""
                INSERT INTO sessions (session_id, user_id, token_jti, created_at, expires_at, revoked)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                session.session_id,
                session.user_id,
                session.token_jti,
                session.created_at.isoformat(),
                session.expires_at.isoformat(),
                1 if session.revoked else 0,
            ))

            conn.commit()
            success = cursor.rowcount > 0
            conn.close()

            return success

    def get_session_by_jti(self, token_jti: str) -> Optional[Session]:
        """
        Get session by refresh-token JWT ID.

        Args:
            token_jti: JWT ID (jti claim)

        Returns:
            Session object if found, None otherwise
        """
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()

            cursor.execute("""
                SELECT session_id, user_id, token_jti, created_at, expires_at, revoked
                FROM sessions WHERE token_jti = ?
            """, (token_jti,))
            row = cursor.fetchone()
            conn.close()

            if not row:
                return None

            return Session(
                session_id=row[0],
                user_id=row[1],
                token_jti=row[2],
                created_at=datetime.fromisoformat(row[3]),
                expires_at=datetime.fromisoformat(row[4]),
                revoked=bool(row[5]),
            )

    def revoke_session(self, token_jti: str) -> bool:
        """
        Revoke session (logout or rotation).

        Returns:
            True if a live session was revoked
        """
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()

            cursor.execute("UPDATE sessions SET revoked = 1 WHERE token_jti = ? AND revoked = 0", (token_jti,))

            conn.commit()
            success = cursor.rowcount > 0
            conn.close()

            return success

    def cleanup_expired_sessions(self) -> int:
        """
        Remove expired and revoked sessions.

        Returns:
            Number of sessions deleted
        """
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            cursor = conn.cursor()

            now = datetime.now(timezone.utc).isoformat()
            cursor.execute("DELETE FROM sessions WHERE expires_at < ? OR revoked = 1", (now,))

            conn.commit()
            deleted = cursor.rowcount
            conn.close()

            if deleted > 0:
                logger.info(f"Cleaned up {deleted} expired sessions")

            return deleted
