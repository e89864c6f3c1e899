"""
Database storage layer for Kiss2FA.
Uses SQLite; each user owns exactly one opaque encrypted vault blob.
"""
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from errors import AtomicityViolation
from models import User

# Configure logging
logger = logging.getLogger(__name__)


class Storage:
    """SQLite store holding accounts and one encrypted vault blob per account."""

    def __init__(self, db_path: str = "kiss2fa.db", busy_timeout_ms: int = 5000):
        """
        Args:
            db_path: Path to SQLite database file
            busy_timeout_ms: How long a write waits for another writer's lock
        """
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self) -> sqlite3.Connection:
        """Return the shared autocommit connection, opening it on first use."""
        if self._conn is None:
            conn = sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            self._conn = conn
            logger.debug("Opened vault database %s", self.db_path)
        return self._conn

    def close(self):
        """Close the connection; the next call to connect() reopens it."""
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run statements in one write transaction.

        Commits on success. Any exception, including a failed COMMIT, rolls
        back and is re-raised.
        """
        conn = self.connect()
        cursor = conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            yield cursor
            cursor.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                cursor.execute("ROLLBACK")
            raise

    def init_db(self):
        """Initialize database tables."""
        conn = self.connect()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                login_id TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                name TEXT DEFAULT 'My Vault',
                logo TEXT DEFAULT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS vaults (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER UNIQUE NOT NULL,
                encrypted_data TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            );

            CREATE TRIGGER IF NOT EXISTS update_user_timestamp
            AFTER UPDATE OF login_id, password_hash, name, logo ON users
            BEGIN
                UPDATE users SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
            END;

            CREATE TRIGGER IF NOT EXISTS update_vault_timestamp
            AFTER UPDATE OF encrypted_data ON vaults
            BEGIN
                UPDATE vaults SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
            END;

            CREATE INDEX IF NOT EXISTS idx_users_login_id ON users(login_id);
        """)
        logger.info("Database initialized successfully")

    def add_user(self, login_id: str, password_hash: str, encrypted_vault: str) -> int:
        """
        Add a new user together with their initial vault.

        Args:
            login_id: Public login identifier
            password_hash: Login password hash
            encrypted_vault: Encrypted empty vault

        Returns:
            User ID

        Raises:
            sqlite3.IntegrityError: If the login ID is already taken
        """
        with self.transaction() as cursor:
            cursor.execute(
                "INSERT INTO users (login_id, password_hash) VALUES (?, ?)",
                (login_id, password_hash)
            )
            user_id = cursor.lastrowid
            cursor.execute(
                "INSERT INTO vaults (user_id, encrypted_data) VALUES (?, ?)",
                (user_id, encrypted_vault)
            )

        logger.info("Added new user with login ID: %s", login_id)
        return user_id

    def get_user(self, user_id: int) -> Optional[User]:
        """
        Get user by ID.

        Args:
            user_id: User ID

        Returns:
            User object or None if not found
        """
        cursor = self.connect().execute("SELECT * FROM users WHERE id = ?", (user_id,))
        return self._row_to_user(cursor.fetchone())

    def get_user_by_login_id(self, login_id: str) -> Optional[User]:
        """
        Get user by login ID.

        Args:
            login_id: Public login identifier

        Returns:
            User object or None if not found
        """
        cursor = self.connect().execute("SELECT * FROM users WHERE login_id = ?", (login_id,))
        return self._row_to_user(cursor.fetchone())

    def update_user_profile(self, user_id: int, name: str = None, logo: str = None) -> bool:
        """
        Update profile fields that are not None.

        Returns:
            True if a row was changed
        """
        updates = []
        params = []

        if name is not None:
            updates.append("name = ?")
            params.append(name)
        if logo is not None:
            updates.append("logo = ?")
            params.append(logo)

        if not updates:
            return False

        params.append(user_id)
        cursor = self.connect().execute(
            f"UPDATE users SET {', '.join(updates)} WHERE id = ?", params
        )
        logger.info("Updated profile for user %s", user_id)
        return cursor.rowcount > 0

    def update_password_hash(self, user_id: int, password_hash: str) -> bool:
        """Replace the login hash only (the vault passphrase is unchanged)."""
        cursor = self.connect().execute(
            "UPDATE users SET password_hash = ? WHERE id = ?",
            (password_hash, user_id)
        )
        return cursor.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """
        Delete a user; their vault is removed by cascade.

        Returns:
            True if the user existed
        """
        cursor = self.connect().execute("DELETE FROM users WHERE id = ?", (user_id,))
        logger.info("Deleted user %s", user_id)
        return cursor.rowcount > 0

    def get_vault(self, user_id: int) -> Optional[str]:
        """
        Get the encrypted vault blob for a user.

        Returns:
            The blob, or None if the user has no vault
        """
        cursor = self.connect().execute(
            "SELECT encrypted_data FROM vaults WHERE user_id = ?", (user_id,)
        )
        row = cursor.fetchone()
        return row['encrypted_data'] if row else None

    def put_vault(self, user_id: int, encrypted_vault: str) -> bool:
        """
        Store the encrypted vault blob for a user, replacing any previous one.

        Returns:
            True on success
        """
        try:
            with self.transaction() as cursor:
                cursor.execute(
                    "UPDATE vaults SET encrypted_data = ? WHERE user_id = ?",
                    (encrypted_vault, user_id)
                )
                if cursor.rowcount == 0:
                    cursor.execute(
                        "INSERT INTO vaults (user_id, encrypted_data) VALUES (?, ?)",
                        (user_id, encrypted_vault)
                    )
        except sqlite3.Error as e:
            logger.error("Error saving vault for user %s: %s", user_id, e)
            return False

        logger.info("Saved vault for user %s", user_id)
        return True

    def vault_exists(self, user_id: int) -> bool:
        """Whether a non-empty vault blob is stored for the user."""
        return bool(self.get_vault(user_id))

    def replace_credentials(self, user_id: int, password_hash: str, encrypted_vault: str):
        """
        Atomically replace the login hash and the vault blob.

        Args:
            user_id: User ID
            password_hash: New login hash
            encrypted_vault: Vault re-encrypted under the new password

        Raises:
            AtomicityViolation: If either write fails; nothing was persisted
        """
        try:
            with self.transaction() as cursor:
                cursor.execute(
                    "UPDATE users SET password_hash = ? WHERE id = ?",
                    (password_hash, user_id)
                )
                if cursor.rowcount != 1:
                    raise sqlite3.IntegrityError(f"user {user_id} not found")
                cursor.execute(
                    "UPDATE vaults SET encrypted_data = ? WHERE user_id = ?",
                    (encrypted_vault, user_id)
                )
                if cursor.rowcount != 1:
                    raise sqlite3.IntegrityError(f"vault for user {user_id} not found")
        except sqlite3.Error as e:
            logger.error("Credential change rolled back for user %s: %s", user_id, e)
            raise AtomicityViolation(f"Credential change failed and was rolled back: {e}") from e

        logger.info("Replaced credentials for user %s", user_id)

    @staticmethod
    def _row_to_user(row: Optional[sqlite3.Row]) -> Optional[User]:
        if not row:
            return None
        return User(
            id=row['id'],
            login_id=row['login_id'],
            password_hash=row['password_hash'],
            name=row['name'],
            logo=row['logo'],
            created_at=datetime.fromisoformat(row['created_at']) if row['created_at'] else None,
            updated_at=datetime.fromisoformat(row['updated_at']) if row['updated_at'] else None
        )
