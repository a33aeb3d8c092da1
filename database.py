"""
Database operations for dupelink
Handles all SQLite operations for the file index
"""

import sqlite3
import logging
import os
import time

from constants import APP_VERSION, CURRENT_DB_VERSION, SENTINELS
from records import EntryKind, IndexEntry

logger = logging.getLogger('dupelink.database')

SCHEMA = """
-- One row per scanned filesystem entry
CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content_hash TEXT,
    audio_hash TEXT,
    filepath TEXT NOT NULL UNIQUE,
    filename TEXT,
    extension TEXT,
    size INTEGER,
    last_checked INTEGER,
    mtime INTEGER DEFAULT 0,
    kind TEXT DEFAULT 'F'
);
CREATE INDEX IF NOT EXISTS idx_files_content_hash ON files(content_hash);
CREATE INDEX IF NOT EXISTS idx_files_audio_hash ON files(audio_hash);
CREATE INDEX IF NOT EXISTS idx_files_extension ON files(extension);

-- Metadata and versioning
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Columns added after the first schema, with their definitions
MIGRATION_COLUMNS = {
    'mtime': "INTEGER DEFAULT 0",
    'kind': "TEXT DEFAULT 'F'",
}

FINGERPRINT_COLUMNS = {
    'content': 'content_hash',
    'audio': 'audio_hash',
}

ENTRY_COLUMNS = ("id, content_hash, audio_hash, filepath, filename, extension, "
                 "size, last_checked, mtime, kind")


class IndexDatabaseError(Exception):
    """Index database cannot be opened or used"""
    pass


class SchemaVersionError(IndexDatabaseError):
    """Database schema is incompatible with this version of dupelink"""
    pass


def _row_to_entry(row):
    return IndexEntry(
        id=row['id'],
        path=row['filepath'],
        content_hash=row['content_hash'],
        audio_hash=row['audio_hash'],
        filename=row['filename'] or '',
        extension=row['extension'] or '',
        size=row['size'] or 0,
        mtime=row['mtime'] or 0,
        kind=EntryKind(row['kind'] or EntryKind.REGULAR.value),
        last_checked=row['last_checked'] or 0,
    )


class IndexDatabase:
    """SQLite database manager for dupelink.

    Handles all database operations including:
    - Schema creation, version checks and column migrations
    - Point lookup and persistence of index entries
    - Fingerprint-ordered scans for duplicate grouping
    - Statistics for status display

    Transactions are explicit: callers open one with begin_transaction() and
    end it with commit_transaction() or rollback_transaction().
    """

    # ==========================================================================
    # INITIALIZATION AND CONNECTION
    # ==========================================================================

    def __init__(self, db_path, debug_sql=False):
        """Initialize database manager.

        Args:
            db_path: Path to SQLite database file
            debug_sql: If True, log all SQL queries at DEBUG level
        """
        self.db_path = str(db_path)
        self.debug_sql = debug_sql
        self.conn = None

    def connect(self):
        """Connect to database and initialize schema"""
        logger.debug(f"Opening database at {self.db_path}")

        if os.path.isdir(self.db_path):
            raise IndexDatabaseError(f"Database path is a directory, not a file: {self.db_path}")

        try:
            # Ensure parent directory exists
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

            self.conn = sqlite3.connect(
                self.db_path,
                isolation_level='DEFERRED'  # Use transactions
            )
            self.conn.row_factory = sqlite3.Row

            self.execute("PRAGMA synchronous=NORMAL")
            self.execute("PRAGMA cache_size=-64000")  # 64MB cache
            self.execute("PRAGMA temp_store=MEMORY")

            self._init_schema()

            if not self._check_integrity():
                raise IndexDatabaseError("Database integrity check failed")

        except (OSError, sqlite3.Error) as e:
            logger.error(f"Failed to initialize database: {e}")
            self.close()
            raise IndexDatabaseError(f"Cannot open database {self.db_path}: {e}") from e
        except IndexDatabaseError:
            self.close()
            raise

    def execute(self, query, params=None):
        """Execute a query with optional debug logging"""
        if self.debug_sql:
            logger.debug(f"SQL: {query}")
            if params:
                logger.debug(f"Params: {params}")

        if params:
            return self.conn.execute(query, params)
        else:
            return self.conn.execute(query)

    def begin_transaction(self):
        """Begin a new transaction"""
        if self.conn.in_transaction:
            return
        self.execute("BEGIN")
        if self.debug_sql:
            logger.debug("Started transaction")

    def commit_transaction(self):
        """Commit the current transaction"""
        self.conn.commit()
        if self.debug_sql:
            logger.debug("Committed transaction")

    def rollback_transaction(self):
        """Rollback the current transaction"""
        self.conn.rollback()
        if self.debug_sql:
            logger.debug("Rolled back transaction")

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None

    def _init_schema(self):
        """Initialize database schema"""
        logger.debug("Initializing database schema")

        existing_tables = [row[0] for row in self.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        )]

        current_version = 0
        if 'metadata' in existing_tables:
            row = self.execute(
                "SELECT value FROM metadata WHERE key = 'db_version'"
            ).fetchone()
            try:
                current_version = int(row['value']) if row else 0
            except ValueError:
                raise SchemaVersionError(f"Unreadable schema version: {row['value']!r}")

        if current_version > CURRENT_DB_VERSION:
            raise SchemaVersionError(
                f"Database schema version {current_version} is newer than code "
                f"version {CURRENT_DB_VERSION}. Please update dupelink."
            )

        self.conn.executescript(SCHEMA)

        if 'files' in existing_tables:
            self._migrate_columns()

        self.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            ('db_version', str(CURRENT_DB_VERSION))
        )
        self.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            ('app_version', APP_VERSION)
        )
        self.commit_transaction()

    def _migrate_columns(self):
        """Add columns missing from databases created by older versions"""
        columns = {row['name'] for row in self.execute("PRAGMA table_info(files)")}
        for name, definition in MIGRATION_COLUMNS.items():
            if name not in columns:
                logger.warning(f"Upgrading database: adding column files.{name}")
                self.execute(f"ALTER TABLE files ADD COLUMN {name} {definition}")

    def _check_integrity(self):
        """Check database integrity"""
        logger.debug("Checking database integrity")

        result = self.execute("PRAGMA integrity_check").fetchone()
        if result[0] != 'ok':
            logger.error(f"Database integrity check failed: {result[0]}")
            return False

        tables = [row[0] for row in self.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        )]
        for table in ('files', 'metadata'):
            if table not in tables:
                logger.error(f"Missing required table: {table}")
                return False

        return True

    # ==========================================================================
    # METADATA
    # ==========================================================================

    def get_metadata(self, key, default=None):
        """Get metadata value"""
        row = self.execute(
            "SELECT value FROM metadata WHERE key = ?",
            (key,)
        ).fetchone()
        return row['value'] if row else default

    def set_metadata(self, key, value):
        """Set metadata value"""
        self.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            (key, str(value))
        )

    # ==========================================================================
    # FILE ENTRY OPERATIONS
    # ==========================================================================

    def get_entry(self, file_path):
        """Look up the index entry for a path, or None"""
        row = self.execute(
            f"SELECT {ENTRY_COLUMNS} FROM files WHERE filepath = ?",
            (str(file_path),)
        ).fetchone()
        return _row_to_entry(row) if row else None

    def save_entry(self, entry):
        """Persist an entry: insert when it has no id, otherwise update in place.

        Returns:
            The row id of the entry
        """
        values = (
            entry.content_hash,
            entry.audio_hash,
            entry.filename,
            entry.extension,
            entry.size,
            entry.last_checked,
            entry.mtime,
            EntryKind(entry.kind).value,
        )
        if entry.id is None:
            cursor = self.execute("""
                INSERT INTO files (content_hash, audio_hash, filename, extension,
                                   size, last_checked, mtime, kind, filepath)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, values + (entry.path,))
            entry.id = cursor.lastrowid
        else:
            self.execute("""
                UPDATE files
                SET content_hash = ?, audio_hash = ?, filename = ?, extension = ?,
                    size = ?, last_checked = ?, mtime = ?, kind = ?, filepath = ?
                WHERE id = ?
            """, values + (entry.path, entry.id))
        return entry.id

    def iter_by_fingerprint(self, kind='content'):
        """Yield entries with a real fingerprint, ordered by fingerprint then path.

        Rows whose fingerprint is NULL or a sentinel value are excluded, so
        sentinels never form duplicate groups.
        """
        column = FINGERPRINT_COLUMNS[kind]
        placeholders = ','.join('?' * len(SENTINELS))
        cursor = self.execute(f"""
            SELECT {ENTRY_COLUMNS} FROM files
            WHERE {column} IS NOT NULL AND {column} NOT IN ({placeholders})
            ORDER BY {column}, filepath
        """, SENTINELS)
        for row in cursor:
            yield _row_to_entry(row)

    def mark_relinked(self, file_path, checked_at, mtime, size=None, content_hash=None):
        """Record that a path now points at the canonical file of its group.

        size and content_hash are only written when given (audio-grouped links
        whose containers differed).
        """
        assignments = ["last_checked = ?", "kind = ?", "mtime = ?"]
        params = [int(checked_at), EntryKind.HARDLINK.value, int(mtime)]
        if size is not None:
            assignments.append("size = ?")
            params.append(size)
        if content_hash is not None:
            assignments.append("content_hash = ?")
            params.append(content_hash)
        params.append(str(file_path))

        cursor = self.execute(
            f"UPDATE files SET {', '.join(assignments)} WHERE filepath = ?",
            params
        )
        return cursor.rowcount

    # ==========================================================================
    # STATISTICS
    # ==========================================================================

    def get_statistics(self):
        """Get database statistics for status display.

        Returns:
            Dict with keys: total_files, kinds, content_hashed, audio_hashed,
            content_sentinels, audio_sentinels, duplicate_groups,
            duplicate_files, space_saveable, db_version
        """
        stats = {}

        stats['total_files'] = self.execute(
            "SELECT COUNT(*) FROM files"
        ).fetchone()[0]

        stats['kinds'] = {
            row['kind']: row['n'] for row in self.execute(
                "SELECT kind, COUNT(*) AS n FROM files GROUP BY kind ORDER BY kind"
            )
        }

        placeholders = ','.join('?' * len(SENTINELS))
        for kind, column in FINGERPRINT_COLUMNS.items():
            stats[f'{kind}_hashed'] = self.execute(f"""
                SELECT COUNT(*) FROM files
                WHERE {column} IS NOT NULL AND {column} NOT IN ({placeholders})
            """, SENTINELS).fetchone()[0]

            stats[f'{kind}_sentinels'] = {
                row['value']: row['n'] for row in self.execute(f"""
                    SELECT {column} AS value, COUNT(*) AS n FROM files
                    WHERE {column} IN ({placeholders})
                    GROUP BY {column}
                """, SENTINELS)
            }

        # Members already relinked (kind 'H') no longer occupy space of their own
        row = self.execute(f"""
            SELECT COUNT(*) AS groups_, COALESCE(SUM(n), 0) AS files_,
                   COALESCE(SUM(MAX(n - 1 - linked, 0) * size), 0) AS waste
            FROM (
                SELECT content_hash, COUNT(*) AS n, MAX(size) AS size,
                       SUM(kind = 'H') AS linked
                FROM files
                WHERE content_hash IS NOT NULL AND content_hash NOT IN ({placeholders})
                  AND kind IN ('F', 'H')
                GROUP BY content_hash
                HAVING COUNT(*) > 1
            )
        """, SENTINELS).fetchone()
        stats['duplicate_groups'] = row['groups_']
        stats['duplicate_files'] = row['files_']
        stats['space_saveable'] = row['waste']

        stats['db_version'] = self.get_metadata('db_version', '0')

        return stats

    def get_top_duplicate_groups(self, limit=10):
        """Content duplicate groups ordered by reclaimable space"""
        placeholders = ','.join('?' * len(SENTINELS))
        return self.execute(f"""
            SELECT content_hash, MAX(size) AS size, COUNT(*) AS file_count,
                   SUM(kind = 'H') AS linked_count,
                   MAX(COUNT(*) - 1 - SUM(kind = 'H'), 0) * MAX(size) AS waste
            FROM files
            WHERE content_hash IS NOT NULL AND content_hash NOT IN ({placeholders})
              AND kind IN ('F', 'H')
            GROUP BY content_hash
            HAVING COUNT(*) > 1
            ORDER BY waste DESC, content_hash
            LIMIT ?
        """, SENTINELS + (limit,)).fetchall()
