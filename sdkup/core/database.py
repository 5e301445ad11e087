"""
Registry of installed SDK packages

One sqlite file under the SDK root maps each repository path
("platforms;android-33") to the revision installed there, the directory it
was unpacked into and the revision it replaced. Installers write it on
commit; the repository client reads it to build the local catalog.
"""

import logging
import sqlite3
import time
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Bump together with a new MIGRATIONS entry
SCHEMA_VERSION = 2

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_info (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS installed (
    path TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    version TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'archive',
    location TEXT,
    previous_version TEXT,
    installed_timestamp INTEGER
);
"""

# version -> (next version, script upgrading from it)
MIGRATIONS = {
    1: (2, "ALTER TABLE installed ADD COLUMN previous_version TEXT;"),
}


class PackageDatabase:
    """Registry connection. Use as a context manager, one per operation."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")

        self._upgrade(self._stored_version())

    def _stored_version(self) -> int:
        """Schema version recorded in the file, 0 for a fresh registry."""
        try:
            row = self.conn.execute("SELECT version FROM schema_info").fetchone()
        except sqlite3.OperationalError:
            return 0
        return row[0] if row else 0

    def _upgrade(self, stored: int):
        if stored == 0:
            with self.conn:
                self.conn.executescript(SCHEMA)
                self.conn.execute("INSERT INTO schema_info (version) VALUES (?)",
                                  (SCHEMA_VERSION,))
            return

        if stored > SCHEMA_VERSION:
            logger.warning(f"Registry {self.db_path} uses schema v{stored}, "
                           f"this sdkup only knows v{SCHEMA_VERSION}")
            return

        while stored < SCHEMA_VERSION:
            target, script = MIGRATIONS[stored]
            logger.info(f"Upgrading registry schema v{stored} -> v{target}")
            try:
                self.conn.executescript(script)
                with self.conn:
                    self.conn.execute("UPDATE schema_info SET version = ?", (target,))
            except sqlite3.Error as e:
                raise RuntimeError(
                    f"Cannot upgrade registry {self.db_path} to v{target}: {e}") from e
            stored = target

    def close(self):
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def record_install(self, path: str, display_name: str, version: str,
                       pkg_type: str = 'archive', location: str = None):
        """Write the entry for a package, keeping the revision it replaces."""
        current = self.get_installed(path)
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO installed (path, display_name, version, type,"
                " location, previous_version, installed_timestamp)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (path, display_name, version, pkg_type, location,
                 current['version'] if current else None, int(time.time())))

    def get_installed(self, path: str) -> Optional[Dict]:
        row = self.conn.execute(
            "SELECT * FROM installed WHERE path = ?", (path,)).fetchone()
        return dict(row) if row else None

    def list_installed(self) -> List[Dict]:
        """All entries, ordered by path."""
        return [dict(row) for row in
                self.conn.execute("SELECT * FROM installed ORDER BY path")]
