"""
Catalog database connection management.

The catalog runs in WAL mode: a scan, hash fill or plan apply holds the single
write connection while query connections keep reading the last committed
state. Writers commit in batches, so readers never see a half-written row.
"""
import sqlite3
import logging
from pathlib import Path
from typing import Optional

from .schema import init_schema

class DBManager:
    """
    Owns one connection to the catalog file. Usable as a context manager
    that yields the connection and closes it on exit. Closing does not
    commit; services commit their own batches through CatalogStore.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self) -> sqlite3.Connection:
        """
        Connects to the SQLite database and configures performance pragmas.
        """
        if self._conn:
            return self._conn

        logging.info(f"Connecting to database: {self.db_path}")
        self._conn = sqlite3.connect(self.db_path)

        # WAL lets query connections read while a scan or apply is writing
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA temp_store=MEMORY;")
        self._conn.execute("PRAGMA foreign_keys=ON;")

        # Ensure schema exists
        init_schema(self._conn)

        return self._conn

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
