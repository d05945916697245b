"""
Database schema definitions.
"""
import sqlite3
import logging

CURRENT_SCHEMA_VERSION = 1

def init_schema(conn: sqlite3.Connection):
    """
    Applies the core schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. Scan Roots
        # One row per registered folder; never removed automatically
        conn.execute("""
        CREATE TABLE IF NOT EXISTS scan_roots (
            id                          INTEGER PRIMARY KEY AUTOINCREMENT,
            root_path                   TEXT NOT NULL UNIQUE,
            last_scan_utc               TEXT,
            total_files_last_scan       INTEGER NOT NULL DEFAULT 0,
            enable_duplicate_detection  INTEGER NOT NULL DEFAULT 0,
            notes                       TEXT
        );
        """)

        # 3. Photo Assets
        # Datetimes are ISO-8601 UTC strings with fixed precision so that
        # text ordering equals chronological ordering.
        conn.execute("""
        CREATE TABLE IF NOT EXISTS photo_assets (
            id                  INTEGER PRIMARY KEY AUTOINCREMENT,
            scan_root_id        INTEGER NOT NULL,
            full_path           TEXT NOT NULL,
            file_name           TEXT NOT NULL,
            extension           TEXT NOT NULL,
            folder_path         TEXT NOT NULL,
            file_size_bytes     INTEGER NOT NULL DEFAULT 0,
            date_taken          TEXT,
            date_taken_source   TEXT NOT NULL DEFAULT 'unknown',
            camera_make         TEXT,
            camera_model        TEXT,
            width               INTEGER,
            height              INTEGER,
            sha256              TEXT,
            file_created_utc    TEXT,
            file_last_write_utc TEXT,
            indexed_utc         TEXT NOT NULL,
            updated_utc         TEXT NOT NULL,
            notes               TEXT,
            tags_csv            TEXT,
            people_csv          TEXT,
            animals_csv         TEXT,
            UNIQUE (scan_root_id, full_path),
            FOREIGN KEY(scan_root_id) REFERENCES scan_roots(id) ON DELETE CASCADE
        );
        """)

        # 4. Indices for Performance
        conn.execute("CREATE INDEX IF NOT EXISTS idx_photo_assets_root ON photo_assets(scan_root_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_photo_assets_date_taken ON photo_assets(date_taken);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_photo_assets_sha256 ON photo_assets(sha256);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_photo_assets_folder ON photo_assets(folder_path);")

    logging.debug("Database schema initialized.")
