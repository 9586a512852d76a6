"""
Database schema definitions.
"""
import sqlite3
import logging

from .. import config

CURRENT_SCHEMA_VERSION = 1

def init_schema(conn: sqlite3.Connection):
    """
    Applies the core schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. Site-wide settings (single row)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS site_info (
            id                      INTEGER PRIMARY KEY CHECK (id = 1),
            periodic_scan_interval  INTEGER NOT NULL DEFAULT 0
        );
        """)
        conn.execute(
            "INSERT OR IGNORE INTO site_info (id, periodic_scan_interval) VALUES (1, ?)",
            (config.DEFAULT_PERIODIC_SCAN_INTERVAL,),
        )

        # 3. Album Forest
        # One row per directory. Roots have parent_id NULL.
        conn.execute("""
        CREATE TABLE IF NOT EXISTS albums (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            owner_id    TEXT NOT NULL,
            root_path   TEXT NOT NULL,
            path        TEXT NOT NULL,
            title       TEXT NOT NULL,
            parent_id   INTEGER,
            created_at  TEXT NOT NULL,
            UNIQUE(owner_id, path),
            FOREIGN KEY(parent_id) REFERENCES albums(id) ON DELETE CASCADE
        );
        """)

        # 4. Media
        # fingerprint = change detection, content_hash = derivative cache key
        conn.execute("""
        CREATE TABLE IF NOT EXISTS media (
            id                  INTEGER PRIMARY KEY AUTOINCREMENT,
            album_id            INTEGER NOT NULL,
            path                TEXT NOT NULL,
            title               TEXT NOT NULL,
            kind                TEXT NOT NULL,
            fingerprint         TEXT NOT NULL,
            content_hash        TEXT NOT NULL,
            size_bytes          INTEGER NOT NULL,
            capture_datetime    TEXT,
            width               INTEGER,
            height              INTEGER,
            camera              TEXT,
            maker               TEXT,
            lens                TEXT,
            exposure            TEXT,
            exposure_program    INTEGER,
            aperture            REAL,
            iso                 INTEGER,
            focal_length        REAL,
            flash               INTEGER,
            orientation         INTEGER,
            gps_latitude        REAL,
            gps_longitude       REAL,
            duration_sec        REAL,
            frame_rate          REAL,
            codec               TEXT,
            place               TEXT,
            phash               TEXT,
            derivatives_complete INTEGER NOT NULL DEFAULT 0,
            imported_at         TEXT NOT NULL,
            updated_at          TEXT NOT NULL,
            UNIQUE(album_id, path),
            FOREIGN KEY(album_id) REFERENCES albums(id) ON DELETE CASCADE
        );
        """)

        # 5. Derivatives (content addressed, shared by duplicate media)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS derivatives (
            content_hash    TEXT NOT NULL,
            variant         TEXT NOT NULL,
            width           INTEGER NOT NULL,
            height          INTEGER NOT NULL,
            size_bytes      INTEGER NOT NULL,
            location        TEXT NOT NULL,
            content_type    TEXT NOT NULL,
            created_at      TEXT NOT NULL,
            PRIMARY KEY (content_hash, variant)
        );
        """)

        # 6. Capability hook outputs
        conn.execute("""
        CREATE TABLE IF NOT EXISTS face_regions (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            media_id    INTEGER NOT NULL,
            left_pos    REAL NOT NULL,
            top_pos     REAL NOT NULL,
            width       REAL NOT NULL,
            height      REAL NOT NULL,
            label       TEXT,
            FOREIGN KEY(media_id) REFERENCES media(id) ON DELETE CASCADE
        );
        """)

        # 7. Share Tokens
        # Cascades make tokens for deleted albums/media disappear with them.
        conn.execute("""
        CREATE TABLE IF NOT EXISTS share_tokens (
            token           TEXT PRIMARY KEY,
            owner_id        TEXT NOT NULL,
            album_id        INTEGER,
            media_id        INTEGER,
            password_hash   TEXT,
            expire          TEXT,
            created_at      TEXT NOT NULL,
            CHECK ((album_id IS NULL) != (media_id IS NULL)),
            FOREIGN KEY(album_id) REFERENCES albums(id) ON DELETE CASCADE,
            FOREIGN KEY(media_id) REFERENCES media(id) ON DELETE CASCADE
        );
        """)

        # 8. Scan History (bounded per root)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS scan_results (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            root_path   TEXT NOT NULL,
            owner_id    TEXT NOT NULL,
            started_at  TEXT NOT NULL,
            finished_at TEXT,
            aborted     INTEGER NOT NULL DEFAULT 0,
            result_json TEXT NOT NULL
        );
        """)

        # 9. Indices for Performance
        conn.execute("CREATE INDEX IF NOT EXISTS idx_albums_parent ON albums(parent_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_albums_root ON albums(owner_id, root_path);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_media_album ON media(album_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_media_content_hash ON media(content_hash);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_media_capture_dt ON media(capture_datetime);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_faces_media ON face_regions(media_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_scan_results_root ON scan_results(root_path, id);")

    logging.debug("Database schema initialized.")
