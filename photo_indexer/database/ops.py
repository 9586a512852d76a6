import sqlite3
import json
import logging
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable

from ..models import (
    Album, Derivative, FaceRegion, MediaExif, MediaRecord, Metadata,
    ScanResult, ShareToken,
)

_EXIF_COLUMNS = (
    'camera', 'maker', 'lens', 'exposure', 'exposure_program', 'aperture', 'iso',
    'focal_length', 'flash', 'orientation', 'gps_latitude', 'gps_longitude',
)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _dt_or_none(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DBOperations:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        cur = self.conn.cursor()
        cur.row_factory = sqlite3.Row
        cur.execute(sql, tuple(params))
        return cur.fetchall()

    # --- Albums ---

    def insert_album(self, owner_id: str, root_path: Path, path: Path, title: str,
                     parent_id: Optional[int]) -> int:
        cur = self.conn.cursor()
        cur.execute("""
            INSERT INTO albums (owner_id, root_path, path, title, parent_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (owner_id, str(root_path), str(path), title, parent_id, _now_iso()))
        if cur.lastrowid is None:
            raise RuntimeError("Database INSERT failed to return a row ID.")
        return cur.lastrowid

    def update_album_title(self, album_id: int, title: str):
        self.conn.execute("UPDATE albums SET title = ? WHERE id = ?", (title, album_id))

    def delete_album(self, album_id: int) -> List[str]:
        """
        Deletes an album and, through ON DELETE CASCADE, every descendant album,
        media row, face region and share token.
        Returns the content hashes of all media that were removed.
        """
        hashes = self.subtree_content_hashes(album_id)
        self.conn.execute("DELETE FROM albums WHERE id = ?", (album_id,))
        return hashes

    def subtree_content_hashes(self, album_id: int) -> List[str]:
        rows = self._query("""
            WITH RECURSIVE subtree(id) AS (
                SELECT id FROM albums WHERE id = ?
                UNION ALL
                SELECT a.id FROM albums a JOIN subtree s ON a.parent_id = s.id
            )
            SELECT m.content_hash FROM media m JOIN subtree s ON m.album_id = s.id
        """, (album_id,))
        return [r['content_hash'] for r in rows]

    def fetch_root_albums(self, owner_id: str, root_path: Path) -> List[sqlite3.Row]:
        return self._query(
            "SELECT id, path, title, parent_id FROM albums WHERE owner_id = ? AND root_path = ?",
            (owner_id, str(root_path)),
        )

    def get_album(self, album_id: int) -> Optional[Album]:
        rows = self._query("SELECT * FROM albums WHERE id = ?", (album_id,))
        return self._row_to_album(rows[0]) if rows else None

    def get_album_by_path(self, owner_id: str, path: Path) -> Optional[Album]:
        rows = self._query("SELECT * FROM albums WHERE owner_id = ? AND path = ?", (owner_id, str(path)))
        return self._row_to_album(rows[0]) if rows else None

    def list_child_albums(self, album_id: int) -> List[Album]:
        rows = self._query("SELECT * FROM albums WHERE parent_id = ? ORDER BY title", (album_id,))
        return [self._row_to_album(r) for r in rows]

    def list_root_albums(self, owner_id: str) -> List[Album]:
        rows = self._query(
            "SELECT * FROM albums WHERE owner_id = ? AND parent_id IS NULL ORDER BY path", (owner_id,))
        return [self._row_to_album(r) for r in rows]

    def _row_to_album(self, r: sqlite3.Row) -> Album:
        return Album(
            id=r['id'], path=Path(r['path']), title=r['title'], parent_id=r['parent_id'],
            owner_id=r['owner_id'], root_path=Path(r['root_path']),
        )

    # --- Media ---

    def insert_media(self, album_id: int, path: Path, meta: Metadata, fingerprint: str,
                     content_hash: str, place: Optional[str] = None,
                     derivatives_complete: bool = False) -> int:
        now_iso = _now_iso()
        values = self._media_values(meta, place)
        columns = ', '.join(values)
        placeholders = ', '.join('?' for _ in values)
        cur = self.conn.cursor()
        cur.execute(f"""
            INSERT INTO media (
                album_id, path, title, fingerprint, content_hash, derivatives_complete,
                imported_at, updated_at, {columns}
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, {placeholders})
        """, (
            album_id, str(path), path.name, fingerprint, content_hash, int(derivatives_complete),
            now_iso, now_iso, *values.values(),
        ))
        if cur.lastrowid is None:
            raise RuntimeError("Database INSERT failed to return a row ID.")
        return cur.lastrowid

    def update_media(self, media_id: int, meta: Metadata, fingerprint: str, content_hash: str,
                     place: Optional[str] = None, derivatives_complete: bool = False):
        """Refreshes a media row in place after its file changed."""
        values = self._media_values(meta, place)
        assignments = ', '.join(f"{col} = ?" for col in values)
        self.conn.execute(f"""
            UPDATE media
            SET fingerprint = ?, content_hash = ?, derivatives_complete = ?, updated_at = ?, {assignments}
            WHERE id = ?
        """, (fingerprint, content_hash, int(derivatives_complete), _now_iso(), *values.values(), media_id))

    def _media_values(self, meta: Metadata, place: Optional[str]) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            'kind': meta.kind,
            'size_bytes': meta.size_bytes,
            'capture_datetime': meta.capture_datetime.isoformat() if meta.capture_datetime else None,
            'width': meta.width,
            'height': meta.height,
            'duration_sec': meta.duration_sec,
            'frame_rate': meta.frame_rate,
            'codec': meta.codec,
            'place': place,
            'phash': meta.phash,
        }
        for col in _EXIF_COLUMNS:
            values[col] = getattr(meta.exif, col)
        return values

    def delete_media(self, media_id: int) -> Optional[str]:
        """Deletes one media row. Returns its content hash for cache eviction."""
        rows = self._query("SELECT content_hash FROM media WHERE id = ?", (media_id,))
        if not rows:
            return None
        self.conn.execute("DELETE FROM media WHERE id = ?", (media_id,))
        return rows[0]['content_hash']

    def count_media_with_content_hash(self, content_hash: str) -> int:
        cur = self.conn.cursor()
        cur.execute("SELECT COUNT(*) FROM media WHERE content_hash = ?", (content_hash,))
        return cur.fetchone()[0]

    def fetch_root_media(self, owner_id: str, root_path: Path) -> List[sqlite3.Row]:
        return self._query("""
            SELECT m.id, m.album_id, m.path, m.fingerprint, m.content_hash, m.derivatives_complete
            FROM media m JOIN albums a ON m.album_id = a.id
            WHERE a.owner_id = ? AND a.root_path = ?
        """, (owner_id, str(root_path)))

    def get_media(self, media_id: int) -> Optional[MediaRecord]:
        rows = self._query("SELECT * FROM media WHERE id = ?", (media_id,))
        return self._row_to_media(rows[0]) if rows else None

    def get_media_by_path(self, path: Path) -> Optional[MediaRecord]:
        rows = self._query("SELECT * FROM media WHERE path = ? ORDER BY id LIMIT 1", (str(path),))
        return self._row_to_media(rows[0]) if rows else None

    def list_album_media(self, album_id: int) -> List[MediaRecord]:
        rows = self._query(
            "SELECT * FROM media WHERE album_id = ? ORDER BY capture_datetime, title", (album_id,))
        return [self._row_to_media(r) for r in rows]

    def _row_to_media(self, r: sqlite3.Row) -> MediaRecord:
        exif = MediaExif(**{col: r[col] for col in _EXIF_COLUMNS})
        return MediaRecord(
            id=r['id'], album_id=r['album_id'], path=Path(r['path']), title=r['title'],
            kind=r['kind'], fingerprint=r['fingerprint'], content_hash=r['content_hash'],
            size_bytes=r['size_bytes'], capture_datetime=_dt_or_none(r['capture_datetime']),
            width=r['width'], height=r['height'], exif=exif, duration_sec=r['duration_sec'],
            place=r['place'], phash=r['phash'],
            derivatives_complete=bool(r['derivatives_complete']),
        )

    # --- Derivatives ---

    def insert_derivative(self, d: Derivative) -> bool:
        """Create-if-absent. Returns False when another writer got there first."""
        cur = self.conn.cursor()
        cur.execute("""
            INSERT OR IGNORE INTO derivatives
            (content_hash, variant, width, height, size_bytes, location, content_type, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (d.content_hash, d.variant, d.width, d.height, d.size_bytes, d.location,
              d.content_type, _now_iso()))
        return cur.rowcount == 1

    def get_derivative(self, content_hash: str, variant: str) -> Optional[Derivative]:
        rows = self._query(
            "SELECT * FROM derivatives WHERE content_hash = ? AND variant = ?", (content_hash, variant))
        return self._row_to_derivative(rows[0]) if rows else None

    def derivatives_for(self, content_hash: str) -> List[Derivative]:
        rows = self._query(
            "SELECT * FROM derivatives WHERE content_hash = ? ORDER BY variant", (content_hash,))
        return [self._row_to_derivative(r) for r in rows]

    def delete_derivatives(self, content_hash: str) -> List[str]:
        """Removes the derivative rows for a hash. Returns their cache locations."""
        locations = [d.location for d in self.derivatives_for(content_hash)]
        self.conn.execute("DELETE FROM derivatives WHERE content_hash = ?", (content_hash,))
        return locations

    def _row_to_derivative(self, r: sqlite3.Row) -> Derivative:
        return Derivative(
            content_hash=r['content_hash'], variant=r['variant'], width=r['width'],
            height=r['height'], size_bytes=r['size_bytes'], location=r['location'],
            content_type=r['content_type'],
        )

    # --- Faces ---

    def replace_face_regions(self, media_id: int, faces: List[FaceRegion]):
        self.conn.execute("DELETE FROM face_regions WHERE media_id = ?", (media_id,))
        self.conn.executemany("""
            INSERT INTO face_regions (media_id, left_pos, top_pos, width, height, label)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [(media_id, f.left, f.top, f.width, f.height, f.label) for f in faces])

    def get_face_regions(self, media_id: int) -> List[FaceRegion]:
        rows = self._query(
            "SELECT left_pos, top_pos, width, height, label FROM face_regions WHERE media_id = ? ORDER BY id",
            (media_id,))
        return [FaceRegion(r['left_pos'], r['top_pos'], r['width'], r['height'], r['label']) for r in rows]

    # --- Share Tokens ---

    def insert_share_token(self, token: ShareToken):
        self.conn.execute("""
            INSERT INTO share_tokens (token, owner_id, album_id, media_id, password_hash, expire, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (token.token, token.owner_id, token.album_id, token.media_id, token.password_hash,
              token.expire.isoformat() if token.expire else None, _now_iso()))

    def get_share_token(self, token: str) -> Optional[ShareToken]:
        rows = self._query("SELECT * FROM share_tokens WHERE token = ?", (token,))
        if not rows:
            return None
        r = rows[0]
        return ShareToken(
            token=r['token'], owner_id=r['owner_id'], album_id=r['album_id'], media_id=r['media_id'],
            password_hash=r['password_hash'], expire=_dt_or_none(r['expire']),
        )

    def delete_share_token(self, token: str):
        self.conn.execute("DELETE FROM share_tokens WHERE token = ?", (token,))

    # --- Scan History ---

    def record_scan_result(self, result: ScanResult, keep: int):
        """Stores a finished scan and prunes that root's history to the newest `keep`."""
        self.conn.execute("""
            INSERT INTO scan_results (root_path, owner_id, started_at, finished_at, aborted, result_json)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (result.root, result.owner_id, result.started_at.isoformat(),
              result.finished_at.isoformat() if result.finished_at else None,
              int(result.aborted), json.dumps(result.to_dict())))
        self.conn.execute("""
            DELETE FROM scan_results
            WHERE root_path = ? AND id NOT IN (
                SELECT id FROM scan_results WHERE root_path = ? ORDER BY id DESC LIMIT ?
            )
        """, (result.root, result.root, keep))

    def fetch_scan_results(self, root: str, limit: int = 1) -> List[ScanResult]:
        rows = self._query(
            "SELECT result_json FROM scan_results WHERE root_path = ? ORDER BY id DESC LIMIT ?",
            (root, limit))
        results = []
        for r in rows:
            try:
                results.append(ScanResult.from_dict(json.loads(r['result_json'])))
            except (ValueError, TypeError, KeyError) as e:
                logging.warning(f"Skipping unreadable scan result for {root}: {e}")
        return results

    # --- Site Info ---

    def get_periodic_scan_interval(self) -> int:
        cur = self.conn.cursor()
        cur.execute("SELECT periodic_scan_interval FROM site_info WHERE id = 1")
        row = cur.fetchone()
        return int(row[0]) if row else 0

    def set_periodic_scan_interval(self, seconds: int):
        self.conn.execute("UPDATE site_info SET periodic_scan_interval = ? WHERE id = 1", (seconds,))
