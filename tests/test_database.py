import pytest
import sqlite3
import threading
from pathlib import Path
from datetime import datetime, timedelta, UTC

from photo_indexer.database.db import DBManager
from photo_indexer.database.schema import init_schema
from photo_indexer.exceptions import StorageConnectionError, TransactionError
from photo_indexer.models import (
    Derivative, FaceRegion, Metadata, ScanItemError, ScanResult, ShareToken,
)


def _meta(**kwargs):
    defaults = dict(kind="photo", ftype="jpeg", size_bytes=1000, mtime=0.0, width=10, height=10,
                    capture_datetime=datetime(2020, 5, 1, 12, 0, 0))
    defaults.update(kwargs)
    return Metadata(**defaults)


def _album_tree(db_ops):
    root = db_ops.insert_album("alice", Path("/photos"), Path("/photos"), "photos", None)
    y2020 = db_ops.insert_album("alice", Path("/photos"), Path("/photos/2020"), "2020", root)
    trip = db_ops.insert_album("alice", Path("/photos"), Path("/photos/2020/trip"), "trip", y2020)
    return root, y2020, trip


def test_schema_is_idempotent(conn):
    init_schema(conn)
    init_schema(conn)
    cur = conn.cursor()
    cur.execute("SELECT COUNT(*) FROM schema_version")
    assert cur.fetchone()[0] == 1
    cur.execute("SELECT COUNT(*) FROM site_info")
    assert cur.fetchone()[0] == 1


def test_album_path_unique_per_owner(db_ops):
    db_ops.insert_album("alice", Path("/photos"), Path("/photos"), "photos", None)
    # Another owner may index the same directory
    db_ops.insert_album("bob", Path("/photos"), Path("/photos"), "photos", None)
    with pytest.raises(sqlite3.IntegrityError):
        db_ops.insert_album("alice", Path("/photos"), Path("/photos"), "photos", None)


def test_delete_album_cascades_and_returns_hashes(db_ops):
    root, y2020, trip = _album_tree(db_ops)
    m1 = db_ops.insert_media(y2020, Path("/photos/2020/a.jpg"), _meta(), "fp1", "hash-a")
    m2 = db_ops.insert_media(trip, Path("/photos/2020/trip/b.jpg"), _meta(), "fp2", "hash-b")
    db_ops.insert_media(root, Path("/photos/c.jpg"), _meta(), "fp3", "hash-c")
    db_ops.replace_face_regions(m2, [FaceRegion(0.1, 0.1, 0.2, 0.2)])
    db_ops.insert_share_token(ShareToken("tok", "alice", album_id=trip))

    hashes = db_ops.delete_album(y2020)

    assert sorted(hashes) == ["hash-a", "hash-b"]
    assert db_ops.get_album(y2020) is None
    assert db_ops.get_album(trip) is None
    assert db_ops.get_media(m1) is None
    assert db_ops.get_media(m2) is None
    assert db_ops.get_face_regions(m2) == []
    assert db_ops.get_share_token("tok") is None
    # Siblings outside the subtree survive
    assert db_ops.get_album(root) is not None
    assert len(db_ops.list_album_media(root)) == 1


def test_media_roundtrip_keeps_exif(db_ops):
    root, _, _ = _album_tree(db_ops)
    meta = _meta()
    meta.exif.camera = "X100V"
    meta.exif.gps_latitude = 48.85
    meta.exif.gps_longitude = 2.35
    media_id = db_ops.insert_media(root, Path("/photos/a.jpg"), meta, "fp", "hash", place="Paris")

    record = db_ops.get_media(media_id)
    assert record.title == "a.jpg"
    assert record.exif.camera == "X100V"
    assert record.exif.gps_latitude == pytest.approx(48.85)
    assert record.place == "Paris"
    assert record.capture_datetime == datetime(2020, 5, 1, 12, 0, 0)
    assert record.derivatives_complete is False

    db_ops.update_media(media_id, _meta(width=20), "fp2", "hash2", derivatives_complete=True)
    record = db_ops.get_media(media_id)
    assert record.width == 20
    assert record.fingerprint == "fp2"
    assert record.content_hash == "hash2"
    assert record.derivatives_complete is True


def test_derivative_insert_is_create_if_absent(db_ops):
    d = Derivative("hash", "thumbnail", 100, 80, 1234, "hash/thumbnail.jpg")
    assert db_ops.insert_derivative(d) is True
    assert db_ops.insert_derivative(d) is False
    assert db_ops.derivatives_for("hash") == [d]

    assert db_ops.delete_derivatives("hash") == ["hash/thumbnail.jpg"]
    assert db_ops.get_derivative("hash", "thumbnail") is None


def test_count_media_with_content_hash(db_ops):
    root, y2020, _ = _album_tree(db_ops)
    db_ops.insert_media(root, Path("/photos/a.jpg"), _meta(), "fp1", "same")
    db_ops.insert_media(y2020, Path("/photos/2020/a.jpg"), _meta(), "fp2", "same")
    assert db_ops.count_media_with_content_hash("same") == 2
    assert db_ops.count_media_with_content_hash("other") == 0


def test_share_token_requires_exactly_one_target(db_ops):
    root, _, _ = _album_tree(db_ops)
    media_id = db_ops.insert_media(root, Path("/photos/a.jpg"), _meta(), "fp", "hash")
    with pytest.raises(sqlite3.IntegrityError):
        db_ops.insert_share_token(ShareToken("both", "alice", album_id=root, media_id=media_id))
    with pytest.raises(sqlite3.IntegrityError):
        db_ops.insert_share_token(ShareToken("neither", "alice"))


def test_scan_history_pruned_per_root(db_ops):
    start = datetime(2024, 1, 1, tzinfo=UTC)
    for i in range(5):
        r = ScanResult(root="/photos", owner_id="alice", started_at=start + timedelta(minutes=i),
                       finished_at=start + timedelta(minutes=i, seconds=30), media_created=i)
        db_ops.record_scan_result(r, keep=3)
    other = ScanResult(root="/other", owner_id="bob", started_at=start,
                       errors=[ScanItemError("/other/x.jpg", "extraction", "unreadable")])
    db_ops.record_scan_result(other, keep=3)

    history = db_ops.fetch_scan_results("/photos", limit=10)
    assert [r.media_created for r in history] == [4, 3, 2]
    assert history[0].finished_at == start + timedelta(minutes=4, seconds=30)

    (loaded,) = db_ops.fetch_scan_results("/other")
    assert loaded.errors == [ScanItemError("/other/x.jpg", "extraction", "unreadable")]
    assert loaded.owner_id == "bob"
    owners = db_ops.conn.execute(
        "SELECT DISTINCT owner_id FROM scan_results WHERE root_path = ?", ("/photos",)).fetchall()
    assert [o[0] for o in owners] == ["alice"]


def test_periodic_interval_persisted(db_ops):
    assert db_ops.get_periodic_scan_interval() == 0
    db_ops.set_periodic_scan_interval(3600)
    assert db_ops.get_periodic_scan_interval() == 3600


# --- DBManager ---

def test_transaction_rolls_back_on_error(db_manager):
    with pytest.raises(RuntimeError):
        with db_manager.transaction() as tx:
            tx.run(lambda ops: ops.insert_album("alice", Path("/p"), Path("/p"), "p", None))
            raise RuntimeError("boom")

    assert db_manager.ops().list_root_albums("alice") == []
    # The write lock was released
    assert db_manager.write_lock.acquire(blocking=False)
    db_manager.write_lock.release()


def test_sqlite_errors_become_transaction_errors(db_manager):
    with pytest.raises(TransactionError):
        with db_manager.transaction() as tx:
            tx.run(lambda ops: ops.insert_album("alice", Path("/p"), Path("/p"), "p", None))
            tx.run(lambda ops: ops.insert_album("alice", Path("/p"), Path("/p"), "p", None))

    assert db_manager.ops().list_root_albums("alice") == []


def test_uncommitted_writes_invisible_to_other_threads(db_manager):
    seen = {}
    inserted = threading.Event()
    checked = threading.Event()

    def reader():
        inserted.wait(5)
        seen["during"] = db_manager.ops().list_root_albums("alice")
        checked.set()

    t = threading.Thread(target=reader)
    t.start()
    with db_manager.transaction() as tx:
        tx.run(lambda ops: ops.insert_album("alice", Path("/p"), Path("/p"), "p", None))
        inserted.set()
        checked.wait(5)
    t.join()

    assert seen["during"] == []
    assert [a.title for a in db_manager.ops().list_root_albums("alice")] == ["p"]


def test_closed_database_is_a_connection_error(db_manager):
    db_manager.connect()
    conn = db_manager.connect()
    conn.close()
    with pytest.raises(StorageConnectionError):
        db_manager.begin_transaction()
