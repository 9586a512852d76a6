import os
import pytest
import sqlite3
from pathlib import Path

from PIL import Image

from photo_indexer.config import IndexerSettings
from photo_indexer.core import PhotoIndexerApp
from photo_indexer.database.db import DBManager
from photo_indexer.database.schema import init_schema
from photo_indexer.database.ops import DBOperations
from photo_indexer.models import RootConfig

@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with the schema initialized."""
    c = sqlite3.connect(":memory:", isolation_level=None)
    c.execute("PRAGMA foreign_keys=ON;")
    init_schema(c)
    try:
        yield c
    finally:
        c.close()

@pytest.fixture
def db_ops(conn):
    """Returns a DBOperations instance attached to the in-memory DB."""
    return DBOperations(conn)

@pytest.fixture
def db_manager(tmp_path):
    """File backed manager; per-thread connections need a real file."""
    manager = DBManager(tmp_path / "index.db")
    try:
        yield manager
    finally:
        manager.close()

def write_jpeg(path: Path, size=(64, 48), color=(200, 30, 30), exif=None, mtime=None) -> Path:
    """Writes a small real JPEG. `exif` is a PIL Image.Exif."""
    path.parent.mkdir(parents=True, exist_ok=True)
    im = Image.new("RGB", size, color)
    if exif is not None:
        im.save(path, format="JPEG", exif=exif)
    else:
        im.save(path, format="JPEG")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path

@pytest.fixture
def make_jpeg():
    return write_jpeg

@pytest.fixture
def settings(tmp_path):
    return IndexerSettings(
        db_path=tmp_path / "index.db",
        cache_dir=tmp_path / "cache",
        cpu_workers=2,
        max_concurrent_scans=2,
    )

@pytest.fixture
def library(tmp_path):
    root = tmp_path / "photos"
    root.mkdir()
    return root

@pytest.fixture
def app(settings, library):
    """A started app with one root owned by 'alice'. Videos never reach ffmpeg."""
    a = PhotoIndexerApp(settings, [RootConfig("alice", library)], ffmpeg_path="")
    a.start()
    try:
        yield a
    finally:
        a.shutdown()
