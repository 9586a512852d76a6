import hashlib
import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from .. import config
from ..exceptions import FilesystemError


@dataclass
class Fingerprint:
    """
    value: change-detection signature stored on the media row.
    content_hash: cache key for derivatives, only computed on demand.
    """
    value: str
    size_bytes: int
    mtime: float
    content_hash: Optional[str] = None


class FileHasher:
    def __init__(self, content_hashing: bool = False):
        self.content_hashing = content_hashing

    def fingerprint(self, path: Path, st: Optional[os.stat_result] = None) -> Fingerprint:
        """
        Computes the change-detection fingerprint for a file.

        Default: size + mtime only, no file read. A same-size rewrite that
        keeps the mtime goes unnoticed.
        With content_hashing on, the content hash is mixed in, which costs a
        read of the file on every scan.
        """
        try:
            st = st or path.stat()
        except OSError as e:
            raise FilesystemError(f"Cannot stat {path}: {e}") from e
        h = hashlib.sha256()
        h.update(f"{st.st_size}:{st.st_mtime_ns}".encode('ascii'))

        content_hash = None
        if self.content_hashing:
            content_hash = self.content_hash(path)
            h.update(content_hash.encode('ascii'))

        return Fingerprint(h.hexdigest(), st.st_size, st.st_mtime, content_hash)

    def content_hash(self, path: Path) -> str:
        """
        Computes the content hash used to key derivatives: SHA-256 of the
        whole file. Two files share a key only when they are byte-identical,
        so one file's cache entries never stand in for another's.

        Only called for new or changed files, so a large library pays the
        full read once.
        """
        try:
            return self._full_sha256(path)
        except OSError as e:
            raise FilesystemError(f"Cannot read {path}: {e}") from e

    def ensure_content_hash(self, path: Path, fp: Fingerprint) -> str:
        if fp.content_hash is None:
            fp.content_hash = self.content_hash(path)
        return fp.content_hash

    def _full_sha256(self, path: Path) -> str:
        """Reads entire file. High I/O cost."""
        h = hashlib.sha256()
        with open(path, 'rb') as f:
            while chunk := f.read(config.HASH_CHUNK_SIZE):
                h.update(chunk)
        return h.hexdigest()
