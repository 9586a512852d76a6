"""
Reconciliation of a filesystem walk against the persisted album/media graph.

The persisted state of a root is loaded once, before the walk, into a
Baseline. The baseline is never updated by the scan's own writes: every
decision (new, changed, unchanged, vanished) is made against what was
committed before the scan started.

Writes are grouped per album directory, one transaction each, so a crash
leaves all completed albums durable and the current one untouched.
"""
import logging
import threading
from concurrent.futures import Executor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from tqdm import tqdm

from . import config
from .database.db import DBManager
from .database.ops import DBOperations
from .derivatives.generator import DerivativeGenerator
from .exceptions import (
    DerivativeError, ExtractionError, FilesystemError, ScanCancelled, TransactionError,
)
from .hooks import FaceDetector, Geocoder, NullFaceDetector, NullGeocoder, ScanListener
from .metadata.extract import MetadataExtractor
from .models import Derivative, FaceRegion, Metadata, RootConfig, ScanItemError, ScanResult
from .scanning.hasher import FileHasher, Fingerprint
from .scanning.walker import WalkEntry

T = TypeVar('T')


# ---------------------- BASELINE ----------------------

@dataclass
class BaselineAlbum:
    id: int
    path: str
    title: str
    parent_id: Optional[int]


@dataclass
class BaselineMedia:
    id: int
    album_id: int
    path: str
    fingerprint: str
    content_hash: str
    derivatives_complete: bool


@dataclass
class Baseline:
    """
    Snapshot of one root's albums and media, indexed by path and by id.
    Parent/child relations are plain id maps, not object references.
    """
    albums_by_path: Dict[str, BaselineAlbum] = field(default_factory=dict)
    albums_by_id: Dict[int, BaselineAlbum] = field(default_factory=dict)
    children: Dict[int, Set[int]] = field(default_factory=dict)
    media_by_path: Dict[str, BaselineMedia] = field(default_factory=dict)
    media_by_album: Dict[int, Set[str]] = field(default_factory=dict)

    @classmethod
    def load(cls, ops: DBOperations, root: RootConfig) -> "Baseline":
        b = cls()
        for r in ops.fetch_root_albums(root.owner_id, root.path):
            album = BaselineAlbum(r['id'], r['path'], r['title'], r['parent_id'])
            b.albums_by_path[album.path] = album
            b.albums_by_id[album.id] = album
            if album.parent_id is not None:
                b.children.setdefault(album.parent_id, set()).add(album.id)
        for r in ops.fetch_root_media(root.owner_id, root.path):
            media = BaselineMedia(r['id'], r['album_id'], r['path'], r['fingerprint'],
                                  r['content_hash'], bool(r['derivatives_complete']))
            b.media_by_path[media.path] = media
            b.media_by_album.setdefault(media.album_id, set()).add(media.path)
        return b

    def subtree_ids(self, album_id: int) -> List[int]:
        out, stack = [], [album_id]
        while stack:
            current = stack.pop()
            out.append(current)
            stack.extend(self.children.get(current, ()))
        return out

    def subtree_media_count(self, album_id: int) -> int:
        return sum(len(self.media_by_album.get(i, ())) for i in self.subtree_ids(album_id))


# ---------------------- PER-FILE WORK ----------------------

@dataclass
class FileOutcome:
    entry: WalkEntry
    fingerprint: Fingerprint
    content_hash: str
    meta: Metadata
    derivatives: List[Derivative] = field(default_factory=list)
    expected_variants: int = 0
    faces: Optional[List[FaceRegion]] = None
    place: Optional[str] = None
    errors: List[ScanItemError] = field(default_factory=list)

    @property
    def derivatives_complete(self) -> bool:
        return len(self.derivatives) == self.expected_variants


@dataclass
class _AlbumBatch:
    entry: WalkEntry
    files: List[WalkEntry] = field(default_factory=list)


class Reconciler:
    def __init__(self,
                 db: DBManager,
                 hasher: FileHasher,
                 extractor: MetadataExtractor,
                 generator: DerivativeGenerator,
                 cpu_pool: Executor,
                 face_detector: Optional[FaceDetector] = None,
                 geocoder: Optional[Geocoder] = None,
                 listener: Optional[ScanListener] = None,
                 show_progress: bool = False):
        self.db = db
        self.hasher = hasher
        self.extractor = extractor
        self.generator = generator
        self.cpu_pool = cpu_pool
        self.face_detector = face_detector or NullFaceDetector()
        self.geocoder = geocoder or NullGeocoder()
        self.listener = listener or ScanListener()
        self.show_progress = show_progress

    def load_baseline(self, root: RootConfig) -> Baseline:
        return Baseline.load(self.db.ops(), root)

    def reconcile(self,
                  root: RootConfig,
                  entries: Iterable[WalkEntry],
                  baseline: Baseline,
                  cancel_event: Optional[threading.Event] = None,
                  result: Optional[ScanResult] = None) -> ScanResult:
        """
        Brings the persisted graph for `root` in line with `entries`.

        Raises ScanCancelled (after finishing the album in flight) when
        cancel_event is set, and StorageConnectionError when the database is
        gone. Everything else is recorded on the returned ScanResult.
        """
        result = result or ScanResult(root=str(root.path), owner_id=root.owner_id,
                                      started_at=datetime.now(UTC))
        run = _ScanRun(self, root, baseline, result)
        cancel_event = cancel_event or threading.Event()

        batch: Optional[_AlbumBatch] = None
        stream = tqdm(entries, desc=f"Scanning {root.path}", unit="entry", disable=not self.show_progress)
        for entry in stream:
            if cancel_event.is_set():
                raise ScanCancelled(f"Scan of {root.path} cancelled")

            if entry.kind == 'dir':
                if batch is not None:
                    run.apply_album(batch)
                batch = _AlbumBatch(entry)
            elif entry.kind == 'file':
                if batch is None:
                    raise ValueError(f"File {entry.path} yielded before any directory")
                batch.files.append(entry)
            else:
                run.record_walk_error(entry)

        if batch is not None:
            if cancel_event.is_set():
                raise ScanCancelled(f"Scan of {root.path} cancelled")
            run.apply_album(batch)

        run.delete_vanished()
        return result


class _ScanRun:
    """State of one reconcile() call."""

    def __init__(self, rec: Reconciler, root: RootConfig, baseline: Baseline, result: ScanResult):
        self.rec = rec
        self.root = root
        self.baseline = baseline
        self.result = result
        self.root_key = str(root.path)

        # Album ids known to this scan: baseline ids plus the ones created so far
        self.album_ids: Dict[str, int] = {p: a.id for p, a in baseline.albums_by_path.items()}
        self.seen_albums: Set[str] = set()
        self.seen_media: Set[str] = set()
        # Paths whose content this scan couldn't observe; never delete under them
        self.protected: Set[str] = set()
        self.touched_hashes: Set[str] = set()

    # --- bookkeeping ---

    def _error(self, path, kind: str, reason: str):
        logging.warning(f"[{kind}] {path}: {reason}")
        self.result.errors.append(ScanItemError(str(path), kind, reason))

    def record_walk_error(self, entry: WalkEntry):
        self.protected.add(str(entry.path))
        self._error(entry.path, 'filesystem', entry.error or 'unreadable')

    def _is_protected(self, path: str) -> bool:
        p = Path(path)
        return any(path == prot or Path(prot) in p.parents for prot in self.protected)

    def _apply(self, label: str, mutation: Callable[[DBOperations], T]) -> T:
        """Runs `mutation` in its own transaction, retrying once on failure."""
        last_error: Optional[TransactionError] = None
        for attempt in range(1 + config.TRANSACTION_RETRIES):
            try:
                with self.rec.db.transaction() as tx:
                    return tx.run(mutation)
            except TransactionError as e:
                last_error = e
                logging.warning(f"Transaction for {label} failed (attempt {attempt + 1}): {e}")
        assert last_error is not None
        raise last_error

    # --- album processing ---

    def apply_album(self, batch: _AlbumBatch):
        album_path = str(batch.entry.path)
        parent_path = str(batch.entry.parent) if batch.entry.parent is not None else None
        self.seen_albums.add(album_path)

        parent_id = None
        if parent_path is not None:
            parent_id = self.album_ids.get(parent_path)
            if parent_id is None:
                # Parent album failed to commit; nothing below it can be linked
                self.protected.add(album_path)
                self._error(album_path, 'transaction', f"parent album {parent_path} was not stored")
                return

        base_album = self.baseline.albums_by_path.get(album_path)
        title = batch.entry.path.name or album_path
        self.rec.listener.album_found(self.root_key, album_path, base_album is None)

        outcomes, skipped = self._process_files(batch)

        needs_album_write = base_album is None or base_album.title != title
        if not needs_album_write and not outcomes:
            self.result.media_skipped += skipped
            return

        def mutation(ops: DBOperations) -> Tuple[int, Dict[str, int]]:
            counts = {'albums_created': 0, 'albums_updated': 0, 'media_created': 0,
                      'media_updated': 0, 'derivatives_generated': 0}
            if base_album is None:
                album_id = ops.insert_album(self.root.owner_id, self.root.path, batch.entry.path,
                                            title, parent_id)
                counts['albums_created'] += 1
            else:
                album_id = base_album.id
                if base_album.title != title:
                    ops.update_album_title(album_id, title)
                    counts['albums_updated'] += 1

            for outcome in outcomes:
                self._store_outcome(ops, album_id, outcome, counts)
            return album_id, counts

        try:
            album_id, counts = self._apply(album_path, mutation)
        except TransactionError as e:
            self.protected.add(album_path)
            self._error(album_path, 'transaction', str(e))
            return

        self.album_ids[album_path] = album_id
        self.result.media_skipped += skipped
        for key, value in counts.items():
            setattr(self.result, key, getattr(self.result, key) + value)

    def _store_outcome(self, ops: DBOperations, album_id: int, outcome: FileOutcome, counts: Dict[str, int]):
        path_key = str(outcome.entry.path)
        existing = self.baseline.media_by_path.get(path_key)

        # The cache may have been evicted by another root since the worker ran;
        # only link derivatives that are still on disk.
        linked = 0
        for d in outcome.derivatives:
            if not self.rec.generator.cache_path(d.content_hash, d.variant).exists():
                continue
            if ops.insert_derivative(d):
                counts['derivatives_generated'] += 1
            linked += 1
        complete = linked == outcome.expected_variants

        if existing is None:
            media_id = ops.insert_media(album_id, outcome.entry.path, outcome.meta,
                                        outcome.fingerprint.value, outcome.content_hash,
                                        place=outcome.place, derivatives_complete=complete)
            counts['media_created'] += 1
        else:
            media_id = existing.id
            unchanged = (existing.fingerprint == outcome.fingerprint.value
                         and existing.content_hash == outcome.content_hash)
            if unchanged and not complete:
                # Derivative retry that failed again: nothing to write
                return
            ops.update_media(media_id, outcome.meta, outcome.fingerprint.value, outcome.content_hash,
                             place=outcome.place, derivatives_complete=complete)
            counts['media_updated'] += 1
            if existing.content_hash != outcome.content_hash:
                self.touched_hashes.add(existing.content_hash)

        if outcome.faces is not None:
            ops.replace_face_regions(media_id, outcome.faces)

    def _process_files(self, batch: _AlbumBatch) -> Tuple[List[FileOutcome], int]:
        """
        Splits the album's files into skipped and to-process, then runs
        extraction + derivative generation on the CPU pool.
        """
        todo: List[Tuple[WalkEntry, Fingerprint]] = []
        skipped = 0
        for entry in batch.files:
            path_key = str(entry.path)
            self.seen_media.add(path_key)
            try:
                fp = self.rec.hasher.fingerprint(entry.path, entry.stat)
            except (FilesystemError, OSError) as e:
                self.protected.add(path_key)
                self._error(path_key, 'filesystem', f"cannot fingerprint: {e}")
                continue

            existing = self.baseline.media_by_path.get(path_key)
            if existing and existing.fingerprint == fp.value and existing.derivatives_complete:
                skipped += 1
                continue
            todo.append((entry, fp))

        if not todo:
            return [], skipped

        futures = {self.rec.cpu_pool.submit(self._process_file, entry, fp): entry for entry, fp in todo}
        outcomes: List[FileOutcome] = []
        total = len(futures)
        for index, future in enumerate(as_completed(futures), start=1):
            entry = futures[future]
            try:
                outcome = future.result()
            except ExtractionError as e:
                self._error(entry.path, 'extraction', f"{e.kind}: {e}")
                continue
            except (FilesystemError, OSError) as e:
                self.protected.add(str(entry.path))
                self._error(entry.path, 'filesystem', str(e))
                continue
            except Exception as e:
                logging.exception(f"Unexpected failure processing {entry.path}")
                self._error(entry.path, 'extraction', f"unexpected: {e}")
                continue

            for err in outcome.errors:
                self._error(err.path, err.kind, err.reason)
            outcomes.append(outcome)
            self.rec.listener.media_processed(
                self.root_key, str(entry.path), str(entry.path) not in self.baseline.media_by_path,
                index, total)
        return outcomes, skipped

    def _process_file(self, entry: WalkEntry, fp: Fingerprint) -> FileOutcome:
        """Runs on the CPU pool. Must not touch the database."""
        content_hash = self.rec.hasher.ensure_content_hash(entry.path, fp)
        meta = self.rec.extractor.extract(entry.path, entry.stat)
        outcome = FileOutcome(entry, fp, content_hash, meta)

        if meta.exif.gps_latitude is not None and meta.exif.gps_longitude is not None:
            try:
                outcome.place = self.rec.geocoder.reverse_geocode(meta.exif.gps_latitude,
                                                                  meta.exif.gps_longitude)
            except Exception as e:
                logging.warning(f"Reverse geocoding failed for {entry.path}: {e}")

        specs = self.rec.generator.variants_for(meta)
        outcome.expected_variants = len(specs)

        with self.rec.generator.decoded(entry.path, meta, content_hash, entry.counterpart) as media:
            for spec in specs:
                try:
                    outcome.derivatives.append(self.rec.generator.generate(media, spec))
                except DerivativeError as e:
                    outcome.errors.append(ScanItemError(str(entry.path), 'derivative', f"{spec.name}: {e}"))
                    if not media.is_decoded:
                        # Source doesn't decode; the remaining variants would fail the same way
                        break

            if meta.kind == 'photo':
                try:
                    outcome.faces = self.rec.face_detector.detect_faces(media)
                except DerivativeError as e:
                    logging.debug(f"Skipping face detection for {entry.path}: {e}")
                except Exception as e:
                    logging.warning(f"Face detection failed for {entry.path}: {e}")

        return outcome

    # --- deletions ---

    def delete_vanished(self):
        """
        Removes baseline albums and media this walk did not see, then evicts
        derivatives nobody references any more.
        """
        b = self.baseline

        vanished_albums = [
            a for p, a in b.albums_by_path.items()
            if p not in self.seen_albums and not self._is_protected(p)
        ]
        vanished_ids = {a.id for a in vanished_albums}
        # Only delete subtree tops; the cascade takes care of the rest
        tops = [a for a in vanished_albums if a.parent_id not in vanished_ids]

        for album in sorted(tops, key=lambda a: a.path):
            subtree = b.subtree_ids(album.id)
            media_count = b.subtree_media_count(album.id)
            try:
                hashes = self._apply(album.path, lambda ops, aid=album.id: ops.delete_album(aid))
            except TransactionError as e:
                self._error(album.path, 'transaction', f"delete failed: {e}")
                continue
            logging.info(f"Deleted album {album.path} ({len(subtree)} albums, {media_count} media)")
            self.result.albums_deleted += len(subtree)
            self.result.media_deleted += media_count
            self.touched_hashes.update(hashes)

        vanished_media: Dict[int, List[BaselineMedia]] = {}
        for p, m in b.media_by_path.items():
            if p in self.seen_media or m.album_id in vanished_ids or self._is_protected(p):
                continue
            vanished_media.setdefault(m.album_id, []).append(m)

        for album_id, media in vanished_media.items():
            label = b.albums_by_id[album_id].path if album_id in b.albums_by_id else str(album_id)

            def mutation(ops: DBOperations, media=media) -> List[str]:
                return [h for h in (ops.delete_media(m.id) for m in media) if h]

            try:
                hashes = self._apply(label, mutation)
            except TransactionError as e:
                self._error(label, 'transaction', f"media delete failed: {e}")
                continue
            for m in media:
                logging.info(f"Deleted media {m.path}")
            self.result.media_deleted += len(media)
            self.touched_hashes.update(hashes)

        self._evict_unreferenced()

    def _evict_unreferenced(self):
        for content_hash in sorted(self.touched_hashes):
            def mutation(ops: DBOperations, h=content_hash) -> int:
                if ops.count_media_with_content_hash(h) > 0:
                    return 0
                ops.delete_derivatives(h)
                # Inside the transaction: a writer linking this hash waits for us
                return self.rec.generator.evict(h)

            try:
                removed = self._apply(f"evict {content_hash}", mutation)
            except TransactionError as e:
                self._error(content_hash, 'transaction', f"eviction failed: {e}")
                continue
            if removed:
                logging.debug(f"Evicted {removed} derivatives for {content_hash}")
                self.result.derivatives_evicted += removed
        self.touched_hashes.clear()
