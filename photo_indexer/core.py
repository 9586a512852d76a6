import hashlib
import hmac
import logging
import secrets
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, UTC
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .config import IndexerSettings
from .database.db import DBManager
from .derivatives.generator import DerivativeGenerator
from .exceptions import ScanCancelled, ShareTokenError, StorageConnectionError
from .hooks import FaceDetector, Geocoder, LoggingScanListener, ScanListener
from .metadata.extract import MetadataExtractor
from .models import (
    Album, AlreadyRunning, Derivative, MediaRecord, RootConfig, ScanResult, ScanStatus, ShareToken,
)
from .reconcile import Reconciler
from .reporting import StatusReporter
from .scheduler import ScanScheduler
from .scanning.hasher import FileHasher
from .scanning.walker import DirectoryWalker

PASSWORD_ITERATIONS = 200_000


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    salt = salt or secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), salt, PASSWORD_ITERATIONS)
    return f"pbkdf2_sha256${PASSWORD_ITERATIONS}${salt.hex()}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, iterations, salt_hex, digest_hex = stored.split('$')
        digest = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), bytes.fromhex(salt_hex),
                                     int(iterations))
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)


class PhotoIndexerApp:
    """
    Wires the scanning pipeline together and is the only surface the API
    layer talks to: scan triggers, scan status and committed read access.
    """

    def __init__(self,
                 settings: IndexerSettings,
                 roots: Iterable[RootConfig] = (),
                 face_detector: Optional[FaceDetector] = None,
                 geocoder: Optional[Geocoder] = None,
                 listener: Optional[ScanListener] = None,
                 ffmpeg_path: Optional[str] = None):
        self.settings = settings
        self.db_manager = DBManager(settings.db_path)
        self.listener = listener or LoggingScanListener()

        self.walker = DirectoryWalker(
            exclude_patterns=settings.exclude_patterns,
            ignore_hidden=settings.ignore_hidden,
            follow_symlinks=settings.follow_symlinks,
            skip_raw_counterparts=settings.skip_raw_counterparts,
        )
        self.generator = DerivativeGenerator(
            settings.cache_dir,
            variants=settings.variants,
            max_source_pixels=settings.max_source_pixels,
            ffmpeg_path=ffmpeg_path,
        )

        # Decode/resize work, shared by every root so parallel scans can't oversubscribe the CPU
        self.cpu_pool = ThreadPoolExecutor(max_workers=max(1, settings.cpu_workers),
                                           thread_name_prefix="derive")
        self.reconciler = Reconciler(
            self.db_manager,
            FileHasher(content_hashing=settings.content_hashing),
            MetadataExtractor(compute_phash=settings.compute_phash),
            self.generator,
            self.cpu_pool,
            face_detector=face_detector,
            geocoder=geocoder,
            listener=self.listener,
            show_progress=settings.show_progress,
        )

        self.reporter = StatusReporter(history_loader=self._load_last_result)

        self.scheduler = ScanScheduler(
            self.run_scan,
            self.reporter,
            roots=roots,
            max_concurrent_scans=settings.max_concurrent_scans,
            interval=settings.periodic_scan_interval,
        )

    # --- lifecycle ---

    def start(self):
        """Starts the scheduler. A persisted interval overrides the settings default."""
        stored = self.db_manager.ops().get_periodic_scan_interval()
        if stored > 0:
            self.scheduler.set_interval(stored)
        self.scheduler.start()

    def shutdown(self):
        self.scheduler.stop(wait=True)
        self.cpu_pool.shutdown(wait=True)
        self.db_manager.close()

    def __enter__(self) -> "PhotoIndexerApp":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def set_periodic_scan_interval(self, seconds: int):
        with self.db_manager.transaction() as tx:
            tx.run(lambda ops: ops.set_periodic_scan_interval(seconds))
        self.scheduler.set_interval(seconds)

    def set_roots(self, roots: Iterable[RootConfig]):
        self.scheduler.set_roots(roots)

    # --- scanning ---

    def run_scan(self, root: RootConfig, cancel_event: Optional[threading.Event] = None) -> ScanResult:
        """
        Runs one full scan of a root. Never raises: aborts are reported on
        the result. The scheduler guarantees no other scan of this root runs.
        """
        cancel_event = cancel_event or threading.Event()
        result = ScanResult(root=str(root.path), owner_id=root.owner_id, started_at=datetime.now(UTC))
        self.reporter.scan_started(result)
        logging.info(f"Scanning {root.path} (owner={root.owner_id})...")

        try:
            baseline = self.reconciler.load_baseline(root)
            self.reconciler.reconcile(root, self.walker.walk(root.path), baseline,
                                      cancel_event=cancel_event, result=result)
        except ScanCancelled as e:
            result.aborted = True
            result.abort_reason = "cancelled"
            logging.warning(str(e))
        except StorageConnectionError as e:
            result.aborted = True
            result.abort_reason = f"storage unavailable: {e}"
            logging.error(f"Scan of {root.path} aborted: {e}")
        except Exception as e:
            result.aborted = True
            result.abort_reason = f"internal error: {e}"
            logging.exception(f"Scan of {root.path} aborted by an unexpected error")

        result.finished_at = datetime.now(UTC)
        self._persist_result(result)
        self.reporter.scan_finished(result)
        self.listener.scan_finished(result)
        return result

    def trigger_scan(self, root_path: Union[str, Path]) -> Union[ScanResult, AlreadyRunning]:
        return self.scheduler.trigger_scan(root_path)

    def get_scan_status(self, root_path: Union[str, Path]) -> ScanStatus:
        status = self.reporter.get_status(str(root_path))
        status.state = self.scheduler.state_of(root_path)
        return status

    def _persist_result(self, result: ScanResult):
        try:
            with self.db_manager.transaction() as tx:
                tx.run(lambda ops: ops.record_scan_result(result, self.settings.result_history))
        except Exception as e:
            logging.error(f"Could not store scan result for {result.root}: {e}")

    def _load_last_result(self, root: str) -> Optional[ScanResult]:
        results = self.db_manager.ops().fetch_scan_results(root, limit=1)
        return results[0] if results else None

    def scan_history(self, root_path: Union[str, Path], limit: Optional[int] = None) -> List[ScanResult]:
        return self.db_manager.ops().fetch_scan_results(str(root_path), limit or self.settings.result_history)

    # --- read access (committed data only) ---

    def get_album(self, album_id: int) -> Optional[Album]:
        return self.db_manager.ops().get_album(album_id)

    def list_root_albums(self, owner_id: str) -> List[Album]:
        return self.db_manager.ops().list_root_albums(owner_id)

    def list_child_albums(self, album_id: int) -> List[Album]:
        return self.db_manager.ops().list_child_albums(album_id)

    def list_album_media(self, album_id: int) -> List[MediaRecord]:
        return self.db_manager.ops().list_album_media(album_id)

    def get_media(self, media_id: int) -> Optional[MediaRecord]:
        return self.db_manager.ops().get_media(media_id)

    def get_derivatives(self, media_id: int) -> List[Derivative]:
        media = self.get_media(media_id)
        if media is None:
            return []
        return self.db_manager.ops().derivatives_for(media.content_hash)

    def thumbnail_path(self, media_id: int) -> Optional[Path]:
        media = self.get_media(media_id)
        if media is None:
            return None
        variant = 'video-thumbnail' if media.kind == 'video' else 'thumbnail'
        d = self.db_manager.ops().get_derivative(media.content_hash, variant)
        return self.settings.cache_dir / d.location if d else None

    def download_path(self, media_id: int, variant: str = 'high-res') -> Optional[Path]:
        """Path of a download variant, or of the original when the variant doesn't exist."""
        media = self.get_media(media_id)
        if media is None:
            return None
        d = self.db_manager.ops().get_derivative(media.content_hash, variant)
        if d:
            return self.settings.cache_dir / d.location
        return media.path

    # --- share tokens ---

    def create_share_token(self, owner_id: str, album_id: Optional[int] = None,
                           media_id: Optional[int] = None, password: Optional[str] = None,
                           expire: Optional[datetime] = None) -> ShareToken:
        if (album_id is None) == (media_id is None):
            raise ShareTokenError("A share token needs exactly one of album_id or media_id")

        ops = self.db_manager.ops()
        target = ops.get_album(album_id) if album_id is not None else ops.get_media(media_id)
        if target is None:
            raise ShareTokenError("Share target does not exist")

        token = ShareToken(
            token=secrets.token_urlsafe(12),
            owner_id=owner_id,
            album_id=album_id,
            media_id=media_id,
            password_hash=hash_password(password) if password else None,
            expire=expire,
        )
        with self.db_manager.transaction() as tx:
            tx.run(lambda o: o.insert_share_token(token))
        return token

    def revoke_share_token(self, token: str):
        with self.db_manager.transaction() as tx:
            tx.run(lambda ops: ops.delete_share_token(token))

    def resolve_share_token(self, token: str, password: Optional[str] = None,
                            now: Optional[datetime] = None) -> Optional[Union[Album, MediaRecord]]:
        """
        Returns the shared album or media, or None when the token is unknown,
        expired, password protected with a wrong password, or its target is gone.
        """
        ops = self.db_manager.ops()
        share = ops.get_share_token(token)
        if share is None:
            return None

        now = now or datetime.now(UTC)
        if share.expire is not None:
            expire = share.expire if share.expire.tzinfo else share.expire.replace(tzinfo=UTC)
            if expire <= now:
                return None

        if share.password_hash and not (password and verify_password(password, share.password_hash)):
            return None

        if share.album_id is not None:
            return ops.get_album(share.album_id)
        return ops.get_media(share.media_id)
