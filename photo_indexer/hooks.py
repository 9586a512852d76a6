"""
Optional capabilities plugged into the scanner.

Face detection and reverse geocoding are external services. The scanner is
always constructed with an implementation of each interface; the defaults do
nothing, so the algorithm never checks whether a feature is configured.
"""
import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, List, Optional

from .models import FaceRegion, ScanResult

if TYPE_CHECKING:
    from .derivatives.generator import DecodedMedia


class FaceDetector:
    """
    Interface. `media.image` holds the decoded, orientation-corrected pixels;
    it is decoded on first access, so detectors that don't look cost nothing.
    """

    def detect_faces(self, media: "DecodedMedia") -> List[FaceRegion]:
        raise NotImplementedError


class NullFaceDetector(FaceDetector):
    def detect_faces(self, media: "DecodedMedia") -> List[FaceRegion]:
        return []


class Geocoder:
    """Interface. Returns a human readable place name or None."""

    def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        raise NotImplementedError


class NullGeocoder(Geocoder):
    def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        return None


class ScanListener:
    """
    Progress callbacks for the API layer (notifications, websockets...).
    Called from scan worker threads; implementations must not block for long.
    """

    def album_found(self, root: str, album_path: str, is_new: bool):
        pass

    def media_processed(self, root: str, media_path: str, is_new: bool, index: int, total: int):
        pass

    def scan_finished(self, result: ScanResult):
        pass


class LoggingScanListener(ScanListener):
    """
    Default listener. Progress lines are throttled so large albums don't flood the log.
    """

    def __init__(self, min_interval: float = 0.5, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last = float('-inf')
        self._lock = threading.Lock()

    def _should_emit(self) -> bool:
        with self._lock:
            now = self._clock()
            if now - self._last < self.min_interval:
                return False
            self._last = now
            return True

    def album_found(self, root: str, album_path: str, is_new: bool):
        if is_new:
            logging.info(f"Found new album: {album_path}")

    def media_processed(self, root: str, media_path: str, is_new: bool, index: int, total: int):
        if self._should_emit():
            progress = (index / total * 100.0) if total else 100.0
            logging.info(f"[{root}] processed {media_path} ({progress:.0f}% of album)")

    def scan_finished(self, result: ScanResult):
        logging.info(
            f"Scan of {result.root} finished: "
            f"{result.media_created} new, {result.media_updated} updated, "
            f"{result.media_deleted} deleted, {result.error_count} errors"
        )
