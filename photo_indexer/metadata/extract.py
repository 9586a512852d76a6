import logging
import os
from pathlib import Path
from datetime import datetime
from typing import Optional, Tuple, Dict, Any

import exifread
import imagehash
from PIL import Image, UnidentifiedImageError
from psd_tools import PSDImage

from .. import config
from ..exceptions import ExtractionError
from ..models import MediaExif, Metadata

# MediaInfo needs the native libmediainfo; without it videos are indexed from stat only.
MediaInfo: Any = None
try:
    from pymediainfo import MediaInfo
except ImportError:
    MediaInfo = None


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        num = getattr(value, 'num', None)
        den = getattr(value, 'den', None)
        if num is not None and den:
            return num / den
        return None


def _first_float(tag) -> Optional[float]:
    try:
        return _to_float(tag.values[0])
    except (AttributeError, IndexError, TypeError):
        return None


def _first_int(tag) -> Optional[int]:
    try:
        return int(tag.values[0])
    except (AttributeError, IndexError, TypeError, ValueError):
        return None


class MetadataExtractor:
    """
    Unified interface for extracting metadata from media files.

    Strategies:
      - Images: 'Pillow' to prove the file decodes and get dimensions,
        'exifread' for EXIF tags, 'psd-tools' for Photoshop documents.
      - Video: 'pymediainfo'.

    Missing or broken metadata never fails extraction; only a file that
    can't be decoded at all raises ExtractionError.
    """

    def __init__(self, compute_phash: bool = False):
        self.compute_phash = compute_phash

    def extract(self, path: Path, st: Optional[os.stat_result] = None) -> Metadata:
        ext = path.suffix.lower()
        ftype = config.EXT_TO_TYPE.get(ext)
        if ftype is None:
            raise ExtractionError(f"Unsupported file type: {path.name}", kind='unsupported')

        try:
            st = st or path.stat()
        except OSError as e:
            raise ExtractionError(f"Cannot stat {path}: {e}", kind='unreadable') from e

        meta = Metadata(
            kind='video' if ftype == 'video' else 'photo',
            ftype=ftype,
            size_bytes=st.st_size,
            mtime=st.st_mtime,
        )

        if ftype == 'video':
            self._fill_video(path, meta)
        else:
            self._fill_image(path, meta)

        if not meta.capture_datetime:
            meta.capture_datetime = datetime.fromtimestamp(st.st_mtime)
        return meta

    # --- Images ---

    def _fill_image(self, path: Path, meta: Metadata):
        tags = self._read_exif_tags(path)

        decoded = False
        if meta.ftype == 'psd':
            decoded = self._fill_psd_dimensions(path, meta)
        else:
            decoded = self._fill_pillow_dimensions(path, meta)

        # RAW files are often beyond Pillow; readable EXIF is proof enough
        if not decoded and meta.ftype == 'raw' and tags:
            meta.width = _first_int(tags.get('EXIF ExifImageWidth'))
            meta.height = _first_int(tags.get('EXIF ExifImageLength'))
            decoded = True

        if not decoded:
            raise ExtractionError(f"Not a decodable image: {path}", kind='unreadable')

        meta.capture_datetime = self._parse_exif_date(tags)
        meta.exif = self._parse_exif_fields(tags)

    def _fill_pillow_dimensions(self, path: Path, meta: Metadata) -> bool:
        try:
            with Image.open(path) as im:
                meta.width, meta.height = im.size
                if self.compute_phash:
                    meta.phash = str(imagehash.phash(im))
            return True
        except Image.DecompressionBombError as e:
            raise ExtractionError(f"Image too large to index: {path} ({e})", kind='too_large') from e
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            logging.debug(f"Pillow cannot open {path}: {e}")
            return False

    def _fill_psd_dimensions(self, path: Path, meta: Metadata) -> bool:
        try:
            psd = PSDImage.open(path)
            meta.width, meta.height = psd.width, psd.height
            return True
        except Exception as e:
            logging.debug(f"psd-tools cannot open {path}: {e}")
            return False

    def _read_exif_tags(self, path: Path) -> Dict[str, Any]:
        try:
            with path.open('rb') as f:
                # details=False skips MakerNotes, which is most of the cost
                return exifread.process_file(f, details=False) or {}
        except Exception as e:
            logging.warning(f"ExifRead failed for {path}: {e}")
            return {}

    def _parse_exif_fields(self, tags: Dict[str, Any]) -> MediaExif:
        exif = MediaExif()
        if not tags:
            return exif

        def text(key: str) -> Optional[str]:
            if key in tags:
                value = str(tags[key]).strip()
                return value or None
            return None

        exif.camera = text('Image Model')
        exif.maker = text('Image Make')
        exif.lens = text('EXIF LensModel')
        exif.exposure = text('EXIF ExposureTime')
        exif.exposure_program = _first_int(tags.get('EXIF ExposureProgram'))
        exif.iso = _first_int(tags.get('EXIF ISOSpeedRatings'))
        exif.flash = _first_int(tags.get('EXIF Flash'))
        exif.orientation = _first_int(tags.get('Image Orientation'))

        exif.aperture = _first_float(tags.get('EXIF FNumber'))
        exif.focal_length = _first_float(tags.get('EXIF FocalLength'))

        exif.gps_latitude, exif.gps_longitude = self._parse_gps(tags)
        return exif

    def _parse_gps(self, tags: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
        def coord(value_key: str, ref_key: str, negative_ref: str) -> Optional[float]:
            tag = tags.get(value_key)
            if tag is None:
                return None
            try:
                d, m, s = (_to_float(v) for v in tag.values[:3])
            except (AttributeError, TypeError, ValueError):
                return None
            if d is None or m is None or s is None:
                return None
            result = d + m / 60.0 + s / 3600.0
            if str(tags.get(ref_key, '')).strip().upper() == negative_ref:
                result = -result
            return result

        lat = coord('GPS GPSLatitude', 'GPS GPSLatitudeRef', 'S')
        lon = coord('GPS GPSLongitude', 'GPS GPSLongitudeRef', 'W')
        if lat is None or lon is None:
            return None, None
        return lat, lon

    def _parse_exif_date(self, tags) -> Optional[datetime]:
        """Helper to parse standard EXIF date strings from exifread."""
        for tag in config.DATE_TAGS:
            if tag in tags:
                try:
                    # EXIF format is usually "YYYY:MM:DD HH:MM:SS"
                    dt_str = str(tags[tag]).replace(':', '-', 2)
                    return datetime.strptime(dt_str, "%Y-%m-%d %H:%M:%S")
                except ValueError:
                    continue
        return None

    # --- Video ---

    def _fill_video(self, path: Path, meta: Metadata):
        if MediaInfo is None:
            logging.debug(f"MediaInfo unavailable, indexing {path.name} without stream info")
            return

        try:
            mi = MediaInfo.parse(str(path))
        except Exception as e:
            raise ExtractionError(f"MediaInfo cannot parse {path}: {e}", kind='unreadable') from e

        has_video = False
        for track in mi.tracks:
            if track.track_type == "General":
                # MediaInfo duration is in milliseconds
                duration_ms = _to_float(getattr(track, "duration", None))
                if duration_ms is not None:
                    meta.duration_sec = duration_ms / 1000.0

                for field in ("recorded_date", "encoded_date", "tagged_date"):
                    val = getattr(track, field, None)
                    if val:
                        dt = self._parse_flexible_date(str(val))
                        if dt:
                            meta.capture_datetime = dt
                            break

                meta.exif.camera = (
                    getattr(track, "device_model", None) or
                    getattr(track, "performer", None)
                )
            elif track.track_type == "Video":
                has_video = True
                meta.width = _to_int(getattr(track, "width", None))
                meta.height = _to_int(getattr(track, "height", None))
                meta.frame_rate = _to_float(getattr(track, "frame_rate", None))
                meta.codec = getattr(track, "format", None)

        if not has_video:
            raise ExtractionError(f"No video stream in {path}", kind='unreadable')

    def _parse_flexible_date(self, dt_str: str) -> Optional[datetime]:
        """
        Handles various date formats (ISO, UTC suffixes, MediaInfo quirks).
        Returns a naive datetime object.
        """
        if not dt_str:
            return None

        clean = dt_str.replace("UTC", "").strip()

        try:
            return datetime.fromisoformat(clean)
        except ValueError:
            pass

        try:
            clean_exif = clean.replace(":", "-", 2)
            if "." in clean_exif:
                clean_exif = clean_exif.split(".")[0]
            return datetime.strptime(clean_exif, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            pass

        return None


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
