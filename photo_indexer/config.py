"""
Configuration constants and runtime settings for the photo indexer.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

# --- File Type Definitions ---
RAW_EXTS = {'.cr2', '.cr3', '.nef', '.arw', '.orf', '.rw2', '.dng', '.raf', '.pef'}
JPEG_EXTS = {'.jpg', '.jpeg', '.jpe'}
WEB_IMAGE_EXTS = {'.gif', '.png', '.webp'}
VIDEO_EXTS = {'.mp4', '.mov', '.m4v', '.avi', '.mts', '.m2ts', '.3gp', '.mpg', '.mpeg', '.mkv', '.webm'}
PSD_EXTS = {'.psd', '.psb'}
TIFF_EXTS = {'.tif', '.tiff'}
OTHER_IMAGE_EXTS = {'.bmp'}

# Extension to Type Mapping
EXT_TO_TYPE = {}
for ext in RAW_EXTS: EXT_TO_TYPE[ext] = 'raw'
for ext in JPEG_EXTS: EXT_TO_TYPE[ext] = 'jpeg'
for ext in WEB_IMAGE_EXTS: EXT_TO_TYPE[ext] = 'web'
for ext in VIDEO_EXTS: EXT_TO_TYPE[ext] = 'video'
for ext in PSD_EXTS: EXT_TO_TYPE[ext] = 'psd'
for ext in TIFF_EXTS: EXT_TO_TYPE[ext] = 'tiff'
for ext in OTHER_IMAGE_EXTS: EXT_TO_TYPE[ext] = 'image'

# Browsers can show these directly, no high-res copy needed
WEB_COMPATIBLE_TYPES = {'jpeg', 'web'}


def media_kind(path: Path) -> Optional[str]:
    """Returns 'photo', 'video' or None for non-media files."""
    ftype = EXT_TO_TYPE.get(path.suffix.lower())
    if ftype is None:
        return None
    return 'video' if ftype == 'video' else 'photo'


# --- Metadata Parsing ---
DATE_TAGS = [
    'EXIF DateTimeOriginal',
    'EXIF DateTimeDigitized',
    'Image DateTime',
]

# --- Hashing ---
HASH_CHUNK_SIZE = 64 * 1024

# --- Walking ---
IGNORE_FILE_NAME = '.photoview_ignore'

# --- Derivatives ---
# Pillow refuses anything above this outright; we downsample on decode below it.
DEFAULT_MAX_SOURCE_PIXELS = 100_000_000
DERIVATIVE_EXT = 'jpg'


@dataclass(frozen=True)
class VariantSpec:
    """A named derivative size. max_size bounds the longest edge."""
    name: str
    max_size: int
    quality: int = 80
    kinds: tuple = ('photo',)
    # Only generated when the original can't be shown by a browser
    only_if_not_web: bool = False


DEFAULT_VARIANTS = (
    VariantSpec('thumbnail', 1024, quality=70),
    VariantSpec('high-res', 4096, quality=85, only_if_not_web=True),
    VariantSpec('video-thumbnail', 1024, quality=70, kinds=('video',)),
)

# --- Scanning ---
DEFAULT_PERIODIC_SCAN_INTERVAL = 0  # seconds, 0 = disabled
DEFAULT_RESULT_HISTORY = 10
TRANSACTION_RETRIES = 1


@dataclass
class IndexerSettings:
    db_path: Path = Path('photo_index.db')
    cache_dir: Path = Path('media_cache')
    exclude_patterns: List[str] = field(default_factory=list)
    ignore_hidden: bool = True
    follow_symlinks: bool = True
    # Hash file bytes into the change-detection fingerprint (slow, exact)
    content_hashing: bool = False
    max_source_pixels: int = DEFAULT_MAX_SOURCE_PIXELS
    cpu_workers: int = field(default_factory=lambda: os.cpu_count() or 2)
    max_concurrent_scans: int = 2
    periodic_scan_interval: int = DEFAULT_PERIODIC_SCAN_INTERVAL
    result_history: int = DEFAULT_RESULT_HISTORY
    skip_raw_counterparts: bool = True
    compute_phash: bool = False
    show_progress: bool = False
    variants: tuple = DEFAULT_VARIANTS

    @classmethod
    def from_json(cls, path: Path) -> "IndexerSettings":
        """Loads settings from a JSON file; unknown keys are rejected."""
        with path.open('r', encoding='utf-8') as f:
            raw = json.load(f)

        known = set(cls.__dataclass_fields__)
        unknown = set(raw) - known
        if unknown:
            raise ValueError(f"Unknown settings keys: {sorted(unknown)}")

        for key in ('db_path', 'cache_dir'):
            if key in raw:
                raw[key] = Path(raw[key])
        if 'variants' in raw:
            raw['variants'] = tuple(
                VariantSpec(**{**v, 'kinds': tuple(v.get('kinds', ('photo',)))})
                for v in raw['variants']
            )
        return cls(**raw)
