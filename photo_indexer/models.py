from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any


@dataclass(frozen=True)
class RootConfig:
    """A configured library root and the user that owns it."""
    owner_id: str
    path: Path


@dataclass
class MediaExif:
    camera: Optional[str] = None
    maker: Optional[str] = None
    lens: Optional[str] = None
    exposure: Optional[str] = None          # e.g. "1/250"
    exposure_program: Optional[int] = None
    aperture: Optional[float] = None
    iso: Optional[int] = None
    focal_length: Optional[float] = None
    flash: Optional[int] = None
    orientation: Optional[int] = None
    gps_latitude: Optional[float] = None
    gps_longitude: Optional[float] = None

    def is_empty(self) -> bool:
        return all(v is None for v in asdict(self).values())


@dataclass
class Metadata:
    """
    Everything the extractor learns about one file.
    """
    kind: str                # photo/video
    ftype: str               # raw/jpeg/web/tiff/psd/image/video
    size_bytes: int
    mtime: float
    width: Optional[int] = None
    height: Optional[int] = None
    capture_datetime: Optional[datetime] = None
    exif: MediaExif = field(default_factory=MediaExif)

    # Video only
    duration_sec: Optional[float] = None
    frame_rate: Optional[float] = None
    codec: Optional[str] = None

    phash: Optional[str] = None


@dataclass
class Album:
    id: int
    path: Path
    title: str
    parent_id: Optional[int]
    owner_id: str
    root_path: Path


@dataclass
class MediaRecord:
    id: int
    album_id: int
    path: Path
    title: str
    kind: str
    fingerprint: str
    content_hash: str
    size_bytes: int
    capture_datetime: Optional[datetime]
    width: Optional[int] = None
    height: Optional[int] = None
    exif: MediaExif = field(default_factory=MediaExif)
    duration_sec: Optional[float] = None
    place: Optional[str] = None
    phash: Optional[str] = None
    derivatives_complete: bool = False


@dataclass
class Derivative:
    """A generated artifact, content addressed by (content_hash, variant)."""
    content_hash: str
    variant: str
    width: int
    height: int
    size_bytes: int
    location: str           # relative to the cache dir
    content_type: str = 'image/jpeg'


@dataclass(frozen=True)
class FaceRegion:
    """Face bounding box in relative (0..1) image coordinates."""
    left: float
    top: float
    width: float
    height: float
    label: Optional[str] = None


@dataclass
class ShareToken:
    token: str
    owner_id: str
    album_id: Optional[int] = None
    media_id: Optional[int] = None
    password_hash: Optional[str] = None
    expire: Optional[datetime] = None


class ScanState(str, Enum):
    IDLE = 'idle'
    SCANNING = 'scanning'


@dataclass
class ScanItemError:
    path: str
    kind: str              # filesystem/extraction/derivative/transaction
    reason: str


@dataclass
class ScanResult:
    root: str
    owner_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    albums_created: int = 0
    albums_updated: int = 0
    albums_deleted: int = 0
    media_created: int = 0
    media_updated: int = 0
    media_deleted: int = 0
    media_skipped: int = 0
    derivatives_generated: int = 0
    derivatives_evicted: int = 0
    errors: List[ScanItemError] = field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def mutation_count(self) -> int:
        return (self.albums_created + self.albums_updated + self.albums_deleted
                + self.media_created + self.media_updated + self.media_deleted)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['started_at'] = self.started_at.isoformat()
        d['finished_at'] = self.finished_at.isoformat() if self.finished_at else None
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ScanResult":
        d = dict(d)
        d['started_at'] = datetime.fromisoformat(d['started_at'])
        if d.get('finished_at'):
            d['finished_at'] = datetime.fromisoformat(d['finished_at'])
        d['errors'] = [ScanItemError(**e) for e in d.get('errors', [])]
        return cls(**d)


@dataclass(frozen=True)
class AlreadyRunning:
    """Returned instead of a ScanResult when the root is already being scanned."""
    root: str
    followup_queued: bool = False


@dataclass
class ScanStatus:
    root: str
    state: ScanState
    last_result: Optional[ScanResult]
    message: Optional[str] = None

    @property
    def has_run(self) -> bool:
        return self.last_result is not None
