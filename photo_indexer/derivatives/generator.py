import io
import logging
import os
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Iterable, List, Optional

from PIL import Image, ImageOps, UnidentifiedImageError
from psd_tools import PSDImage

from .. import config
from ..config import VariantSpec
from ..exceptions import DerivativeError
from ..models import Derivative, Metadata


def cache_location(content_hash: str, variant: str) -> str:
    """Cache-relative path of a derivative. Computable without any lookup."""
    return f"{content_hash}/{variant}.{config.DERIVATIVE_EXT}"


class DecodedMedia:
    """
    A media file on its way to the generator. The pixels are decoded on
    first access of `image` and kept until close(), so a fully cached item
    is never decoded at all.
    """

    def __init__(self, generator: "DerivativeGenerator", path: Path, meta: Metadata,
                 content_hash: str, counterpart: Optional[Path] = None):
        self.path = path
        self.meta = meta
        self.content_hash = content_hash
        self.counterpart = counterpart
        self._generator = generator
        self._image: Optional[Image.Image] = None

    @property
    def image(self) -> Image.Image:
        if self._image is None:
            self._image = self._generator.open_source(self.path, self.meta, self.counterpart)
        return self._image

    @property
    def is_decoded(self) -> bool:
        return self._image is not None

    def close(self):
        if self._image is not None:
            self._image.close()
            self._image = None

    def __enter__(self) -> "DecodedMedia":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class DerivativeGenerator:
    """
    Produces resized JPEG variants of media into a content addressed cache:

        {cache_dir}/{content_hash}/{variant}.jpg

    Writes are create-if-absent. When two workers race on the same entry the
    first one to land wins and the other throws its copy away.
    """

    def __init__(self,
                 cache_dir: Path,
                 variants: Iterable[VariantSpec] = config.DEFAULT_VARIANTS,
                 max_source_pixels: int = config.DEFAULT_MAX_SOURCE_PIXELS,
                 ffmpeg_path: Optional[str] = None):
        self.cache_dir = cache_dir
        self.variants = tuple(variants)
        self.max_source_pixels = max_source_pixels
        self.ffmpeg_path = ffmpeg_path if ffmpeg_path is not None else shutil.which("ffmpeg")
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        if not self.ffmpeg_path:
            logging.info("ffmpeg not found, video thumbnails disabled")

    def cache_path(self, content_hash: str, variant: str) -> Path:
        return self.cache_dir / cache_location(content_hash, variant)

    def variants_for(self, meta: Metadata) -> List[VariantSpec]:
        """The variants a media item should have. Video variants need ffmpeg."""
        if meta.kind == 'video' and not self.ffmpeg_path:
            return []
        web_compatible = meta.ftype in config.WEB_COMPATIBLE_TYPES
        return [
            v for v in self.variants
            if meta.kind in v.kinds and not (v.only_if_not_web and web_compatible)
        ]

    def decoded(self, path: Path, meta: Metadata, content_hash: str,
                counterpart: Optional[Path] = None) -> DecodedMedia:
        return DecodedMedia(self, path, meta, content_hash, counterpart)

    # --- Decoding ---

    def open_source(self, path: Path, meta: Metadata, counterpart: Optional[Path] = None) -> Image.Image:
        """
        Decodes a media file into an RGB image with EXIF orientation applied.
        Large JPEGs are downsampled while decoding; anything still above
        max_source_pixels is refused.
        """
        if meta.kind == 'video':
            return self._open_video_frame(path)
        if meta.ftype == 'psd':
            return self._open_psd(path)

        source = counterpart if (meta.ftype == 'raw' and counterpart) else path
        try:
            im = Image.open(source)
        except Image.DecompressionBombError as e:
            raise DerivativeError(f"Source exceeds decode limit: {source} ({e})") from e
        except (UnidentifiedImageError, OSError) as e:
            if meta.ftype == 'raw':
                raise DerivativeError(f"No decoder for RAW file without JPEG counterpart: {path}") from e
            raise DerivativeError(f"Cannot decode {source}: {e}") from e

        try:
            target = max((v.max_size for v in self.variants), default=1024)
            if im.format == 'JPEG':
                im.draft('RGB', (target, target))

            w, h = im.size
            if w * h > self.max_source_pixels:
                raise DerivativeError(
                    f"Source too large after downsampling: {w}x{h} > {self.max_source_pixels} pixels ({source})")

            im.load()
            decoded = ImageOps.exif_transpose(im)
            if decoded.mode != 'RGB':
                decoded = decoded.convert('RGB')
            if decoded is im:
                decoded = im.copy()
            return decoded
        except DerivativeError:
            raise
        except (OSError, ValueError, SyntaxError) as e:
            raise DerivativeError(f"Cannot decode {source}: {e}") from e
        finally:
            im.close()

    def _open_psd(self, path: Path) -> Image.Image:
        try:
            psd = PSDImage.open(path)
            if psd.width * psd.height > self.max_source_pixels:
                raise DerivativeError(f"PSD too large: {psd.width}x{psd.height} ({path})")
            return psd.composite().convert('RGB')
        except DerivativeError:
            raise
        except Exception as e:
            raise DerivativeError(f"psd-tools cannot composite {path}: {e}") from e

    def _open_video_frame(self, path: Path) -> Image.Image:
        if not self.ffmpeg_path:
            raise DerivativeError(f"ffmpeg not available, cannot thumbnail video {path.name}")

        args = [
            self.ffmpeg_path, "-hide_banner", "-loglevel", "error",
            "-i", str(path), "-frames:v", "1", "-f", "image2pipe", "-vcodec", "png", "pipe:1",
        ]
        try:
            completed = subprocess.run(args, capture_output=True, check=False)
        except OSError as e:
            raise DerivativeError(f"ffmpeg failed for {path}: {e}") from e
        if completed.returncode != 0 or not completed.stdout:
            stderr = completed.stderr.decode('utf-8', 'replace').strip()
            raise DerivativeError(f"ffmpeg could not extract a frame from {path}: {stderr}")

        try:
            with Image.open(io.BytesIO(completed.stdout)) as frame:
                return frame.convert('RGB')
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise DerivativeError(f"ffmpeg frame from {path} is not a decodable image: {e}") from e

    # --- Encoding ---

    def lookup(self, content_hash: str, variant: str) -> Optional[Derivative]:
        """Returns the cached derivative if its file is already on disk."""
        target = self.cache_path(content_hash, variant)
        if not target.exists():
            return None
        try:
            with Image.open(target) as im:
                width, height = im.size
            size = target.stat().st_size
        except (UnidentifiedImageError, OSError) as e:
            logging.warning(f"Corrupt cache entry {target}, regenerating: {e}")
            target.unlink(missing_ok=True)
            return None
        return Derivative(content_hash, variant, width, height, size, cache_location(content_hash, variant))

    def generate(self, media: DecodedMedia, spec: VariantSpec) -> Derivative:
        """
        Produces one variant of `media`. The same source and spec always give
        the same output, so an existing cache entry is reused as is and the
        source is only decoded on a miss.
        """
        existing = self.lookup(media.content_hash, spec.name)
        if existing:
            return existing

        target = self.cache_path(media.content_hash, spec.name)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.parent / f".{spec.name}.{uuid.uuid4().hex}.tmp"

        try:
            resized = media.image.copy()
            resized.thumbnail((spec.max_size, spec.max_size), Image.Resampling.LANCZOS)
            resized.save(tmp, format='JPEG', quality=spec.quality)

            try:
                os.link(tmp, target)
            except FileExistsError:
                logging.debug(f"Derivative {target} written by another worker, discarding ours")
        except OSError as e:
            raise DerivativeError(f"Cannot write derivative {target}: {e}") from e
        finally:
            tmp.unlink(missing_ok=True)

        result = self.lookup(media.content_hash, spec.name)
        if result is None:
            raise DerivativeError(f"Derivative {target} vanished after write")
        return result

    def evict(self, content_hash: str) -> int:
        """Removes every cached variant for a content hash. Returns files removed."""
        directory = self.cache_dir / content_hash
        if not directory.is_dir():
            return 0
        removed = 0
        for f in directory.iterdir():
            try:
                f.unlink()
                removed += 1
            except FileNotFoundError:
                pass
        try:
            directory.rmdir()
        except OSError as e:
            # A concurrent writer may have just recreated an entry
            logging.debug(f"Cache dir {directory} not removed: {e}")
        return removed
