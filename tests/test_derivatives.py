import pytest
import subprocess
import threading
from pathlib import Path

from PIL import Image

from photo_indexer import config
from photo_indexer.config import VariantSpec
from photo_indexer.derivatives.generator import DerivativeGenerator, cache_location
from photo_indexer.exceptions import DerivativeError
from photo_indexer.metadata.extract import MetadataExtractor
from photo_indexer.models import Metadata

THUMB = VariantSpec("thumbnail", 32, quality=70)


@pytest.fixture
def generator(tmp_path):
    return DerivativeGenerator(tmp_path / "cache", variants=config.DEFAULT_VARIANTS, ffmpeg_path="")


def _decoded(generator, path, content_hash="abc123", counterpart=None):
    meta = MetadataExtractor().extract(path)
    return generator.decoded(path, meta, content_hash, counterpart)


def test_cache_location_is_computable():
    assert cache_location("abc", "thumbnail") == "abc/thumbnail.jpg"


def test_variants_for_photos_and_videos(generator):
    jpeg = Metadata(kind="photo", ftype="jpeg", size_bytes=1, mtime=0)
    tiff = Metadata(kind="photo", ftype="tiff", size_bytes=1, mtime=0)
    video = Metadata(kind="video", ftype="video", size_bytes=1, mtime=0)

    assert [v.name for v in generator.variants_for(jpeg)] == ["thumbnail"]
    assert [v.name for v in generator.variants_for(tiff)] == ["thumbnail", "high-res"]
    # No ffmpeg: video thumbnails are switched off, not failed
    assert generator.variants_for(video) == []

    with_ffmpeg = DerivativeGenerator(generator.cache_dir, ffmpeg_path="/usr/bin/ffmpeg")
    assert [v.name for v in with_ffmpeg.variants_for(video)] == ["video-thumbnail"]


def test_generate_writes_bounded_jpeg(generator, tmp_path, make_jpeg):
    src = make_jpeg(tmp_path / "a.jpg", size=(200, 100))
    with _decoded(generator, src) as media:
        d = generator.generate(media, THUMB)

    assert d.location == "abc123/thumbnail.jpg"
    assert (d.width, d.height) == (32, 16)
    assert d.content_type == "image/jpeg"
    with Image.open(generator.cache_path("abc123", "thumbnail")) as im:
        assert im.format == "JPEG"
        assert im.size == (32, 16)


def test_cached_variant_is_not_decoded_again(generator, tmp_path, make_jpeg):
    src = make_jpeg(tmp_path / "a.jpg")
    with _decoded(generator, src) as media:
        first = generator.generate(media, THUMB)

    with _decoded(generator, src) as media:
        second = generator.generate(media, THUMB)
        assert not media.is_decoded
    assert first == second


def test_orientation_is_applied(generator, tmp_path, make_jpeg):
    exif = Image.Exif()
    exif[0x0112] = 6  # rotate 90 CW
    src = make_jpeg(tmp_path / "rotated.jpg", size=(40, 20), exif=exif)
    with _decoded(generator, src) as media:
        assert media.image.size == (20, 40)


def test_corrupt_cache_entry_is_regenerated(generator, tmp_path, make_jpeg):
    src = make_jpeg(tmp_path / "a.jpg")
    target = generator.cache_path("abc123", "thumbnail")
    target.parent.mkdir(parents=True)
    target.write_bytes(b"half written")

    with _decoded(generator, src) as media:
        d = generator.generate(media, THUMB)
    assert d.width > 0
    with Image.open(target) as im:
        im.verify()


def test_concurrent_writers_first_one_wins(generator, tmp_path, make_jpeg):
    src = make_jpeg(tmp_path / "a.jpg", size=(300, 300))
    barrier = threading.Barrier(4)
    results, errors = [], []

    def worker():
        try:
            with _decoded(generator, src) as media:
                media.image  # decode before racing on the write
                barrier.wait(5)
                results.append(generator.generate(media, THUMB))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len({(r.location, r.size_bytes) for r in results}) == 1
    # No temp files left behind
    assert [p.name for p in (generator.cache_dir / "abc123").iterdir()] == ["thumbnail.jpg"]


def test_oversized_source_is_refused(tmp_path):
    generator = DerivativeGenerator(tmp_path / "cache", variants=(THUMB,), max_source_pixels=1000,
                                    ffmpeg_path="")
    src = tmp_path / "big.png"
    Image.new("RGB", (100, 100)).save(src)
    with _decoded(generator, src) as media:
        with pytest.raises(DerivativeError):
            generator.generate(media, THUMB)
    assert not generator.cache_path("abc123", "thumbnail").exists()


def test_raw_without_counterpart_fails(generator, tmp_path):
    raw = tmp_path / "IMG_1.CR2"
    raw.write_bytes(b"not decodable")
    meta = Metadata(kind="photo", ftype="raw", size_bytes=13, mtime=0)
    with generator.decoded(raw, meta, "rawhash") as media:
        with pytest.raises(DerivativeError):
            generator.generate(media, THUMB)


def test_raw_decoded_through_counterpart(generator, tmp_path, make_jpeg):
    raw = tmp_path / "IMG_1.CR2"
    raw.write_bytes(b"not decodable")
    jpg = make_jpeg(tmp_path / "IMG_1.jpg", size=(80, 40))
    meta = Metadata(kind="photo", ftype="raw", size_bytes=13, mtime=0)
    with generator.decoded(raw, meta, "rawhash", counterpart=jpg) as media:
        d = generator.generate(media, THUMB)
    assert (d.width, d.height) == (32, 16)


def test_video_frame_needs_ffmpeg(generator, tmp_path):
    vid = tmp_path / "clip.mp4"
    vid.touch()
    meta = Metadata(kind="video", ftype="video", size_bytes=0, mtime=0)
    with generator.decoded(vid, meta, "vidhash") as media:
        with pytest.raises(DerivativeError):
            generator.generate(media, VariantSpec("video-thumbnail", 32, kinds=("video",)))


def test_undecodable_ffmpeg_frame_is_a_derivative_error(tmp_path, monkeypatch):
    import photo_indexer.derivatives.generator as generator_module

    def fake_run(args, capture_output, check):
        return subprocess.CompletedProcess(args, 0, stdout=b"not a png", stderr=b"")

    monkeypatch.setattr(generator_module.subprocess, "run", fake_run)
    gen = DerivativeGenerator(tmp_path / "cache", ffmpeg_path="/usr/bin/ffmpeg")
    vid = tmp_path / "clip.mp4"
    vid.touch()
    meta = Metadata(kind="video", ftype="video", size_bytes=0, mtime=0)

    with gen.decoded(vid, meta, "vidhash") as media:
        with pytest.raises(DerivativeError):
            gen.generate(media, VariantSpec("video-thumbnail", 32, kinds=("video",)))


def test_evict_removes_all_variants(generator, tmp_path, make_jpeg):
    src = make_jpeg(tmp_path / "a.jpg")
    with _decoded(generator, src) as media:
        generator.generate(media, THUMB)
        generator.generate(media, VariantSpec("high-res", 64))

    assert generator.evict("abc123") == 2
    assert not (generator.cache_dir / "abc123").exists()
    assert generator.evict("abc123") == 0
