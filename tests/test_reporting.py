import pytest
import csv
import json
import logging
from pathlib import Path
from datetime import datetime, UTC

from photo_indexer.config import IndexerSettings, VariantSpec
from photo_indexer.hooks import LoggingScanListener
from photo_indexer.main import load_roots_file, main, parse_root_arg
from photo_indexer.models import RootConfig, ScanItemError, ScanResult, ScanState
from photo_indexer.reporting import NO_SCAN_MESSAGE, ReportGenerator, StatusReporter


def _result(root="/photos", **kwargs):
    return ScanResult(root=root, owner_id="alice", started_at=datetime(2024, 1, 1, tzinfo=UTC),
                      finished_at=datetime(2024, 1, 1, 0, 5, tzinfo=UTC), **kwargs)


def test_status_for_unknown_root_never_raises():
    status = StatusReporter().get_status("/never/scanned")
    assert status.state is ScanState.IDLE
    assert status.last_result is None
    assert status.message == NO_SCAN_MESSAGE


def test_status_reports_running_and_finished_scans():
    reporter = StatusReporter()
    running = _result(media_created=3)
    reporter.scan_started(running)
    assert reporter.get_status("/photos").state is ScanState.SCANNING
    assert reporter.get_progress("/photos").media_created == 3

    reporter.scan_finished(running)
    status = reporter.get_status("/photos")
    assert status.state is ScanState.IDLE
    assert status.last_result.media_created == 3
    assert status.message is None
    assert reporter.get_progress("/photos") is None

    # Callers get copies, not the live object
    status.last_result.media_created = 99
    assert reporter.get_status("/photos").last_result.media_created == 3


def test_status_explains_aborted_scan():
    reporter = StatusReporter()
    reporter.scan_finished(_result(aborted=True, abort_reason="cancelled"))
    assert reporter.get_status("/photos").message == "aborted: cancelled"


def test_status_falls_back_to_history_loader():
    stored = _result(media_created=7)
    reporter = StatusReporter(history_loader=lambda root: stored if root == "/photos" else None)
    assert reporter.get_status("/photos").last_result.media_created == 7
    assert reporter.get_status("/other").message == NO_SCAN_MESSAGE


def test_broken_history_loader_is_not_fatal():
    def broken(root):
        raise RuntimeError("database is gone")

    status = StatusReporter(history_loader=broken).get_status("/photos")
    assert status.message == NO_SCAN_MESSAGE


def test_failure_report_csv(tmp_path):
    result = _result(errors=[
        ScanItemError("/photos/a.jpg", "extraction", "unreadable: Not a decodable image"),
        ScanItemError("/photos/locked", "filesystem", "unreadable directory: Permission denied"),
    ])
    output = tmp_path / "reports" / "failures.csv"

    rows = ReportGenerator().generate_failure_report(result, output)

    assert rows == 2
    with open(output, newline="", encoding="utf-8") as f:
        content = list(csv.reader(f))
    assert content[0] == ["Path", "Kind", "Reason"]
    assert content[1] == ["/photos/a.jpg", "extraction", "unreadable: Not a decodable image"]


def test_summary_lines():
    reporter = StatusReporter()
    reporter.scan_finished(_result(media_created=2, media_skipped=5,
                                   errors=[ScanItemError("/photos/x.jpg", "extraction", "bad")]))
    lines = ReportGenerator().summary_lines(reporter.get_status("/photos"))
    assert lines[0] == "/photos: idle"
    assert "  media:  +2 ~0 -0 (unchanged 5)" in lines
    assert "  errors: 1" in lines

    never = ReportGenerator().summary_lines(StatusReporter().get_status("/new"))
    assert never == ["/new: idle", f"  {NO_SCAN_MESSAGE}"]


def test_logging_listener_throttles_progress(caplog):
    now = [0.0]
    listener = LoggingScanListener(min_interval=0.5, clock=lambda: now[0])

    with caplog.at_level(logging.INFO):
        for i in range(10):
            listener.media_processed("/photos", f"/photos/{i}.jpg", True, i + 1, 10)
        now[0] = 1.0
        listener.media_processed("/photos", "/photos/last.jpg", True, 10, 10)

    progress = [r for r in caplog.records if "processed" in r.getMessage()]
    assert len(progress) == 2


# --- Configuration and CLI ---

def test_settings_from_json(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({
        "db_path": "/var/lib/indexer/index.db",
        "exclude_patterns": ["@eaDir/"],
        "variants": [{"name": "thumbnail", "max_size": 512}],
    }))

    settings = IndexerSettings.from_json(path)
    assert settings.db_path == Path("/var/lib/indexer/index.db")
    assert settings.exclude_patterns == ["@eaDir/"]
    assert settings.variants == (VariantSpec("thumbnail", 512),)


def test_settings_reject_unknown_keys(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"db_pth": "typo.db"}))
    with pytest.raises(ValueError):
        IndexerSettings.from_json(path)


def test_load_roots_file(tmp_path):
    roots_file = tmp_path / "roots.txt"
    roots_file.write_text("# owner\tpath\nalice\t/srv/photos/alice\n\nbob\t/srv/photos/bob\n")
    assert load_roots_file(roots_file) == [
        RootConfig("alice", Path("/srv/photos/alice")),
        RootConfig("bob", Path("/srv/photos/bob")),
    ]

    roots_file.write_text("alice /srv/photos\n")
    with pytest.raises(ValueError):
        load_roots_file(roots_file)


def test_parse_root_arg():
    assert parse_root_arg("alice:/srv/photos") == RootConfig("alice", Path("/srv/photos"))
    with pytest.raises(ValueError):
        parse_root_arg("/srv/photos")


def test_cli_scan_then_status(tmp_path, make_jpeg, capsys):
    library = tmp_path.resolve() / "photos"
    make_jpeg(library / "2020" / "a.jpg")
    (library / "broken.jpg").write_bytes(b"garbage")
    common = ["--db", str(tmp_path / "index.db"), "--cache", str(tmp_path / "cache"),
              "--root", f"alice:{library}"]

    with pytest.raises(SystemExit) as exc:
        main(common + ["scan"])
    assert exc.value.code == 0

    with pytest.raises(SystemExit) as exc:
        main(common + ["status"])
    assert exc.value.code == 0
    out = capsys.readouterr().out
    assert f"{library}: idle" in out
    assert "errors: 1" in out

    csv_path = tmp_path / "failures.csv"
    with pytest.raises(SystemExit) as exc:
        main(common + ["failures", str(library), "--csv", str(csv_path)])
    assert exc.value.code == 0
    assert str(library / "broken.jpg") in csv_path.read_text(encoding="utf-8")


def test_cli_rejects_directory_with_two_owners(tmp_path, capsys):
    library = tmp_path / "photos"
    args = ["--db", str(tmp_path / "index.db"), "--root", f"alice:{library}", "--root", f"bob:{library}",
            "scan"]
    with pytest.raises(SystemExit) as exc:
        main(args)
    assert exc.value.code == 2
    assert "more than one owner" in capsys.readouterr().err
