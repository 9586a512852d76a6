import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from .config import IndexerSettings
from .core import PhotoIndexerApp
from .models import AlreadyRunning, RootConfig
from .reporting import ReportGenerator
from .scheduler import check_unique_roots

def setup_logging(log_dir: Path, verbose: bool):
    """Sets up logging to both console and a file next to the database."""
    log_level = logging.DEBUG if verbose else logging.INFO

    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "indexer.log"

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(threadName)s %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("psd_tools").setLevel(logging.WARNING)

def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Photo Indexer: scan photo libraries into a searchable index")

    p.add_argument("--settings", type=Path, default=None, help="JSON settings file")
    p.add_argument("--db", type=Path, default=None, help="SQLite database path")
    p.add_argument("--cache", type=Path, default=None, help="Derivative cache directory")
    p.add_argument("--roots-file", type=Path, default=None,
                   help="File with one 'owner<TAB>path' root per line")
    p.add_argument("--root", action="append", default=[], metavar="OWNER:PATH",
                   help="Library root (repeatable)")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan every root once and exit")
    scan.add_argument("--progress", action="store_true", help="Show progress bars")
    scan.add_argument("--content-hashing", action="store_true",
                      help="Detect changes by content, not just size and mtime")

    serve = sub.add_parser("serve", help="Keep running and rescan periodically")
    serve.add_argument("--interval", type=int, default=None, help="Seconds between scans (0 = off)")

    sub.add_parser("status", help="Print the latest scan result of each root")

    failures = sub.add_parser("failures", help="Write the failed items of a root's last scan to CSV")
    failures.add_argument("root_path", type=Path, help="Root whose last scan to report")
    failures.add_argument("--csv", type=Path, default=Path("scan_failures.csv"), help="Output CSV path")

    return p.parse_args(argv)

def load_roots_file(roots_file: Path) -> List[RootConfig]:
    roots = []
    with roots_file.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            owner, sep, path = line.partition("\t")
            if not sep:
                raise ValueError(f"Bad roots file line (expected 'owner<TAB>path'): {line!r}")
            roots.append(RootConfig(owner.strip(), Path(path.strip()).expanduser().resolve()))
    return roots

def parse_root_arg(value: str) -> RootConfig:
    owner, sep, path = value.partition(":")
    if not sep or not owner or not path:
        raise ValueError(f"Bad --root value (expected OWNER:PATH): {value!r}")
    return RootConfig(owner, Path(path).expanduser().resolve())

def build_settings(args) -> IndexerSettings:
    settings = IndexerSettings.from_json(args.settings) if args.settings else IndexerSettings()
    if args.db:
        settings.db_path = args.db
    if args.cache:
        settings.cache_dir = args.cache
    if getattr(args, "progress", False):
        settings.show_progress = True
    if getattr(args, "content_hashing", False):
        settings.content_hashing = True
    if getattr(args, "interval", None) is not None:
        settings.periodic_scan_interval = args.interval
    return settings

def run_scan_once(app: PhotoIndexerApp) -> int:
    exit_code = 0
    futures = [(root, app.scheduler.request_scan(root.path, queue_followup=False))
               for root in app.scheduler.roots()]
    for root, future in futures:
        outcome = future.result()
        if isinstance(outcome, AlreadyRunning):
            logging.warning(f"{root.path}: scan already running")
            continue
        if outcome.aborted:
            exit_code = 1
    return exit_code

def serve(app: PhotoIndexerApp, interval: Optional[int]) -> int:
    if interval is not None:
        app.set_periodic_scan_interval(interval)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    app.scheduler.scan_all()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logging.warning("Interrupted, shutting down.")
    return 0

def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)

    try:
        settings = build_settings(args)
        roots = load_roots_file(args.roots_file) if args.roots_file else []
        roots += [parse_root_arg(r) for r in args.root]
        roots = check_unique_roots(roots)
    except (OSError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(settings.db_path.resolve().parent, args.verbose)
    logging.info("=== Photo Indexer Started ===")
    logging.info(f"Database: {settings.db_path}")
    logging.info(f"Cache:    {settings.cache_dir}")

    app = PhotoIndexerApp(settings, roots)
    reporter = ReportGenerator()

    try:
        if args.command == "status":
            for root in roots:
                for line in reporter.summary_lines(app.get_scan_status(root.path)):
                    print(line)
            exit_code = 0
        elif args.command == "failures":
            status = app.get_scan_status(args.root_path.resolve())
            if status.last_result is None:
                logging.error(f"No scan has run for {args.root_path}")
                exit_code = 1
            else:
                reporter.generate_failure_report(status.last_result, args.csv)
                exit_code = 0
        else:
            app.start()
            if args.command == "scan":
                exit_code = run_scan_once(app)
            else:
                exit_code = serve(app, args.interval)
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        exit_code = 1
    except Exception:
        logging.exception("Fatal error.")
        exit_code = 1
    finally:
        app.shutdown()

    sys.exit(exit_code)

if __name__ == "__main__":
    main()
