"""
Per-root scan scheduling.

Every root is Idle or Scanning. At most one scan per root runs at a time;
a request that arrives while the root is Scanning gets AlreadyRunning back
and leaves behind at most one queued follow-up scan, which starts as soon
as the running one ends. Different roots scan in parallel, bounded by the
scan pool size.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from .models import AlreadyRunning, RootConfig, ScanResult, ScanState
from .reporting import StatusReporter

ScanFn = Callable[[RootConfig, threading.Event], ScanResult]
ScanOutcome = Union[ScanResult, AlreadyRunning]


def check_unique_roots(roots: Iterable[RootConfig]) -> List[RootConfig]:
    """
    Drops repeated (owner, path) pairs and rejects a directory configured
    for two different owners: media rows are keyed by path, so one
    directory can only be indexed once.
    """
    unique: Dict[str, RootConfig] = {}
    for root in roots:
        key = str(root.path)
        seen = unique.get(key)
        if seen is None:
            unique[key] = root
        elif seen.owner_id != root.owner_id:
            logging.error(f"Root {key} configured for both {seen.owner_id} and {root.owner_id}")
            raise ValueError(f"Root {key} is configured for more than one owner "
                             f"({seen.owner_id}, {root.owner_id})")
    return list(unique.values())


@dataclass
class _RootState:
    root: RootConfig
    state: ScanState = ScanState.IDLE
    pending_followup: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)
    removed: bool = False


class ScanScheduler:
    def __init__(self,
                 scan_fn: ScanFn,
                 reporter: StatusReporter,
                 roots: Iterable[RootConfig] = (),
                 max_concurrent_scans: int = 2,
                 interval: int = 0):
        self._scan_fn = scan_fn
        self.reporter = reporter
        self._max_concurrent_scans = max(1, max_concurrent_scans)
        self._interval = interval

        self._lock = threading.Lock()
        self._roots: Dict[str, _RootState] = {}
        self._pool: Optional[ThreadPoolExecutor] = None
        self._ticker: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._wakeup = threading.Event()

        self.set_roots(roots)

    # --- lifecycle ---

    def start(self):
        with self._lock:
            if self._pool is not None:
                raise RuntimeError("Scheduler already started")
            self._stop.clear()
            self._pool = ThreadPoolExecutor(max_workers=self._max_concurrent_scans,
                                            thread_name_prefix="scan")
            self._ticker = threading.Thread(target=self._periodic_loop, name="scan-ticker", daemon=True)
            self._ticker.start()
        logging.info(f"Scan scheduler started ({len(self._roots)} roots, interval {self._describe_interval()})")

    def stop(self, wait: bool = True):
        """Cancels running scans and shuts the pools down."""
        with self._lock:
            pool, ticker = self._pool, self._ticker
            self._pool = None
            self._ticker = None
            for st in self._roots.values():
                st.pending_followup = False
                st.cancel_event.set()
        self._stop.set()
        self._wakeup.set()
        if ticker is not None and wait:
            ticker.join()
        if pool is not None:
            pool.shutdown(wait=wait)
        logging.info("Scan scheduler stopped")

    @property
    def running(self) -> bool:
        return self._pool is not None

    # --- configuration ---

    def set_roots(self, roots: Iterable[RootConfig]):
        """
        Replaces the root list. Scans of removed roots are cancelled. A root
        added back while its cancelled scan is still winding down keeps that
        scan as its active one and gets a follow-up scan once it ends.
        """
        new = {str(r.path): r for r in check_unique_roots(roots)}
        with self._lock:
            for key, st in list(self._roots.items()):
                if key not in new and not st.removed:
                    st.removed = True
                    st.pending_followup = False
                    st.cancel_event.set()
                    if st.state is ScanState.IDLE:
                        del self._roots[key]
                    logging.info(f"Root removed from configuration: {key}")
            for key, root in new.items():
                st = self._roots.get(key)
                if st is None:
                    self._roots[key] = _RootState(root)
                    continue
                st.root = root
                if st.removed:
                    st.removed = False
                    st.cancel_event = threading.Event()
                    st.pending_followup = True
                    logging.info(f"Root {key} re-added while its scan is stopping, follow-up queued")

    def roots(self) -> List[RootConfig]:
        with self._lock:
            return [st.root for st in self._roots.values() if not st.removed]

    def set_interval(self, seconds: int):
        """Changes the periodic scan interval; 0 disables periodic scans."""
        self._interval = max(0, int(seconds))
        logging.info(f"Periodic scan interval changed: {self._describe_interval()}")
        self._wakeup.set()

    @property
    def interval(self) -> int:
        return self._interval

    def _describe_interval(self) -> str:
        return f"{self._interval}s" if self._interval > 0 else "disabled"

    # --- scanning ---

    def request_scan(self, root_path: Union[str, Path], queue_followup: bool = True) -> "Future[ScanOutcome]":
        """
        Starts a scan of one root, or returns an already resolved future
        holding AlreadyRunning when that root is being scanned.
        """
        key = str(root_path)
        with self._lock:
            if self._pool is None:
                raise RuntimeError("Scheduler is not running")
            st = self._roots.get(key)
            if st is None or st.removed:
                raise KeyError(f"Unknown root: {key}")

            if st.state is ScanState.SCANNING:
                if queue_followup:
                    st.pending_followup = True
                logging.info(f"Scan of {key} already running"
                             + (", follow-up queued" if st.pending_followup else ""))
                done: "Future[ScanOutcome]" = Future()
                done.set_result(AlreadyRunning(key, followup_queued=st.pending_followup))
                return done

            st.state = ScanState.SCANNING
            st.cancel_event = threading.Event()
            return self._pool.submit(self._run, st)

    def trigger_scan(self, root_path: Union[str, Path]) -> ScanOutcome:
        """On-demand scan. Blocks until the scan is done (or returns AlreadyRunning)."""
        return self.request_scan(root_path, queue_followup=False).result()

    def scan_all(self) -> List["Future[ScanOutcome]"]:
        futures = []
        for root in self.roots():
            try:
                futures.append(self.request_scan(root.path))
            except (KeyError, RuntimeError) as e:
                logging.warning(f"Periodic scan of {root.path} not started: {e}")
        return futures

    def cancel(self, root_path: Union[str, Path]) -> bool:
        """Asks a running scan to stop. Returns False when the root is idle."""
        with self._lock:
            st = self._roots.get(str(root_path))
            if st is None or st.state is ScanState.IDLE:
                return False
            st.pending_followup = False
            st.cancel_event.set()
            return True

    def state_of(self, root_path: Union[str, Path]) -> ScanState:
        with self._lock:
            st = self._roots.get(str(root_path))
            return st.state if st else ScanState.IDLE

    def _run(self, st: _RootState) -> ScanResult:
        first: Optional[ScanResult] = None
        try:
            while True:
                result = self._scan_fn(st.root, st.cancel_event)
                if first is None:
                    first = result
                with self._lock:
                    if st.pending_followup and not st.cancel_event.is_set() and not self._stop.is_set():
                        st.pending_followup = False
                        logging.info(f"Running queued follow-up scan of {st.root.path}")
                        continue
                    break
        except Exception:
            logging.exception(f"Scan of {st.root.path} crashed")
            self.reporter.set_idle(str(st.root.path))
            raise
        finally:
            with self._lock:
                st.state = ScanState.IDLE
                st.pending_followup = False
                if st.removed and self._roots.get(str(st.root.path)) is st:
                    del self._roots[str(st.root.path)]
        return first

    def _periodic_loop(self):
        while not self._stop.is_set():
            interval = self._interval
            if interval <= 0:
                logging.debug("Scan interval runner: waiting for signal")
                self._wakeup.wait()
                self._wakeup.clear()
                continue

            if self._wakeup.wait(timeout=interval):
                # Interval changed or stopping
                self._wakeup.clear()
                continue

            logging.info("Scan interval runner: starting periodic scan")
            self.scan_all()
