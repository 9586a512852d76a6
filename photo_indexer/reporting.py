import csv
import logging
import threading
from copy import deepcopy
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .models import ScanResult, ScanState, ScanStatus

NO_SCAN_MESSAGE = "no scan has run"


class StatusReporter:
    """
    Read-only view of scan progress for the API layer: the current state of
    each root and its latest ScanResult. Reads never raise.
    """

    def __init__(self, history_loader: Optional[Callable[[str], Optional[ScanResult]]] = None):
        # history_loader fetches the last persisted result after a restart
        self._history_loader = history_loader
        self._lock = threading.Lock()
        self._states: Dict[str, ScanState] = {}
        self._last: Dict[str, ScanResult] = {}
        self._running: Dict[str, ScanResult] = {}

    def scan_started(self, result: ScanResult):
        with self._lock:
            self._states[result.root] = ScanState.SCANNING
            self._running[result.root] = result

    def scan_finished(self, result: ScanResult):
        with self._lock:
            self._states[result.root] = ScanState.IDLE
            self._running.pop(result.root, None)
            self._last[result.root] = deepcopy(result)

    def set_idle(self, root: str):
        with self._lock:
            self._states[root] = ScanState.IDLE
            self._running.pop(root, None)

    def get_status(self, root: str) -> ScanStatus:
        root = str(root)
        with self._lock:
            state = self._states.get(root, ScanState.IDLE)
            last = deepcopy(self._last.get(root))

        if last is None and self._history_loader is not None:
            try:
                last = self._history_loader(root)
            except Exception as e:
                logging.warning(f"Could not load scan history for {root}: {e}")
                last = None

        message = None
        if last is None:
            message = NO_SCAN_MESSAGE
        elif last.aborted:
            message = f"aborted: {last.abort_reason}"
        return ScanStatus(root=root, state=state, last_result=last, message=message)

    def get_progress(self, root: str) -> Optional[ScanResult]:
        """Snapshot of the counters of a scan that is still running."""
        with self._lock:
            running = self._running.get(str(root))
            return deepcopy(running) if running else None


class ReportGenerator:
    """Writes human readable reports about scan results."""

    headers = ["Path", "Kind", "Reason"]

    def generate_failure_report(self, result: ScanResult, output_csv: Path) -> int:
        """
        Writes one CSV row per failed item of a scan. Returns the row count.
        """
        output_csv = Path(output_csv)
        output_csv.parent.mkdir(parents=True, exist_ok=True)
        with open(output_csv, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(self.headers)
            for err in result.errors:
                writer.writerow([err.path, err.kind, err.reason])

        logging.info(f"Failure report for {result.root}: {len(result.errors)} rows -> {output_csv}")
        return len(result.errors)

    def summary_lines(self, status: ScanStatus) -> List[str]:
        lines = [f"{status.root}: {status.state.value}"]
        r = status.last_result
        if r is None:
            lines.append(f"  {status.message}")
            return lines

        finished = r.finished_at.isoformat(timespec='seconds') if r.finished_at else "-"
        lines.append(f"  last scan: {r.started_at.isoformat(timespec='seconds')} -> {finished}"
                     + (f" (aborted: {r.abort_reason})" if r.aborted else ""))
        lines.append(f"  albums: +{r.albums_created} ~{r.albums_updated} -{r.albums_deleted}")
        lines.append(f"  media:  +{r.media_created} ~{r.media_updated} -{r.media_deleted} "
                     f"(unchanged {r.media_skipped})")
        lines.append(f"  derivatives: +{r.derivatives_generated} evicted {r.derivatives_evicted}")
        lines.append(f"  errors: {r.error_count}")
        return lines
