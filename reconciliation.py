"""
Replays the offline sale queue against the remote once connectivity is stable.

Records are submitted one at a time in ascending sequence order, since stock
decrements do not commute once they can hit zero. Each confirmed record is
removed from the queue immediately. The first failure stops the drain and
leaves that record and everything after it queued for the next stable-online
signal.
"""
import logging
import threading
from typing import Callable, List, Optional

from till_errors import PersistenceError, SubmissionError
from till_models import ConnectivityEvent, DrainResult, DriverState, iso_now

logger = logging.getLogger(__name__)


class ReconciliationDriver:
    def __init__(self, queue, submission, monitor=None, projection=None):
        self.queue = queue
        self.submission = submission
        self.monitor = monitor
        self.projection = projection
        self.state = DriverState.IDLE
        self.last_drain_result: Optional[DrainResult] = None
        self._drain_lock = threading.Lock()
        self._listeners: List[Callable[[DrainResult], None]] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._thread: Optional[threading.Thread] = None
        self._trigger_lock = threading.Lock()

    @property
    def has_pending_sales(self) -> bool:
        return self.queue.has_pending()

    def add_listener(self, callback: Callable[[DrainResult], None]) -> None:
        self._listeners.append(callback)

    def start(self, background: bool = True) -> None:
        """Subscribe to stable-online and drain once if already online."""
        if self.monitor is None:
            return
        if self._unsubscribe is None:
            self._unsubscribe = self.monitor.subscribe(
                lambda event: self.on_connectivity_event(event, background=background))
        if self.monitor.is_online:
            self.trigger(background=background)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_connectivity_event(self, event: ConnectivityEvent, background: bool = True) -> None:
        if event == ConnectivityEvent.STABLE_ONLINE:
            self.trigger(background=background)

    def trigger(self, background: bool = True) -> bool:
        """Start a drain unless one is already running. Returns False if ignored."""
        with self._trigger_lock:
            running = self._thread is not None and self._thread.is_alive()
            if self.state == DriverState.DRAINING or running:
                logger.info("Drain already in progress; ignoring trigger")
                return False
            if background:
                self._thread = threading.Thread(target=self._drain_in_background, name='offline-drain',
                                                daemon=True)
                self._thread.start()
                return True
        return self.drain() is not None

    def _drain_in_background(self) -> None:
        try:
            self.drain()
        except Exception:
            logger.exception("Offline drain crashed")

    def wait(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def drain(self) -> Optional[DrainResult]:
        """Replay queued sales in order. Returns None if another drain holds the lock."""
        if not self._drain_lock.acquire(blocking=False):
            logger.info("Drain already in progress; skipping")
            return None
        try:
            return self._drain_locked()
        finally:
            self._drain_lock.release()

    def _drain_locked(self) -> Optional[DrainResult]:
        result = DrainResult()
        try:
            records = self.queue.peek_all()
        except PersistenceError as exc:
            logger.error("Cannot read offline queue: %s", exc)
            result.error = exc
            return self._finish(result, DriverState.PARTIALLY_FAILED)

        if not records:
            return self._finish(result, DriverState.IDLE)

        self.state = DriverState.DRAINING
        logger.info("Syncing %d sale(s) recorded while offline", len(records))
        for index, record in enumerate(records):
            try:
                receipt = self.submission.submit(record.sale)
            except SubmissionError as exc:
                result.failed_at = record.sequence_number
                result.error = exc
                result.remaining = len(records) - index
                logger.warning("Offline sale #%d (%s) failed at %s; %d sale(s) stay queued: %s",
                               record.sequence_number, record.sale.sale_id, exc.step, result.remaining, exc)
                break
            result.warnings.extend(receipt.warnings)
            try:
                self._confirm(record, receipt)
            except PersistenceError as exc:
                # the sale is applied remotely but still queued; the next drain will replay it
                logger.error("Offline sale #%d applied but could not be removed: %s", record.sequence_number, exc)
                result.succeeded_count += 1
                result.failed_at = record.sequence_number
                result.error = exc
                result.remaining = len(records) - index
                break
            result.succeeded_count += 1

        if result.succeeded_count and self.projection is not None:
            self.projection.try_refresh()

        state = DriverState.IDLE if result.ok else DriverState.PARTIALLY_FAILED
        if result.ok:
            logger.info("Offline sales synced (%d)", result.succeeded_count)
        return self._finish(result, state)

    def _confirm(self, record, receipt) -> None:
        def remove():
            return self.queue.remove(record.sequence_number)

        if self.projection is None:
            remove()
        else:
            self.projection.confirm(receipt, record.sale, remove)

    def _finish(self, result: DrainResult, state: DriverState) -> DrainResult:
        result.finished_at = iso_now()
        self.state = state
        self.last_drain_result = result
        for callback in list(self._listeners):
            try:
                callback(result)
            except Exception:
                logger.exception("Drain result listener failed")
        return result
