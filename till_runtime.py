"""
Wires the till components together.

Each component is built lazily on first access so tests can swap any of them
(for example a prepared InMemoryRemote) before the rest is created.
"""
import logging
import threading
from typing import Optional

from catalog import ProductCatalog
from connectivity_monitor import ConnectivityMonitor, http_probe
from reconciliation import ReconciliationDriver
from remote_api import InMemoryRemote, RemoteDataAPI
from remote_submission import RemoteSubmission
from sale_capture import SaleCapture
from sale_queue import LocalDurableQueue
from stock_projection import StockProjection
from till_cart import Cart
from till_config import TillSettings, load_settings
from till_errors import RemoteError
from till_models import Actor

logger = logging.getLogger(__name__)


class TillRuntime:
    def __init__(self, settings: Optional[TillSettings] = None, remote=None, monitor=None, queue=None):
        self.settings = settings or load_settings()
        self._remote = remote
        self._monitor = monitor
        self._queue = queue
        self._submission: Optional[RemoteSubmission] = None
        self._projection: Optional[StockProjection] = None
        self._catalog: Optional[ProductCatalog] = None
        self._cart: Optional[Cart] = None
        self._capture: Optional[SaleCapture] = None
        self._driver: Optional[ReconciliationDriver] = None
        self._start_lock = threading.Lock()
        self.started = False

    @property
    def remote(self):
        if self._remote is None:
            if self.settings.use_mock or not self.settings.remote_url:
                logger.warning("Using in-memory remote (mock mode); sales will not leave this process")
                self._remote = InMemoryRemote()
            else:
                self._remote = RemoteDataAPI(self.settings.remote_url, self.settings.remote_api_key,
                                             timeout=self.settings.request_timeout)
        return self._remote

    @property
    def queue(self) -> LocalDurableQueue:
        if self._queue is None:
            self._queue = LocalDurableQueue(self.settings.queue_db_path, self.settings.queue_key)
        return self._queue

    @property
    def monitor(self) -> ConnectivityMonitor:
        if self._monitor is None:
            probe = None
            if self.settings.probe_url and not self.settings.use_mock:
                probe = http_probe(self.settings.probe_url, self.settings.probe_timeout)
            self._monitor = ConnectivityMonitor(initial_online=probe is None,
                                                debounce_seconds=self.settings.debounce_seconds,
                                                probe=probe, poll_interval=self.settings.probe_interval)
        return self._monitor

    @property
    def submission(self) -> RemoteSubmission:
        if self._submission is None:
            self._submission = RemoteSubmission(self.remote)
        return self._submission

    @property
    def projection(self) -> StockProjection:
        if self._projection is None:
            self._projection = StockProjection(self.queue, self.remote, self.settings.branch_id)
        return self._projection

    @property
    def catalog(self) -> ProductCatalog:
        if self._catalog is None:
            self._catalog = ProductCatalog(self.remote, self.projection)
        return self._catalog

    @property
    def cart(self) -> Cart:
        if self._cart is None:
            self._cart = Cart(self.catalog, self.projection)
        return self._cart

    @property
    def capture(self) -> SaleCapture:
        if self._capture is None:
            actor = Actor(id=self.settings.user_id, name=self.settings.user_name)
            self._capture = SaleCapture(self.monitor, self.queue, self.submission, actor,
                                        self.settings.branch_id, projection=self.projection)
        return self._capture

    @property
    def driver(self) -> ReconciliationDriver:
        if self._driver is None:
            self._driver = ReconciliationDriver(self.queue, self.submission, self.monitor, self.projection)
        return self._driver

    def refresh_remote_views(self) -> bool:
        """Reload catalog and stock snapshot; tolerated to fail while offline."""
        try:
            self.catalog.refresh()
            self.projection.refresh()
            return True
        except RemoteError as exc:
            logger.warning("Catalog/stock refresh failed (offline?): %s", exc)
            return False

    def start(self, background: bool = True) -> None:
        with self._start_lock:
            if self.started:
                return
            self.monitor.check_now()
            if self.monitor.is_online:
                self.refresh_remote_views()
            self.monitor.start()
            self.driver.start(background=background)
            self.started = True

    def stop(self) -> None:
        with self._start_lock:
            if not self.started:
                return
            self.driver.stop()
            self.monitor.stop()
            self.started = False

    def status(self) -> dict:
        pending = self.queue.count()
        last = self.driver.last_drain_result
        return {
            'online': self.monitor.is_online,
            'driver_state': self.driver.state.value,
            'has_pending_sales': pending > 0,
            'pending_count': pending,
            'last_drain_result': last.to_dict() if last else None,
        }
