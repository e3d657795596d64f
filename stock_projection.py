"""
Projected on-hand stock: last remote snapshot minus sales still in the offline queue.

Readers always see the snapshot and the queued totals from the same moment.
confirm() folds a drained sale into the snapshot and drops its queue record
under one lock, so a sale is never subtracted twice while a drain runs.
"""
import logging
import threading
from typing import Callable, Dict, Iterable, Optional

from till_errors import RemoteError
from till_models import Sale, SubmissionReceipt

logger = logging.getLogger(__name__)


class StockProjection:
    def __init__(self, queue, remote=None, branch_id: Optional[str] = None):
        self.queue = queue
        self.remote = remote
        self.branch_id = branch_id
        self._snapshot: Dict[str, int] = {}
        self._pending: Optional[Dict[str, int]] = None
        # quantities already in the snapshot whose queue record is being removed
        self._settling: Dict[str, int] = {}
        # reentrant: queue listeners call invalidate() from inside confirm()
        self._lock = threading.RLock()
        queue.add_listener(self.invalidate)

    def invalidate(self) -> None:
        with self._lock:
            self._pending = None

    def refresh(self) -> int:
        """Reload the snapshot from the remote stock_levels collection."""
        if self.remote is None:
            return 0
        match = {'branch_id': self.branch_id} if self.branch_id else None
        rows = self.remote.select_rows('stock_levels', match)
        self.update_snapshot(rows, replace=True)
        return len(rows)

    def try_refresh(self) -> bool:
        try:
            self.refresh()
            return True
        except RemoteError as exc:
            logger.warning("Stock snapshot refresh failed: %s", exc)
            return False

    def update_snapshot(self, rows: Iterable[dict], replace: bool = False) -> None:
        """Apply stock rows, e.g. from a refresh or the change feed."""
        fresh: Dict[str, int] = {}
        for row in rows:
            if self.branch_id and row.get('branch_id') not in (None, self.branch_id):
                continue
            try:
                fresh[str(row['product_id'])] = int(row.get('quantity') or 0)
            except (KeyError, TypeError, ValueError):
                logger.debug("Ignoring malformed stock row %r", row)
        with self._lock:
            if replace:
                self._snapshot = fresh
            else:
                self._snapshot.update(fresh)

    def set_snapshot(self, quantities: Dict[str, int]) -> None:
        with self._lock:
            self._snapshot = {str(k): int(v) for k, v in quantities.items()}

    def apply_receipt(self, receipt: SubmissionReceipt) -> None:
        """Patch the snapshot after a sale that never went through the queue."""
        with self._lock:
            self._snapshot.update(receipt.stock_after)

    def confirm(self, receipt: SubmissionReceipt, sale: Sale, remove: Callable[[], bool]) -> bool:
        """Apply a drained sale's receipt and run remove() for its queue record as one step."""
        quantities = sale.quantities()
        with self._lock:
            self._snapshot.update(receipt.stock_after)
            for product_id, qty in quantities.items():
                self._settling[product_id] = self._settling.get(product_id, 0) + qty
            try:
                return remove()
            finally:
                for product_id, qty in quantities.items():
                    left = self._settling.get(product_id, 0) - qty
                    if left > 0:
                        self._settling[product_id] = left
                    else:
                        self._settling.pop(product_id, None)
                self._pending = None

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._snapshot)

    def _queued_totals(self) -> Dict[str, int]:
        # caller holds self._lock; a concurrent enqueue invalidates once we release it
        if self._pending is None:
            totals: Dict[str, int] = {}
            for record in self.queue.peek_all():
                for product_id, qty in record.sale.quantities().items():
                    totals[product_id] = totals.get(product_id, 0) + qty
            self._pending = totals
        return self._pending

    def pending_deltas(self) -> Dict[str, int]:
        """Quantities sold offline and not yet reflected in the snapshot."""
        with self._lock:
            net: Dict[str, int] = {}
            for product_id, qty in self._queued_totals().items():
                left = qty - self._settling.get(product_id, 0)
                if left > 0:
                    net[product_id] = left
            return net

    def projected_stock(self, product_id: str) -> int:
        with self._lock:
            remote_qty = self._snapshot.get(product_id, 0)
            return max(0, remote_qty - self.pending_deltas().get(product_id, 0))

    def all_projected(self) -> Dict[str, int]:
        with self._lock:
            pending = self.pending_deltas()
            return {pid: max(0, qty - pending.get(pid, 0)) for pid, qty in self._snapshot.items()}
