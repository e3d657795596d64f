"""Turns a completed cart into a submitted or queued sale."""
import logging
import threading
from typing import Dict, Optional

from till_errors import EmptyCartError, StockUnavailableError, SubmissionError
from till_models import Actor, Disposition, Sale

logger = logging.getLogger(__name__)


class SaleCapture:
    def __init__(self, monitor, queue, submission, actor: Actor, branch_id: str, projection=None):
        self.monitor = monitor
        self.queue = queue
        self.submission = submission
        self.actor = actor
        self.branch_id = branch_id
        self.projection = projection
        self.last_sale: Optional[Sale] = None
        self._lock = threading.Lock()

    def _check_stock(self, lines) -> None:
        """Projected stock can drop after a line was added (refresh, change feed)."""
        if self.projection is None:
            return
        wanted: Dict[str, int] = {}
        for line in lines:
            wanted[line.product_id] = wanted.get(line.product_id, 0) + line.quantity
        for product_id, qty in wanted.items():
            available = self.projection.projected_stock(product_id)
            if qty > available:
                raise StockUnavailableError(f"Only {available} of {product_id} in stock",
                                            product_id=product_id, available=available)

    def complete_sale(self, cart, actor: Optional[Actor] = None) -> Disposition:
        """
        Submit the cart's sale if online, otherwise queue it.

        Every line must still fit in projected stock; StockUnavailableError
        leaves the cart as is. A failed online submission falls back to the
        queue. The cart is cleared only once the sale is acknowledged by the
        remote or by the queue; a PersistenceError from the queue propagates
        and leaves the cart as is.
        """
        with self._lock:
            if cart.is_empty():
                raise EmptyCartError("Cart is empty")
            lines = tuple(cart.lines())
            self._check_stock(lines)
            who = actor or self.actor
            sale = Sale(lines=lines, actor_id=who.id, actor_name=who.name, branch_id=self.branch_id)

            disposition = None
            if self.monitor.is_online:
                try:
                    receipt = self.submission.submit(sale)
                    if self.projection is not None:
                        self.projection.apply_receipt(receipt)
                    disposition = Disposition.SUBMITTED
                except SubmissionError as exc:
                    logger.warning("Online submission of sale %s failed at %s, queueing it: %s",
                                   sale.sale_id, exc.step, exc)

            if disposition is None:
                self.queue.enqueue(sale)
                disposition = Disposition.QUEUED

            cart.clear()
            self.last_sale = sale
            return disposition
