import os
import shutil
import tempfile
import threading
import unittest

from catalog import ProductCatalog
from connectivity_monitor import ConnectivityMonitor
from reconciliation import ReconciliationDriver
from remote_api import InMemoryRemote
from remote_submission import RemoteSubmission
from sale_capture import SaleCapture
from sale_queue import LocalDurableQueue
from stock_projection import StockProjection
from till_cart import Cart
from till_errors import PartialSubmissionError, SubmissionError
from till_models import Actor, CartLine, Disposition, DriverState, Sale


def make_sale(*lines):
    return Sale(
        lines=tuple(CartLine(pid, qty, unit_price=1.0, product_name=pid) for pid, qty in lines),
        actor_id="u1",
        actor_name="Alice",
        branch_id="b1",
    )


class ReconciliationDriverTest(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.queue = LocalDurableQueue(os.path.join(self.tmpdir, "queue.sqlite3"))
        self.remote = InMemoryRemote()
        self.remote.seed("stock_levels", [
            {"product_id": pid, "branch_id": "b1", "quantity": 100} for pid in ("A", "B", "C", "D")
        ])
        self.monitor = ConnectivityMonitor(initial_online=False, debounce_seconds=0)
        self.projection = StockProjection(self.queue, self.remote, "b1")
        self.driver = ReconciliationDriver(self.queue, RemoteSubmission(self.remote), self.monitor,
                                           self.projection)

    def tearDown(self):
        self.driver.stop()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _inserted_products(self):
        return [row["product_id"] for row in self.remote.tables["sales"]]

    def test_drains_every_sale_in_capture_order(self):
        for pid in ("C", "A", "B"):
            self.queue.enqueue(make_sale((pid, 1)))
        result = self.driver.drain()
        self.assertTrue(result.ok)
        self.assertEqual(result.succeeded_count, 3)
        self.assertFalse(self.queue.has_pending())
        self.assertEqual(self._inserted_products(), ["C", "A", "B"])
        self.assertEqual(self.driver.state, DriverState.IDLE)
        self.assertIs(self.driver.last_drain_result, result)

    def test_failure_stops_drain_and_keeps_the_rest_queued(self):
        for pid in ("A", "B", "C"):
            self.queue.enqueue(make_sale((pid, 1)))
        self.remote.inject_failure("insert", "sales", skip=1)

        first = self.driver.drain()
        self.assertFalse(first.ok)
        self.assertEqual(first.succeeded_count, 1)
        self.assertEqual(first.failed_at, 2)
        self.assertEqual(first.remaining, 2)
        self.assertIsInstance(first.error, SubmissionError)
        self.assertEqual(self.driver.state, DriverState.PARTIALLY_FAILED)
        self.assertEqual([r.sequence_number for r in self.queue.peek_all()], [2, 3])
        self.assertTrue(self.driver.has_pending_sales)

        second = self.driver.drain()
        self.assertTrue(second.ok)
        self.assertEqual(second.succeeded_count, 2)
        self.assertFalse(self.queue.has_pending())
        self.assertEqual(self._inserted_products(), ["A", "B", "C"])
        self.assertEqual(self.driver.state, DriverState.IDLE)

    def test_partially_applied_sale_stays_queued(self):
        self.queue.enqueue(make_sale(("A", 1), ("B", 1)))
        self.remote.inject_failure("update", "stock_levels", skip=1)
        result = self.driver.drain()
        self.assertIsInstance(result.error, PartialSubmissionError)
        self.assertEqual(result.succeeded_count, 0)
        self.assertEqual(self.queue.count(), 1)

    def test_empty_queue_makes_no_remote_calls(self):
        first = self.driver.drain()
        second = self.driver.drain()
        self.assertEqual(self.remote.calls, [])
        self.assertEqual(first.succeeded_count, 0)
        self.assertTrue(second.ok)
        self.assertEqual(self.driver.state, DriverState.IDLE)

    def test_trigger_is_ignored_while_draining(self):
        self.queue.enqueue(make_sale(("A", 1)))
        self.driver.state = DriverState.DRAINING
        self.assertFalse(self.driver.trigger(background=False))
        self.driver.state = DriverState.IDLE

        self.driver._drain_lock.acquire()
        try:
            self.assertIsNone(self.driver.drain())
        finally:
            self.driver._drain_lock.release()
        self.assertEqual(self.remote.calls_for("insert", "sales"), [])
        self.assertEqual(self.queue.count(), 1)

    def test_start_drains_when_already_online(self):
        self.queue.enqueue(make_sale(("A", 1)))
        self.monitor.set_online(True)
        self.driver.start(background=False)
        self.assertFalse(self.queue.has_pending())

    def test_listeners_receive_drain_result(self):
        seen = []
        self.driver.add_listener(seen.append)
        self.queue.enqueue(make_sale(("A", 1)))
        self.driver.drain()
        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0].succeeded_count, 1)

    def test_background_trigger_drains_on_a_thread(self):
        self.queue.enqueue(make_sale(("A", 1)))
        self.assertTrue(self.driver.trigger())
        self.driver.wait(timeout=5)
        self.assertFalse(self.queue.has_pending())

    def test_projection_stays_correct_while_a_record_is_removed(self):
        self.projection.refresh()
        self.queue.enqueue(make_sale(("A", 3)))
        seen = []
        remove = self.queue.remove

        def watching_remove(sequence_number):
            seen.append(self.projection.projected_stock("A"))
            return remove(sequence_number)

        self.queue.remove = watching_remove
        self.driver.drain()
        self.assertEqual(seen, [97])
        self.assertEqual(self.projection.projected_stock("A"), 97)

    def test_empty_drain_still_notifies_listeners(self):
        seen = []
        self.driver.add_listener(seen.append)
        self.driver.drain()
        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0].succeeded_count, 0)
        self.assertIsNotNone(seen[0].finished_at)
        self.assertIs(self.driver.last_drain_result, seen[0])

    def test_trigger_is_ignored_while_a_drain_thread_runs(self):
        self.queue.enqueue(make_sale(("A", 1)))
        release = threading.Event()
        busy = threading.Thread(target=release.wait, daemon=True)
        busy.start()
        self.driver._thread = busy
        try:
            self.assertFalse(self.driver.trigger())
            self.assertFalse(self.driver.trigger(background=False))
            self.assertEqual(self.queue.count(), 1)
        finally:
            release.set()
            busy.join(2)
        self.assertTrue(self.driver.trigger())
        self.driver.wait(timeout=5)
        self.assertFalse(self.queue.has_pending())

    def test_drained_sales_refresh_the_stock_snapshot(self):
        self.projection.refresh()
        self.queue.enqueue(make_sale(("A", 3)))
        self.assertEqual(self.projection.projected_stock("A"), 97)
        self.driver.drain()
        self.assertEqual(self.projection.snapshot()["A"], 97)
        self.assertEqual(self.projection.projected_stock("A"), 97)


class OfflineSaleScenarioTest(unittest.TestCase):
    """Capture offline, reconnect, and check exactly what reaches the remote."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.remote = InMemoryRemote()
        self.remote.seed("products", [{"id": "A", "name": "Apple", "price": 5, "barcode": "111"}])
        self.remote.seed("stock_levels", [{"product_id": "A", "branch_id": "b1", "quantity": 10}])
        self.queue = LocalDurableQueue(os.path.join(self.tmpdir, "queue.sqlite3"))
        self.monitor = ConnectivityMonitor(initial_online=False, debounce_seconds=0)
        self.projection = StockProjection(self.queue, self.remote, "b1")
        self.catalog = ProductCatalog(self.remote, self.projection)
        self.catalog.refresh()
        self.projection.refresh()
        self.cart = Cart(self.catalog, self.projection)
        submission = RemoteSubmission(self.remote)
        self.capture = SaleCapture(self.monitor, self.queue, submission, Actor("u1", "Alice"), "b1",
                                   projection=self.projection)
        self.driver = ReconciliationDriver(self.queue, submission, self.monitor, self.projection)
        self.driver.start(background=False)

    def tearDown(self):
        self.driver.stop()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_offline_sale_syncs_once_after_reconnect(self):
        self.cart.add_product("A", 2)
        self.assertEqual(self.capture.complete_sale(self.cart), Disposition.QUEUED)
        self.assertEqual(self.queue.count(), 1)
        self.assertEqual(self.projection.projected_stock("A"), 8)
        self.assertTrue(self.cart.is_empty())

        self.remote.calls.clear()
        self.monitor.set_online(True)

        self.assertFalse(self.queue.has_pending())
        inserts = self.remote.calls_for("insert", "sales")
        self.assertEqual(len(inserts), 1)
        self.assertEqual([(r["product_id"], r["quantity"]) for r in inserts[0]], [("A", 2)])
        self.assertEqual(self.remote.calls_for("update", "stock_levels"),
                         [{"match": {"product_id": "A", "branch_id": "b1"}, "values": {"quantity": 8}}])
        self.assertEqual(len(self.remote.calls_for("insert", "audit_logs")), 1)
        self.assertEqual(self.projection.projected_stock("A"), 8)
        self.assertEqual(self.driver.state, DriverState.IDLE)
        self.assertEqual(self.driver.last_drain_result.succeeded_count, 1)

    def test_going_offline_again_does_not_drain(self):
        self.cart.add_product("A", 1)
        self.capture.complete_sale(self.cart)
        self.monitor.set_online(False)
        self.assertEqual(self.remote.calls_for("insert", "sales"), [])
        self.assertEqual(self.queue.count(), 1)


if __name__ == "__main__":
    unittest.main()
