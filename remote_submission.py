"""
Apply one sale to the remote system of record.

Three dependent writes, in order: sale rows, stock decrements, audit entry.
They are not atomic together. If the sale insert fails nothing else is tried.
If a decrement fails, earlier decrements stay applied and the caller gets a
PartialSubmissionError. An audit failure only produces a receipt warning.
"""
import logging
from typing import List

from till_errors import PartialSubmissionError, RemoteError, SubmissionError
from till_models import AuditEntry, CartLine, Sale, SubmissionReceipt

logger = logging.getLogger(__name__)

SALE_ACTION = 'Sale'


def build_sale_rows(sale: Sale) -> List[dict]:
    return [{
        'product_id': line.product_id,
        'quantity': line.quantity,
        'total_price': line.line_total,
        'date': sale.captured_at,
        'branch_id': sale.branch_id,
        'user_id': sale.actor_id,
    } for line in sale.lines]


def describe_sale(sale: Sale, stock_after: dict) -> str:
    parts = []
    for line in sale.lines:
        name = line.product_name or line.product_id
        if line.product_id in stock_after:
            parts.append(f"{line.quantity} x {name} (new quantity: {stock_after[line.product_id]})")
        else:
            parts.append(f"{line.quantity} x {name}")
    return f"Sold {'; '.join(parts)}. Total {sale.total:.2f}."


class RemoteSubmission:
    def __init__(self, remote):
        self.remote = remote

    def submit(self, sale: Sale) -> SubmissionReceipt:
        receipt = SubmissionReceipt(sale_id=sale.sale_id)

        try:
            receipt.sale_rows = self.remote.insert_rows('sales', build_sale_rows(sale))
        except RemoteError as exc:
            raise SubmissionError(f"Sale {sale.sale_id} not recorded: {exc}", step='sale_insert',
                                  retryable=exc.retryable, cause=exc) from exc

        applied: List[CartLine] = []
        for idx, line in enumerate(sale.lines):
            try:
                new_qty = self._decrement(sale, line)
            except RemoteError as exc:
                pending = list(sale.lines[idx:])
                logger.warning("Stock decrement failed for sale %s at %s (%d of %d applied): %s",
                               sale.sale_id, line.product_id, len(applied), len(sale.lines), exc)
                raise PartialSubmissionError(
                    f"Sale {sale.sale_id} recorded but stock for {line.product_id} not updated: {exc}",
                    applied_lines=applied, pending_lines=pending, cause=exc,
                ) from exc
            if new_qty is None:
                receipt.skipped_lines.append(line)
                receipt.warnings.append(f"No stock row for {line.product_id} in branch {sale.branch_id}")
                continue
            receipt.stock_after[line.product_id] = new_qty
            applied.append(line)

        entry = AuditEntry(actor_id=sale.actor_id, actor_name=sale.actor_name, action=SALE_ACTION,
                           details=describe_sale(sale, receipt.stock_after))
        try:
            self.remote.insert_rows('audit_logs', [entry.to_row()])
            receipt.audit_logged = True
        except RemoteError as exc:
            logger.warning("Audit entry for sale %s not written: %s", sale.sale_id, exc)
            receipt.warnings.append(f"Audit entry not written: {exc}")

        logger.info("Submitted sale %s (%d line(s), total %.2f)", sale.sale_id, len(sale.lines), sale.total)
        return receipt

    def _decrement(self, sale: Sale, line: CartLine):
        """Read-then-write one stock row; returns the new quantity or None if there is no row."""
        match = {'product_id': line.product_id, 'branch_id': sale.branch_id}
        rows = self.remote.select_rows('stock_levels', match)
        if not rows:
            logger.warning("No stock row for %s in branch %s; skipping decrement", line.product_id, sale.branch_id)
            return None
        try:
            current = int(rows[0].get('quantity') or 0)
        except (TypeError, ValueError):
            current = 0
        new_qty = current - line.quantity
        if new_qty < 0:
            logger.warning("Stock for %s would go negative (%d - %d); clamping to 0",
                           line.product_id, current, line.quantity)
            new_qty = 0
        self.remote.update_rows('stock_levels', match, {'quantity': new_qty})
        return new_qty
