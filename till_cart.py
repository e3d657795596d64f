"""In-memory cart for the till, bounded by projected stock."""
import threading
from collections import OrderedDict
from typing import List

from till_errors import StockUnavailableError, UnknownProductError
from till_models import CartLine, Product


class Cart:
    def __init__(self, catalog, projection):
        self.catalog = catalog
        self.projection = projection
        self._lines: "OrderedDict[str, CartLine]" = OrderedDict()
        self._lock = threading.RLock()

    def _product(self, product_id: str) -> Product:
        product = self.catalog.get(product_id)
        if product is None:
            raise UnknownProductError(f"Unknown product {product_id}")
        return product

    def _check_stock(self, product: Product, quantity: int) -> None:
        available = self.projection.projected_stock(product.id)
        if quantity > available:
            raise StockUnavailableError(
                f"Only {available} of {product.name or product.id} in stock",
                product_id=product.id, available=available)

    def _set(self, product: Product, quantity: int) -> CartLine:
        line = CartLine(product_id=product.id, quantity=quantity, unit_price=product.price,
                        product_name=product.name)
        self._lines[product.id] = line
        return line

    def add_product(self, product_id: str, quantity: int = 1) -> CartLine:
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        with self._lock:
            product = self._product(product_id)
            existing = self._lines.get(product_id)
            new_qty = (existing.quantity if existing else 0) + quantity
            self._check_stock(product, new_qty)
            return self._set(product, new_qty)

    def apply_delta(self, product_id: str, delta: int) -> None:
        """Apply a (product, quantity delta) event from a scanner or voice command."""
        with self._lock:
            existing = self._lines.get(product_id)
            current = existing.quantity if existing else 0
            target = current + delta
            if target <= 0:
                self._lines.pop(product_id, None)
                return
            if delta > 0:
                self.add_product(product_id, delta)
            else:
                self.update_quantity(product_id, target)

    def scan_barcode(self, barcode: str) -> CartLine:
        product = self.catalog.find_by_barcode(barcode)
        if product is None:
            raise UnknownProductError("Product not found for this barcode.")
        if self.projection.projected_stock(product.id) <= 0:
            raise StockUnavailableError(f'Product "{product.name}" is out of stock.', product_id=product.id)
        return self.add_product(product.id, 1)

    def update_quantity(self, product_id: str, quantity: int) -> CartLine:
        with self._lock:
            if product_id not in self._lines:
                raise UnknownProductError(f"{product_id} is not in the cart")
            if quantity < 1:
                raise ValueError("Quantity must be at least 1")
            product = self._product(product_id)
            self._check_stock(product, quantity)
            return self._set(product, quantity)

    def remove(self, product_id: str) -> bool:
        with self._lock:
            return self._lines.pop(product_id, None) is not None

    def lines(self) -> List[CartLine]:
        with self._lock:
            return list(self._lines.values())

    def total(self) -> float:
        return round(sum(line.line_total for line in self.lines()), 2)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._lines

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    def to_dict(self) -> dict:
        return {
            'lines': [dict(line.to_dict(), line_total=line.line_total) for line in self.lines()],
            'total': self.total(),
        }
