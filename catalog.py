"""Read-only product catalog mirrored from the remote products collection."""
import logging
import threading
from typing import Dict, List, Optional

from till_models import Product

logger = logging.getLogger(__name__)


class ProductCatalog:
    def __init__(self, remote=None, projection=None):
        self.remote = remote
        self.projection = projection
        self._products: Dict[str, Product] = {}
        self._lock = threading.Lock()

    def refresh(self) -> int:
        if self.remote is None:
            return 0
        rows = self.remote.select_rows('products')
        products = []
        for row in rows:
            try:
                products.append(Product.from_row(row))
            except KeyError:
                logger.debug("Skipping product row without id: %r", row)
        self.load(products)
        logger.info("Loaded %d product(s) from remote", len(products))
        return len(products)

    def load(self, products: List[Product]) -> None:
        with self._lock:
            self._products = {p.id: p for p in products}

    def all(self) -> List[Product]:
        with self._lock:
            return sorted(self._products.values(), key=lambda p: p.name.lower())

    def get(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._products.get(product_id)

    def find_by_barcode(self, barcode: str) -> Optional[Product]:
        code = (barcode or '').strip()
        if not code:
            return None
        with self._lock:
            for product in self._products.values():
                if product.barcode == code:
                    return product
        return None

    def _in_stock(self, product: Product) -> bool:
        if self.projection is None:
            return True
        return self.projection.projected_stock(product.id) > 0

    def search(self, term: str, limit: int = 5) -> List[Product]:
        """Case-insensitive match on name or barcode, in-stock products only."""
        needle = (term or '').strip().lower()
        if not needle:
            return []
        matches = []
        for product in self.all():
            if needle in product.name.lower() or needle in product.barcode.lower():
                if self._in_stock(product):
                    matches.append(product)
            if len(matches) >= limit:
                break
        return matches
