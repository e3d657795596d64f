"""Domain records shared by the capture, queue and reconciliation modules."""
import datetime as dt
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class Disposition(str, Enum):
    """Outcome of completing a sale at the till."""
    SUBMITTED = "submitted"
    QUEUED = "queued"


class DriverState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"
    PARTIALLY_FAILED = "partially_failed"


class ConnectivityEvent(str, Enum):
    BECAME_ONLINE = "became_online"
    BECAME_OFFLINE = "became_offline"
    STABLE_ONLINE = "stable_online"


@dataclass(frozen=True)
class Product:
    id: str
    name: str = ""
    brand: str = ""
    category: str = ""
    variant: str = ""
    price: float = 0.0
    size: str = ""
    image_url: str = ""
    barcode: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Product":
        try:
            price = float(row.get("price") or 0)
        except (TypeError, ValueError):
            price = 0.0
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            brand=row.get("brand") or "",
            category=row.get("category") or "",
            variant=row.get("variant") or "",
            price=price,
            size=row.get("size") or "",
            image_url=row.get("image_url") or "",
            barcode=(row.get("barcode") or "").strip(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "brand": self.brand,
            "category": self.category,
            "variant": self.variant,
            "price": self.price,
            "size": self.size,
            "image_url": self.image_url,
            "barcode": self.barcode,
        }


@dataclass(frozen=True)
class StockLevel:
    product_id: str
    branch_id: str
    quantity: int


@dataclass(frozen=True)
class CartLine:
    """One product and quantity; name and unit price are frozen at capture."""
    product_id: str
    quantity: int
    unit_price: float = 0.0
    product_name: str = ""

    def __post_init__(self):
        if self.quantity < 1:
            raise ValueError(f"Cart line for {self.product_id} must have quantity >= 1")

    @property
    def line_total(self) -> float:
        return round(self.unit_price * self.quantity, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "product_name": self.product_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CartLine":
        return cls(
            product_id=str(data["product_id"]),
            quantity=int(data["quantity"]),
            unit_price=float(data.get("unit_price") or 0),
            product_name=data.get("product_name") or "",
        )


@dataclass(frozen=True)
class Actor:
    id: str
    name: str


@dataclass(frozen=True)
class Sale:
    """
    A captured checkout. Immutable: replaying it never changes its contents.

    sale_id is a local identity used for logging; it is not sent to the remote.
    """
    lines: Tuple[CartLine, ...]
    actor_id: str
    actor_name: str
    branch_id: str
    captured_at: str = field(default_factory=iso_now)
    sale_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not self.lines:
            raise ValueError("A sale needs at least one line")
        # tuples keep the dataclass hashable and the lines immutable
        object.__setattr__(self, "lines", tuple(self.lines))

    @property
    def total(self) -> float:
        return round(sum(line.line_total for line in self.lines), 2)

    def quantities(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for line in self.lines:
            totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
        return totals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sale_id": self.sale_id,
            "captured_at": self.captured_at,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "branch_id": self.branch_id,
            "lines": [line.to_dict() for line in self.lines],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sale":
        return cls(
            lines=tuple(CartLine.from_dict(l) for l in data.get("lines") or []),
            actor_id=str(data.get("actor_id") or ""),
            actor_name=data.get("actor_name") or "",
            branch_id=str(data.get("branch_id") or ""),
            captured_at=data.get("captured_at") or iso_now(),
            sale_id=data.get("sale_id") or str(uuid.uuid4()),
        )


@dataclass(frozen=True)
class PendingSaleRecord:
    sequence_number: int
    sale: Sale

    def to_dict(self) -> Dict[str, Any]:
        return {"sequence_number": self.sequence_number, "sale": self.sale.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingSaleRecord":
        return cls(sequence_number=int(data["sequence_number"]), sale=Sale.from_dict(data["sale"]))


@dataclass(frozen=True)
class AuditEntry:
    actor_id: str
    actor_name: str
    action: str
    details: str
    timestamp: str = field(default_factory=iso_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.actor_id,
            "user_name": self.actor_name,
            "action": self.action,
            "details": self.details,
            "created_at": self.timestamp,
        }


@dataclass
class SubmissionReceipt:
    sale_id: str
    sale_rows: List[Dict[str, Any]] = field(default_factory=list)
    stock_after: Dict[str, int] = field(default_factory=dict)
    skipped_lines: List[CartLine] = field(default_factory=list)
    audit_logged: bool = False
    warnings: List[str] = field(default_factory=list)


@dataclass
class DrainResult:
    succeeded_count: int = 0
    failed_at: Optional[int] = None
    error: Optional[BaseException] = None
    remaining: int = 0
    started_at: str = field(default_factory=iso_now)
    finished_at: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded_count": self.succeeded_count,
            "failed_at": self.failed_at,
            "error": str(self.error) if self.error is not None else None,
            "remaining": self.remaining,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "warnings": list(self.warnings),
        }
