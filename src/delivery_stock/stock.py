"""Stock ledger records plus the pure delta aggregation and merge steps."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .delivery import DeliveryDocument
from .normalize import (
    Number,
    clean_line,
    coerce_quantity,
    collation_key,
    normalize_unit,
    normalize_vendor,
    stock_key,
)

SNAPSHOT_VERSION = 1

StockKey = Tuple[str, str, str]


@dataclass(frozen=True)
class DeltaRecord:
    """Net quantity one document contributes to a stock key."""

    vendor: str
    name: str
    unit: str
    quantity: Number

    @property
    def key(self) -> StockKey:
        return stock_key(self.name, self.unit, self.vendor)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor": self.vendor,
            "name": self.name,
            "unit": self.unit,
            "quantity": self.quantity,
        }


@dataclass
class StockItem:
    """On-hand quantity for one ``(vendor, name, unit)`` key."""

    name: str
    unit: str = ""
    vendor: str = ""
    quantity: Number = 0
    updated_at: Optional[str] = None

    @property
    def key(self) -> StockKey:
        return stock_key(self.name, self.unit, self.vendor)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor": self.vendor,
            "name": self.name,
            "unit": self.unit,
            "quantity": self.quantity,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> Optional["StockItem"]:
        name = clean_line(record.get("name"))
        if not name:
            return None
        quantity = coerce_quantity(record.get("quantity"))
        return cls(
            name=name,
            unit=normalize_unit(record.get("unit")),
            vendor=normalize_vendor(record.get("vendor")),
            quantity=0 if quantity is None else quantity,
            updated_at=record.get("updatedAt") or None,
        )


@dataclass
class StockSnapshot:
    """The persisted running total for one account."""

    items: List[StockItem] = field(default_factory=list)
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_meta": {"version": SNAPSHOT_VERSION, "updatedAt": self.updated_at},
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_record(cls, record: Any) -> "StockSnapshot":
        if not isinstance(record, dict):
            return cls()
        meta = record.get("_meta")
        updated_at = meta.get("updatedAt") if isinstance(meta, dict) else None
        raw_items = record.get("items")
        items: List[StockItem] = []
        for entry in raw_items if isinstance(raw_items, list) else []:
            if not isinstance(entry, dict):
                continue
            item = StockItem.from_record(entry)
            if item is not None:
                items.append(item)
        return cls(items=items, updated_at=updated_at or None)


@dataclass(frozen=True)
class AppliedMarker:
    """Create-once record that a delivery set was folded into stock.

    Only the existence of the stored object matters; the body is informational.
    """

    base_name: str
    applied_at: str
    slip_count: int
    item_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseName": self.base_name,
            "appliedAt": self.applied_at,
            "slipCount": self.slip_count,
            "itemCount": self.item_count,
        }


def compute_delta_items(document: DeliveryDocument) -> List[DeltaRecord]:
    """Sum delivered quantities per stock key across every slip of ``document``.

    Items without a name or without a finite delivery quantity are skipped.
    The result order carries no meaning.
    """

    totals: Dict[StockKey, DeltaRecord] = {}
    for slip in document.slips:
        vendor = normalize_vendor(slip.vendor)
        for item in slip.items:
            name = clean_line(item.name)
            if not name:
                continue
            quantity = coerce_quantity(item.delivery_qty)
            if quantity is None:
                continue
            unit = normalize_unit(item.delivery_unit)
            key = stock_key(name, unit, vendor)
            previous = totals.get(key)
            if previous is None:
                totals[key] = DeltaRecord(vendor=vendor, name=name, unit=unit, quantity=quantity)
            else:
                totals[key] = replace(previous, quantity=previous.quantity + quantity)
    return list(totals.values())


def sort_stock_items(items: Iterable[StockItem]) -> List[StockItem]:
    return sorted(
        items,
        key=lambda item: (
            collation_key(item.vendor),
            collation_key(item.name),
            collation_key(item.unit),
        ),
    )


def merge_stock_items(
    current: Iterable[StockItem],
    deltas: Iterable[DeltaRecord],
    now: str,
) -> List[StockItem]:
    """Fold ``deltas`` into ``current`` without mutating either.

    Matching keys are adjusted and clamped at zero; new keys are created with
    ``max(0, delta)``.  Every touched item gets ``updated_at = now``.
    """

    merged: Dict[StockKey, StockItem] = {}
    for item in current:
        merged[item.key] = replace(item)

    for delta in deltas:
        existing = merged.get(delta.key)
        if existing is not None:
            existing.quantity = max(0, existing.quantity + delta.quantity)
            existing.updated_at = now
        else:
            merged[delta.key] = StockItem(
                name=delta.name,
                unit=normalize_unit(delta.unit),
                vendor=delta.vendor,
                quantity=max(0, delta.quantity),
                updated_at=now,
            )

    return sort_stock_items(merged.values())


__all__ = [
    "SNAPSHOT_VERSION",
    "AppliedMarker",
    "DeltaRecord",
    "StockItem",
    "StockKey",
    "StockSnapshot",
    "compute_delta_items",
    "merge_stock_items",
    "sort_stock_items",
]
