"""Delivery-slip ingestion and idempotent stock reconciliation."""
from __future__ import annotations

from .delivery import DeliveryDocument, Item, ReportMeta, Slip
from .parser import parse_delivery_lines
from .service import ApplyResult, IncomingStockService
from .stock import compute_delta_items, merge_stock_items

__all__ = [
    "ApplyResult",
    "DeliveryDocument",
    "IncomingStockService",
    "Item",
    "ReportMeta",
    "Slip",
    "compute_delta_items",
    "merge_stock_items",
    "parse_delivery_lines",
]
