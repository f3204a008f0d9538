"""Pydantic schemas used by the API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Number = Union[int, float]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ItemOut(CamelModel):
    no: Optional[int] = None
    code: Optional[str] = None
    name: str
    unit_price: Optional[Number] = None
    delivery_qty: Optional[Number] = None
    delivery_unit: str = ""
    spec: Optional[str] = None
    order_qty: Optional[Number] = None
    order_unit: Optional[str] = None


class SlipOut(CamelModel):
    slip_no: str
    vendor: Optional[str] = None
    slip_date: Optional[str] = None
    delivery_date: Optional[str] = None
    total: Optional[Number] = None
    comment: Optional[str] = None
    items: list[ItemOut] = Field(default_factory=list)


class ReportOut(CamelModel):
    title: Optional[str] = None
    output_at: Optional[str] = None
    range_from: Optional[str] = None
    range_to: Optional[str] = None


class DeliveryDocumentOut(CamelModel):
    report: ReportOut
    slips: list[SlipOut] = Field(default_factory=list)


class ParseLinesRequest(BaseModel):
    lines: list[str] = Field(..., description="Text fragments in reading order.")


class SaveDeliverySetRequest(CamelModel):
    file_name: Optional[str] = Field(None, description="Original PDF file name.")
    document: dict[str, Any] = Field(..., description="Parsed delivery document.")


class SaveDeliverySetResponse(CamelModel):
    base_name: str


class DeliverySetEntry(CamelModel):
    base_name: str
    updated_at: datetime


class AggregateRowOut(CamelModel):
    name: str
    unit: str
    quantity: Number


class ApplyRequest(CamelModel):
    document: Optional[dict[str, Any]] = Field(
        None, description="Parsed document; defaults to the archived delivery set."
    )


class ApplyResponse(CamelModel):
    status: Literal["applied", "already_applied"]
    added_count: Optional[int] = None


class StockItemOut(CamelModel):
    vendor: str = ""
    name: str
    unit: str = ""
    quantity: Number
    updated_at: Optional[str] = None


class StockSnapshotOut(CamelModel):
    updated_at: Optional[str] = None
    items: list[StockItemOut] = Field(default_factory=list)


class StockAdjustment(CamelModel):
    name: str
    unit: str = ""
    vendor: str = ""
    delta: Number = Field(..., description="Positive for restock, negative for consumption.")


class ClearStockResponse(CamelModel):
    status: Literal["cleared"] = "cleared"
    markers_removed: int


class AppliedMarkersOut(CamelModel):
    base_names: list[str]


class MarkerDeletionOut(BaseModel):
    status: Literal["deleted", "not_found"]


class HealthStatus(BaseModel):
    status: Literal["ok"] = "ok"
    environment: str


__all__ = [
    "AggregateRowOut",
    "AppliedMarkersOut",
    "ApplyRequest",
    "ApplyResponse",
    "ClearStockResponse",
    "DeliveryDocumentOut",
    "DeliverySetEntry",
    "HealthStatus",
    "ItemOut",
    "MarkerDeletionOut",
    "ParseLinesRequest",
    "ReportOut",
    "SaveDeliverySetRequest",
    "SaveDeliverySetResponse",
    "SlipOut",
    "StockAdjustment",
    "StockItemOut",
    "StockSnapshotOut",
]
