"""Records describing a parsed delivery schedule document."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .normalize import Number, clean_line, coerce_quantity, normalize_unit

_QUANTITY_ALIASES = ("deliveryQty", "quantity", "qty")
_UNIT_ALIASES = ("deliveryUnit", "unit", "unitName")


def _first_present(record: Dict[str, Any], aliases: tuple[str, ...]) -> Any:
    for alias in aliases:
        value = record.get(alias)
        if value is not None:
            return value
    return None


def _first_unit(record: Dict[str, Any]) -> str:
    for alias in _UNIT_ALIASES:
        unit = normalize_unit(record.get(alias))
        if unit:
            return unit
    return ""


def _optional_text(value: Any) -> Optional[str]:
    text = clean_line(value)
    return text or None


def _optional_int(value: Any) -> Optional[int]:
    number = coerce_quantity(value)
    if number is None:
        return None
    return int(number)


@dataclass
class Item:
    """One line of a slip.

    ``unit_price`` and ``delivery_qty`` are always set by the parser; they are
    optional only because archived payloads decoded through :meth:`from_record`
    may lack them.
    """

    name: str
    unit_price: Optional[Number] = None
    delivery_qty: Optional[Number] = None
    delivery_unit: str = ""
    no: Optional[int] = None
    code: Optional[str] = None
    spec: Optional[str] = None
    order_qty: Optional[Number] = None
    order_unit: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "no": self.no,
            "code": self.code,
            "name": self.name,
            "unitPrice": self.unit_price,
            "deliveryQty": self.delivery_qty,
            "deliveryUnit": self.delivery_unit,
            "spec": self.spec,
            "orderQty": self.order_qty,
            "orderUnit": self.order_unit,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Item":
        return cls(
            name=clean_line(record.get("name")),
            unit_price=coerce_quantity(record.get("unitPrice")),
            delivery_qty=coerce_quantity(_first_present(record, _QUANTITY_ALIASES)),
            delivery_unit=_first_unit(record),
            no=_optional_int(record.get("no")),
            code=_optional_text(record.get("code")),
            spec=_optional_text(record.get("spec")),
            order_qty=coerce_quantity(record.get("orderQty")),
            order_unit=_optional_text(record.get("orderUnit")),
        )


@dataclass
class Slip:
    """A single vendor delivery record, keyed by its slip number."""

    slip_no: str
    vendor: Optional[str] = None
    slip_date: Optional[str] = None
    delivery_date: Optional[str] = None
    total: Optional[Number] = None
    comment: Optional[str] = None
    items: List[Item] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slipNo": self.slip_no,
            "vendor": self.vendor,
            "slipDate": self.slip_date,
            "deliveryDate": self.delivery_date,
            "total": self.total,
            "comment": self.comment,
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Slip":
        raw_items = record.get("items")
        items = [
            Item.from_record(entry)
            for entry in (raw_items if isinstance(raw_items, list) else [])
            if isinstance(entry, dict)
        ]
        return cls(
            slip_no=clean_line(record.get("slipNo")),
            vendor=_optional_text(record.get("vendor")),
            slip_date=_optional_text(record.get("slipDate")),
            delivery_date=_optional_text(record.get("deliveryDate")),
            total=coerce_quantity(record.get("total")),
            comment=_optional_text(record.get("comment")),
            items=items,
        )


@dataclass(frozen=True)
class ReportMeta:
    """Report-level information; never used for reconciliation."""

    title: Optional[str] = None
    output_at: Optional[str] = None
    range_from: Optional[str] = None
    range_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "outputAt": self.output_at,
            "rangeFrom": self.range_from,
            "rangeTo": self.range_to,
        }

    @classmethod
    def from_record(cls, record: Any) -> "ReportMeta":
        if not isinstance(record, dict):
            return cls()
        return cls(
            title=_optional_text(record.get("title")),
            output_at=_optional_text(record.get("outputAt")),
            range_from=_optional_text(record.get("rangeFrom")),
            range_to=_optional_text(record.get("rangeTo")),
        )


@dataclass(frozen=True)
class DeliveryDocument:
    """A fully assembled document: report metadata plus slips sorted by number."""

    report: ReportMeta
    slips: tuple[Slip, ...] = ()

    @property
    def item_count(self) -> int:
        return sum(len(slip.items) for slip in self.slips)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report": self.report.to_dict(),
            "slips": [slip.to_dict() for slip in self.slips],
        }

    @classmethod
    def from_record(cls, record: Any) -> "DeliveryDocument":
        """Decode a persisted or client-supplied payload.

        This is the only place where legacy shapes are accepted: ``receipts``
        in place of ``slips`` and the quantity/unit aliases on items.
        """

        if not isinstance(record, dict):
            raise ValueError("Delivery document must be a JSON object")
        raw_slips = record.get("slips")
        if raw_slips is None:
            raw_slips = record.get("receipts")
        if raw_slips is None:
            raw_slips = []
        if not isinstance(raw_slips, list):
            raise ValueError("Delivery document 'slips' must be a list")
        slips = tuple(Slip.from_record(entry) for entry in raw_slips if isinstance(entry, dict))
        return cls(report=ReportMeta.from_record(record.get("report")), slips=slips)


__all__ = ["Item", "Slip", "ReportMeta", "DeliveryDocument"]
