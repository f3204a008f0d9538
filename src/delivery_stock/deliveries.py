"""Archive of parsed delivery sets (JSON plus the optional source PDF)."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePath
from typing import Any, Dict, List, Optional, Tuple

from .config import Settings, get_settings
from .delivery import DeliveryDocument
from .logging import get_logger
from .normalize import (
    Number,
    coerce_quantity,
    collation_key,
    normalize_ingredient_key,
    normalize_unit,
)
from .storage import BlobStore, ObjectInfo, ObjectNotFound, decode_json, encode_json
from .timeutils import compact_stamp, serialize_timestamp, utcnow

logger = get_logger(__name__)

JSON_SUFFIX = ".json"
PDF_SUFFIX = ".pdf"
_MAX_STEM_LENGTH = 80
_FALLBACK_STEM = "delivery"


def sanitize_file_stem(value: Optional[str]) -> str:
    """Reduce a file stem to a storage-safe ASCII name."""

    raw = (value or "").strip()
    if not raw:
        return _FALLBACK_STEM
    cleaned = re.sub(r"\s+", "_", raw)
    cleaned = re.sub(r"[^a-zA-Z0-9._-]", "_", cleaned)
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    return cleaned[:_MAX_STEM_LENGTH] or _FALLBACK_STEM


def build_base_name(file_name: Optional[str], now: datetime) -> str:
    stem = PurePath(file_name).stem if file_name else ""
    return f"{compact_stamp(now)}_{sanitize_file_stem(stem)}"


@dataclass(frozen=True)
class AggregateRow:
    name: str
    unit: str
    quantity: Number

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "unit": self.unit, "quantity": self.quantity}


class DeliverySetRepository:
    """Stores parsed delivery sets under ``<account>/<deliveries_folder>/``."""

    def __init__(self, store: BlobStore, *, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    def _folder_path(self, account_id: str) -> str:
        account = str(account_id or "").strip()
        if not account:
            raise ValueError("Account ID is required")
        return f"{account}/{self.settings.deliveries_folder}"

    def _file_path(self, account_id: str, base_name: str, suffix: str) -> str:
        clean = str(base_name or "").strip()
        if not clean:
            raise ValueError("baseName is required")
        if "/" in clean:
            raise ValueError("baseName must not contain '/'")
        return f"{self._folder_path(account_id)}/{clean}{suffix}"

    async def save_delivery_set(
        self,
        account_id: str,
        file_name: Optional[str],
        document: DeliveryDocument,
        *,
        pdf_bytes: Optional[bytes] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Persist ``document`` (and the source PDF) and return the new base name."""

        if document is None:
            raise ValueError("A parsed delivery document is required")
        saved_at = now or utcnow()
        base_name = build_base_name(file_name, saved_at)
        payload = document.to_dict()
        payload["_meta"] = {
            "savedAt": serialize_timestamp(saved_at),
            "originalFileName": file_name or None,
        }
        await self.store.put(
            self._file_path(account_id, base_name, JSON_SUFFIX),
            encode_json(payload),
            fail_if_exists=True,
        )
        if pdf_bytes:
            await self.store.put(
                self._file_path(account_id, base_name, PDF_SUFFIX),
                pdf_bytes,
                fail_if_exists=True,
            )
        logger.info(
            "delivery_set_saved",
            account_id=account_id,
            base_name=base_name,
            slips=len(document.slips),
            items=document.item_count,
        )
        return base_name

    async def list_delivery_sets(self, account_id: str) -> List[ObjectInfo]:
        entries = await self.store.list(self._folder_path(account_id))
        json_entries = [entry for entry in entries if entry.name.lower().endswith(JSON_SUFFIX)]
        json_entries.sort(key=lambda entry: (entry.updated_at, entry.name), reverse=True)
        return json_entries

    async def load_delivery_set(self, account_id: str, base_name: str) -> DeliveryDocument:
        data = await self.store.get(self._file_path(account_id, base_name, JSON_SUFFIX))
        return DeliveryDocument.from_record(decode_json(data))

    async def delete_delivery_set(self, account_id: str, base_name: str) -> None:
        """Remove the archived JSON and its PDF; a missing PDF is not an error."""

        await self.store.delete(self._file_path(account_id, base_name, JSON_SUFFIX))
        try:
            await self.store.delete(self._file_path(account_id, base_name, PDF_SUFFIX))
        except ObjectNotFound:
            pass
        logger.info("delivery_set_deleted", account_id=account_id, base_name=base_name)

    async def aggregate_delivery_sets(self, account_id: str) -> List[AggregateRow]:
        """Total delivered quantity per ``(name, unit)`` across every archived set.

        Vendors are ignored here.  Sets that cannot be read are skipped.
        """

        totals: Dict[Tuple[str, str], AggregateRow] = {}
        for entry in await self.list_delivery_sets(account_id):
            base_name = entry.name[: -len(JSON_SUFFIX)]
            try:
                document = await self.load_delivery_set(account_id, base_name)
            except (ObjectNotFound, ValueError) as exc:
                logger.warning(
                    "delivery_set_unreadable",
                    account_id=account_id,
                    base_name=base_name,
                    error=str(exc),
                )
                continue
            for slip in document.slips:
                for item in slip.items:
                    quantity = coerce_quantity(item.delivery_qty)
                    if not item.name or quantity is None:
                        continue
                    unit = normalize_unit(item.delivery_unit)
                    key = (normalize_ingredient_key(item.name), unit)
                    previous = totals.get(key)
                    if previous is None:
                        totals[key] = AggregateRow(name=item.name, unit=unit, quantity=quantity)
                    else:
                        totals[key] = AggregateRow(
                            name=previous.name,
                            unit=previous.unit,
                            quantity=previous.quantity + quantity,
                        )
        return sorted(
            totals.values(),
            key=lambda row: (collation_key(row.name), collation_key(row.unit)),
        )


__all__ = [
    "AggregateRow",
    "DeliverySetRepository",
    "build_base_name",
    "sanitize_file_stem",
]
