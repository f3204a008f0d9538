"""Per-account stock ledger persisted in the blob store.

Applying a delivery set is gated by a create-only marker object: the marker is
written first and the stock snapshot second, so a repeated apply of the same
base name is a no-op and a crash in between can only under-count.  Snapshot
writes are conditional on the version that was read, and conflicting writers
retry the whole read-merge-write cycle.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Literal, Optional, Set, Tuple

from .config import Settings, get_settings
from .delivery import DeliveryDocument
from .logging import get_logger
from .normalize import clean_line, coerce_quantity, stock_key
from .stock import (
    AppliedMarker,
    StockItem,
    StockSnapshot,
    compute_delta_items,
    merge_stock_items,
)
from .storage import (
    BlobStore,
    ObjectAlreadyExists,
    ObjectNotFound,
    VersionConflict,
    decode_json,
    encode_json,
)
from .timeutils import serialize_timestamp, utcnow

logger = get_logger(__name__)

STOCK_FILE_NAME = "stock.json"
APPLIED_FOLDER_NAME = "applied"
MARKER_SUFFIX = ".json"


class SnapshotDecodeError(ValueError):
    """The stored stock snapshot exists but is not valid JSON."""


class StockConflictError(RuntimeError):
    """Concurrent writers kept changing the snapshot between read and write."""


@dataclass(frozen=True)
class ApplyResult:
    status: Literal["applied", "already_applied"]
    added_count: Optional[int] = None

    def to_dict(self) -> dict:
        payload: dict = {"status": self.status}
        if self.added_count is not None:
            payload["addedCount"] = self.added_count
        return payload


def _require(value: object, message: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValueError(message)
    return text


class IncomingStockService:
    """Stock snapshot, applied markers and manual adjustments for each account."""

    def __init__(
        self,
        store: BlobStore,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def _folder_path(self, account_id: str) -> str:
        account = _require(account_id, "Account ID is required")
        return f"{account}/{self.settings.stock_folder}"

    def _stock_path(self, account_id: str) -> str:
        return f"{self._folder_path(account_id)}/{STOCK_FILE_NAME}"

    def _applied_folder(self, account_id: str) -> str:
        return f"{self._folder_path(account_id)}/{APPLIED_FOLDER_NAME}"

    def _applied_marker_path(self, account_id: str, base_name: str) -> str:
        clean = _require(base_name, "baseName is required")
        if "/" in clean:
            raise ValueError("baseName must not contain '/'")
        return f"{self._applied_folder(account_id)}/{clean}{MARKER_SUFFIX}"

    def _now_iso(self) -> str:
        return serialize_timestamp(self._clock()) or ""

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------
    async def _read_stock(self, account_id: str) -> Tuple[StockSnapshot, Optional[str]]:
        path = self._stock_path(account_id)
        try:
            stored = await self.store.read(path)
        except ObjectNotFound:
            return StockSnapshot(), None
        try:
            payload = decode_json(stored.data)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error("stock_snapshot_corrupt", account_id=account_id, path=path)
            raise SnapshotDecodeError(f"Stock snapshot at {path} is not valid JSON") from exc
        return StockSnapshot.from_record(payload), stored.version

    async def _write_stock(
        self,
        account_id: str,
        items: List[StockItem],
        *,
        version: Optional[str],
        conditional: bool,
    ) -> StockSnapshot:
        snapshot = StockSnapshot(items=items, updated_at=self._now_iso())
        data = encode_json(snapshot.to_dict())
        path = self._stock_path(account_id)
        if not conditional:
            await self.store.put(path, data)
        elif version is None:
            await self.store.put(path, data, fail_if_exists=True)
        else:
            await self.store.put(path, data, if_version=version)
        return snapshot

    async def _mutate_stock(
        self,
        account_id: str,
        mutate: Callable[[List[StockItem]], List[StockItem]],
    ) -> StockSnapshot:
        attempts = self.settings.max_snapshot_attempts
        for attempt in range(1, attempts + 1):
            snapshot, version = await self._read_stock(account_id)
            items = mutate(snapshot.items)
            try:
                return await self._write_stock(
                    account_id, items, version=version, conditional=True
                )
            except (VersionConflict, ObjectAlreadyExists):
                logger.warning(
                    "stock_snapshot_conflict",
                    account_id=account_id,
                    attempt=attempt,
                    max_attempts=attempts,
                )
        raise StockConflictError(
            f"Stock snapshot for account '{account_id}' changed during {attempts} attempts"
        )

    async def load_stock(self, account_id: str) -> StockSnapshot:
        """Return the account's snapshot; a missing snapshot is an empty stock."""

        snapshot, _ = await self._read_stock(account_id)
        return snapshot

    async def save_stock(self, account_id: str, items: List[StockItem]) -> StockSnapshot:
        """Overwrite the snapshot unconditionally."""

        return await self._write_stock(account_id, list(items), version=None, conditional=False)

    # ------------------------------------------------------------------
    # Delivery application
    # ------------------------------------------------------------------
    async def apply_delivery_set(
        self,
        account_id: str,
        base_name: str,
        document: DeliveryDocument,
    ) -> ApplyResult:
        """Fold ``document`` into the account's stock exactly once per ``base_name``."""

        if document is None:
            raise ValueError("A parsed delivery document is required")
        clean_base = _require(base_name, "baseName is required")
        marker_path = self._applied_marker_path(account_id, clean_base)

        deltas = compute_delta_items(document)
        now_iso = self._now_iso()
        marker = AppliedMarker(
            base_name=clean_base,
            applied_at=now_iso,
            slip_count=len(document.slips),
            item_count=len(deltas),
        )

        try:
            await self.store.put(marker_path, encode_json(marker.to_dict()), fail_if_exists=True)
        except ObjectAlreadyExists:
            logger.info("delivery_set_already_applied", account_id=account_id, base_name=clean_base)
            return ApplyResult(status="already_applied")

        try:
            await self._mutate_stock(
                account_id, lambda items: merge_stock_items(items, deltas, now_iso)
            )
        except Exception:
            await self._rollback_marker(account_id, clean_base, marker_path)
            raise

        logger.info(
            "delivery_set_applied",
            account_id=account_id,
            base_name=clean_base,
            added_count=len(deltas),
        )
        return ApplyResult(status="applied", added_count=len(deltas))

    async def _rollback_marker(self, account_id: str, base_name: str, marker_path: str) -> None:
        logger.warning("applied_marker_rollback", account_id=account_id, base_name=base_name)
        try:
            await self.store.delete(marker_path)
        except ObjectNotFound:
            pass
        except Exception:
            logger.exception(
                "applied_marker_rollback_failed", account_id=account_id, base_name=base_name
            )

    async def list_applied_base_names(self, account_id: str) -> Set[str]:
        entries = await self.store.list(self._applied_folder(account_id))
        names: Set[str] = set()
        for entry in entries:
            if entry.name.lower().endswith(MARKER_SUFFIX):
                names.add(entry.name[: -len(MARKER_SUFFIX)])
        return names

    async def delete_applied_marker(
        self, account_id: str, base_name: str
    ) -> Literal["deleted", "not_found"]:
        marker_path = self._applied_marker_path(account_id, base_name)
        try:
            await self.store.delete(marker_path)
        except ObjectNotFound:
            return "not_found"
        logger.info("applied_marker_deleted", account_id=account_id, base_name=base_name)
        return "deleted"

    # ------------------------------------------------------------------
    # Manual stock maintenance
    # ------------------------------------------------------------------
    async def update_stock_item(
        self,
        account_id: str,
        name: str,
        unit: Optional[str],
        vendor: Optional[str],
        delta: object,
    ) -> StockItem:
        """Apply a manual consumption/restock to an existing key.

        Raises ``KeyError`` when the key has never been delivered; manual
        adjustments cannot create stock entries.
        """

        clean_name = clean_line(name)
        if not clean_name:
            raise ValueError("Item name is required")
        numeric_delta = coerce_quantity(delta)
        if numeric_delta is None:
            raise ValueError("Invalid quantity change")

        key = stock_key(clean_name, unit, vendor)
        now_iso = self._now_iso()
        updated: List[StockItem] = []

        def mutate(items: List[StockItem]) -> List[StockItem]:
            updated.clear()
            result: List[StockItem] = []
            for item in items:
                if item.key == key:
                    item = replace(
                        item,
                        quantity=max(0, item.quantity + numeric_delta),
                        updated_at=now_iso,
                    )
                    updated.append(item)
                result.append(item)
            if not updated:
                raise KeyError(f"Stock item '{clean_name}' not found")
            return result

        await self._mutate_stock(account_id, mutate)
        return updated[0]

    async def delete_stock_item(
        self,
        account_id: str,
        name: str,
        unit: Optional[str],
        vendor: Optional[str],
    ) -> bool:
        """Remove one key from the snapshot; returns whether anything was removed."""

        clean_name = clean_line(name)
        if not clean_name:
            raise ValueError("Item name is required")
        key = stock_key(clean_name, unit, vendor)
        removed: List[StockItem] = []

        def mutate(items: List[StockItem]) -> List[StockItem]:
            removed.clear()
            kept: List[StockItem] = []
            for item in items:
                if item.key == key:
                    removed.append(item)
                else:
                    kept.append(item)
            return kept

        await self._mutate_stock(account_id, mutate)
        return bool(removed)

    async def clear_stock(self, account_id: str) -> int:
        """Empty the snapshot and forget every applied marker.

        Returns the number of markers removed.
        """

        await self.save_stock(account_id, [])
        folder = self._applied_folder(account_id)
        removed = 0
        for entry in await self.store.list(folder):
            try:
                await self.store.delete(f"{folder}/{entry.name}")
            except ObjectNotFound:
                continue
            removed += 1
        logger.info("stock_cleared", account_id=account_id, markers_removed=removed)
        return removed


__all__ = [
    "ApplyResult",
    "IncomingStockService",
    "SnapshotDecodeError",
    "StockConflictError",
]
