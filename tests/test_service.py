from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import pytest

from delivery_stock.config import Settings
from delivery_stock.delivery import DeliveryDocument, Item, ReportMeta, Slip
from delivery_stock.service import (
    ApplyResult,
    IncomingStockService,
    SnapshotDecodeError,
    StockConflictError,
)
from delivery_stock.stock import StockItem, StockSnapshot
from delivery_stock.storage import MemoryBlobStore, StoredObject, encode_json

ACCOUNT = "acc-1"
STOCK_PATH = f"{ACCOUNT}/incoming-stock/stock.json"
MARKER_PATH = f"{ACCOUNT}/incoming-stock/applied/20240501_101500_slip.json"
FIXED_NOW = datetime(2024, 5, 1, 10, 15, tzinfo=timezone.utc)


class FlakyStore(MemoryBlobStore):
    """Fails writes to selected paths until told otherwise."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_stock_writes = False
        self.fail_marker_writes = False

    async def put(self, path, data, *, fail_if_exists=False, if_version=None) -> str:
        if self.fail_stock_writes and path.endswith("/stock.json"):
            raise RuntimeError("stock write failed")
        if self.fail_marker_writes and "/applied/" in path:
            raise OSError("marker write failed")
        return await super().put(
            path, data, fail_if_exists=fail_if_exists, if_version=if_version
        )


class RacingStore(MemoryBlobStore):
    """Simulates another writer replacing the snapshot right after each read."""

    def __init__(self, competing: StockSnapshot, races: int) -> None:
        super().__init__()
        self.competing = competing
        self.races = races

    async def read(self, path: str) -> StoredObject:
        stored = await super().read(path)
        if path.endswith("/stock.json") and self.races > 0:
            self.races -= 1
            await super().put(path, encode_json(self.competing.to_dict()))
        return stored


def _document(*items: Item, vendor: Optional[str] = "VendorA") -> DeliveryDocument:
    return DeliveryDocument(
        report=ReportMeta(title="納品予定一覧"),
        slips=(Slip(slip_no="000001", vendor=vendor, items=list(items)),),
    )


def _item(name: str, qty, unit: str = "kg") -> Item:
    return Item(name=name, unit_price=100, delivery_qty=qty, delivery_unit=unit)


def _service(store: MemoryBlobStore, settings: Settings) -> IncomingStockService:
    return IncomingStockService(store, settings=settings, clock=lambda: FIXED_NOW)


async def test_apply_is_idempotent(memory_store: MemoryBlobStore, settings: Settings) -> None:
    service = _service(memory_store, settings)
    document = _document(_item("Item1", 5), _item("ITEM1", 5), _item("Item2", 2, "pcs"))

    first = await service.apply_delivery_set(ACCOUNT, "20240501_101500_slip", document)
    after_first = (await service.load_stock(ACCOUNT)).to_dict()
    second = await service.apply_delivery_set(ACCOUNT, "20240501_101500_slip", document)
    after_second = (await service.load_stock(ACCOUNT)).to_dict()

    assert first == ApplyResult(status="applied", added_count=2)
    assert second == ApplyResult(status="already_applied")
    assert after_first == after_second
    assert [(item["name"], item["quantity"]) for item in after_first["items"]] == [
        ("Item1", 10),
        ("Item2", 2),
    ]
    assert after_first["_meta"]["updatedAt"] == "2024-05-01T10:15:00+00:00"
    assert await service.list_applied_base_names(ACCOUNT) == {"20240501_101500_slip"}


async def test_marker_records_counts(memory_store: MemoryBlobStore, settings: Settings) -> None:
    service = _service(memory_store, settings)
    await service.apply_delivery_set(
        ACCOUNT, "20240501_101500_slip", _document(_item("Item1", 5), _item("item1", 1))
    )

    marker = await memory_store.get(MARKER_PATH)
    assert b'"slipCount": 1' in marker
    assert b'"itemCount": 1' in marker


async def test_different_sets_accumulate(memory_store: MemoryBlobStore, settings: Settings) -> None:
    service = _service(memory_store, settings)

    await service.apply_delivery_set(ACCOUNT, "a", _document(_item("Item1", 5)))
    await service.apply_delivery_set(ACCOUNT, "b", _document(_item("Item1", 7)))

    snapshot = await service.load_stock(ACCOUNT)
    assert [item.quantity for item in snapshot.items] == [12]


async def test_failed_merge_rolls_back_marker(settings: Settings) -> None:
    store = FlakyStore()
    service = _service(store, settings)
    document = _document(_item("Item1", 5))
    store.fail_stock_writes = True

    with pytest.raises(RuntimeError, match="stock write failed"):
        await service.apply_delivery_set(ACCOUNT, "20240501_101500_slip", document)

    assert await service.list_applied_base_names(ACCOUNT) == set()

    store.fail_stock_writes = False
    result = await service.apply_delivery_set(ACCOUNT, "20240501_101500_slip", document)
    assert result.status == "applied"


async def test_marker_failure_propagates_without_touching_stock(settings: Settings) -> None:
    store = FlakyStore()
    service = _service(store, settings)
    store.fail_marker_writes = True

    with pytest.raises(OSError):
        await service.apply_delivery_set(ACCOUNT, "x", _document(_item("Item1", 5)))

    with pytest.raises(KeyError):
        await store.read(STOCK_PATH)


async def test_missing_snapshot_is_empty(memory_store: MemoryBlobStore, settings: Settings) -> None:
    snapshot = await _service(memory_store, settings).load_stock(ACCOUNT)

    assert snapshot.items == []
    assert snapshot.updated_at is None


async def test_corrupt_snapshot_is_reported(memory_store: MemoryBlobStore, settings: Settings) -> None:
    service = _service(memory_store, settings)
    await memory_store.put(STOCK_PATH, b"{not json")

    with pytest.raises(SnapshotDecodeError):
        await service.load_stock(ACCOUNT)
    with pytest.raises(SnapshotDecodeError):
        await service.apply_delivery_set(ACCOUNT, "x", _document(_item("Item1", 5)))
    assert await service.list_applied_base_names(ACCOUNT) == set()


async def test_concurrent_writer_is_retried(settings: Settings) -> None:
    competing = StockSnapshot(items=[StockItem(vendor="VendorA", name="Item1", unit="kg", quantity=50)])
    store = RacingStore(competing, races=1)
    service = _service(store, settings)
    await service.save_stock(
        ACCOUNT, [StockItem(vendor="VendorA", name="Item1", unit="kg", quantity=10)]
    )

    result = await service.apply_delivery_set(ACCOUNT, "x", _document(_item("Item1", 5)))

    assert result.status == "applied"
    snapshot = await service.load_stock(ACCOUNT)
    assert [item.quantity for item in snapshot.items] == [55]


async def test_persistent_conflict_raises(settings: Settings) -> None:
    store = RacingStore(StockSnapshot(), races=100)
    service = _service(store, settings)
    await service.save_stock(ACCOUNT, [])

    with pytest.raises(StockConflictError):
        await service.apply_delivery_set(ACCOUNT, "x", _document(_item("Item1", 5)))
    assert store.races == 100 - settings.max_snapshot_attempts
    assert await service.list_applied_base_names(ACCOUNT) == set()


async def test_update_stock_item(memory_store: MemoryBlobStore, settings: Settings) -> None:
    service = _service(memory_store, settings)
    await service.apply_delivery_set(ACCOUNT, "x", _document(_item("Item1", 5)))

    consumed = await service.update_stock_item(ACCOUNT, "ITEM1 ", "kg", "VendorA", -3)
    assert consumed.quantity == 2
    assert consumed.name == "Item1"

    clamped = await service.update_stock_item(ACCOUNT, "Item1", "kg", "VendorA", "-100")
    assert clamped.quantity == 0


async def test_update_cannot_create_items(memory_store: MemoryBlobStore, settings: Settings) -> None:
    service = _service(memory_store, settings)
    await service.apply_delivery_set(ACCOUNT, "x", _document(_item("Item1", 5)))

    with pytest.raises(KeyError):
        await service.update_stock_item(ACCOUNT, "Item1", "kg", "VendorB", 1)
    with pytest.raises(KeyError):
        await service.update_stock_item(ACCOUNT, "Item9", "kg", "VendorA", 1)
    with pytest.raises(ValueError):
        await service.update_stock_item(ACCOUNT, "", "kg", "VendorA", 1)
    with pytest.raises(ValueError):
        await service.update_stock_item(ACCOUNT, "Item1", "kg", "VendorA", "lots")


async def test_delete_stock_item(memory_store: MemoryBlobStore, settings: Settings) -> None:
    service = _service(memory_store, settings)
    await service.apply_delivery_set(
        ACCOUNT, "x", _document(_item("Item1", 5), _item("Item2", 1))
    )

    assert await service.delete_stock_item(ACCOUNT, "item1", "kg", "VendorA") is True
    assert await service.delete_stock_item(ACCOUNT, "item1", "kg", "VendorA") is False
    assert [item.name for item in (await service.load_stock(ACCOUNT)).items] == ["Item2"]


async def test_clear_stock_forgets_markers(memory_store: MemoryBlobStore, settings: Settings) -> None:
    service = _service(memory_store, settings)
    document = _document(_item("Item1", 5))
    await service.apply_delivery_set(ACCOUNT, "a", document)
    await service.apply_delivery_set(ACCOUNT, "b", document)

    assert await service.clear_stock(ACCOUNT) == 2
    assert (await service.load_stock(ACCOUNT)).items == []
    assert (await service.apply_delivery_set(ACCOUNT, "a", document)).status == "applied"


async def test_delete_applied_marker(memory_store: MemoryBlobStore, settings: Settings) -> None:
    service = _service(memory_store, settings)
    await service.apply_delivery_set(ACCOUNT, "a", _document(_item("Item1", 5)))

    assert await service.delete_applied_marker(ACCOUNT, "a") == "deleted"
    assert await service.delete_applied_marker(ACCOUNT, "a") == "not_found"


async def test_invalid_identifiers(memory_store: MemoryBlobStore, settings: Settings) -> None:
    service = _service(memory_store, settings)
    document = _document(_item("Item1", 5))

    with pytest.raises(ValueError):
        await service.apply_delivery_set(ACCOUNT, "", document)
    with pytest.raises(ValueError):
        await service.apply_delivery_set(ACCOUNT, "a/b", document)
    with pytest.raises(ValueError):
        await service.apply_delivery_set(" ", "a", document)


def test_apply_result_payload() -> None:
    assert ApplyResult(status="applied", added_count=3).to_dict() == {
        "status": "applied",
        "addedCount": 3,
    }
    assert ApplyResult(status="already_applied").to_dict() == {"status": "already_applied"}
