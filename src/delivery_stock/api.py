"""FastAPI router configuration."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request, status

from . import schemas
from .config import Settings, get_settings
from .database import create_engine, create_session_factory
from .deliveries import DeliverySetRepository
from .delivery import DeliveryDocument
from .logging import configure_logging
from .management import init_database
from .parser import parse_delivery_lines
from .pdf import NoSlipsFoundError, parse_delivery_pdf
from .service import IncomingStockService, SnapshotDecodeError, StockConflictError
from .storage import BlobStore, ObjectAlreadyExists, ObjectNotFound, create_blob_store

router = APIRouter()


def provide_settings() -> Settings:
    """Dependency returning the active :class:`Settings` instance."""

    return get_settings()


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_stock_service(
    store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(provide_settings),
) -> IncomingStockService:
    return IncomingStockService(store, settings=settings)


def get_delivery_repository(
    store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(provide_settings),
) -> DeliverySetRepository:
    return DeliverySetRepository(store, settings=settings)


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _not_found(exc: KeyError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _document_out(document: DeliveryDocument) -> schemas.DeliveryDocumentOut:
    return schemas.DeliveryDocumentOut.model_validate(document.to_dict())


def _decode_document(payload: dict) -> DeliveryDocument:
    try:
        return DeliveryDocument.from_record(payload)
    except ValueError as exc:
        raise _bad_request(exc) from exc


async def _read_pdf_body(request: Request) -> bytes:
    data = await request.body()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty PDF body")
    return data


def _parse_pdf_or_422(data: bytes) -> DeliveryDocument:
    try:
        return parse_delivery_pdf(data)
    except NoSlipsFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc


@router.get("/health", response_model=schemas.HealthStatus, tags=["system"])
async def health_check(settings: Settings = Depends(provide_settings)) -> schemas.HealthStatus:
    return schemas.HealthStatus(environment=settings.environment)


@router.post("/deliveries/parse", response_model=schemas.DeliveryDocumentOut, tags=["parsing"])
async def parse_lines(payload: schemas.ParseLinesRequest) -> schemas.DeliveryDocumentOut:
    document = parse_delivery_lines(payload.lines)
    if not document.slips:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="No delivery slips found in the supplied lines",
        )
    return _document_out(document)


@router.post("/deliveries/parse-pdf", response_model=schemas.DeliveryDocumentOut, tags=["parsing"])
async def parse_pdf(request: Request) -> schemas.DeliveryDocumentOut:
    data = await _read_pdf_body(request)
    return _document_out(_parse_pdf_or_422(data))


@router.post(
    "/accounts/{account_id}/deliveries",
    response_model=schemas.SaveDeliverySetResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["deliveries"],
)
async def save_delivery_set(
    account_id: str,
    payload: schemas.SaveDeliverySetRequest,
    repository: DeliverySetRepository = Depends(get_delivery_repository),
) -> schemas.SaveDeliverySetResponse:
    document = _decode_document(payload.document)
    try:
        base_name = await repository.save_delivery_set(account_id, payload.file_name, document)
    except ObjectAlreadyExists as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Delivery set already exists"
        ) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return schemas.SaveDeliverySetResponse(base_name=base_name)


@router.post(
    "/accounts/{account_id}/deliveries/pdf",
    response_model=schemas.SaveDeliverySetResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["deliveries"],
)
async def upload_delivery_pdf(
    account_id: str,
    request: Request,
    file_name: Optional[str] = Query(None, alias="fileName"),
    repository: DeliverySetRepository = Depends(get_delivery_repository),
) -> schemas.SaveDeliverySetResponse:
    """Parse a raw ``application/pdf`` body and archive it with its JSON."""

    data = await _read_pdf_body(request)
    document = _parse_pdf_or_422(data)
    try:
        base_name = await repository.save_delivery_set(
            account_id, file_name, document, pdf_bytes=data
        )
    except ObjectAlreadyExists as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Delivery set already exists"
        ) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return schemas.SaveDeliverySetResponse(base_name=base_name)


@router.get(
    "/accounts/{account_id}/deliveries",
    response_model=list[schemas.DeliverySetEntry],
    tags=["deliveries"],
)
async def list_delivery_sets(
    account_id: str,
    repository: DeliverySetRepository = Depends(get_delivery_repository),
) -> Sequence[schemas.DeliverySetEntry]:
    try:
        entries = await repository.list_delivery_sets(account_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return [
        schemas.DeliverySetEntry(base_name=entry.name[: -len(".json")], updated_at=entry.updated_at)
        for entry in entries
    ]


@router.get(
    "/accounts/{account_id}/deliveries/aggregate",
    response_model=list[schemas.AggregateRowOut],
    tags=["deliveries"],
)
async def aggregate_delivery_sets(
    account_id: str,
    repository: DeliverySetRepository = Depends(get_delivery_repository),
) -> Sequence[schemas.AggregateRowOut]:
    try:
        rows = await repository.aggregate_delivery_sets(account_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return [schemas.AggregateRowOut.model_validate(row.to_dict()) for row in rows]


@router.get(
    "/accounts/{account_id}/deliveries/{base_name}",
    response_model=schemas.DeliveryDocumentOut,
    tags=["deliveries"],
)
async def get_delivery_set(
    account_id: str,
    base_name: str,
    repository: DeliverySetRepository = Depends(get_delivery_repository),
) -> schemas.DeliveryDocumentOut:
    try:
        document = await repository.load_delivery_set(account_id, base_name)
    except ObjectNotFound as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return _document_out(document)


@router.delete(
    "/accounts/{account_id}/deliveries/{base_name}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["deliveries"],
)
async def delete_delivery_set(
    account_id: str,
    base_name: str,
    repository: DeliverySetRepository = Depends(get_delivery_repository),
) -> None:
    try:
        await repository.delete_delivery_set(account_id, base_name)
    except ObjectNotFound as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc


@router.post(
    "/accounts/{account_id}/deliveries/{base_name}/apply",
    response_model=schemas.ApplyResponse,
    response_model_exclude_none=True,
    tags=["stock"],
)
async def apply_delivery_set(
    account_id: str,
    base_name: str,
    payload: schemas.ApplyRequest | None = Body(default=None),
    service: IncomingStockService = Depends(get_stock_service),
    repository: DeliverySetRepository = Depends(get_delivery_repository),
) -> schemas.ApplyResponse:
    if payload is not None and payload.document is not None:
        document = _decode_document(payload.document)
    else:
        try:
            document = await repository.load_delivery_set(account_id, base_name)
        except ObjectNotFound as exc:
            raise _not_found(exc) from exc
        except ValueError as exc:
            raise _bad_request(exc) from exc
    try:
        result = await service.apply_delivery_set(account_id, base_name, document)
    except StockConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except SnapshotDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return schemas.ApplyResponse(status=result.status, added_count=result.added_count)


@router.get(
    "/accounts/{account_id}/stock",
    response_model=schemas.StockSnapshotOut,
    tags=["stock"],
)
async def get_stock(
    account_id: str,
    service: IncomingStockService = Depends(get_stock_service),
) -> schemas.StockSnapshotOut:
    try:
        snapshot = await service.load_stock(account_id)
    except SnapshotDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return schemas.StockSnapshotOut(
        updated_at=snapshot.updated_at,
        items=[schemas.StockItemOut.model_validate(item.to_dict()) for item in snapshot.items],
    )


@router.delete(
    "/accounts/{account_id}/stock",
    response_model=schemas.ClearStockResponse,
    tags=["stock"],
)
async def clear_stock(
    account_id: str,
    service: IncomingStockService = Depends(get_stock_service),
) -> schemas.ClearStockResponse:
    try:
        removed = await service.clear_stock(account_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return schemas.ClearStockResponse(markers_removed=removed)


@router.post(
    "/accounts/{account_id}/stock/adjustments",
    response_model=schemas.StockItemOut,
    tags=["stock"],
)
async def adjust_stock(
    account_id: str,
    payload: schemas.StockAdjustment,
    service: IncomingStockService = Depends(get_stock_service),
) -> schemas.StockItemOut:
    try:
        item = await service.update_stock_item(
            account_id, payload.name, payload.unit, payload.vendor, payload.delta
        )
    except KeyError as exc:
        raise _not_found(exc) from exc
    except SnapshotDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    except StockConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return schemas.StockItemOut.model_validate(item.to_dict())


@router.delete(
    "/accounts/{account_id}/stock/items",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["stock"],
)
async def delete_stock_item(
    account_id: str,
    name: str,
    unit: str = "",
    vendor: str = "",
    service: IncomingStockService = Depends(get_stock_service),
) -> None:
    try:
        await service.delete_stock_item(account_id, name, unit, vendor)
    except SnapshotDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    except StockConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get(
    "/accounts/{account_id}/applied",
    response_model=schemas.AppliedMarkersOut,
    tags=["stock"],
)
async def list_applied(
    account_id: str,
    service: IncomingStockService = Depends(get_stock_service),
) -> schemas.AppliedMarkersOut:
    try:
        names = await service.list_applied_base_names(account_id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return schemas.AppliedMarkersOut(base_names=sorted(names))


@router.delete(
    "/accounts/{account_id}/applied/{base_name}",
    response_model=schemas.MarkerDeletionOut,
    tags=["stock"],
)
async def delete_applied_marker(
    account_id: str,
    base_name: str,
    service: IncomingStockService = Depends(get_stock_service),
) -> schemas.MarkerDeletionOut:
    try:
        result = await service.delete_applied_marker(account_id, base_name)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return schemas.MarkerDeletionOut(status=result)


def create_app(settings: Settings | None = None, store: BlobStore | None = None) -> FastAPI:
    """Build the application.

    ``store`` overrides the configured blob store adapter.  When the database
    adapter is used, its table is created on startup.
    """

    settings = settings or get_settings()
    configure_logging(settings.log_level, json_logs=settings.json_logs)

    engine = None
    if store is None:
        session_factory = None
        if settings.storage_backend == "database":
            engine = create_engine(settings)
            session_factory = create_session_factory(engine)
        store = create_blob_store(settings, session_factory)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if engine is not None:
            await init_database(engine)
        yield
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.blob_store = store
    app.dependency_overrides[provide_settings] = lambda: settings
    app.include_router(router)
    return app


app = create_app()


__all__ = ["app", "create_app", "router"]
