"""
Key-value blob storage used for stock snapshots, applied markers and archived
delivery sets.

Every adapter offers the same four operations (read/put/list/delete) plus two
write guards:

- ``fail_if_exists`` turns ``put`` into a create-only write.  The applied
  marker relies on this being atomic in the backing store.
- ``if_version`` makes ``put`` conditional on the version returned by the last
  ``read``; the stock snapshot uses it for optimistic concurrency.
"""
from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings
from .logging import get_logger
from .models import StoredBlob
from .timeutils import utcnow

logger = get_logger(__name__)


class StorageError(Exception):
    """Base class for blob store failures that callers may want to branch on."""


class ObjectNotFound(StorageError, KeyError):
    """No object is stored at the requested path."""


class ObjectAlreadyExists(StorageError):
    """A create-only write found an existing object."""


class VersionConflict(StorageError):
    """A conditional write found a different version than expected."""


@dataclass(frozen=True)
class StoredObject:
    path: str
    data: bytes
    version: str


@dataclass(frozen=True)
class ObjectInfo:
    name: str
    updated_at: datetime


def _folder_prefix(prefix: str) -> str:
    return prefix.strip("/") + "/"


def encode_json(payload: Any) -> bytes:
    return json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")


def decode_json(data: bytes) -> Any:
    """Decode a JSON blob; an empty object decodes as ``{}``."""

    return json.loads(data.decode("utf-8") or "{}")


def compute_content_version(data: bytes) -> str:
    """Content-derived version tag used by the filesystem adapter."""

    return "sha256:" + hashlib.sha256(data).hexdigest()


class BlobStore(ABC):
    """Abstract interface for blob storage backends."""

    @abstractmethod
    async def read(self, path: str) -> StoredObject:
        """Return the object and its version, or raise :class:`ObjectNotFound`."""

    async def get(self, path: str) -> bytes:
        return (await self.read(path)).data

    @abstractmethod
    async def put(
        self,
        path: str,
        data: bytes,
        *,
        fail_if_exists: bool = False,
        if_version: Optional[str] = None,
    ) -> str:
        """Store ``data`` at ``path`` and return the new version."""

    @abstractmethod
    async def list(self, prefix: str) -> List[ObjectInfo]:
        """List direct children of ``prefix``; names are relative to it."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove the object, raising :class:`ObjectNotFound` when absent."""


@dataclass
class _MemoryEntry:
    data: bytes
    version: int
    updated_at: datetime


class MemoryBlobStore(BlobStore):
    """Process-local store for tests and throwaway deployments."""

    def __init__(self) -> None:
        self._objects: Dict[str, _MemoryEntry] = {}

    async def read(self, path: str) -> StoredObject:
        entry = self._objects.get(path)
        if entry is None:
            raise ObjectNotFound(path)
        return StoredObject(path=path, data=entry.data, version=str(entry.version))

    async def put(
        self,
        path: str,
        data: bytes,
        *,
        fail_if_exists: bool = False,
        if_version: Optional[str] = None,
    ) -> str:
        entry = self._objects.get(path)
        if fail_if_exists and entry is not None:
            raise ObjectAlreadyExists(path)
        if if_version is not None and (entry is None or str(entry.version) != if_version):
            raise VersionConflict(path)
        version = 1 if entry is None else entry.version + 1
        self._objects[path] = _MemoryEntry(data=bytes(data), version=version, updated_at=utcnow())
        return str(version)

    async def list(self, prefix: str) -> List[ObjectInfo]:
        folder = _folder_prefix(prefix)
        infos: List[ObjectInfo] = []
        for path, entry in self._objects.items():
            if not path.startswith(folder):
                continue
            name = path[len(folder):]
            if not name or "/" in name:
                continue
            infos.append(ObjectInfo(name=name, updated_at=entry.updated_at))
        return infos

    async def delete(self, path: str) -> None:
        if self._objects.pop(path, None) is None:
            raise ObjectNotFound(path)


class FileSystemBlobStore(BlobStore):
    """
    Local directory store.

    Create-only writes use exclusive file creation; other writes go through a
    temporary file that replaces the target.  Versions are content hashes.
    """

    def __init__(self, base_path: Path) -> None:
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info("filesystem_blob_store_ready", base_path=str(self.base_path))

    def _resolve(self, path: str) -> Path:
        file_path = (self.base_path / path.strip("/")).resolve()
        if file_path == self.base_path or not file_path.is_relative_to(self.base_path):
            raise ValueError("Path traversal not allowed")
        return file_path

    async def read(self, path: str) -> StoredObject:
        file_path = self._resolve(path)
        try:
            data = file_path.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise ObjectNotFound(path) from exc
        return StoredObject(path=path, data=data, version=compute_content_version(data))

    async def put(
        self,
        path: str,
        data: bytes,
        *,
        fail_if_exists: bool = False,
        if_version: Optional[str] = None,
    ) -> str:
        file_path = self._resolve(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        if fail_if_exists:
            try:
                with file_path.open("xb") as handle:
                    handle.write(data)
            except FileExistsError as exc:
                raise ObjectAlreadyExists(path) from exc
            return compute_content_version(data)
        if if_version is not None:
            try:
                current = file_path.read_bytes()
            except FileNotFoundError as exc:
                raise VersionConflict(path) from exc
            if compute_content_version(current) != if_version:
                raise VersionConflict(path)
        temp_path = file_path.with_name(file_path.name + ".tmp")
        try:
            temp_path.write_bytes(data)
            temp_path.replace(file_path)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise
        return compute_content_version(data)

    async def list(self, prefix: str) -> List[ObjectInfo]:
        folder = self._resolve(prefix)
        if not folder.is_dir():
            return []
        infos: List[ObjectInfo] = []
        for entry in folder.iterdir():
            if not entry.is_file() or entry.name.endswith(".tmp"):
                continue
            modified = datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc)
            infos.append(ObjectInfo(name=entry.name, updated_at=modified))
        return infos

    async def delete(self, path: str) -> None:
        file_path = self._resolve(path)
        try:
            file_path.unlink()
        except FileNotFoundError as exc:
            raise ObjectNotFound(path) from exc


class DatabaseBlobStore(BlobStore):
    """
    SQLAlchemy-backed store, one row per path.

    The primary key makes create-only inserts atomic and the integer version
    column backs conditional updates.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def read(self, path: str) -> StoredObject:
        async with self._session_factory() as session:
            blob = await session.get(StoredBlob, path)
            if blob is None:
                raise ObjectNotFound(path)
            return StoredObject(path=path, data=blob.content, version=str(blob.version))

    async def put(
        self,
        path: str,
        data: bytes,
        *,
        fail_if_exists: bool = False,
        if_version: Optional[str] = None,
    ) -> str:
        async with self._session_factory() as session:
            if fail_if_exists:
                session.add(StoredBlob(path=path, content=data, version=1))
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise ObjectAlreadyExists(path) from exc
                return "1"

            if if_version is not None:
                try:
                    expected = int(if_version)
                except ValueError as exc:
                    raise VersionConflict(path) from exc
                stmt = (
                    update(StoredBlob)
                    .where(StoredBlob.path == path, StoredBlob.version == expected)
                    .values(content=data, version=expected + 1)
                )
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    await session.rollback()
                    raise VersionConflict(path)
                await session.commit()
                return str(expected + 1)

            blob = await session.get(StoredBlob, path)
            if blob is None:
                blob = StoredBlob(path=path, content=data, version=1)
                session.add(blob)
            else:
                blob.content = data
                blob.version = blob.version + 1
            await session.commit()
            return str(blob.version)

    async def list(self, prefix: str) -> List[ObjectInfo]:
        folder = _folder_prefix(prefix)
        stmt = (
            select(StoredBlob.path, StoredBlob.updated_at)
            .where(StoredBlob.path.startswith(folder, autoescape=True))
            .order_by(StoredBlob.path)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()
        infos: List[ObjectInfo] = []
        for row in rows:
            name = row.path[len(folder):]
            if not name or "/" in name:
                continue
            updated_at = row.updated_at
            if updated_at.tzinfo is None:
                updated_at = updated_at.replace(tzinfo=timezone.utc)
            infos.append(ObjectInfo(name=name, updated_at=updated_at))
        return infos

    async def delete(self, path: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(delete(StoredBlob).where(StoredBlob.path == path))
            await session.commit()
        if result.rowcount == 0:
            raise ObjectNotFound(path)


def create_blob_store(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> BlobStore:
    """Build the adapter selected by ``settings.storage_backend``."""

    if settings.storage_backend == "memory":
        return MemoryBlobStore()
    if settings.storage_backend == "filesystem":
        return FileSystemBlobStore(settings.storage_path)
    if session_factory is None:
        raise ValueError("The database blob store requires a session factory")
    return DatabaseBlobStore(session_factory)


__all__ = [
    "BlobStore",
    "DatabaseBlobStore",
    "FileSystemBlobStore",
    "MemoryBlobStore",
    "ObjectAlreadyExists",
    "ObjectInfo",
    "ObjectNotFound",
    "StorageError",
    "StoredObject",
    "VersionConflict",
    "compute_content_version",
    "create_blob_store",
    "decode_json",
    "encode_json",
]
