from __future__ import annotations

import mimetypes
import os
from pathlib import Path, PurePosixPath
from typing import Protocol
from uuid import uuid4

import structlog

logger = structlog.get_logger()

DEFAULT_MIME_TYPE = "application/octet-stream"


class PhotoStorageError(Exception):
    pass


class PhotoNotFoundError(PhotoStorageError):
    pass


class PhotoStorage(Protocol):
    def exists(self, path: str) -> bool: ...

    def get(self, path: str) -> bytes: ...

    def mime_type(self, path: str) -> str: ...

    def put(self, content: bytes, *, directory: str, extension: str) -> str: ...

    def delete(self, path: str) -> None: ...


class LocalPhotoStorage:
    """Photo blobs on a local disk, addressed by paths relative to the disk root."""

    def __init__(self, root_dir: Path, disk: str = "public") -> None:
        normalized_disk = disk.strip()
        if not normalized_disk:
            raise PhotoStorageError("storage disk is empty")
        self.disk = normalized_disk
        self._root_dir = root_dir / normalized_disk
        self._root_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> LocalPhotoStorage:
        root_dir = Path(os.getenv("PHOTO_STORAGE_ROOT", "data/storage"))
        return cls(root_dir, disk=os.getenv("PHOTO_STORAGE_DISK", "public"))

    def _safe_path(self, path: str) -> Path:
        key_path = PurePosixPath(path)
        if key_path.is_absolute() or ".." in key_path.parts:
            raise PhotoStorageError("invalid photo path")
        if not key_path.parts:
            raise PhotoStorageError("photo path is empty")
        return self._root_dir / Path(*key_path.parts)

    def exists(self, path: str) -> bool:
        target = self._safe_path(path)
        return target.exists() and target.is_file()

    def get(self, path: str) -> bytes:
        if not self.exists(path):
            raise PhotoNotFoundError(f"photo not found: {path}")
        return self._safe_path(path).read_bytes()

    def mime_type(self, path: str) -> str:
        guessed, _ = mimetypes.guess_type(self._safe_path(path).name)
        return guessed or DEFAULT_MIME_TYPE

    def put(self, content: bytes, *, directory: str, extension: str) -> str:
        safe_extension = extension.lower().lstrip(".").strip() or "bin"
        path = f"{directory.strip('/')}/{uuid4()}.{safe_extension}"
        target = self._safe_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        logger.info("photo_stored", path=path, size_bytes=len(content))
        return path

    def delete(self, path: str) -> None:
        target = self._safe_path(path)
        if target.exists():
            target.unlink()
            logger.info("photo_deleted", path=path)


def build_photo_directory(owner_id: str) -> str:
    return f"damage-reports/{owner_id}"
