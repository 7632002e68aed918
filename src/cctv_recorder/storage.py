"""Remote object storage and local saving of recording artifacts."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import quote

import httpx

from .ledger import TokenProvider, resolve_token

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "recordings"
DEFAULT_DOWNLOADS_DIR = Path.home() / "Downloads"

_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9]")
_UNSAFE_ID = re.compile(r"[^a-zA-Z0-9-]")


class UploadFailedError(RuntimeError):
    """Raised when an artifact could not be uploaded."""


@dataclass(frozen=True, slots=True)
class StoredArtifact:
    """Location of an uploaded artifact."""

    path: str
    url: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "url": self.url}


class ArtifactStorage(Protocol):
    """Blob store that accepts recording artifacts."""

    async def put(self, path: str, data: bytes, content_type: str) -> StoredArtifact:
        ...


def format_timestamp(moment: datetime) -> str:
    """Return ``YYYY-MM-DD_HH-MM-SS`` for *moment* in UTC."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")


def generate_filename(
    camera_id: str,
    camera_name: str | None,
    extension: str = "webm",
    *,
    now: datetime | None = None,
) -> str:
    """Return ``{camera_id}_{safe_name}_{timestamp}.{extension}``."""

    safe_id = _UNSAFE_ID.sub("_", camera_id or "") or "camera"
    safe_name = _UNSAFE_NAME.sub("_", camera_name or "") or "camera"
    timestamp = format_timestamp(now or datetime.now(timezone.utc))
    return f"{safe_id}_{safe_name}_{timestamp}.{extension.lstrip('.')}"


def upload_path(camera_id: str, ticket: str, filename: str) -> str:
    """Return the remote object path for a recording artifact."""

    return f"record/{camera_id}/{ticket}_{filename}"


def _validate_relative_path(path: str) -> PurePosixPath:
    candidate = PurePosixPath(path)
    if not path or candidate.is_absolute() or ".." in candidate.parts:
        raise UploadFailedError(f"Invalid artifact path: {path!r}")
    return candidate


class HttpObjectStorage:
    """Upload artifacts to an HTTP object store bucket with upsert semantics."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        *,
        bucket: str = DEFAULT_BUCKET,
        api_key: str | None = None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._bucket = bucket
        self._api_key = api_key
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def bucket(self) -> str:
        return self._bucket

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{quote(path)}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def put(self, path: str, data: bytes, content_type: str) -> StoredArtifact:
        _validate_relative_path(path)
        token = await resolve_token(self._token_provider)
        if token is None:
            raise UploadFailedError("Not authenticated")
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": content_type,
            "x-upsert": "true",
        }
        if self._api_key:
            headers["apikey"] = self._api_key
        url = f"{self._base_url}/storage/v1/object/{self._bucket}/{quote(path)}"
        client = await self._get_client()
        try:
            response = await client.post(url, content=data, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise UploadFailedError(
                f"Storage returned HTTP {status} for {path}: {exc.response.text.strip()}"
            ) from exc
        except httpx.HTTPError as exc:
            raise UploadFailedError(f"Upload of {path} failed: {exc}") from exc
        logger.info("Uploaded %d bytes to %s/%s", len(data), self._bucket, path)
        return StoredArtifact(path=path, url=self.public_url(path))

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class LocalDirectoryStorage:
    """Store artifacts below a local directory, mirroring the remote layout."""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    async def put(self, path: str, data: bytes, content_type: str) -> StoredArtifact:
        relative = _validate_relative_path(path)
        target = self._directory.joinpath(*relative.parts)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise UploadFailedError(f"Unable to store {path}: {exc}") from exc
        return StoredArtifact(path=path, url=target.resolve().as_uri())


class LocalSaver:
    """Save artifacts into a downloads directory without overwriting files."""

    def __init__(self, directory: Path | str = DEFAULT_DOWNLOADS_DIR) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _unique_target(self, filename: str) -> Path:
        name = Path(filename).name
        target = self._directory / name
        stem = target.stem
        suffix = target.suffix
        counter = 1
        while target.exists():
            target = self._directory / f"{stem}-{counter}{suffix}"
            counter += 1
        return target

    async def save(self, filename: str, data: bytes) -> Path:
        def _write() -> Path:
            self._directory.mkdir(parents=True, exist_ok=True)
            target = self._unique_target(filename)
            target.write_bytes(data)
            return target

        target = await asyncio.to_thread(_write)
        logger.info("Saved recording locally to %s", target)
        return target


__all__ = [
    "ArtifactStorage",
    "DEFAULT_BUCKET",
    "DEFAULT_DOWNLOADS_DIR",
    "HttpObjectStorage",
    "LocalDirectoryStorage",
    "LocalSaver",
    "StoredArtifact",
    "UploadFailedError",
    "format_timestamp",
    "generate_filename",
    "upload_path",
]
