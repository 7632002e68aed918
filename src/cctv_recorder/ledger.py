"""Recording session bookkeeping against the external recording ledger."""

from __future__ import annotations

import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

import httpx

logger = logging.getLogger(__name__)

START_FUNCTION = "start-recording"
STOP_FUNCTION = "stop-recording"


class LedgerError(RuntimeError):
    """Base error raised for ledger failures."""


class AuthRequiredError(LedgerError):
    """Raised when no authenticated identity is available."""


class CameraOfflineError(LedgerError):
    """Raised when a recording is requested for an offline camera."""


class CameraNotFoundError(LedgerError):
    """Raised when the ledger does not know the camera."""


class SessionConflictError(LedgerError):
    """Raised when an open or close is already in flight."""


class NetworkError(LedgerError):
    """Raised when the ledger cannot be reached."""


class TicketOrphanedError(LedgerError):
    """Raised when a close is attempted without a known open ticket."""


@dataclass(frozen=True, slots=True)
class CloseResult:
    """Ledger response for a closed recording session."""

    ticket: str
    duration: str | None = None
    artifact_url: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "ticket": self.ticket,
            "duration": self.duration,
            "artifact_url": self.artifact_url,
        }


class SessionLedger(Protocol):
    """Authenticated RPC surface that records session lifetimes."""

    async def open(self, camera_id: str, stream_locator: str, started_at: int) -> str:
        ...

    async def close(
        self,
        ticket: str,
        artifact_path: str | None,
        *,
        size_mb: float | None = None,
    ) -> CloseResult:
        ...


TokenProvider = Callable[[], "Awaitable[str | None] | str | None"]


def static_token(token: str | None) -> TokenProvider:
    """Return a token provider that always yields *token*."""

    def _provider() -> str | None:
        return token

    return _provider


async def resolve_token(provider: TokenProvider) -> str | None:
    """Return a non-empty bearer token from *provider*, or ``None``."""

    token = provider()
    if inspect.isawaitable(token):
        token = await token
    if isinstance(token, str) and token.strip():
        return token.strip()
    return None


def _join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    text = response.text.strip()
    return text or f"HTTP {response.status_code}"


class HttpSessionLedger:
    """Thin async HTTP client for the ledger's start/stop functions."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url
        self._token_provider = token_provider
        self._api_key = api_key
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _invoke(self, function: str, payload: dict[str, object]) -> tuple[httpx.Response, str]:
        token = await resolve_token(self._token_provider)
        if token is None:
            raise AuthRequiredError("Not authenticated")
        headers = {"Authorization": f"Bearer {token}"}
        if self._api_key:
            headers["apikey"] = self._api_key
        url = _join_url(self._base_url, f"functions/v1/{function}")
        client = await self._get_client()
        try:
            response = await client.post(url, json=payload, headers=headers)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise NetworkError(f"Unable to reach the recording ledger at {url}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Recording ledger request to {url} failed: {exc}") from exc
        return response, url

    @staticmethod
    def _decode(response: httpx.Response, url: str) -> dict[str, object]:
        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerError(f"Recording ledger returned invalid JSON from {url}") from exc
        if not isinstance(body, dict):
            raise LedgerError(f"Recording ledger returned an unexpected payload from {url}")
        return body

    @staticmethod
    def _raise_common(response: httpx.Response, url: str) -> None:
        status = response.status_code
        detail = _error_detail(response)
        if status == 401:
            raise AuthRequiredError(detail)
        if status == 409:
            raise SessionConflictError(detail)
        raise LedgerError(f"Recording ledger returned HTTP {status} for {url}: {detail}")

    async def open(self, camera_id: str, stream_locator: str, started_at: int) -> str:
        payload = {
            "camera_id": camera_id,
            "stream_url": stream_locator,
            "started_at": int(started_at),
        }
        response, url = await self._invoke(START_FUNCTION, payload)
        if response.is_error:
            detail = _error_detail(response)
            if response.status_code == 404:
                raise CameraNotFoundError(detail)
            if response.status_code == 400 and "offline" in detail.lower():
                raise CameraOfflineError(detail)
            self._raise_common(response, url)
        body = self._decode(response, url)
        ticket = body.get("recording_id")
        if not isinstance(ticket, str) or not ticket:
            raise LedgerError("No recording ID returned")
        return ticket

    async def close(
        self,
        ticket: str,
        artifact_path: str | None,
        *,
        size_mb: float | None = None,
    ) -> CloseResult:
        payload: dict[str, object] = {"recording_id": ticket, "file_path": artifact_path}
        if artifact_path is not None and size_mb is not None:
            payload["size"] = size_mb
        response, url = await self._invoke(STOP_FUNCTION, payload)
        if response.is_error:
            if response.status_code == 404:
                raise TicketOrphanedError(_error_detail(response))
            self._raise_common(response, url)
        body = self._decode(response, url)
        duration = body.get("duration")
        artifact_url = body.get("file_url")
        return CloseResult(
            ticket=ticket,
            duration=duration if isinstance(duration, str) else None,
            artifact_url=artifact_url if isinstance(artifact_url, str) else None,
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def _format_ledger_duration(milliseconds: int) -> str:
    seconds = max(0, int(milliseconds) // 1000)
    return f"{seconds // 60}m {seconds % 60}s"


@dataclass(slots=True)
class LedgerRecord:
    """A recording row kept by :class:`LocalSessionLedger`."""

    recording_id: str
    camera_id: str
    stream_url: str
    started_at: int
    ended_at: int | None = None
    duration: str | None = None
    file_url: str | None = None
    size_mb: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "recording_id": self.recording_id,
            "camera_id": self.camera_id,
            "stream_url": self.stream_url,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration": self.duration,
            "file_url": self.file_url,
            "size": self.size_mb,
        }


class LocalSessionLedger:
    """In-process ledger used when no remote ledger is configured.

    Cameras listed in *cameras* are validated the way the remote functions do
    it: unknown cameras are rejected and offline cameras cannot start. The
    camera status flips to ``recording`` while a session is open.
    """

    def __init__(
        self,
        cameras: dict[str, str] | None = None,
        *,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._cameras = dict(cameras) if cameras is not None else None
        self._records: dict[str, LedgerRecord] = {}
        self._clock = clock or (lambda: int(time.time() * 1000))

    def camera_status(self, camera_id: str) -> str | None:
        if self._cameras is None:
            return None
        return self._cameras.get(camera_id)

    def records(self) -> list[LedgerRecord]:
        return list(self._records.values())

    async def open(self, camera_id: str, stream_locator: str, started_at: int) -> str:
        if not camera_id or not stream_locator:
            raise LedgerError("Missing required fields: camera_id, stream_url")
        if self._cameras is not None:
            status = self._cameras.get(camera_id)
            if status is None:
                raise CameraNotFoundError("Camera not found")
            if status == "offline":
                raise CameraOfflineError("Cannot start recording: Camera is offline")
            self._cameras[camera_id] = "recording"
        recording_id = uuid.uuid4().hex
        self._records[recording_id] = LedgerRecord(
            recording_id=recording_id,
            camera_id=camera_id,
            stream_url=stream_locator,
            started_at=int(started_at),
        )
        return recording_id

    async def close(
        self,
        ticket: str,
        artifact_path: str | None,
        *,
        size_mb: float | None = None,
    ) -> CloseResult:
        record = self._records.get(ticket)
        if record is None or record.ended_at is not None:
            raise TicketOrphanedError("Recording not found")
        if self._cameras is not None:
            status = self._cameras.get(record.camera_id)
            if status != "recording":
                logger.warning(
                    "Camera %s status is %r, not 'recording'; stopping anyway",
                    record.camera_id,
                    status,
                )
            self._cameras[record.camera_id] = "online"
        record.ended_at = self._clock()
        record.duration = _format_ledger_duration(record.ended_at - record.started_at)
        record.file_url = artifact_path
        if artifact_path is not None:
            record.size_mb = size_mb
        return CloseResult(ticket=ticket, duration=record.duration, artifact_url=record.file_url)


class SessionSynchronizer:
    """Track open ledger tickets and guard against duplicate RPCs.

    Duplicate opens for one camera and duplicate closes for one ticket are
    rejected locally without touching the network. A failed close leaves the
    ticket open so the caller can retry it, except when the ledger reports the
    ticket as unknown, in which case nothing remains to be closed.
    """

    def __init__(self, ledger: SessionLedger) -> None:
        self._ledger = ledger
        self._opening: set[str] = set()
        self._open: dict[str, str] = {}
        self._closing: set[str] = set()

    @property
    def ledger(self) -> SessionLedger:
        return self._ledger

    def is_open(self, ticket: str) -> bool:
        return ticket in self._open

    def open_tickets(self) -> dict[str, str]:
        """Return a mapping of open ticket to camera identifier."""

        return dict(self._open)

    async def open(self, camera_id: str, stream_locator: str, started_at: int) -> str:
        if camera_id in self._opening:
            raise SessionConflictError(f"A recording is already starting for camera {camera_id}")
        self._opening.add(camera_id)
        try:
            ticket = await self._ledger.open(camera_id, stream_locator, started_at)
        except LedgerError as exc:
            logger.warning("Failed to open recording for camera %s: %s", camera_id, exc)
            raise
        finally:
            self._opening.discard(camera_id)
        self._open[ticket] = camera_id
        logger.info("Opened recording %s for camera %s", ticket, camera_id)
        return ticket

    async def close(
        self,
        ticket: str,
        artifact_path: str | None,
        *,
        size_mb: float | None = None,
    ) -> CloseResult:
        if ticket not in self._open:
            raise TicketOrphanedError(f"No open recording session for ticket {ticket!r}")
        if ticket in self._closing:
            raise SessionConflictError(f"Recording {ticket} is already being closed")
        self._closing.add(ticket)
        try:
            result = await self._ledger.close(ticket, artifact_path, size_mb=size_mb)
        except TicketOrphanedError:
            logger.warning("Ledger no longer knows recording %s; forgetting it", ticket)
            self._open.pop(ticket, None)
            raise
        except LedgerError as exc:
            logger.warning("Failed to close recording %s: %s", ticket, exc)
            raise
        finally:
            self._closing.discard(ticket)
        camera_id = self._open.pop(ticket, None)
        logger.info(
            "Closed recording %s for camera %s (artifact=%s)",
            ticket,
            camera_id,
            artifact_path or "none",
        )
        return result

    async def aclose(self) -> None:
        closer = getattr(self._ledger, "aclose", None)
        if closer is not None:
            await closer()


__all__ = [
    "AuthRequiredError",
    "CameraNotFoundError",
    "CameraOfflineError",
    "CloseResult",
    "HttpSessionLedger",
    "LedgerError",
    "LedgerRecord",
    "LocalSessionLedger",
    "NetworkError",
    "SessionConflictError",
    "SessionLedger",
    "SessionSynchronizer",
    "TicketOrphanedError",
    "resolve_token",
    "static_token",
]
