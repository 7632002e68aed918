"""Save decisions and artifact persistence for finished recordings."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Deque

from .encoder import Artifact
from .ledger import CloseResult, LedgerError, SessionSynchronizer
from .notifications import NotificationKind, NotificationLog
from .storage import ArtifactStorage, LocalSaver, UploadFailedError, upload_path

logger = logging.getLogger(__name__)


class GateClosedError(RuntimeError):
    """Raised when a save decision is requested after the gate shut down."""


@dataclass(frozen=True, slots=True)
class SaveDecision:
    """How a finished recording should be persisted."""

    upload_to_remote: bool = True
    download_local: bool = False

    @property
    def cancelled(self) -> bool:
        return not self.upload_to_remote and not self.download_local

    def to_dict(self) -> dict[str, bool]:
        return {
            "upload_to_remote": self.upload_to_remote,
            "download_local": self.download_local,
        }


DEFAULT_SAVE_DECISION = SaveDecision()


@dataclass(slots=True)
class SaveDecisionRequest:
    """A finished recording waiting for the operator's save decision."""

    camera_id: str
    ticket: str
    artifact: Artifact
    filename: str
    duration: str
    camera_name: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        return {
            "request_id": self.request_id,
            "camera_id": self.camera_id,
            "camera_name": self.camera_name,
            "ticket": self.ticket,
            "filename": self.filename,
            "duration": self.duration,
            "created_at": self.created_at,
            "artifact": self.artifact.to_dict(),
            "defaults": DEFAULT_SAVE_DECISION.to_dict(),
        }


class FinalizeState(str, Enum):
    ARTIFACT_READY = "artifact_ready"
    GATE_SHOWN = "gate_shown"
    CANCELLED = "cancelled"
    RESOLVED = "resolved"
    FINALIZED = "finalized"


@dataclass(slots=True)
class FinalizeOutcome:
    """Result of persisting a recording and closing its ledger ticket."""

    camera_id: str
    ticket: str
    duration: str | None = None
    request_id: str | None = None
    state: FinalizeState = FinalizeState.ARTIFACT_READY
    decision: SaveDecision | None = None
    location: str | None = None
    size_mb: float | None = None
    local_path: str | None = None
    artifact_url: str | None = None
    upload_error: str | None = None
    close_result: CloseResult | None = None
    close_error: LedgerError | None = field(default=None, repr=False)

    @property
    def closed(self) -> bool:
        return self.close_result is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "ticket": self.ticket,
            "request_id": self.request_id,
            "state": self.state.value,
            "decision": self.decision.to_dict() if self.decision else None,
            "location": self.location,
            "local_path": self.local_path,
            "artifact_url": self.artifact_url,
            "upload_error": self.upload_error,
            "duration": (
                self.close_result.duration
                if self.close_result is not None and self.close_result.duration
                else self.duration
            ),
            "closed": self.closed,
            "close_error": str(self.close_error) if self.close_error else None,
        }


DecisionResolver = Callable[[SaveDecisionRequest], Awaitable["SaveDecision | None"]]


def fixed_decision(decision: SaveDecision | None) -> DecisionResolver:
    """Resolver that answers every request with *decision* (``None`` cancels)."""

    async def _resolve(request: SaveDecisionRequest) -> SaveDecision | None:
        return decision

    return _resolve


class PendingDecisions:
    """Resolver that parks requests until an operator answers them."""

    def __init__(self, *, timeout: float | None = None) -> None:
        self._timeout = timeout
        self._waiting: dict[str, tuple[SaveDecisionRequest, asyncio.Future[SaveDecision | None]]] = {}

    async def __call__(self, request: SaveDecisionRequest) -> SaveDecision | None:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[SaveDecision | None] = loop.create_future()
        self._waiting[request.request_id] = (request, future)
        try:
            return await asyncio.wait_for(future, self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Save decision for camera %s timed out; discarding recording", request.camera_id
            )
            return None
        finally:
            self._waiting.pop(request.request_id, None)

    def waiting(self) -> list[SaveDecisionRequest]:
        return [request for request, _future in self._waiting.values()]

    def resolve(self, request_id: str, decision: SaveDecision | None) -> SaveDecisionRequest:
        try:
            request, future = self._waiting[request_id]
        except KeyError as exc:
            raise KeyError(f"Unknown save decision request: {request_id}") from exc
        if not future.done():
            future.set_result(decision)
        return request

    def cancel(self, request_id: str) -> SaveDecisionRequest:
        return self.resolve(request_id, None)


class SaveDecisionGate:
    """Single, global, serialized prompt for save decisions.

    Requests from any camera queue up and are shown to the resolver one at a
    time, in submission order.
    """

    def __init__(self, resolver: DecisionResolver) -> None:
        self._resolver = resolver
        self._queue: Deque[tuple[SaveDecisionRequest, asyncio.Future[SaveDecision | None]]] = deque()
        self._wake: asyncio.Event | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._current: SaveDecisionRequest | None = None
        self._closed = False

    @property
    def current(self) -> SaveDecisionRequest | None:
        return self._current

    def pending(self) -> list[SaveDecisionRequest]:
        queued = [request for request, future in self._queue if not future.done()]
        if self._current is not None:
            return [self._current, *queued]
        return queued

    async def request_decision(self, request: SaveDecisionRequest) -> SaveDecision | None:
        if self._closed:
            raise GateClosedError("Save decision gate is closed")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[SaveDecision | None] = loop.create_future()
        self._queue.append((request, future))
        self._ensure_dispatcher()
        assert self._wake is not None
        self._wake.set()
        return await future

    def _ensure_dispatcher(self) -> None:
        if self._wake is None:
            self._wake = asyncio.Event()
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch())

    async def _dispatch(self) -> None:
        assert self._wake is not None
        while True:
            while not self._queue:
                self._wake.clear()
                await self._wake.wait()
            request, future = self._queue.popleft()
            if future.done():
                continue
            self._current = request
            logger.info(
                "Awaiting save decision for camera %s (%s)", request.camera_id, request.filename
            )
            try:
                decision = await self._resolver(request)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_exception(GateClosedError("Save decision gate is closed"))
                raise
            except Exception as exc:
                logger.exception("Save decision resolver failed for camera %s", request.camera_id)
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(decision)
            finally:
                self._current = None

    async def aclose(self) -> None:
        self._closed = True
        dispatcher = self._dispatcher
        self._dispatcher = None
        if dispatcher is not None:
            dispatcher.cancel()
            try:
                await dispatcher
            except asyncio.CancelledError:
                pass
        while self._queue:
            _request, future = self._queue.popleft()
            if not future.done():
                future.set_exception(GateClosedError("Save decision gate is closed"))


class ArtifactFinalizer:
    """Persist a recording as decided and close its ledger ticket exactly once."""

    def __init__(
        self,
        synchronizer: SessionSynchronizer,
        gate: SaveDecisionGate,
        *,
        storage: ArtifactStorage | None = None,
        saver: LocalSaver | None = None,
        notifications: NotificationLog | None = None,
    ) -> None:
        self._synchronizer = synchronizer
        self._gate = gate
        self._storage = storage
        self._saver = saver
        self._notifications = notifications

    @property
    def gate(self) -> SaveDecisionGate:
        return self._gate

    def _notify(self, camera_id: str, ticket: str, kind: NotificationKind, message: str) -> None:
        if self._notifications is not None:
            self._notifications.notify(camera_id, ticket, kind, message)

    async def finalize(self, request: SaveDecisionRequest) -> FinalizeOutcome:
        outcome = FinalizeOutcome(
            camera_id=request.camera_id,
            ticket=request.ticket,
            duration=request.duration,
            request_id=request.request_id,
            state=FinalizeState.GATE_SHOWN,
        )
        try:
            decision = await self._gate.request_decision(request)
        except GateClosedError:
            logger.info("Save decision gate closed; discarding recording %s", request.ticket)
            decision = None
        except Exception as exc:
            logger.warning("Save decision failed for recording %s: %s", request.ticket, exc)
            self._notify(
                request.camera_id,
                request.ticket,
                NotificationKind.SAVE_DECISION_FAILED,
                f"Save prompt failed; recording discarded: {exc}",
            )
            decision = None
        outcome.decision = decision
        if decision is None or decision.cancelled:
            outcome.state = FinalizeState.CANCELLED
            return await self.close(outcome)
        outcome.state = FinalizeState.RESOLVED
        try:
            await self._persist(request, decision, outcome)
        finally:
            await self.close(outcome)
        return outcome

    async def discard(self, camera_id: str, ticket: str, *, duration: str | None = None) -> FinalizeOutcome:
        """Close *ticket* without an artifact."""

        outcome = FinalizeOutcome(
            camera_id=camera_id,
            ticket=ticket,
            duration=duration,
            state=FinalizeState.CANCELLED,
        )
        return await self.close(outcome)

    async def close(self, outcome: FinalizeOutcome) -> FinalizeOutcome:
        """Close the ledger ticket for *outcome*, recording any failure on it."""

        try:
            result = await self._synchronizer.close(
                outcome.ticket, outcome.location, size_mb=outcome.size_mb
            )
        except LedgerError as exc:
            outcome.close_error = exc
            return outcome
        outcome.close_error = None
        outcome.close_result = result
        if result.artifact_url:
            outcome.artifact_url = result.artifact_url
        outcome.state = FinalizeState.FINALIZED
        return outcome

    async def _persist(
        self,
        request: SaveDecisionRequest,
        decision: SaveDecision,
        outcome: FinalizeOutcome,
    ) -> None:
        artifact = request.artifact
        if decision.download_local:
            if self._saver is None:
                logger.warning("Local save requested but no download directory is configured")
            else:
                try:
                    saved = await self._saver.save(request.filename, artifact.data)
                except Exception as exc:
                    if not isinstance(exc, OSError):
                        logger.exception("Local save of %s failed", request.filename)
                    self._notify(
                        request.camera_id,
                        request.ticket,
                        NotificationKind.DOWNLOAD_FAILED,
                        f"Failed to save recording locally: {exc}",
                    )
                else:
                    outcome.local_path = str(saved)
        if decision.upload_to_remote:
            if self._storage is None:
                outcome.upload_error = "No remote storage configured"
                self._notify(
                    request.camera_id,
                    request.ticket,
                    NotificationKind.UPLOAD_FAILED,
                    "Upload failed: no remote storage configured",
                )
                return
            path = upload_path(request.camera_id, request.ticket, request.filename)
            try:
                stored = await self._storage.put(path, artifact.data, artifact.mime_type)
            except Exception as exc:
                if not isinstance(exc, UploadFailedError):
                    logger.exception("Upload of %s failed", path)
                outcome.upload_error = str(exc) or type(exc).__name__
                self._notify(
                    request.camera_id,
                    request.ticket,
                    NotificationKind.UPLOAD_FAILED,
                    f"Upload failed: {exc}",
                )
                return
            outcome.location = stored.path
            outcome.artifact_url = stored.url
            outcome.size_mb = artifact.size_mb


__all__ = [
    "ArtifactFinalizer",
    "DEFAULT_SAVE_DECISION",
    "DecisionResolver",
    "FinalizeOutcome",
    "FinalizeState",
    "GateClosedError",
    "PendingDecisions",
    "SaveDecision",
    "SaveDecisionGate",
    "SaveDecisionRequest",
    "fixed_decision",
]
