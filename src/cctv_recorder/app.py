"""FastAPI control surface for the CCTV recorder."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel

from .camera import CAMERA_SOURCES
from .config import ConfigManager, DEFAULT_CONFIG_PATH, SaveMode
from .controller import CameraLiveness, RecordingController, StopRejectedError, format_clock
from .finalizer import (
    ArtifactFinalizer,
    DecisionResolver,
    PendingDecisions,
    SaveDecision,
    SaveDecisionGate,
    fixed_decision,
)
from .ledger import (
    AuthRequiredError,
    CameraNotFoundError,
    CameraOfflineError,
    HttpSessionLedger,
    LedgerError,
    LocalSessionLedger,
    NetworkError,
    SessionConflictError,
    SessionLedger,
    SessionSynchronizer,
    TicketOrphanedError,
    TokenProvider,
    static_token,
)
from .notifications import NotificationLog
from .session_store import RecordingState
from .sources import FrameSource, UnsupportedSourceError, create_frame_source
from .storage import ArtifactStorage, HttpObjectStorage, LocalDirectoryStorage, LocalSaver
from .version import APP_VERSION

STOP_RESPONSE_POLL_INTERVAL = 0.05
APP_CONFIG_PATH = Path(os.environ.get("CCTV_RECORDER_CONFIG", DEFAULT_CONFIG_PATH))

_FIXED_DECISIONS: dict[SaveMode, SaveDecision] = {
    SaveMode.UPLOAD: SaveDecision(upload_to_remote=True, download_local=False),
    SaveMode.DOWNLOAD: SaveDecision(upload_to_remote=False, download_local=True),
    SaveMode.BOTH: SaveDecision(upload_to_remote=True, download_local=True),
}


class StartRecordingPayload(BaseModel):
    stream_url: str
    liveness: str = CameraLiveness.UNKNOWN.value
    camera_name: str | None = None
    fps: int | None = None


class StopRecordingPayload(BaseModel):
    camera_status: str | None = None


class FrameSourcePayload(BaseModel):
    stream_url: str
    camera_name: str | None = None
    fps: int | None = None


class SaveDecisionPayload(BaseModel):
    upload_to_remote: bool = True
    download_local: bool = False


class StopPolicyPayload(BaseModel):
    policy: str


def _ledger_http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, AuthRequiredError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, CameraNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (CameraOfflineError, SessionConflictError, TicketOrphanedError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NetworkError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def create_app(
    config_path: Path | str = APP_CONFIG_PATH,
    *,
    ledger: SessionLedger | None = None,
    storage: ArtifactStorage | None = None,
    token_provider: TokenProvider | None = None,
    notifications: NotificationLog | None = None,
    encoder_factory=None,
) -> FastAPI:
    app = FastAPI(title="CCTV Recorder", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    capture_settings = config_manager.get_capture_settings()
    ledger_settings = config_manager.get_ledger_settings()
    save_settings = config_manager.get_save_settings()

    if token_provider is None:
        token_provider = static_token(os.getenv("CCTV_LEDGER_TOKEN"))

    ledger_url = ledger_settings.base_url if ledger_settings.configured else None

    if ledger is None:
        if ledger_url is not None:
            ledger = HttpSessionLedger(
                ledger_url,
                token_provider,
                api_key=ledger_settings.api_key,
                timeout=ledger_settings.timeout,
            )
        else:
            logger.info("No recording ledger configured; tracking sessions in process")
            ledger = LocalSessionLedger()

    if storage is None:
        if ledger_url is not None:
            storage = HttpObjectStorage(
                ledger_url,
                token_provider,
                bucket=ledger_settings.bucket,
                api_key=ledger_settings.api_key,
            )
        else:
            storage = LocalDirectoryStorage(config_path.parent / "recordings")

    if notifications is None:
        notifications = NotificationLog(config_path.with_name("notifications.jsonl"))

    pending_decisions = PendingDecisions(timeout=save_settings.decision_timeout)
    resolver: DecisionResolver
    if save_settings.mode is SaveMode.PROMPT:
        resolver = pending_decisions
    else:
        resolver = fixed_decision(_FIXED_DECISIONS[save_settings.mode])

    synchronizer = SessionSynchronizer(ledger)
    gate = SaveDecisionGate(resolver)
    finalizer = ArtifactFinalizer(
        synchronizer,
        gate,
        storage=storage,
        saver=LocalSaver(save_settings.downloads_dir),
        notifications=notifications,
    )
    controller = RecordingController(
        synchronizer,
        finalizer,
        notifications=notifications,
        capture=capture_settings,
        stop_policy=config_manager.get_stop_policy(),
        encoder_factory=encoder_factory,
    )
    sources: dict[str, FrameSource] = {}
    stop_tasks: set[asyncio.Task] = set()

    app.state.config_manager = config_manager
    app.state.controller = controller
    app.state.pending_decisions = pending_decisions
    app.state.sources = sources

    def _session_payload(camera_id: str) -> dict[str, object]:
        session = controller.session(camera_id)
        payload = session.to_dict()
        payload["clock"] = format_clock(session.elapsed_seconds)
        payload["capture"] = controller.capture_info(camera_id)
        return payload

    async def _close_source(source: FrameSource) -> None:
        try:
            await source.close()
        except Exception:  # pragma: no cover - logging only
            logger.exception("Failed to close frame source")

    def _on_stop_done(task: asyncio.Task) -> None:
        stop_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background stop finished with an error: %s", exc)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await controller.aclose()
        if stop_tasks:
            await asyncio.gather(*list(stop_tasks), return_exceptions=True)
        for camera_id, source in list(sources.items()):
            controller.unregister_frame_source(camera_id)
            await _close_source(source)
        sources.clear()
        await synchronizer.aclose()
        closer = getattr(storage, "aclose", None)
        if closer is not None:
            await closer()

    @app.get("/api/recordings")
    async def list_recordings() -> dict[str, object]:
        return {"sessions": [session.to_dict() for session in controller.sessions()]}

    @app.get("/api/recordings/{camera_id}")
    async def get_recording(camera_id: str) -> dict[str, object]:
        return _session_payload(camera_id)

    @app.post("/api/recordings/{camera_id}/start")
    async def start_recording(camera_id: str, payload: StartRecordingPayload) -> dict[str, object]:
        try:
            liveness = CameraLiveness(payload.liveness.strip().lower())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown liveness: {payload.liveness}") from exc
        if payload.fps is not None and payload.fps <= 0:
            raise HTTPException(status_code=400, detail="fps must be positive")
        try:
            await controller.start(
                camera_id,
                stream_url=payload.stream_url,
                liveness=liveness,
                camera_name=payload.camera_name,
                fps=payload.fps,
            )
        except LedgerError as exc:
            raise _ledger_http_error(exc) from exc
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _session_payload(camera_id)

    @app.post("/api/recordings/{camera_id}/stop")
    async def stop_recording(
        camera_id: str, response: Response, payload: StopRecordingPayload | None = None
    ) -> dict[str, object]:
        camera_status = payload.camera_status if payload is not None else None
        task = asyncio.create_task(controller.stop(camera_id, camera_status=camera_status))
        stop_tasks.add(task)
        # answer once the stop finishes or is parked on a save decision
        while not task.done():
            if any(request.camera_id == camera_id for request in gate.pending()):
                task.add_done_callback(_on_stop_done)
                response.status_code = 202
                return {
                    "status": "awaiting_decision",
                    "session": _session_payload(camera_id),
                    "outcome": None,
                }
            await asyncio.wait({task}, timeout=STOP_RESPONSE_POLL_INTERVAL)
        stop_tasks.discard(task)
        try:
            outcome = task.result()
        except StopRejectedError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except LedgerError as exc:
            raise _ledger_http_error(exc) from exc
        return {
            "status": "stopped" if outcome is not None else "stopping",
            "session": _session_payload(camera_id),
            "outcome": outcome.to_dict() if outcome is not None else None,
        }

    @app.get("/api/sources")
    async def list_sources() -> dict[str, object]:
        return {
            "sources": [
                {"camera_id": camera_id, "stream_type": source.stream_type, "ready": source.ready}
                for camera_id, source in sorted(sources.items())
            ],
            "local_cameras": [
                {"value": value, "label": label} for value, label in CAMERA_SOURCES.items()
            ],
        }

    @app.put("/api/sources/{camera_id}")
    async def register_source(camera_id: str, payload: FrameSourcePayload) -> dict[str, object]:
        try:
            source = create_frame_source(payload.stream_url, fps=payload.fps)
        except UnsupportedSourceError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if not source.capturable:
            raise HTTPException(
                status_code=422,
                detail="Recording is not available for YouTube streams due to DRM restrictions",
            )
        await source.start()
        try:
            controller.register_frame_source(
                camera_id, source, camera_name=payload.camera_name, fps=payload.fps
            )
        except UnsupportedSourceError as exc:  # pragma: no cover - guarded above
            await _close_source(source)
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        previous = sources.get(camera_id)
        sources[camera_id] = source
        if previous is not None:
            await _close_source(previous)
        return {"camera_id": camera_id, "stream_type": source.stream_type}

    @app.delete("/api/sources/{camera_id}")
    async def unregister_source(camera_id: str) -> dict[str, object]:
        source = sources.pop(camera_id, None)
        controller.unregister_frame_source(camera_id)
        if source is None:
            raise HTTPException(status_code=404, detail="No frame source registered")
        if controller.session(camera_id).state is not RecordingState.IDLE:
            logger.warning("Frame source for camera %s removed while recording", camera_id)
        await _close_source(source)
        return {"camera_id": camera_id, "removed": True}

    @app.get("/api/save-decisions")
    async def list_save_decisions() -> dict[str, object]:
        return {
            "requests": [request.to_dict() for request in gate.pending()],
            "awaiting_input": [request.request_id for request in pending_decisions.waiting()],
            "mode": save_settings.mode.value,
        }

    @app.post("/api/save-decisions/{request_id}")
    async def resolve_save_decision(request_id: str, payload: SaveDecisionPayload) -> dict[str, object]:
        decision = SaveDecision(
            upload_to_remote=payload.upload_to_remote,
            download_local=payload.download_local,
        )
        if decision.cancelled:
            raise HTTPException(status_code=400, detail="Select at least one save option")
        try:
            request = pending_decisions.resolve(request_id, decision)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Save decision not found") from exc
        return {"request_id": request.request_id, "decision": decision.to_dict()}

    @app.delete("/api/save-decisions/{request_id}")
    async def cancel_save_decision(request_id: str) -> dict[str, object]:
        try:
            request = pending_decisions.cancel(request_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Save decision not found") from exc
        return {"request_id": request.request_id, "cancelled": True}

    @app.get("/api/notifications")
    async def list_notifications(limit: int | None = None, camera_id: str | None = None) -> dict[str, object]:
        entries = notifications.tail(limit, camera_id=camera_id)
        return {"notifications": [entry.to_dict() for entry in entries]}

    @app.get("/api/settings/stop-policy")
    async def get_stop_policy() -> dict[str, str]:
        return {"policy": config_manager.get_stop_policy().value}

    @app.post("/api/settings/stop-policy")
    async def update_stop_policy(payload: StopPolicyPayload) -> dict[str, str]:
        try:
            policy = config_manager.set_stop_policy(payload.policy)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        controller.stop_policy = policy
        return {"policy": policy.value}

    return app


__all__ = ["create_app"]
