"""FastAPI application exposing music generation and the Suno callback."""
from __future__ import annotations

import json
import logging
import os
import signal
import threading
import time
from typing import Any, Dict, Iterable, Mapping, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from core.constants import SERVICE_MUREKA, SERVICE_SUNO
from core.settings import get_settings, token_tail
from db.postgres import create_store
from generation.errors import (
    GenerationNotFound,
    InvalidRequest,
    InvalidTransition,
    RateLimitExceeded,
    TrackNotFound,
)
from generation.models import Generation
from generation.rate_limit import RateLimiter
from generation.service import GenerationService
from logging_utils import init_logging, log_environment, redact_text
from metrics import env_label, generation_callbacks_total, render_metrics
from redis_utils import get_redis, prefixed, register_once, release_once
from suno.schemas import CallbackEnvelope, SunoTask
from utils.provider_client import ProviderAPIError

log = init_logging("music-web")
log_environment(log)

app = FastAPI(title="Music Generation Service", docs_url=None, redoc_url=None)

_MAX_JSON_BYTES = 512 * 1024
_ALLOWED_CORS_PATHS = {"/healthz", "/service-status"}
_ACTIVE_LOCK = threading.Lock()
_ACTIVE_REQUESTS = 0
_SHUTDOWN = threading.Event()
_SERVICE_LOCK = threading.Lock()

service: Optional[GenerationService] = None


def get_service() -> GenerationService:
    """Build the shared service on first use."""

    global service
    if service is None:
        with _SERVICE_LOCK:
            if service is None:
                config = get_settings()
                service = GenerationService(
                    create_store(config.DATABASE_URL),
                    limiter=RateLimiter.from_settings(config, redis_client=get_redis()),
                    config=config,
                )
    return service


def _active_count() -> int:
    with _ACTIVE_LOCK:
        return _ACTIVE_REQUESTS


def _handle_sigterm(signum: int, frame: Optional[object]) -> None:  # pragma: no cover - signal handling
    log.warning("sigterm received", extra={"meta": {"active_requests": _active_count()}})
    _SHUTDOWN.set()
    deadline = time.time() + 10.0
    while time.time() < deadline:
        if _active_count() == 0:
            break
        time.sleep(0.1)
    os._exit(0)


signal.signal(signal.SIGTERM, _handle_sigterm)


# ---------------------------------------------------------------------- request models
class _Body(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class SunoGenerateBody(_Body):
    prompt: Optional[str] = None
    lyrics: Optional[str] = None
    style: Optional[str] = None
    title: Optional[str] = None
    instrumental: bool = False
    model: Optional[str] = None
    project_id: Optional[str] = Field(default=None, alias="projectId")
    track_id: Optional[str] = Field(default=None, alias="trackId")


class PromptBody(_Body):
    prompt: str = Field(min_length=1)


class TrackBody(_Body):
    track_id: str = Field(alias="trackId", min_length=1)


class SunoExtendBody(TrackBody):
    continue_at: float = Field(alias="continueAt")
    prompt: Optional[str] = None
    style: Optional[str] = None
    title: Optional[str] = None
    model: Optional[str] = None


class SunoVideoBody(TrackBody):
    author: Optional[str] = None
    domain_name: Optional[str] = Field(default=None, alias="domainName")


class StyleBoostBody(_Body):
    content: str = Field(min_length=1)


class MurekaExtendBody(_Body):
    lyrics: str = Field(min_length=1)
    extend_at: int = Field(alias="extendAt")
    track_id: Optional[str] = Field(default=None, alias="trackId")
    song_id: Optional[str] = Field(default=None, alias="songId")
    upload_audio_id: Optional[str] = Field(default=None, alias="uploadAudioId")
    title: Optional[str] = None


class MurekaGenerateBody(_Body):
    lyrics: Optional[str] = None
    prompt: Optional[str] = None
    title: Optional[str] = None
    model: Optional[str] = None
    reference_id: Optional[str] = Field(default=None, alias="referenceId")
    vocal_id: Optional[str] = Field(default=None, alias="vocalId")
    melody_id: Optional[str] = Field(default=None, alias="melodyId")
    project_id: Optional[str] = Field(default=None, alias="projectId")


class MurekaInstrumentalBody(_Body):
    prompt: Optional[str] = None
    instrumental_id: Optional[str] = Field(default=None, alias="instrumentalId")
    title: Optional[str] = None
    model: Optional[str] = None
    project_id: Optional[str] = Field(default=None, alias="projectId")


class LyricsExtendBody(_Body):
    lyrics: str = Field(min_length=1)


# ---------------------------------------------------------------------- error mapping
def _error(status_code: int, error: str, details: Any = None, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(400, "invalid request", json.loads(json.dumps(exc.errors(), default=str)))


@app.exception_handler(InvalidRequest)
async def _invalid_request(request: Request, exc: InvalidRequest) -> JSONResponse:
    return _error(400, str(exc))


@app.exception_handler(InvalidTransition)
async def _invalid_transition(request: Request, exc: InvalidTransition) -> JSONResponse:
    return _error(409, str(exc), {"current": exc.current, "target": exc.target})


@app.exception_handler(RateLimitExceeded)
async def _rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        {"error": str(exc), "retryAfter": exc.retry_after},
        status_code=429,
        headers={"Retry-After": str(exc.retry_after)},
    )


@app.exception_handler(GenerationNotFound)
@app.exception_handler(TrackNotFound)
async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return _error(404, str(exc))


@app.exception_handler(ProviderAPIError)
async def _provider_error(request: Request, exc: ProviderAPIError) -> JSONResponse:
    details = {"status": exc.status}
    log.warning(
        "provider error",
        extra={"meta": {"path": request.url.path, "status": exc.status, "err": redact_text(str(exc))}},
    )
    if exc.is_client_error and not exc.is_rate_limited:
        return _error(400, str(exc), details)
    return _error(502, str(exc), details)


# ---------------------------------------------------------------------- middleware
@app.middleware("http")
async def _middleware(request: Request, call_next):  # type: ignore[override]
    if request.method == "OPTIONS":
        if request.url.path in _ALLOWED_CORS_PATHS:
            response = Response(status_code=204)
            response.headers["Access-Control-Allow-Origin"] = "*"
            response.headers["Access-Control-Allow-Methods"] = "GET"
            response.headers["Access-Control-Allow-Headers"] = "accept"
            return response
        return Response(status_code=405)

    if _SHUTDOWN.is_set():
        return JSONResponse({"status": "shutting_down"}, status_code=503)

    global _ACTIVE_REQUESTS
    with _ACTIVE_LOCK:
        _ACTIVE_REQUESTS += 1
    try:
        response = await call_next(request)
    finally:
        with _ACTIVE_LOCK:
            _ACTIVE_REQUESTS -= 1

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cache-Control"] = "no-store"
    origin = request.headers.get("origin")
    if origin and request.method == "GET" and request.url.path in _ALLOWED_CORS_PATHS:
        response.headers["Access-Control-Allow-Origin"] = "*"
    return response


@app.on_event("startup")
async def _startup_event() -> None:
    config = get_settings()
    token_suffix = token_tail(config.SUNO_API_TOKEN or "")
    log.info(
        "ENV Suno: base=%s, gen=%s, token_tail=%s",
        config.SUNO_API_BASE,
        config.SUNO_GEN_PATH,
        f"****{token_suffix}" if token_suffix else "none",
    )
    if config.SUNO_ENABLED and not config.SUNO_READY:
        log.warning(
            "suno not ready",
            extra={
                "meta": {
                    "token": bool(config.SUNO_API_TOKEN),
                    "callback_url": bool(config.SUNO_CALLBACK_URL),
                    "callback_secret": bool(config.SUNO_CALLBACK_SECRET),
                }
            },
        )


def _status_view(generation: Generation) -> Dict[str, Any]:
    return {
        "id": generation.id,
        "service": generation.service,
        "kind": generation.kind,
        "status": generation.status,
        "progress": generation.progress,
        "result_url": generation.result_url,
        "error_message": generation.error_message,
        "external_id": generation.external_id,
        "track_id": generation.track_id,
        "metadata": generation.metadata,
    }


def _user(x_user_id: Optional[str]) -> str:
    return (x_user_id or "").strip() or "anonymous"


# ---------------------------------------------------------------------- system routes
@app.get("/")
def root() -> dict[str, bool]:
    return {"ok": True}


@app.get("/healthz")
def healthz() -> JSONResponse:
    config = get_settings()
    return JSONResponse(
        {"ok": True, "suno_ready": bool(config.SUNO_READY), "mureka_ready": bool(config.MUREKA_READY)}
    )


@app.get("/metrics", include_in_schema=False)
def metrics_endpoint() -> Response:
    return Response(content=render_metrics(), media_type="text/plain; version=0.0.4; charset=utf-8")


@app.get("/service-status")
def service_status() -> Dict[str, Any]:
    return get_service().service_status()


# ---------------------------------------------------------------------- Suno routes
@app.post("/suno/generate", status_code=202)
def suno_generate(body: SunoGenerateBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    generation = get_service().submit_suno_track(
        _user(x_user_id),
        body.prompt,
        lyrics=body.lyrics,
        style=body.style,
        title=body.title,
        instrumental=body.instrumental,
        model=body.model,
        project_id=body.project_id,
        track_id=body.track_id,
    )
    return _status_view(generation)


@app.post("/suno/lyrics", status_code=202)
def suno_lyrics(body: PromptBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _status_view(get_service().generate_lyrics(_user(x_user_id), body.prompt, service=SERVICE_SUNO))


@app.post("/suno/wav", status_code=202)
def suno_wav(body: TrackBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _status_view(get_service().convert_to_wav(_user(x_user_id), body.track_id))


@app.post("/suno/vocals", status_code=202)
def suno_vocals(body: TrackBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _status_view(get_service().separate_vocals(_user(x_user_id), body.track_id))


@app.post("/suno/cover", status_code=202)
def suno_cover(body: TrackBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _status_view(get_service().generate_cover(_user(x_user_id), body.track_id))


@app.post("/suno/extend", status_code=202)
def suno_extend(body: SunoExtendBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    generation = get_service().extend_track(
        _user(x_user_id),
        body.track_id,
        continue_at=body.continue_at,
        prompt=body.prompt,
        style=body.style,
        title=body.title,
        model=body.model,
    )
    return _status_view(generation)


@app.post("/suno/video", status_code=202)
def suno_video(body: SunoVideoBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    generation = get_service().generate_video(
        _user(x_user_id), body.track_id, author=body.author, domain_name=body.domain_name
    )
    return _status_view(generation)


@app.post("/suno/style-boost")
def suno_style_boost(body: StyleBoostBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _status_view(get_service().boost_style(_user(x_user_id), body.content))


@app.get("/suno/timestamped-lyrics/{track_id}")
def suno_timestamped_lyrics(track_id: str) -> Dict[str, Any]:
    return {"trackId": track_id, "data": get_service().get_timestamped_lyrics(track_id)}


# ---------------------------------------------------------------------- Mureka routes
@app.post("/mureka/generate", status_code=202)
def mureka_generate(body: MurekaGenerateBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    generation = get_service().submit_mureka_track(
        _user(x_user_id),
        body.lyrics,
        body.prompt,
        model=body.model,
        title=body.title,
        reference_id=body.reference_id,
        vocal_id=body.vocal_id,
        melody_id=body.melody_id,
        project_id=body.project_id,
    )
    return _status_view(generation)


@app.post("/mureka/instrumental", status_code=202)
def mureka_instrumental(
    body: MurekaInstrumentalBody, x_user_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    generation = get_service().submit_mureka_instrumental(
        _user(x_user_id),
        body.prompt,
        body.instrumental_id,
        model=body.model,
        title=body.title,
        project_id=body.project_id,
    )
    return _status_view(generation)


@app.post("/mureka/extend", status_code=202)
def mureka_extend(body: MurekaExtendBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    generation = get_service().extend_mureka_song(
        _user(x_user_id),
        body.lyrics,
        body.extend_at,
        track_id=body.track_id,
        song_id=body.song_id,
        upload_audio_id=body.upload_audio_id,
        title=body.title,
    )
    return _status_view(generation)


@app.post("/mureka/lyrics")
def mureka_lyrics(body: PromptBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _status_view(get_service().generate_lyrics(_user(x_user_id), body.prompt, service=SERVICE_MUREKA))


@app.post("/mureka/lyrics/extend")
def mureka_lyrics_extend(body: LyricsExtendBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _status_view(get_service().extend_mureka_lyrics(_user(x_user_id), body.lyrics))


@app.post("/mureka/stems")
def mureka_stems(body: TrackBody, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _status_view(get_service().separate_stems(_user(x_user_id), body.track_id))


# ---------------------------------------------------------------------- generations
@app.get("/generations/{generation_id}")
def generation_status(generation_id: str) -> Dict[str, Any]:
    return _status_view(get_service().get(generation_id))


@app.post("/generations/{generation_id}/refresh")
def generation_refresh(generation_id: str) -> Dict[str, Any]:
    return _status_view(get_service().refresh(generation_id))


@app.post("/generations/{generation_id}/save")
def generation_save(generation_id: str) -> Dict[str, Any]:
    svc = get_service()
    generation = svc.get(generation_id)
    if not generation.track_id:
        raise InvalidRequest("generation has no track")
    track = svc.save_track_audio(generation.track_id)
    return {"id": generation.id, "trackId": track.id, "localPath": track.metadata.get("local_path")}


def _check_secret(provided: Optional[str]) -> bool:
    expected = (get_settings().SUNO_CALLBACK_SECRET or "").strip()
    return not expected or provided == expected


@app.post("/maintenance/fix-stuck")
def maintenance_fix_stuck(
    older_than_minutes: Optional[int] = None,
    x_callback_secret: Optional[str] = Header(default=None, alias="X-Callback-Secret"),
) -> Dict[str, int]:
    if not _check_secret(x_callback_secret):
        raise HTTPException(status_code=403, detail="forbidden")
    return get_service().fix_stuck(older_than_minutes)


# ---------------------------------------------------------------------- Suno callback
def _json_preview(payload: Any, *, limit: int = 700) -> str:
    try:
        text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        text = str(payload)
    text = redact_text(text)
    if len(text) > limit:
        return f"{text[:limit]}..."
    return text


def _normalize_callback_payload(raw: Any) -> tuple[dict[str, Any], Dict[str, Any]]:
    """Flatten nested ``payload``/``data`` layers into one ``{code, msg, data}``."""

    if not isinstance(raw, Mapping):
        return {"code": None, "msg": None, "data": {}}, {}
    layers: list[Dict[str, Any]] = []
    current: Mapping[str, Any] = raw
    while True:
        materialized = dict(current)
        layers.append(materialized)
        next_layer: Optional[Mapping[str, Any]] = None
        for key in ("payload", "data"):
            candidate = materialized.get(key)
            if isinstance(candidate, Mapping):
                next_layer = candidate
                break
        if next_layer is None:
            break
        current = next_layer
    innermost = layers[-1]
    base_data = dict(innermost)
    code_value: Any = None
    msg_value: Any = None
    for layer in layers:
        if code_value is None and layer.get("code") not in (None, ""):
            code_value = layer.get("code")
        message = layer.get("msg") or layer.get("message")
        if msg_value is None and message not in (None, ""):
            msg_value = message
        for key, value in layer.items():
            if key in {"payload", "code", "msg", "message"} or (key == "data" and isinstance(value, Mapping)):
                continue
            base_data.setdefault(key, value)
    if "results" in base_data and "items" not in base_data:
        base_data["items"] = base_data["results"]
    if "type" in base_data and "callbackType" not in base_data:
        base_data["callbackType"] = base_data["type"]
    return {"code": code_value, "msg": msg_value, "data": base_data}, dict(layers[0])


def _first_identifier(data: Mapping[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            text = str(value).strip()
            if text:
                return text
    return None


@app.get("/suno-callback")
async def suno_callback_get() -> Response:
    return Response(status_code=405)


@app.post("/suno-callback")
async def suno_callback(
    request: Request,
    x_callback_secret: Optional[str] = Header(default=None, alias="X-Callback-Secret"),
):
    provided = x_callback_secret or request.headers.get("X-Callback-Token")
    if not _check_secret(provided):
        log.warning("forbidden callback", extra={"meta": {"provided": bool(provided), "has_secret": True}})
        generation_callbacks_total.labels(service=SERVICE_SUNO, status="forbidden", env=env_label()).inc()
        return Response(status_code=403)

    body = await request.body()
    if len(body) > _MAX_JSON_BYTES:
        log.warning("payload too large", extra={"meta": {"size": len(body)}})
        raise HTTPException(status_code=413, detail="payload too large")

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        log.error(
            "invalid json payload",
            extra={"meta": {"preview": redact_text(body[:200].decode("utf-8", errors="replace"))}},
        )
        return JSONResponse({"ok": False, "status": "ignored"}, status_code=400)

    normalized, flat = _normalize_callback_payload(payload)
    envelope = CallbackEnvelope.model_validate(normalized)
    task = SunoTask.from_envelope(envelope)
    if not task.task_id:
        task_id = _first_identifier(flat, ("task_id", "taskId"))
        if task_id:
            task = task.model_copy(update={"task_id": task_id})
    log.info(
        "Received SUNO callback",
        extra={
            "meta": {
                "task_id": task.task_id,
                "type": task.callback_type,
                "code": task.code,
                "items": len(task.items),
                "content_length": len(body),
                "preview": _json_preview(payload),
            }
        },
    )

    key = prefixed("cb", task.task_id or "unknown", task.callback_type or "unknown")
    if not register_once(key):
        log.info("duplicate callback ignored", extra={"meta": {"key": key, "task_id": task.task_id}})
        generation_callbacks_total.labels(service=SERVICE_SUNO, status="skipped", env=env_label()).inc()
        return {"ok": True, "duplicate": True}

    try:
        result = await run_in_threadpool(
            get_service().handle_suno_callback, task, payload if isinstance(payload, Mapping) else None
        )
    except Exception as exc:
        release_once(key)
        log.exception(
            "suno callback handler failed",
            extra={"meta": {"task_id": task.task_id, "err": redact_text(str(exc))}},
        )
        generation_callbacks_total.labels(service=SERVICE_SUNO, status="error", env=env_label()).inc()
        return {"ok": False}
    log.info("suno callback processed", extra={"meta": {"task_id": task.task_id, **result}})
    return {"ok": True, **result}


__all__ = ["app", "get_service"]
