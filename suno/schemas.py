"""Pydantic models for Suno responses and callbacks."""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.constants import STATUS_COMPLETED, STATUS_FAILED, STATUS_PROCESSING

_SUCCESS_STATES = {"SUCCESS", "SUCCEEDED", "COMPLETE", "COMPLETED"}
_FAILURE_STATES = {"SENSITIVE_WORD_ERROR", "ERROR", "CANCELLED", "CANCELED", "CALLBACK_EXCEPTION"}
# cover record-info reports a numeric successFlag instead of a status name
_SUCCESS_FLAGS = {"0": "PENDING", "1": "SUCCESS", "2": "GENERATE_FAILED", "3": "CREATE_TASK_FAILED"}

STATUS_ONLINE = "online"
STATUS_LIMITED = "limited"
STATUS_OFFLINE = "offline"


class ApiEnvelope(BaseModel):
    """Common ``{code, msg, data}`` envelope returned by Suno."""

    model_config = ConfigDict(extra="ignore")

    code: int | None = None
    msg: str | None = None
    data: Any = None

    @field_validator("code", mode="before")
    def _code(cls, value: Any) -> Optional[int]:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @field_validator("msg", mode="before")
    def _msg(cls, value: Any) -> Optional[str]:
        if value in (None, ""):
            return None
        return str(value).strip() or None

    @property
    def ok(self) -> bool:
        return self.code in (None, 200)


class SunoTrack(BaseModel):
    """Normalized representation of a single generated track."""

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str | None = None
    audio_url: str | None = None
    stream_audio_url: str | None = None
    image_url: str | None = None
    tags: str | None = None
    lyrics: str | None = None
    duration: float | None = None
    model_name: str | None = None


class CallbackEnvelope(BaseModel):
    """Raw structure coming from the Suno webhook."""

    model_config = ConfigDict(extra="allow")

    code: int | None = None
    msg: str | None = None
    data: dict = Field(default_factory=dict)


class SunoTask(BaseModel):
    """Callback payload the generation service operates on."""

    model_config = ConfigDict(extra="ignore")

    task_id: str
    callback_type: str
    items: list[SunoTrack] = Field(default_factory=list)
    msg: str | None = None
    code: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.code in (None, 200) and self.callback_type != "error"

    @classmethod
    def from_envelope(cls, envelope: CallbackEnvelope) -> "SunoTask":
        data = envelope.data or {}
        task_id = _first(data, "task_id", "taskId", "taskID") or ""
        callback_type = _first(data, "callbackType", "callback_type", "type", "status") or "unknown"
        tracks = [_build_track(item, index) for index, item in enumerate(_extract_items(data), start=1)]
        return cls(
            task_id=str(task_id),
            callback_type=str(callback_type).strip().lower() or "unknown",
            items=[track for track in tracks if track is not None],
            msg=envelope.msg,
            code=envelope.code,
        )


class RecordInfo(BaseModel):
    """Parsed ``record-info`` response for any Suno task type."""

    task_id: str | None = None
    raw_status: str | None = None
    status: str
    tracks: list[SunoTrack] = Field(default_factory=list)
    error_message: str | None = None
    data: dict = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RecordInfo":
        data = payload.get("data") if isinstance(payload, Mapping) else None
        data_map = dict(data) if isinstance(data, Mapping) else {}
        raw_status = _first(data_map, "status", "successFlag", "taskStatus")
        raw_text = str(raw_status).strip().upper() if raw_status not in (None, "") else None
        if raw_text is not None:
            raw_text = _SUCCESS_FLAGS.get(raw_text, raw_text)
        items = list(_extract_items(data_map))
        tracks = [_build_track(item, index) for index, item in enumerate(items, start=1)]
        error_message = _first(data_map, "errorMessage", "error_message", "errorMsg")
        return cls(
            task_id=_as_text(_first(data_map, "taskId", "task_id")),
            raw_status=raw_text,
            status=map_suno_status(raw_text),
            tracks=[track for track in tracks if track is not None],
            error_message=_as_text(error_message),
            data=data_map,
        )


def map_suno_status(raw: Optional[str]) -> str:
    """Map a Suno task status onto the generation state machine."""

    text = str(raw or "").strip().upper()
    if not text:
        return STATUS_PROCESSING
    if text in _SUCCESS_STATES:
        return STATUS_COMPLETED
    if "FAILED" in text or text in _FAILURE_STATES:
        return STATUS_FAILED
    return STATUS_PROCESSING


def credits_status(credits: Optional[float], threshold: float = 5) -> str:
    if credits is None:
        return STATUS_OFFLINE
    if credits <= threshold:
        return STATUS_LIMITED
    return STATUS_ONLINE


def _as_text(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    return str(value)


def _first(data: Mapping[str, Any], *keys: str) -> Any | None:
    for key in keys:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return None


def _ensure_iterable(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return value
    return [value]


def _extract_items(data: Mapping[str, Any]) -> Iterable[Any]:
    for key in ("sunoData", "tracks", "items", "data"):
        maybe = data.get(key)
        if maybe and not isinstance(maybe, (str, bytes)):
            if isinstance(maybe, Mapping) and not _looks_like_track(maybe):
                continue
            return _ensure_iterable(maybe)
    response = data.get("response")
    if isinstance(response, Mapping):
        for key in ("sunoData", "data", "tracks", "items"):
            maybe = response.get(key)
            if maybe and isinstance(maybe, list):
                return maybe
    return []


def _looks_like_track(value: Mapping[str, Any]) -> bool:
    return any(key in value for key in ("audio_url", "audioUrl", "id", "stream_audio_url", "streamAudioUrl"))


def _build_track(raw: Any, index: int) -> SunoTrack | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return SunoTrack(id=str(index), audio_url=raw)
    if not isinstance(raw, Mapping):
        return None
    track_id = _first(raw, "id", "audioId", "audio_id", "trackId") or str(index)
    title = _first(raw, "title", "name")
    audio_url = _first(raw, "audio_url", "audioUrl", "source_audio_url", "sourceAudioUrl", "url")
    stream_url = _first(raw, "stream_audio_url", "streamAudioUrl", "source_stream_audio_url")
    image_url = _first(raw, "image_url", "imageUrl", "source_image_url", "sourceImageUrl")
    tags_value = _first(raw, "tags", "style")
    if isinstance(tags_value, list):
        tags = ", ".join(str(item) for item in tags_value if item not in (None, "")) or None
    else:
        tags = _as_text(tags_value)
    lyrics = _first(raw, "prompt", "lyrics", "text")
    duration_value = _first(raw, "duration", "durationSec")
    duration: float | None
    try:
        duration = float(duration_value) if duration_value is not None else None
    except (TypeError, ValueError):
        duration = None
    if duration is not None and duration <= 0:
        duration = None
    return SunoTrack(
        id=str(track_id),
        title=_as_text(title),
        audio_url=_as_text(audio_url),
        stream_audio_url=_as_text(stream_url),
        image_url=_as_text(image_url),
        tags=tags,
        lyrics=_as_text(lyrics),
        duration=duration,
        model_name=_as_text(_first(raw, "model_name", "modelName")),
    )


__all__ = [
    "ApiEnvelope",
    "CallbackEnvelope",
    "RecordInfo",
    "SunoTask",
    "SunoTrack",
    "STATUS_ONLINE",
    "STATUS_LIMITED",
    "STATUS_OFFLINE",
    "credits_status",
    "map_suno_status",
]
