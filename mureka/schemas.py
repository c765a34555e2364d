"""Pydantic models for Mureka task payloads."""
from __future__ import annotations

from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.constants import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING

_IN_PROGRESS = {"preparing", "queued", "running", "streaming"}
_FAILED = {"failed", "timeouted", "cancelled", "canceled"}


def map_mureka_status(raw: Optional[str]) -> str:
    """Map a Mureka task status onto the generation state machine."""

    text = str(raw or "").strip().lower()
    if text == "succeeded":
        return STATUS_COMPLETED
    if text in _FAILED:
        return STATUS_FAILED
    if text in _IN_PROGRESS:
        return STATUS_PROCESSING
    return STATUS_PENDING if not text else STATUS_PROCESSING


def normalize_duration(value: Any) -> Optional[float]:
    """Mureka reports milliseconds; small values are already seconds."""

    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    if number > 1000:
        return round(number / 1000.0, 3)
    return number


class MurekaChoice(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str | None = None
    index: int | None = None
    audio_url: str | None = Field(default=None, alias="url")
    flac_url: str | None = None
    duration: float | None = None
    title: str | None = None
    lyrics: str | None = None

    @field_validator("duration", mode="before")
    def _duration(cls, value: Any) -> Optional[float]:
        return normalize_duration(value)


class MurekaTask(BaseModel):
    """Song or instrumental task as returned by generate/query."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: str = ""
    model: str | None = None
    choices: list[MurekaChoice] = Field(default_factory=list)
    failed_reason: str | None = None

    @property
    def mapped_status(self) -> str:
        return map_mureka_status(self.status)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MurekaTask":
        choices = []
        for index, raw in enumerate(payload.get("choices") or []):
            if not isinstance(raw, Mapping):
                continue
            item = dict(raw)
            item.setdefault("url", item.get("audio_url") or item.get("mp3_url"))
            item.setdefault("index", index)
            choices.append(MurekaChoice.model_validate(item))
        return cls(
            id=str(payload.get("id") or payload.get("task_id") or ""),
            status=str(payload.get("status") or ""),
            model=payload.get("model"),
            choices=choices,
            failed_reason=payload.get("failed_reason") or payload.get("error"),
        )


__all__ = ["MurekaChoice", "MurekaTask", "map_mureka_status", "normalize_duration"]
