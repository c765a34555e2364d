"""Generation and track records plus the status state machine."""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from core.constants import (
    ALLOWED_TRANSITIONS,
    KINDS,
    PROGRESS_BY_STATUS,
    SERVICES,
    STATUS_PENDING,
    STATUSES,
    TERMINAL_STATUSES,
)
from generation.errors import InvalidRequest, InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Generation:
    user_id: str
    service: str
    kind: str
    prompt: str = ""
    id: str = field(default_factory=new_id)
    external_id: Optional[str] = None
    status: str = STATUS_PENDING
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    track_id: Optional[str] = None
    project_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.service not in SERVICES:
            raise InvalidRequest(f"unknown service: {self.service}")
        if self.kind not in KINDS:
            raise InvalidRequest(f"unknown generation kind: {self.kind}")
        if self.status not in STATUSES:
            raise InvalidRequest(f"unknown status: {self.status}")

    @property
    def progress(self) -> int:
        return PROGRESS_BY_STATUS.get(self.status, 0)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        data["progress"] = self.progress
        return data


@dataclass
class Track:
    project_id: str
    title: str
    track_number: int
    id: str = field(default_factory=new_id)
    audio_url: Optional[str] = None
    cover_url: Optional[str] = None
    lyrics: Optional[str] = None
    duration: Optional[float] = None
    style_tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if int(self.track_number) <= 0:
            raise InvalidRequest("track_number must be positive")
        if self.duration is not None and self.duration <= 0:
            raise InvalidRequest("duration must be positive")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(generation: Generation, target: str, **changes: Any) -> Generation:
    """Move ``generation`` to ``target`` in place, applying ``changes``."""

    if target not in STATUSES:
        raise InvalidTransition(generation.status, target)
    if not can_transition(generation.status, target):
        raise InvalidTransition(generation.status, target)
    generation.status = target
    for key, value in changes.items():
        if key == "metadata" and value:
            generation.metadata = {**generation.metadata, **value}
            continue
        if not hasattr(generation, key):
            raise AttributeError(f"Generation has no field {key!r}")
        setattr(generation, key, value)
    generation.updated_at = utcnow()
    return generation


__all__ = ["Generation", "Track", "can_transition", "new_id", "transition", "utcnow"]
