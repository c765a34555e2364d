"""Domain errors raised by the generation pipeline."""
from __future__ import annotations

from typing import Optional


class GenerationError(RuntimeError):
    """Base class for generation pipeline failures."""


class InvalidTransition(GenerationError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"cannot move generation from {current} to {target}")
        self.current = current
        self.target = target


class GenerationNotFound(GenerationError):
    def __init__(self, generation_id: str) -> None:
        super().__init__(f"generation not found: {generation_id}")
        self.generation_id = generation_id


class TrackNotFound(GenerationError):
    def __init__(self, track_id: str) -> None:
        super().__init__(f"track not found: {track_id}")
        self.track_id = track_id


class InvalidRequest(GenerationError):
    """Input rejected before anything was sent to a provider."""


class DuplicateTrackNumber(InvalidRequest):
    def __init__(self, project_id: str, track_number: int) -> None:
        super().__init__(f"track number {track_number} already used in project {project_id}")
        self.project_id = project_id
        self.track_number = track_number


class RateLimitExceeded(GenerationError):
    def __init__(self, service: str, retry_after: float, limit: Optional[int] = None) -> None:
        super().__init__(f"rate limit exceeded for {service}")
        self.service = service
        self.retry_after = max(1, int(round(retry_after)))
        self.limit = limit


__all__ = [
    "DuplicateTrackNumber",
    "GenerationError",
    "GenerationNotFound",
    "InvalidRequest",
    "InvalidTransition",
    "RateLimitExceeded",
    "TrackNotFound",
]
