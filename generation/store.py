"""Storage interface for generations, tracks and callback events."""
from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from generation.errors import DuplicateTrackNumber, InvalidRequest
from generation.models import Generation, Track, new_id, utcnow

log = logging.getLogger("generation.store")


class GenerationStore(ABC):
    """Interface for generation tracking and callback idempotency."""

    @abstractmethod
    def create_generation(self, generation: Generation) -> Generation:
        """Persist a new generation."""

    @abstractmethod
    def get_generation(self, generation_id: str) -> Optional[Generation]:
        """Return the generation or ``None``."""

    @abstractmethod
    def find_by_external_id(self, service: str, external_id: str) -> Optional[Generation]:
        """Look a generation up by the provider task id."""

    @abstractmethod
    def save_generation(self, generation: Generation) -> None:
        """Persist changes made to an existing generation."""

    @abstractmethod
    def list_generations(
        self,
        *,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[Generation]:
        """Return generations, newest first."""

    @abstractmethod
    def ensure_project(self, project_id: Optional[str], user_id: str, title: str) -> str:
        """Return an existing project id or create a single-track project."""

    @abstractmethod
    def create_track(self, track: Track) -> Track:
        """Persist a new track; ``(project_id, track_number)`` is unique."""

    @abstractmethod
    def get_track(self, track_id: str) -> Optional[Track]:
        """Return the track or ``None``."""

    @abstractmethod
    def save_track(self, track: Track) -> None:
        """Persist changes made to an existing track."""

    @abstractmethod
    def list_tracks(self, project_id: str) -> List[Track]:
        """Return tracks of a project ordered by track number."""

    @abstractmethod
    def save_event(self, external_id: str, callback_type: str, payload: dict) -> bool:
        """Persist callback payload and return True if it is the first time."""

    @abstractmethod
    def delete_event(self, external_id: str, callback_type: str) -> None:
        """Forget a callback so a redelivery is processed again."""

    def next_track_number(self, project_id: str) -> int:
        numbers = [track.track_number for track in self.list_tracks(project_id)]
        return (max(numbers) if numbers else 0) + 1

    def add_track(self, project_id: str, title: str, *, attempts: int = 3, **fields: Any) -> Track:
        """Create a track numbered after the last one in the project.

        A concurrent writer can take the same number between the lookup and
        the insert; the number is then recomputed up to ``attempts`` times.
        """

        attempt = 0
        while True:
            attempt += 1
            track = Track(
                project_id=project_id,
                title=title,
                track_number=self.next_track_number(project_id),
                **fields,
            )
            try:
                return self.create_track(track)
            except DuplicateTrackNumber:
                if attempt >= attempts:
                    raise
                log.info(
                    "track number taken, retrying",
                    extra={"meta": {"project_id": project_id, "track_number": track.track_number, "attempt": attempt}},
                )

    def list_stuck(self, older_than: datetime, statuses: Iterable[str]) -> List[Generation]:
        wanted = set(statuses)
        return [
            generation
            for generation in self.list_generations(statuses=wanted)
            if generation.updated_at <= older_than
        ]


class InMemoryGenerationStore(GenerationStore):
    """Thread-safe in-memory implementation of :class:`GenerationStore`."""

    def __init__(self) -> None:
        self._generations: Dict[str, Generation] = {}
        self._tracks: Dict[str, Track] = {}
        self._projects: Dict[str, dict] = {}
        self._events: Dict[Tuple[str, str], dict] = {}
        self._lock = threading.RLock()

    def create_generation(self, generation: Generation) -> Generation:
        with self._lock:
            if generation.id in self._generations:
                raise InvalidRequest(f"generation already exists: {generation.id}")
            self._generations[generation.id] = copy.deepcopy(generation)
        return generation

    def get_generation(self, generation_id: str) -> Optional[Generation]:
        with self._lock:
            found = self._generations.get(generation_id)
            return copy.deepcopy(found) if found else None

    def find_by_external_id(self, service: str, external_id: str) -> Optional[Generation]:
        with self._lock:
            for generation in self._generations.values():
                if generation.service == service and generation.external_id == external_id:
                    return copy.deepcopy(generation)
        return None

    def save_generation(self, generation: Generation) -> None:
        with self._lock:
            if generation.id not in self._generations:
                raise KeyError(generation.id)
            self._generations[generation.id] = copy.deepcopy(generation)

    def list_generations(
        self,
        *,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[Generation]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            items = [
                copy.deepcopy(generation)
                for generation in self._generations.values()
                if (user_id is None or generation.user_id == user_id)
                and (wanted is None or generation.status in wanted)
            ]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items

    def ensure_project(self, project_id: Optional[str], user_id: str, title: str) -> str:
        with self._lock:
            if project_id and project_id in self._projects:
                return project_id
            project = {
                "id": project_id or new_id(),
                "user_id": user_id,
                "title": title or "Untitled",
                "type": "single",
                "status": "draft",
                "created_at": utcnow(),
            }
            self._projects[project["id"]] = project
            return project["id"]

    def create_track(self, track: Track) -> Track:
        with self._lock:
            for existing in self._tracks.values():
                if existing.project_id == track.project_id and existing.track_number == track.track_number:
                    raise DuplicateTrackNumber(track.project_id, track.track_number)
            self._tracks[track.id] = copy.deepcopy(track)
        return track

    def add_track(self, project_id: str, title: str, *, attempts: int = 3, **fields: Any) -> Track:
        with self._lock:
            return super().add_track(project_id, title, attempts=attempts, **fields)

    def get_track(self, track_id: str) -> Optional[Track]:
        with self._lock:
            found = self._tracks.get(track_id)
            return copy.deepcopy(found) if found else None

    def save_track(self, track: Track) -> None:
        with self._lock:
            if track.id not in self._tracks:
                raise KeyError(track.id)
            track.updated_at = utcnow()
            self._tracks[track.id] = copy.deepcopy(track)

    def list_tracks(self, project_id: str) -> List[Track]:
        with self._lock:
            items = [copy.deepcopy(track) for track in self._tracks.values() if track.project_id == project_id]
        items.sort(key=lambda item: item.track_number)
        return items

    def save_event(self, external_id: str, callback_type: str, payload: dict) -> bool:
        key = (external_id, callback_type)
        with self._lock:
            if key in self._events:
                return False
            self._events[key] = payload
            return True

    def delete_event(self, external_id: str, callback_type: str) -> None:
        with self._lock:
            self._events.pop((external_id, callback_type), None)


__all__ = ["GenerationStore", "InMemoryGenerationStore"]
