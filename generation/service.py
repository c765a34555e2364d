"""Generation pipeline shared by the web app and maintenance jobs.

Every provider job follows the same pattern: a ``pending`` generation is
stored, the provider is called, the returned task id is recorded and the
generation moves to ``processing``. Results arrive either through the Suno
callback or by polling, and the generation ends in ``completed`` or
``failed``. Completed music tasks write their audio into tracks; extra takes
become variant tracks in the same project.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

from core.constants import (
    ACTIVE_STATUSES,
    KIND_COVER,
    KIND_EXTEND,
    KIND_INSTRUMENTAL,
    KIND_LYRICS,
    KIND_STEMS,
    KIND_STYLE_BOOST,
    KIND_TRACK,
    KIND_VIDEO,
    KIND_VOCAL_SEPARATION,
    KIND_WAV,
    SERVICE_MUREKA,
    SERVICE_SUNO,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    TIMEOUT_ERROR_MESSAGE,
)
from core.settings import Settings, get_settings
from generation.errors import GenerationNotFound, InvalidRequest, TrackNotFound
from generation.models import Generation, Track, transition, utcnow
from generation.polling import PollResult, Poller, poll_mureka_once, poll_suno_once
from generation.rate_limit import RateLimiter
from generation.store import GenerationStore, InMemoryGenerationStore
from generation.titles import extended_title, looks_like_lyrics, smart_title, variant_title
from metrics import (
    env_label,
    generation_callbacks_total,
    generation_latency_seconds,
    generation_requests_total,
    generations_in_flight,
)
from mureka.client import EXTEND_AT_MAX_MS, EXTEND_AT_MIN_MS, MurekaClient
from mureka.schemas import MurekaTask
from suno.client import SunoAPIError, SunoClient
from suno.downloader import download_file
from suno.schemas import STATUS_OFFLINE, STATUS_ONLINE, RecordInfo, SunoTask, credits_status
from utils.provider_client import ProviderAPIError

log = logging.getLogger("generation.service")

_DEFAULT_STYLE = "Pop, Electronic"
_MUSIC_KINDS = {KIND_TRACK, KIND_EXTEND, KIND_INSTRUMENTAL}


@dataclass
class ResultTrack:
    """Provider-neutral view of one generated take."""

    audio_url: Optional[str]
    provider_id: Optional[str] = None
    title: Optional[str] = None
    image_url: Optional[str] = None
    lyrics: Optional[str] = None
    duration: Optional[float] = None
    tags: list[str] = field(default_factory=list)


def _split_tags(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class GenerationService:
    """Submit provider jobs and drive them to a terminal state."""

    def __init__(
        self,
        store: Optional[GenerationStore] = None,
        *,
        suno: Optional[SunoClient] = None,
        mureka: Optional[MurekaClient] = None,
        limiter: Optional[RateLimiter] = None,
        suno_poller: Optional[Poller] = None,
        mureka_poller: Optional[Poller] = None,
        downloader: Callable[..., Path] = download_file,
        config: Optional[Settings] = None,
    ) -> None:
        self.config = config or get_settings()
        self.store = store or InMemoryGenerationStore()
        self.suno = suno or SunoClient(config=self.config)
        self.mureka = mureka or MurekaClient(config=self.config)
        self.limiter = limiter or RateLimiter.from_settings(self.config)
        self.suno_poller = suno_poller or Poller.for_suno(self.config)
        self.mureka_poller = mureka_poller or Poller.for_mureka(self.config)
        self._downloader = downloader

    # ------------------------------------------------------------------ lifecycle helpers
    def _begin(
        self,
        user_id: str,
        service: str,
        kind: str,
        prompt: str = "",
        *,
        track_id: Optional[str] = None,
        project_id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        check_limit: bool = True,
    ) -> Generation:
        if check_limit:
            self.limiter.check(user_id, service)
        generation = Generation(
            user_id=user_id,
            service=service,
            kind=kind,
            prompt=prompt or "",
            track_id=track_id,
            project_id=project_id,
            metadata=dict(metadata or {}),
        )
        self.store.create_generation(generation)
        log.info(
            "generation created",
            extra={"meta": {"generation_id": generation.id, "service": service, "kind": kind, "user_id": user_id}},
        )
        return generation

    def _submitted(
        self,
        generation: Generation,
        external_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Generation:
        transition(generation, STATUS_PROCESSING, external_id=external_id, metadata=dict(metadata or {}))
        self.store.save_generation(generation)
        generation_requests_total.labels(
            service=generation.service, kind=generation.kind, result="ok", env=env_label()
        ).inc()
        generations_in_flight.labels(service=generation.service).inc()
        log.info(
            "generation submitted",
            extra={
                "meta": {
                    "generation_id": generation.id,
                    "service": generation.service,
                    "kind": generation.kind,
                    "external_id": external_id,
                }
            },
        )
        return generation

    def _finish(self, generation: Generation, status: str, **changes: Any) -> Generation:
        was_processing = generation.status == STATUS_PROCESSING
        transition(generation, status, **changes)
        self.store.save_generation(generation)
        if was_processing:
            generations_in_flight.labels(service=generation.service).dec()
            elapsed = max(0.0, (generation.updated_at - generation.created_at).total_seconds())
            generation_latency_seconds.labels(service=generation.service, env=env_label()).observe(elapsed)
        level = logging.INFO if status == STATUS_COMPLETED else logging.WARNING
        log.log(
            level,
            "generation %s",
            status,
            extra={
                "meta": {
                    "generation_id": generation.id,
                    "service": generation.service,
                    "kind": generation.kind,
                    "external_id": generation.external_id,
                    "error": generation.error_message,
                }
            },
        )
        return generation

    def _fail(self, generation: Generation, message: str) -> Generation:
        return self._finish(generation, STATUS_FAILED, error_message=message or "Generation failed")

    def _call_provider(self, generation: Generation, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except ProviderAPIError as exc:
            generation_requests_total.labels(
                service=generation.service, kind=generation.kind, result="error", env=env_label()
            ).inc()
            self._fail(generation, str(exc))
            raise

    def get(self, generation_id: str) -> Generation:
        generation = self.store.get_generation(generation_id)
        if generation is None:
            raise GenerationNotFound(generation_id)
        return generation

    def _track(self, track_id: str) -> Track:
        track = self.store.get_track(track_id)
        if track is None:
            raise TrackNotFound(track_id)
        return track

    def _new_track(
        self,
        user_id: str,
        *,
        project_id: Optional[str],
        title: str,
        metadata: Optional[Mapping[str, Any]] = None,
        lyrics: Optional[str] = None,
    ) -> Track:
        project = self.store.ensure_project(project_id, user_id, title)
        return self.store.add_track(project, title, lyrics=lyrics, metadata=dict(metadata or {}))

    # ------------------------------------------------------------------ Suno submissions
    def submit_suno_track(
        self,
        user_id: str,
        prompt: Optional[str],
        *,
        lyrics: Optional[str] = None,
        style: Optional[str] = None,
        title: Optional[str] = None,
        instrumental: bool = False,
        model: Optional[str] = None,
        project_id: Optional[str] = None,
        track_id: Optional[str] = None,
    ) -> Generation:
        prompt_text = (prompt or "").strip()
        lyrics_text = (lyrics or "").strip()
        if not prompt_text and not lyrics_text and not (style or "").strip():
            raise InvalidRequest("prompt, lyrics or style is required")
        custom_mode = bool(lyrics_text) and not instrumental
        style_text = (style or "").strip() or (prompt_text if custom_mode else "") or _DEFAULT_STYLE
        auto_title = not (title or "").strip()
        title_text = (title or "").strip() or smart_title(lyrics_text, fallback=prompt_text[:60] or "Untitled")
        self.limiter.check(user_id, SERVICE_SUNO)

        if track_id:
            track = self._track(track_id)
        else:
            track = self._new_track(
                user_id,
                project_id=project_id,
                title=title_text,
                lyrics=lyrics_text or None,
                metadata={"auto_title": auto_title, "style": style_text},
            )
        generation = self._begin(
            user_id,
            SERVICE_SUNO,
            KIND_TRACK,
            prompt_text or lyrics_text,
            track_id=track.id,
            project_id=track.project_id,
            metadata={"custom_mode": custom_mode, "instrumental": bool(instrumental), "style": style_text},
            check_limit=False,
        )
        task_id = self._call_provider(
            generation,
            lambda: self.suno.generate(
                prompt_text or style_text,
                custom_mode=custom_mode,
                lyrics=lyrics_text or None,
                style=style_text,
                title=title_text,
                instrumental=instrumental,
                model=model,
            ),
        )
        return self._submitted(generation, task_id, {"model": model or self.config.SUNO_MODEL})

    def generate_lyrics(self, user_id: str, prompt: str, *, service: str = SERVICE_SUNO) -> Generation:
        """Suno lyrics are asynchronous; Mureka lyrics complete immediately."""

        prompt_text = (prompt or "").strip()
        if not prompt_text:
            raise InvalidRequest("prompt is required")
        if service == SERVICE_MUREKA:
            generation = self._begin(user_id, SERVICE_MUREKA, KIND_LYRICS, prompt_text)
            result = self._call_provider(generation, lambda: self.mureka.generate_lyrics(prompt_text))
            generation_requests_total.labels(
                service=SERVICE_MUREKA, kind=KIND_LYRICS, result="ok", env=env_label()
            ).inc()
            return self._finish(
                generation,
                STATUS_COMPLETED,
                metadata={"title": result.get("title"), "lyrics": result.get("lyrics")},
            )
        if service != SERVICE_SUNO:
            raise InvalidRequest(f"unknown service: {service}")
        generation = self._begin(user_id, SERVICE_SUNO, KIND_LYRICS, prompt_text)
        task_id = self._call_provider(generation, lambda: self.suno.generate_lyrics(prompt_text))
        return self._submitted(generation, task_id)

    def _suno_ids(self, track: Track) -> tuple[Optional[str], Optional[str]]:
        return track.metadata.get("suno_task_id"), track.metadata.get("suno_audio_id")

    def convert_to_wav(self, user_id: str, track_id: str) -> Generation:
        track = self._track(track_id)
        task_id, audio_id = self._suno_ids(track)
        if not task_id and not audio_id:
            raise InvalidRequest("track has no Suno task or audio id")
        generation = self._begin(user_id, SERVICE_SUNO, KIND_WAV, track_id=track.id, project_id=track.project_id)
        external_id = self._call_provider(generation, lambda: self.suno.convert_to_wav(task_id, audio_id))
        return self._submitted(generation, external_id, {"source_task_id": task_id, "audio_id": audio_id})

    def separate_vocals(self, user_id: str, track_id: str) -> Generation:
        track = self._track(track_id)
        task_id, audio_id = self._suno_ids(track)
        if not task_id or not audio_id:
            raise InvalidRequest("vocal separation needs both the Suno task id and audio id")
        generation = self._begin(
            user_id, SERVICE_SUNO, KIND_VOCAL_SEPARATION, track_id=track.id, project_id=track.project_id
        )
        external_id = self._call_provider(generation, lambda: self.suno.separate_vocals(task_id, audio_id))
        return self._submitted(generation, external_id, {"source_task_id": task_id, "audio_id": audio_id})

    def generate_cover(self, user_id: str, track_id: str) -> Generation:
        track = self._track(track_id)
        task_id, _ = self._suno_ids(track)
        if not task_id:
            raise InvalidRequest("track has no Suno task id")
        generation = self._begin(user_id, SERVICE_SUNO, KIND_COVER, track_id=track.id, project_id=track.project_id)
        external_id = self._call_provider(generation, lambda: self.suno.generate_cover(task_id))
        return self._submitted(generation, external_id, {"source_task_id": task_id})

    def extend_track(
        self,
        user_id: str,
        track_id: str,
        *,
        continue_at: float,
        prompt: Optional[str] = None,
        style: Optional[str] = None,
        title: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Generation:
        source = self._track(track_id)
        _, audio_id = self._suno_ids(source)
        if not audio_id:
            raise InvalidRequest("track has no Suno audio id")
        if source.duration is None:
            raise InvalidRequest("track duration is unknown")
        try:
            position = float(continue_at)
        except (TypeError, ValueError):
            raise InvalidRequest("continue_at must be a number")
        if not 0 < position < source.duration:
            raise InvalidRequest(f"continue_at must be between 0 and {source.duration} seconds")
        prompt_text = (prompt or "").strip() or f"Extend the music from {position:g} seconds"
        title_text = (title or "").strip() or extended_title(source.title)
        style_text = (style or "").strip() or source.metadata.get("style") or ", ".join(source.style_tags) or None
        self.limiter.check(user_id, SERVICE_SUNO)
        target = self._new_track(
            user_id,
            project_id=source.project_id,
            title=title_text,
            metadata={"extended_from": source.id, "continue_at": position},
        )
        generation = self._begin(
            user_id,
            SERVICE_SUNO,
            KIND_EXTEND,
            prompt_text,
            track_id=target.id,
            project_id=target.project_id,
            metadata={"source_track_id": source.id, "continue_at": position},
            check_limit=False,
        )
        external_id = self._call_provider(
            generation,
            lambda: self.suno.extend(
                audio_id,
                continue_at=position,
                prompt=prompt_text,
                style=style_text,
                title=title_text,
                model=model,
            ),
        )
        return self._submitted(generation, external_id)

    def get_timestamped_lyrics(self, track_id: str) -> Mapping[str, Any]:
        track = self._track(track_id)
        task_id, audio_id = self._suno_ids(track)
        if not task_id:
            raise InvalidRequest("track has no Suno task id")
        return self.suno.get_timestamped_lyrics(task_id, audio_id)

    def generate_video(
        self,
        user_id: str,
        track_id: str,
        *,
        author: Optional[str] = None,
        domain_name: Optional[str] = None,
    ) -> Generation:
        track = self._track(track_id)
        task_id, audio_id = self._suno_ids(track)
        if not task_id or not audio_id:
            raise InvalidRequest("music video needs both the Suno task id and audio id")
        generation = self._begin(user_id, SERVICE_SUNO, KIND_VIDEO, track_id=track.id, project_id=track.project_id)
        external_id = self._call_provider(
            generation,
            lambda: self.suno.generate_video(task_id, audio_id, author=author, domain_name=domain_name),
        )
        return self._submitted(generation, external_id, {"source_task_id": task_id, "audio_id": audio_id})

    def boost_style(self, user_id: str, content: str) -> Generation:
        """Style boost answers synchronously, so the generation completes at once."""

        content_text = (content or "").strip()
        if not content_text:
            raise InvalidRequest("content is required")
        generation = self._begin(user_id, SERVICE_SUNO, KIND_STYLE_BOOST, content_text)
        result = self._call_provider(generation, lambda: self.suno.boost_style(content_text))
        generation_requests_total.labels(
            service=SERVICE_SUNO, kind=KIND_STYLE_BOOST, result="ok", env=env_label()
        ).inc()
        return self._finish(
            generation,
            STATUS_COMPLETED,
            external_id=result.get("taskId"),
            metadata={
                "style": result["style"],
                "credits_consumed": result.get("creditsConsumed"),
                "credits_remaining": result.get("creditsRemaining"),
            },
        )

    # ------------------------------------------------------------------ Mureka submissions
    def submit_mureka_track(
        self,
        user_id: str,
        lyrics: Optional[str] = None,
        prompt: Optional[str] = None,
        *,
        model: Optional[str] = None,
        title: Optional[str] = None,
        reference_id: Optional[str] = None,
        vocal_id: Optional[str] = None,
        melody_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Generation:
        lyrics_text = (lyrics or "").strip()
        prompt_text = (prompt or "").strip()
        if not lyrics_text and not prompt_text:
            raise InvalidRequest("lyrics or prompt is required")
        if len([value for value in (reference_id, vocal_id, melody_id) if value]) > 1:
            raise InvalidRequest("reference_id, vocal_id and melody_id are mutually exclusive")
        needs_lyrics = not lyrics_text and not looks_like_lyrics(prompt_text)
        if not lyrics_text and not needs_lyrics:
            lyrics_text, prompt_text = prompt_text, ""
        self.limiter.check(user_id, SERVICE_MUREKA)

        generation = self._begin(
            user_id,
            SERVICE_MUREKA,
            KIND_TRACK,
            prompt_text or lyrics_text,
            project_id=project_id,
            check_limit=False,
        )
        generated_title: Optional[str] = None
        if needs_lyrics:
            generated = self._call_provider(generation, lambda: self.mureka.generate_lyrics(prompt_text))
            lyrics_text = generated["lyrics"]
            generated_title = generated.get("title") or None
        auto_title = not (title or "").strip()
        title_text = (title or "").strip() or generated_title or smart_title(lyrics_text)
        track = self._new_track(
            user_id,
            project_id=project_id,
            title=title_text,
            lyrics=lyrics_text,
            metadata={"auto_title": auto_title and not generated_title},
        )
        generation.track_id = track.id
        generation.project_id = track.project_id
        generation.metadata = {**generation.metadata, "lyrics": lyrics_text}
        self.store.save_generation(generation)
        response = self._call_provider(
            generation,
            lambda: self.mureka.generate_song(
                lyrics_text,
                model=model,
                prompt=prompt_text or None,
                reference_id=reference_id,
                vocal_id=vocal_id,
                melody_id=melody_id,
            ),
        )
        task = MurekaTask.from_payload(response)
        return self._submitted(generation, task.id, {"model": task.model or model or self.config.MUREKA_MODEL})

    def submit_mureka_instrumental(
        self,
        user_id: str,
        prompt: Optional[str] = None,
        instrumental_id: Optional[str] = None,
        *,
        model: Optional[str] = None,
        title: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Generation:
        prompt_text = (prompt or "").strip()
        if bool(prompt_text) == bool(instrumental_id):
            raise InvalidRequest("exactly one of prompt or instrumental_id is required")
        self.limiter.check(user_id, SERVICE_MUREKA)
        title_text = (title or "").strip() or (prompt_text[:60] if prompt_text else "Instrumental")
        track = self._new_track(user_id, project_id=project_id, title=title_text, metadata={"instrumental": True})
        generation = self._begin(
            user_id,
            SERVICE_MUREKA,
            KIND_INSTRUMENTAL,
            prompt_text,
            track_id=track.id,
            project_id=track.project_id,
            metadata={"instrumental_id": instrumental_id} if instrumental_id else None,
            check_limit=False,
        )
        response = self._call_provider(
            generation,
            lambda: self.mureka.generate_instrumental(prompt_text or None, instrumental_id, model=model),
        )
        task = MurekaTask.from_payload(response)
        return self._submitted(generation, task.id)

    def extend_mureka_song(
        self,
        user_id: str,
        lyrics: str,
        extend_at_ms: int,
        *,
        track_id: Optional[str] = None,
        song_id: Optional[str] = None,
        upload_audio_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Generation:
        """Continue a Mureka song from ``extend_at_ms`` into a new track."""

        lyrics_text = (lyrics or "").strip()
        if not lyrics_text:
            raise InvalidRequest("lyrics are required")
        if len([value for value in (track_id, song_id, upload_audio_id) if value]) != 1:
            raise InvalidRequest("exactly one of track_id, song_id or upload_audio_id is required")
        try:
            position = int(extend_at_ms)
        except (TypeError, ValueError):
            raise InvalidRequest("extend_at must be a number of milliseconds")
        if not EXTEND_AT_MIN_MS <= position <= EXTEND_AT_MAX_MS:
            raise InvalidRequest(
                f"extend_at must be between {EXTEND_AT_MIN_MS} and {EXTEND_AT_MAX_MS} milliseconds"
            )
        source: Optional[Track] = None
        if track_id:
            source = self._track(track_id)
            song_id = source.metadata.get("mureka_task_id")
            if not song_id:
                raise InvalidRequest("track has no Mureka song id")
        title_text = (title or "").strip() or (extended_title(source.title) if source else smart_title(lyrics_text))
        self.limiter.check(user_id, SERVICE_MUREKA)

        target = self._new_track(
            user_id,
            project_id=source.project_id if source else None,
            title=title_text,
            lyrics=lyrics_text,
            metadata={"extended_from": source.id if source else None, "extend_at_ms": position},
        )
        generation = self._begin(
            user_id,
            SERVICE_MUREKA,
            KIND_EXTEND,
            lyrics_text,
            track_id=target.id,
            project_id=target.project_id,
            metadata={"lyrics": lyrics_text, "song_id": song_id, "upload_audio_id": upload_audio_id},
            check_limit=False,
        )
        response = self._call_provider(
            generation,
            lambda: self.mureka.extend_song(
                lyrics_text, position, song_id=song_id, upload_audio_id=upload_audio_id
            ),
        )
        task = MurekaTask.from_payload(response)
        return self._submitted(generation, task.id, {"model": task.model})

    def extend_mureka_lyrics(self, user_id: str, lyrics: str) -> Generation:
        lyrics_text = (lyrics or "").strip()
        if not lyrics_text:
            raise InvalidRequest("lyrics are required")
        generation = self._begin(user_id, SERVICE_MUREKA, KIND_LYRICS, lyrics_text, metadata={"extend": True})
        result = self._call_provider(generation, lambda: self.mureka.extend_lyrics(lyrics_text))
        generation_requests_total.labels(service=SERVICE_MUREKA, kind=KIND_LYRICS, result="ok", env=env_label()).inc()
        return self._finish(generation, STATUS_COMPLETED, metadata={"lyrics": result["lyrics"]})

    def separate_stems(self, user_id: str, track_id: str) -> Generation:
        track = self._track(track_id)
        if not track.audio_url:
            raise InvalidRequest("track has no audio to separate")
        generation = self._begin(user_id, SERVICE_MUREKA, KIND_STEMS, track_id=track.id, project_id=track.project_id)
        result = self._call_provider(generation, lambda: self.mureka.stem(track.audio_url))
        generation_requests_total.labels(service=SERVICE_MUREKA, kind=KIND_STEMS, result="ok", env=env_label()).inc()
        track.metadata = {**track.metadata, "stems_zip_url": result["zip_url"], "stems_expires_at": result.get("expires_at")}
        self.store.save_track(track)
        return self._finish(
            generation,
            STATUS_COMPLETED,
            result_url=result["zip_url"],
            metadata={"expires_at": result.get("expires_at")},
        )

    # ------------------------------------------------------------------ results
    def _apply_music_results(self, generation: Generation, results: Sequence[ResultTrack]) -> Generation:
        takes = [item for item in results if item.audio_url]
        if not takes:
            return self._fail(generation, "Provider returned no audio")
        first = takes[0]
        track = self.store.get_track(generation.track_id) if generation.track_id else None
        if track is None:
            track = self._new_track(generation.user_id, project_id=generation.project_id, title=first.title or "Untitled")
        track.audio_url = first.audio_url
        track.cover_url = first.image_url or track.cover_url
        track.lyrics = first.lyrics or track.lyrics
        track.duration = first.duration or track.duration
        if first.tags:
            track.style_tags = first.tags
        if track.metadata.get("auto_title"):
            track.title = smart_title(track.lyrics, fallback=first.title or track.title)
        track.metadata = {
            **track.metadata,
            "generation_id": generation.id,
            f"{generation.service}_task_id": generation.external_id,
            f"{generation.service}_audio_id": first.provider_id,
        }
        self.store.save_track(track)

        variant_ids: list[str] = list(generation.metadata.get("variant_track_ids") or [])
        if not variant_ids:
            for index, take in enumerate(takes[1:], start=1):
                variant = self.store.add_track(
                    track.project_id,
                    variant_title(track.title, index),
                    audio_url=take.audio_url,
                    cover_url=take.image_url,
                    lyrics=take.lyrics or track.lyrics,
                    duration=take.duration,
                    style_tags=take.tags,
                    metadata={
                        "generation_id": generation.id,
                        "variant_of": track.id,
                        "variant_index": index,
                        f"{generation.service}_task_id": generation.external_id,
                        f"{generation.service}_audio_id": take.provider_id,
                    },
                )
                variant_ids.append(variant.id)
        return self._finish(
            generation,
            STATUS_COMPLETED,
            result_url=first.audio_url,
            track_id=track.id,
            metadata={"variant_track_ids": variant_ids, "takes": len(takes)},
        )

    @staticmethod
    def _suno_results(tracks: Sequence[Any]) -> list[ResultTrack]:
        return [
            ResultTrack(
                audio_url=track.audio_url or track.stream_audio_url,
                provider_id=track.id,
                title=track.title,
                image_url=track.image_url,
                lyrics=track.lyrics,
                duration=track.duration,
                tags=_split_tags(track.tags),
            )
            for track in tracks
        ]

    def apply_suno_result(self, generation: Generation, info: RecordInfo) -> Generation:
        """Write a finished Suno record-info payload into the generation."""

        if info.status == STATUS_FAILED:
            return self._fail(generation, info.error_message or info.raw_status or "Suno generation failed")
        if info.status != STATUS_COMPLETED:
            return generation
        if generation.kind in _MUSIC_KINDS:
            return self._apply_music_results(generation, self._suno_results(info.tracks))
        response = info.data.get("response")
        response = response if isinstance(response, Mapping) else {}
        if generation.kind == KIND_LYRICS:
            options = [
                {"title": track.title, "lyrics": track.lyrics} for track in info.tracks if track.lyrics
            ]
            if not options:
                return self._fail(generation, "Suno returned no lyrics")
            return self._finish(
                generation,
                STATUS_COMPLETED,
                metadata={"lyrics": options[0]["lyrics"], "title": options[0]["title"], "options": options},
            )
        track = self.store.get_track(generation.track_id) if generation.track_id else None
        if generation.kind == KIND_WAV:
            url = response.get("audioWavUrl") or response.get("audio_wav_url")
            extra = {"wav_url": url}
        elif generation.kind == KIND_VOCAL_SEPARATION:
            url = response.get("vocalUrl") or response.get("vocal_url")
            extra = {
                "vocal_url": url,
                "instrumental_url": response.get("instrumentalUrl") or response.get("instrumental_url"),
            }
        elif generation.kind == KIND_COVER:
            images = response.get("images") or []
            url = images[0] if images else None
            extra = {"cover_images": list(images)}
            if track is not None and url:
                track.cover_url = url
        elif generation.kind == KIND_VIDEO:
            url = response.get("videoUrl") or response.get("video_url")
            extra = {"video_url": url}
        else:
            url, extra = None, {}
        if not url:
            return self._fail(generation, f"Suno returned no {generation.kind} result")
        if track is not None:
            track.metadata = {**track.metadata, **extra}
            self.store.save_track(track)
        return self._finish(generation, STATUS_COMPLETED, result_url=url, metadata=extra)

    def apply_mureka_result(self, generation: Generation, task: MurekaTask) -> Generation:
        if task.mapped_status == STATUS_FAILED:
            return self._fail(generation, task.failed_reason or f"Mureka task {task.status}")
        if task.mapped_status != STATUS_COMPLETED:
            return generation
        lyrics = generation.metadata.get("lyrics")
        results = [
            ResultTrack(
                audio_url=choice.audio_url,
                provider_id=choice.id or str(choice.index),
                title=choice.title,
                lyrics=choice.lyrics or lyrics,
                duration=choice.duration,
            )
            for choice in task.choices
        ]
        return self._apply_music_results(generation, results)

    # ------------------------------------------------------------------ polling
    def _fetcher(self, generation: Generation) -> Optional[Callable[[str], PollResult]]:
        if generation.service == SERVICE_SUNO:
            lookup = {
                KIND_TRACK: self.suno.get_record_info,
                KIND_EXTEND: self.suno.get_record_info,
                KIND_LYRICS: self.suno.get_lyrics_info,
                KIND_WAV: self.suno.get_wav_info,
                KIND_VOCAL_SEPARATION: self.suno.get_vocal_separation_info,
                KIND_COVER: self.suno.get_cover_info,
                KIND_VIDEO: self.suno.get_video_info,
            }.get(generation.kind)
            if lookup is None:
                return None
            return lambda task_id: poll_suno_once(lookup, task_id)
        lookup = {
            KIND_TRACK: self.mureka.query_song,
            KIND_EXTEND: self.mureka.query_song,
            KIND_INSTRUMENTAL: self.mureka.query_instrumental,
        }.get(generation.kind)
        if lookup is None:
            return None
        return lambda task_id: poll_mureka_once(lookup, task_id)

    def _apply_poll(self, generation: Generation, result: PollResult) -> Generation:
        if result.state == "ready":
            if generation.service == SERVICE_SUNO:
                return self.apply_suno_result(generation, RecordInfo.from_payload(result.payload))
            return self.apply_mureka_result(generation, MurekaTask.from_payload(result.payload))
        if result.state == "hard_error":
            return self._fail(generation, result.error or result.message or "Generation failed")
        if result.state == "timeout":
            return self._fail(generation, TIMEOUT_ERROR_MESSAGE)
        if result.state in ("pending", "retry") and result.message:
            generation.metadata = {**generation.metadata, "provider_status": result.message}
            self.store.save_generation(generation)
        return generation

    def refresh(self, generation_id: str) -> Generation:
        """Run a single status check and apply it."""

        generation = self.get(generation_id)
        if generation.is_terminal or not generation.external_id:
            return generation
        fetch = self._fetcher(generation)
        if fetch is None:
            return generation
        result = fetch(generation.external_id)
        return self._apply_poll(generation, result)

    def wait(self, generation_id: str) -> Generation:
        """Poll until the generation is terminal or the poll budget runs out."""

        generation = self.get(generation_id)
        if generation.is_terminal or not generation.external_id:
            return generation
        fetch = self._fetcher(generation)
        if fetch is None:
            return generation
        poller = self.suno_poller if generation.service == SERVICE_SUNO else self.mureka_poller

        def _delivered() -> bool:
            current = self.store.get_generation(generation_id)
            return current is not None and current.is_terminal

        result = poller.wait(generation.external_id, fetch, is_delivered=_delivered)
        if result.state == "delivered":
            return self.get(generation_id)
        return self._apply_poll(self.get(generation_id), result)

    # ------------------------------------------------------------------ callbacks
    def _apply_callback(self, generation: Generation, task: SunoTask) -> Generation:
        if generation.is_terminal:
            return generation
        if not task.succeeded:
            return self._fail(generation, task.msg or "Suno reported an error")
        if generation.kind not in _MUSIC_KINDS:
            return self.refresh(generation.id)
        if task.callback_type == "complete":
            return self._apply_music_results(generation, self._suno_results(task.items))
        generation.metadata = {**generation.metadata, "callback_stage": task.callback_type}
        self.store.save_generation(generation)
        return generation

    def handle_suno_callback(self, task: SunoTask, payload: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        meta = {"task_id": task.task_id, "type": task.callback_type, "code": task.code, "items": len(task.items)}
        if not task.task_id:
            log.warning("suno callback without task id", extra={"meta": meta})
            generation_callbacks_total.labels(service=SERVICE_SUNO, status="ignored", env=env_label()).inc()
            return {"status": "ignored", "reason": "missing task id"}
        generation = self.store.find_by_external_id(SERVICE_SUNO, task.task_id)
        if generation is None:
            log.warning("suno callback for unknown task", extra={"meta": meta})
            generation_callbacks_total.labels(service=SERVICE_SUNO, status="unknown", env=env_label()).inc()
            return {"status": "ignored", "reason": "unknown task"}
        if not self.store.save_event(task.task_id, task.callback_type, dict(payload or task.model_dump())):
            log.info("duplicate suno callback", extra={"meta": meta})
            generation_callbacks_total.labels(service=SERVICE_SUNO, status="duplicate", env=env_label()).inc()
            return {"status": "duplicate", "generation_id": generation.id}
        meta["generation_id"] = generation.id
        log.info("suno callback", extra={"meta": meta})

        try:
            outcome = self._apply_callback(generation, task)
        except Exception:
            self.store.delete_event(task.task_id, task.callback_type)
            raise
        generation_callbacks_total.labels(service=SERVICE_SUNO, status=outcome.status, env=env_label()).inc()
        return {"status": outcome.status, "generation_id": outcome.id}

    # ------------------------------------------------------------------ maintenance
    def fix_stuck(self, older_than_minutes: Optional[int] = None) -> dict[str, int]:
        """Settle generations left in pending/processing past the cutoff."""

        minutes = older_than_minutes or self.config.STUCK_GENERATION_MINUTES
        cutoff = utcnow() - timedelta(minutes=minutes)
        stuck = self.store.list_stuck(cutoff, ACTIVE_STATUSES)
        completed = failed = 0
        for generation in stuck:
            track = self.store.get_track(generation.track_id) if generation.track_id else None
            result_url = generation.result_url or (track.audio_url if track else None)
            if result_url:
                self._finish(generation, STATUS_COMPLETED, result_url=result_url, metadata={"fixed": True})
                completed += 1
            else:
                self._fail(generation, TIMEOUT_ERROR_MESSAGE)
                failed += 1
        log.info(
            "stuck generations fixed",
            extra={"meta": {"checked": len(stuck), "completed": completed, "failed": failed, "minutes": minutes}},
        )
        return {"checked": len(stuck), "completed": completed, "failed": failed}

    def save_track_audio(self, track_id: str) -> Track:
        """Download a track's audio into the local download directory."""

        track = self._track(track_id)
        if not track.audio_url:
            raise InvalidRequest("track has no audio url")
        generation_id = str(track.metadata.get("generation_id") or "")
        generation = self.store.get_generation(generation_id) if generation_id else None
        service = generation.service if generation else "unknown"
        stamp = utcnow().strftime("%Y-%m-%dT%H-%M-%S")
        filename = f"{service}-track-{(generation_id or track.id)[:8]}-{stamp}"
        path = self._downloader(track.audio_url, filename)
        track.metadata = {**track.metadata, "local_path": str(path)}
        self.store.save_track(track)
        return track

    def service_status(self) -> dict[str, Any]:
        suno: dict[str, Any] = {"status": STATUS_OFFLINE, "credits": None}
        if self.suno.configured:
            try:
                credits = self.suno.get_credits()
            except SunoAPIError as exc:
                suno["status"] = "limited" if exc.is_rate_limited else STATUS_OFFLINE
                suno["error"] = str(exc)
            else:
                suno["credits"] = credits
                suno["status"] = credits_status(credits, self.config.SUNO_LOW_CREDITS_THRESHOLD)
        mureka = {
            "status": STATUS_ONLINE if self.mureka.configured else STATUS_OFFLINE,
            "configured": self.mureka.configured,
        }
        return {"suno": suno, "mureka": mureka}


__all__ = ["GenerationService", "ResultTrack"]
