"""Test doubles shared by the service and web tests."""
from __future__ import annotations

from typing import Any, Optional

from core.settings import Settings


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "SUNO_API_TOKEN": "suno-test-token",
        "SUNO_CALLBACK_URL": "https://music.example/suno-callback",
        "SUNO_CALLBACK_SECRET": "expected",
        "MUREKA_API_KEY": "mureka-test-key",
        "RATE_LIMIT_SUNO": "100/60",
        "RATE_LIMIT_MUREKA": "100/60",
    }
    values.update(overrides)
    return Settings(**values)


class FakeSunoClient:
    """Records calls and hands out sequential task ids."""

    configured = True

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple, dict]] = []
        self.record_info: dict[str, Any] = {}
        self.credits: Optional[float] = 42.0
        self.error: Optional[Exception] = None
        self._counter = 0

    def _task(self, name: str, *args: Any, **kwargs: Any) -> str:
        self.calls.append((name, args, kwargs))
        if self.error is not None:
            raise self.error
        self._counter += 1
        return f"suno-task-{self._counter}"

    def generate(self, prompt, **kwargs):
        return self._task("generate", prompt, **kwargs)

    def generate_lyrics(self, prompt, **kwargs):
        return self._task("generate_lyrics", prompt, **kwargs)

    def convert_to_wav(self, task_id, audio_id=None, **kwargs):
        return self._task("convert_to_wav", task_id, audio_id, **kwargs)

    def separate_vocals(self, task_id, audio_id, **kwargs):
        return self._task("separate_vocals", task_id, audio_id, **kwargs)

    def generate_cover(self, task_id, **kwargs):
        return self._task("generate_cover", task_id, **kwargs)

    def extend(self, audio_id, **kwargs):
        return self._task("extend", audio_id, **kwargs)

    def generate_video(self, task_id, audio_id, **kwargs):
        return self._task("generate_video", task_id, audio_id, **kwargs)

    def boost_style(self, content, **kwargs):
        self.calls.append(("boost_style", (content,), kwargs))
        if self.error is not None:
            raise self.error
        return {
            "taskId": "boost-1",
            "style": f"{content}, lush analog synths, punchy drums",
            "creditsConsumed": 0.4,
            "creditsRemaining": 41.6,
        }

    def get_timestamped_lyrics(self, task_id, audio_id=None, music_index=None):
        self.calls.append(("get_timestamped_lyrics", (task_id, audio_id), {}))
        return {"alignedWords": [{"word": "hello", "startS": 0.5, "endS": 0.9}]}

    def _info(self, task_id):
        payload = self.record_info.get(task_id)
        if isinstance(payload, Exception):
            raise payload
        return payload or {"code": 200, "data": {"taskId": task_id, "status": "PENDING"}}

    get_record_info = _info
    get_lyrics_info = _info
    get_wav_info = _info
    get_vocal_separation_info = _info
    get_cover_info = _info
    get_video_info = _info

    def get_credits(self):
        if self.error is not None:
            raise self.error
        return self.credits


class FakeMurekaClient:
    configured = True

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple, dict]] = []
        self.queries: dict[str, Any] = {}
        self.lyrics_error: Optional[Exception] = None
        self._counter = 0

    def _task(self, name: str, *args: Any, **kwargs: Any) -> dict:
        self.calls.append((name, args, kwargs))
        self._counter += 1
        return {"id": f"mureka-task-{self._counter}", "status": "preparing", "model": "mureka-7"}

    def generate_song(self, lyrics, **kwargs):
        return self._task("generate_song", lyrics, **kwargs)

    def extend_song(self, lyrics, extend_at, **kwargs):
        return self._task("extend_song", lyrics, extend_at, **kwargs)

    def generate_instrumental(self, prompt=None, instrumental_id=None, **kwargs):
        return self._task("generate_instrumental", prompt, instrumental_id, **kwargs)

    def generate_lyrics(self, prompt):
        self.calls.append(("generate_lyrics", (prompt,), {}))
        if self.lyrics_error is not None:
            raise self.lyrics_error
        return {"title": "Neon Nights", "lyrics": "[Verse]\nCity lights are calling\n[Chorus]\nNeon nights"}

    def extend_lyrics(self, lyrics):
        self.calls.append(("extend_lyrics", (lyrics,), {}))
        return {"lyrics": lyrics + "\n[Verse 2]\nStill awake"}

    def stem(self, url):
        self.calls.append(("stem", (url,), {}))
        return {"zip_url": "https://cdn.mureka.example/stems.zip", "expires_at": 1700000000}

    def _query(self, task_id):
        payload = self.queries.get(task_id)
        if isinstance(payload, Exception):
            raise payload
        return payload or {"id": task_id, "status": "running"}

    query_song = _query
    query_instrumental = _query


def suno_complete_info(task_id: str, *tracks: dict) -> dict:
    return {
        "code": 200,
        "msg": "success",
        "data": {"taskId": task_id, "status": "SUCCESS", "response": {"sunoData": list(tracks)}},
    }


def suno_track(track_id: str, **extra: Any) -> dict:
    item = {
        "id": track_id,
        "audioUrl": f"https://cdn.suno.example/{track_id}.mp3",
        "imageUrl": f"https://cdn.suno.example/{track_id}.jpg",
        "prompt": "[Verse]\nHello midnight",
        "title": "Suno title",
        "tags": "pop, synthwave",
        "duration": 182.4,
    }
    item.update(extra)
    return item
