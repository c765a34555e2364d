"""HTTP client wrapper for the Mureka API."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from requests import Session
from urllib3.util import Timeout

from core.settings import Settings, get_settings
from utils.provider_client import ProviderAPIError, ProviderClient

log = logging.getLogger("mureka.client")

MUREKA_MODELS = ("auto", "mureka-6", "mureka-7", "mureka-o1")
EXTEND_AT_MIN_MS = 8_000
EXTEND_AT_MAX_MS = 420_000


class MurekaAPIError(ProviderAPIError):
    """Raised when the Mureka API responds with an error."""

    provider = "mureka"


class MurekaClientError(MurekaAPIError):
    """Represents a 4xx response or a rejected request."""


class MurekaServerError(MurekaAPIError):
    """Represents retry-exhausted network issues or 5xx responses."""


def normalize_model(model: Optional[str], default: str = "auto") -> str:
    text = str(model or "").strip().lower()
    if text in MUREKA_MODELS:
        return text
    return default if default in MUREKA_MODELS else "auto"


class MurekaClient(ProviderClient):
    """Mureka song, instrumental, lyrics and stem endpoints."""

    provider = "mureka"
    client_error_cls = MurekaClientError
    server_error_cls = MurekaServerError
    log = log

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        session: Optional[Session] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[tuple[float, float] | Timeout] = None,
        config: Optional[Settings] = None,
    ) -> None:
        config = config or get_settings()
        super().__init__(
            base_url=base_url or config.MUREKA_API_BASE,
            token=token if token is not None else config.MUREKA_API_KEY,
            session=session,
            max_retries=max_retries,
            timeout=timeout,
            config=config,
        )
        self.default_model = config.MUREKA_MODEL

    def build_song_payload(
        self,
        lyrics: str,
        *,
        model: Optional[str] = None,
        prompt: Optional[str] = None,
        reference_id: Optional[str] = None,
        vocal_id: Optional[str] = None,
        melody_id: Optional[str] = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        lyrics_text = str(lyrics or "").strip()
        if not lyrics_text:
            raise MurekaClientError("lyrics are required", status=422)
        references = {
            key: value
            for key, value in (
                ("reference_id", reference_id),
                ("vocal_id", vocal_id),
                ("melody_id", melody_id),
            )
            if value
        }
        if len(references) > 1:
            raise MurekaClientError(
                "reference_id, vocal_id and melody_id are mutually exclusive", status=422
            )
        payload: dict[str, Any] = {
            "lyrics": lyrics_text,
            "model": normalize_model(model, self.default_model),
            "stream": bool(stream),
        }
        if references:
            payload.update(references)
        elif prompt and str(prompt).strip():
            payload["prompt"] = str(prompt).strip()
        return payload

    def generate_song(self, lyrics: str, **kwargs: Any) -> Mapping[str, Any]:
        """Submit a song generation and return the raw task payload."""

        payload = self.build_song_payload(lyrics, **kwargs)
        response = self._request("POST", "/v1/song/generate", json_payload=payload, op="song_generate")
        if not self._extract_identifier(response, ("id", "task_id")):
            raise MurekaServerError("Mureka did not return a task id", payload=response)
        return response

    def extend_song(
        self,
        lyrics: str,
        extend_at: int,
        *,
        song_id: Optional[str] = None,
        upload_audio_id: Optional[str] = None,
    ) -> Mapping[str, Any]:
        """Continue a song from ``extend_at`` milliseconds; polled like a song task."""

        lyrics_text = str(lyrics or "").strip()
        if not lyrics_text:
            raise MurekaClientError("lyrics are required", status=422)
        if bool(song_id) == bool(upload_audio_id):
            raise MurekaClientError("exactly one of song_id or upload_audio_id is required", status=422)
        if not EXTEND_AT_MIN_MS <= int(extend_at) <= EXTEND_AT_MAX_MS:
            raise MurekaClientError(
                f"extend_at must be between {EXTEND_AT_MIN_MS} and {EXTEND_AT_MAX_MS} milliseconds", status=422
            )
        payload: dict[str, Any] = {"lyrics": lyrics_text, "extend_at": int(extend_at)}
        if song_id:
            payload["song_id"] = song_id
        else:
            payload["upload_audio_id"] = upload_audio_id
        response = self._request("POST", "/v1/song/extend", json_payload=payload, op="song_extend")
        if not self._extract_identifier(response, ("id", "task_id")):
            raise MurekaServerError("Mureka did not return a task id", payload=response)
        return response

    def query_song(self, task_id: str) -> Mapping[str, Any]:
        if not task_id:
            raise MurekaClientError("task id is required", status=422)
        return self._request(
            "GET",
            f"/v1/song/query/{task_id}",
            op="song_query",
            log_context={"task_id": task_id},
        )

    def generate_instrumental(
        self,
        prompt: Optional[str] = None,
        instrumental_id: Optional[str] = None,
        *,
        model: Optional[str] = None,
        stream: bool = False,
    ) -> Mapping[str, Any]:
        prompt_text = str(prompt or "").strip()
        if not prompt_text and not instrumental_id:
            raise MurekaClientError("Either prompt or instrumental_id is required", status=422)
        if prompt_text and instrumental_id:
            raise MurekaClientError("prompt and instrumental_id are mutually exclusive", status=422)
        payload: dict[str, Any] = {"model": normalize_model(model, self.default_model), "stream": bool(stream)}
        if prompt_text:
            payload["prompt"] = prompt_text
        else:
            payload["instrumental_id"] = instrumental_id
        response = self._request(
            "POST", "/v1/instrumental/generate", json_payload=payload, op="instrumental_generate"
        )
        if not self._extract_identifier(response, ("id", "task_id")):
            raise MurekaServerError("Mureka did not return a task id", payload=response)
        return response

    def query_instrumental(self, task_id: str) -> Mapping[str, Any]:
        if not task_id:
            raise MurekaClientError("task id is required", status=422)
        return self._request(
            "GET",
            f"/v1/instrumental/query/{task_id}",
            op="instrumental_query",
            log_context={"task_id": task_id},
        )

    def generate_lyrics(self, prompt: str) -> Mapping[str, Any]:
        prompt_text = str(prompt or "").strip()
        if not prompt_text:
            raise MurekaClientError("prompt is required", status=422)
        response = self._request("POST", "/v1/lyrics/generate", json_payload={"prompt": prompt_text}, op="lyrics")
        if not response.get("lyrics"):
            raise MurekaServerError("Mureka returned no lyrics", payload=response)
        return {"title": response.get("title") or "", "lyrics": response["lyrics"]}

    def extend_lyrics(self, lyrics: str) -> Mapping[str, Any]:
        lyrics_text = str(lyrics or "").strip()
        if not lyrics_text:
            raise MurekaClientError("lyrics are required", status=422)
        response = self._request(
            "POST", "/v1/lyrics/extend", json_payload={"lyrics": lyrics_text}, op="lyrics_extend"
        )
        if not response.get("lyrics"):
            raise MurekaServerError("Mureka returned no lyrics", payload=response)
        return {"lyrics": response["lyrics"]}

    def stem(self, url: str) -> Mapping[str, Any]:
        if not url:
            raise MurekaClientError("audio url is required", status=422)
        response = self._request("POST", "/v1/song/stem", json_payload={"url": url}, op="stem")
        if not response.get("zip_url"):
            raise MurekaServerError("Mureka returned no stem archive", payload=response)
        return {"zip_url": response["zip_url"], "expires_at": response.get("expires_at")}


__all__ = [
    "EXTEND_AT_MAX_MS",
    "EXTEND_AT_MIN_MS",
    "MUREKA_MODELS",
    "MurekaAPIError",
    "MurekaClient",
    "MurekaClientError",
    "MurekaServerError",
    "normalize_model",
]
