"""HTTP client wrapper for the Suno API."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from requests import Session
from urllib3.util import Timeout

from core.settings import Settings, get_settings
from suno.schemas import ApiEnvelope
from utils.provider_client import ProviderAPIError, ProviderClient

log = logging.getLogger("suno.client")

_MODEL_ALIASES = {
    "chirp-v3-0": "V3",
    "chirp-v3": "V3",
    "chirp-v3-5": "V3_5",
    "chirp-v4": "V4",
    "chirp-v4-5": "V4_5",
    "v3": "V3",
    "v3.5": "V3_5",
    "v3_5": "V3_5",
    "v4": "V4",
    "v4.5": "V4_5",
    "v4_5": "V4_5",
}

VOCAL_SEPARATION_TYPE = "separate_vocal"
_VIDEO_LABEL_LIMIT = 50


class SunoAPIError(ProviderAPIError):
    """Raised when the Suno API responds with an error."""

    provider = "suno"


class SunoClientError(SunoAPIError):
    """Represents a 4xx response or a rejected request."""


class SunoServerError(SunoAPIError):
    """Represents retry-exhausted network issues or 5xx responses."""


def normalize_model(model: Optional[str], default: str = "V3_5") -> str:
    text = str(model or "").strip()
    if not text:
        return default
    return _MODEL_ALIASES.get(text.lower(), text)


class SunoClient(ProviderClient):
    """Suno endpoints on top of :class:`ProviderClient`."""

    provider = "suno"
    client_error_cls = SunoClientError
    server_error_cls = SunoServerError
    log = log

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        callback_url: Optional[str] = None,
        session: Optional[Session] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[tuple[float, float] | Timeout] = None,
        config: Optional[Settings] = None,
    ) -> None:
        config = config or get_settings()
        super().__init__(
            base_url=base_url or config.SUNO_API_BASE,
            token=token if token is not None else config.SUNO_API_TOKEN,
            session=session,
            max_retries=max_retries,
            timeout=timeout,
            config=config,
        )
        self.callback_url = (callback_url or config.SUNO_CALLBACK_URL or "").strip()
        self.default_model = config.SUNO_MODEL
        self._gen_path = self._normalize_path(config.SUNO_GEN_PATH)
        self._status_path = self._normalize_path(config.SUNO_TASK_STATUS_PATH)
        self._credit_path = self._normalize_path(config.SUNO_CREDIT_PATH)
        self._wav_path = self._normalize_path(config.SUNO_WAV_PATH)
        self._wav_info_path = self._normalize_path(config.SUNO_WAV_INFO_PATH)
        self._vocal_path = self._normalize_path(config.SUNO_VOCAL_PATH)
        self._vocal_info_path = self._normalize_path(config.SUNO_VOCAL_INFO_PATH)
        self._lyrics_path = self._normalize_path(config.SUNO_LYRICS_GEN_PATH)
        self._lyrics_info_path = self._normalize_path(config.SUNO_LYRICS_INFO_PATH)
        self._timestamped_lyrics_path = self._normalize_path(config.SUNO_TIMESTAMPED_LYRICS_PATH)
        self._cover_path = self._normalize_path(config.SUNO_COVER_PATH)
        self._cover_info_path = self._normalize_path(config.SUNO_COVER_INFO_PATH)
        self._extend_path = self._normalize_path(config.SUNO_EXTEND_PATH)
        self._video_path = self._normalize_path(config.SUNO_VIDEO_PATH)
        self._video_info_path = self._normalize_path(config.SUNO_VIDEO_INFO_PATH)
        self._style_boost_path = self._normalize_path(config.SUNO_STYLE_BOOST_PATH)

    # ------------------------------------------------------------------ helpers
    def _check_payload(self, payload: Mapping[str, Any], *, op: str) -> None:
        envelope = ApiEnvelope.model_validate(payload)
        if envelope.ok:
            return
        code = int(envelope.code or 0)
        message = envelope.msg or self._payload_message(payload) or f"Suno error code {code}"
        log.warning("suno.body error", extra={"meta": {"op": op, "code": code, "msg": message}})
        error_cls = SunoServerError if code >= 500 else SunoClientError
        raise error_cls(message, status=code, payload=payload)

    def _resolve_callback_url(self, override: Optional[str]) -> str:
        return (override or self.callback_url or "").strip()

    def _task_id_from(self, response: Mapping[str, Any], *, op: str) -> str:
        task_id = self._extract_identifier(response, ("taskId", "task_id"))
        if not task_id:
            raise SunoServerError(f"Suno did not return taskId for {op}", payload=response)
        return task_id

    def _submit(self, path: str, body: Mapping[str, Any], *, op: str) -> str:
        response = self._request(
            "POST",
            path,
            json_payload=body,
            op=op,
            log_context={"phase": "submit"},
        )
        task_id = self._task_id_from(response, op=op)
        log.info("Suno %s accepted", op, extra={"meta": {"op": op, "taskId": task_id}})
        return task_id

    def _record_info(self, path: str, task_id: str, *, op: str) -> Mapping[str, Any]:
        if not task_id:
            raise SunoClientError("taskId is required for status check", status=422)
        return self._request(
            "GET",
            path,
            params={"taskId": str(task_id)},
            op=op,
            log_context={"taskId": task_id},
        )

    # ------------------------------------------------------------------ generation
    def build_generate_payload(
        self,
        prompt: Optional[str],
        *,
        custom_mode: bool = False,
        lyrics: Optional[str] = None,
        style: Optional[str] = None,
        title: Optional[str] = None,
        instrumental: bool = False,
        model: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> dict[str, Any]:
        prompt_text = str(prompt or "").strip()
        lyrics_text = str(lyrics or "").strip()
        if custom_mode:
            if not instrumental and not lyrics_text and not prompt_text:
                raise SunoClientError("lyrics are required in custom mode", status=422)
            if not str(style or "").strip():
                raise SunoClientError("style is required in custom mode", status=422)
            body_prompt = "" if instrumental else (lyrics_text or prompt_text)
        else:
            if not prompt_text:
                raise SunoClientError("prompt is required", status=422)
            body_prompt = prompt_text
        callback = self._resolve_callback_url(callback_url)
        if not callback:
            raise SunoClientError("Suno callback URL is not configured", status=422)
        payload: dict[str, Any] = {
            "prompt": body_prompt,
            "customMode": bool(custom_mode),
            "instrumental": bool(instrumental),
            "model": normalize_model(model, self.default_model),
            "callBackUrl": callback,
        }
        if custom_mode:
            payload["style"] = str(style or "").strip()
            payload["title"] = str(title or "").strip() or "Untitled"
        return payload

    def generate(self, prompt: Optional[str], **kwargs: Any) -> str:
        """Submit a track generation and return the Suno task id."""

        payload = self.build_generate_payload(prompt, **kwargs)
        return self._submit(self._gen_path, payload, op="generate")

    def get_record_info(self, task_id: str) -> Mapping[str, Any]:
        return self._record_info(self._status_path, task_id, op="record_info")

    def get_credits(self) -> Optional[float]:
        response = self._request("GET", self._credit_path, op="credits")
        data = ApiEnvelope.model_validate(response).data
        if isinstance(data, Mapping):
            data = data.get("credits", data.get("remaining"))
        try:
            return float(data)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------ derived assets
    def convert_to_wav(
        self,
        task_id: Optional[str],
        audio_id: Optional[str] = None,
        *,
        callback_url: Optional[str] = None,
    ) -> str:
        if not task_id and not audio_id:
            raise SunoClientError("taskId or audioId is required", status=422)
        body = self._drop_none(
            {
                "taskId": task_id or None,
                "audioId": audio_id or None,
                "callBackUrl": self._resolve_callback_url(callback_url) or None,
            }
        )
        return self._submit(self._wav_path, body, op="wav")

    def get_wav_info(self, task_id: str) -> Mapping[str, Any]:
        return self._record_info(self._wav_info_path, task_id, op="wav_info")

    def separate_vocals(
        self,
        task_id: str,
        audio_id: str,
        *,
        callback_url: Optional[str] = None,
    ) -> str:
        if not task_id or not audio_id:
            raise SunoClientError("taskId and audioId are both required", status=422)
        body = self._drop_none(
            {
                "taskId": task_id,
                "audioId": audio_id,
                "type": VOCAL_SEPARATION_TYPE,
                "callBackUrl": self._resolve_callback_url(callback_url) or None,
            }
        )
        return self._submit(self._vocal_path, body, op="vocal_separation")

    def get_vocal_separation_info(self, task_id: str) -> Mapping[str, Any]:
        return self._record_info(self._vocal_info_path, task_id, op="vocal_separation_info")

    def generate_lyrics(self, prompt: str, *, callback_url: Optional[str] = None) -> str:
        prompt_text = str(prompt or "").strip()
        if not prompt_text:
            raise SunoClientError("prompt is required", status=422)
        body = {
            "prompt": prompt_text,
            "callBackUrl": self._resolve_callback_url(callback_url),
        }
        return self._submit(self._lyrics_path, body, op="lyrics")

    def get_lyrics_info(self, task_id: str) -> Mapping[str, Any]:
        return self._record_info(self._lyrics_info_path, task_id, op="lyrics_info")

    def get_timestamped_lyrics(
        self,
        task_id: str,
        audio_id: Optional[str] = None,
        music_index: Optional[int] = None,
    ) -> Mapping[str, Any]:
        if not task_id:
            raise SunoClientError("taskId is required", status=422)
        body = self._drop_none({"taskId": task_id, "audioId": audio_id or None, "musicIndex": music_index})
        response = self._request(
            "POST",
            self._timestamped_lyrics_path,
            json_payload=body,
            op="timestamped_lyrics",
            log_context={"taskId": task_id},
        )
        data = ApiEnvelope.model_validate(response).data
        return data if isinstance(data, Mapping) else {}

    def generate_cover(self, task_id: str, *, callback_url: Optional[str] = None) -> str:
        if not task_id:
            raise SunoClientError("taskId is required", status=422)
        body = {"taskId": task_id, "callBackUrl": self._resolve_callback_url(callback_url)}
        return self._submit(self._cover_path, body, op="cover")

    def get_cover_info(self, task_id: str) -> Mapping[str, Any]:
        return self._record_info(self._cover_info_path, task_id, op="cover_info")

    def extend(
        self,
        audio_id: str,
        *,
        continue_at: float,
        prompt: Optional[str] = None,
        style: Optional[str] = None,
        title: Optional[str] = None,
        model: Optional[str] = None,
        default_param_flag: bool = True,
        callback_url: Optional[str] = None,
    ) -> str:
        if not audio_id:
            raise SunoClientError("audioId is required", status=422)
        if continue_at is None or float(continue_at) <= 0:
            raise SunoClientError("continueAt must be positive", status=422)
        body = self._drop_none(
            {
                "defaultParamFlag": bool(default_param_flag),
                "audioId": audio_id,
                "model": normalize_model(model, self.default_model),
                "continueAt": continue_at,
                "prompt": prompt,
                "style": style,
                "title": title,
                "callBackUrl": self._resolve_callback_url(callback_url) or None,
            }
        )
        return self._submit(self._extend_path, body, op="extend")

    def generate_video(
        self,
        task_id: str,
        audio_id: str,
        *,
        author: Optional[str] = None,
        domain_name: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> str:
        """Render an MP4 music video for one take of a finished task."""

        if not task_id or not audio_id:
            raise SunoClientError("taskId and audioId are both required", status=422)
        body = self._drop_none(
            {
                "taskId": task_id,
                "audioId": audio_id,
                "callBackUrl": self._resolve_callback_url(callback_url) or None,
                "author": (author or "").strip()[:_VIDEO_LABEL_LIMIT] or None,
                "domainName": (domain_name or "").strip()[:_VIDEO_LABEL_LIMIT] or None,
            }
        )
        return self._submit(self._video_path, body, op="video")

    def get_video_info(self, task_id: str) -> Mapping[str, Any]:
        return self._record_info(self._video_info_path, task_id, op="video_info")

    def boost_style(self, content: str, *, language: str = "en") -> Mapping[str, Any]:
        """Rewrite a style description; the result is returned synchronously."""

        content_text = str(content or "").strip()
        if not content_text:
            raise SunoClientError("content is required", status=422)
        response = self._request(
            "POST",
            self._style_boost_path,
            json_payload={"content": content_text, "task": "style_enhancement", "language": language},
            op="style_boost",
        )
        data = ApiEnvelope.model_validate(response).data
        data = data if isinstance(data, Mapping) else {"result": data}
        boosted = str(data.get("result") or "").strip()
        if not boosted:
            raise SunoServerError("Suno returned no boosted style", payload=response)
        return {
            "taskId": self._extract_identifier(data, ("taskId", "task_id")),
            "style": boosted,
            "creditsConsumed": data.get("creditsConsumed"),
            "creditsRemaining": data.get("creditsRemaining"),
        }


__all__ = [
    "SunoClient",
    "SunoAPIError",
    "SunoClientError",
    "SunoServerError",
    "VOCAL_SEPARATION_TYPE",
    "normalize_model",
]
