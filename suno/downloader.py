"""Download generated audio into the local download directory."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from requests import Response
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.settings import get_settings

log = logging.getLogger("suno.downloader")

_REQUEST_TIMEOUT = (10, 60)


class DownloadError(RuntimeError):
    """Raised when a file cannot be downloaded."""


class TemporaryDownloadError(DownloadError):
    """Raised for responses worth retrying (429 and 5xx)."""


def _sanitize_component(component: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", component)
    return safe.strip("._") or "file"


def _guess_extension(url: str) -> str:
    path = urlparse(url).path
    if not path:
        return ""
    return Path(path).suffix


def resolve_destination(dest_path: str | Path, url: str, base_dir: Optional[Path] = None) -> Path:
    """Resolve destination path ensuring it is scoped to the download dir."""

    if base_dir is None:
        base_dir = Path(get_settings().DOWNLOAD_DIR)
    base_dir = Path(base_dir)
    relative = Path(dest_path)
    safe_parts = [_sanitize_component(part) for part in relative.parts if part not in ("", ".", "..", "/")]
    target = base_dir.joinpath(*safe_parts) if safe_parts else base_dir / "file"
    if not target.suffix:
        extension = _guess_extension(url) or ".mp3"
        target = target.with_name(target.name + extension)
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


def _is_retryable(response: Response) -> bool:
    return response.status_code >= 500 or response.status_code == 429


def download_file(
    url: str,
    dest_path: str | Path,
    base_dir: Optional[Path] = None,
    *,
    session: Optional[requests.Session] = None,
    attempts: int = 4,
    max_wait: float = 10.0,
) -> Path:
    """Download a file with retries and return the resulting path."""

    if not url:
        raise ValueError("download url must be provided")

    destination = resolve_destination(dest_path, url, base_dir=base_dir)
    http = session or requests
    retryer = Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=1, min=0 if max_wait <= 0 else 1, max=max_wait),
        retry=retry_if_exception_type((requests.RequestException, TemporaryDownloadError)),
        reraise=True,
    )

    def _perform_download() -> Path:
        response = http.get(url, stream=True, timeout=_REQUEST_TIMEOUT)
        with response:
            if response.status_code >= 400:
                if _is_retryable(response):
                    raise TemporaryDownloadError(f"temporary error {response.status_code}")
                raise DownloadError(f"failed with status {response.status_code}")
            with destination.open("wb") as fh:
                for chunk in response.iter_content(chunk_size=8192):
                    if chunk:
                        fh.write(chunk)
        return destination

    try:
        path = retryer(_perform_download)
    except RetryError as exc:
        raise DownloadError(str(exc)) from exc
    except requests.RequestException as exc:
        raise DownloadError(f"network error: {exc}") from exc
    log.info("audio downloaded", extra={"meta": {"url": url, "path": str(path)}})
    return path


__all__ = ["DownloadError", "TemporaryDownloadError", "download_file", "resolve_destination"]
