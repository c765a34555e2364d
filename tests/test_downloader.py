import pytest
import requests

from suno.downloader import DownloadError, download_file, resolve_destination

URL = "https://cdn.suno.example/a1.mp3"


def test_download_writes_content(tmp_path, requests_mock) -> None:
    requests_mock.get(URL, content=b"ID3data")
    path = download_file(URL, "suno-track-1", base_dir=tmp_path)
    assert path == tmp_path / "suno-track-1.mp3"
    assert path.read_bytes() == b"ID3data"
    assert requests_mock.call_count == 1


def test_download_retries_temporary_errors(tmp_path, requests_mock) -> None:
    requests_mock.get(
        URL,
        response_list=[
            {"status_code": 503, "text": "busy"},
            {"exc": requests.ConnectionError("reset")},
            {"status_code": 200, "content": b"ok"},
        ],
    )
    path = download_file(URL, "retry", base_dir=tmp_path, session=requests.Session(), max_wait=0)
    assert path.read_bytes() == b"ok"
    assert requests_mock.call_count == 3


def test_download_gives_up(tmp_path, requests_mock) -> None:
    requests_mock.get(URL, status_code=404, text="missing")
    with pytest.raises(DownloadError):
        download_file(URL, "gone", base_dir=tmp_path, max_wait=0)
    assert requests_mock.call_count == 1

    requests_mock.get(URL, status_code=500, text="x")
    with pytest.raises(DownloadError):
        download_file(URL, "flaky", base_dir=tmp_path, attempts=2, max_wait=0)
    assert requests_mock.call_count == 3


def test_download_requires_url(tmp_path) -> None:
    with pytest.raises(ValueError):
        download_file("", "x", base_dir=tmp_path)


def test_resolve_destination_stays_inside_base(tmp_path) -> None:
    target = resolve_destination("../../etc/pass wd", URL, base_dir=tmp_path)
    assert target == tmp_path / "etc" / "pass_wd.mp3"
    assert resolve_destination("song.wav", URL, base_dir=tmp_path).name == "song.wav"
    assert resolve_destination("", "https://cdn/x", base_dir=tmp_path).name == "file.mp3"
