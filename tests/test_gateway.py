import asyncio
import io

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers
from yt_dlp.utils import DownloadError

from viralclips import gateway
from viralclips.errors import DownloadFailed, PayloadTooLarge, UnsupportedSource, UnsupportedType


@pytest.mark.parametrize(
    "url, platform",
    [
        ("https://www.youtube.com/watch?v=abc", "youtube"),
        ("youtu.be/abc", "youtube"),
        ("https://m.tiktok.com/@user/video/1", "tiktok"),
        ("http://instagram.com/reel/xyz", "instagram"),
        ("https://www.facebook.com/watch/?v=1", "facebook"),
        ("https://vimeo.com/12345", "vimeo"),
    ],
)
def test_detect_platform_accepts_allow_listed_hosts(url, platform):
    assert gateway.detect_platform(url) == platform


@pytest.mark.parametrize(
    "url",
    [
        "",
        None,
        "https://example.com/video",
        "https://notyoutube.com/watch?v=abc",
        "https://evil.example/?next=youtube.com",
        "ftp://youtube.com/video",
        "https://[broken",
    ],
)
def test_detect_platform_rejects_other_urls(url):
    assert gateway.detect_platform(url) is None


def test_ensure_supported_source_raises():
    with pytest.raises(UnsupportedSource) as exc:
        gateway.ensure_supported_source("https://example.com/v.mp4")
    assert exc.value.status_code == 400


def test_safe_filename_strips_directories_and_symbols():
    assert gateway.safe_filename("../../etc/passwd") == "passwd"
    assert gateway.safe_filename("my video (1).mp4") == "my_video_1_.mp4"
    assert gateway.safe_filename("") == "video.mp4"


def test_ensure_upload_type_accepts_browser_aliases():
    upload = UploadFile(file=io.BytesIO(b"x"), filename="a.mov", headers=Headers({"content-type": "video/quicktime"}))
    gateway.ensure_upload_type(upload)

    rejected = UploadFile(file=io.BytesIO(b"x"), filename="a.png", headers=Headers({"content-type": "image/png"}))
    with pytest.raises(UnsupportedType):
        gateway.ensure_upload_type(rejected)


def test_stream_upload_to_path_writes_file(tmp_path):
    upload = UploadFile(file=io.BytesIO(b"abc" * 10), filename="clip.mp4")
    dest = tmp_path / "uploads" / "clip.mp4"

    written = asyncio.run(gateway.stream_upload_to_path(upload, dest, max_bytes=100))

    assert written == 30
    assert dest.read_bytes() == b"abc" * 10
    assert not dest.with_name("clip.mp4.partial").exists()


def test_stream_upload_to_path_rejects_oversized(tmp_path):
    upload = UploadFile(file=io.BytesIO(b"x" * 20), filename="clip.mp4")
    dest = tmp_path / "clip.mp4"

    with pytest.raises(PayloadTooLarge) as exc:
        asyncio.run(gateway.stream_upload_to_path(upload, dest, max_bytes=10))

    assert exc.value.status_code == 413
    assert list(tmp_path.iterdir()) == []


def test_fetch_video_info_truncates_description(monkeypatch):
    monkeypatch.setattr(
        gateway,
        "_extract_info",
        lambda url: {"title": "t", "description": "d" * 600, "upload_date": "20240101"},
    )

    info = asyncio.run(gateway.fetch_video_info("https://youtu.be/abc"))

    assert info["description"] == "d" * 500 + "..."
    assert info["uploadDate"] == "20240101"
    assert info["platform"] == "youtube"


def test_fetch_video_info_rejects_unsupported_host(monkeypatch):
    def unexpected(url):
        raise AssertionError("should not be called")

    monkeypatch.setattr(gateway, "_extract_info", unexpected)
    with pytest.raises(UnsupportedSource):
        asyncio.run(gateway.fetch_video_info("https://example.com/video"))


def test_download_video_maps_downloader_errors(monkeypatch):
    def failing(url):
        raise DownloadError("Video unavailable")

    monkeypatch.setattr(gateway, "_extract_info", failing)

    with pytest.raises(DownloadFailed) as exc:
        asyncio.run(gateway.download_video("https://www.youtube.com/watch?v=gone"))

    assert exc.value.status_code == 500
    assert "Video unavailable" in exc.value.details
    assert exc.value.suggestions == [
        "Check if the URL is accessible",
        "Try a different video quality",
        "Ensure the video is not private or restricted",
    ]


def test_download_video_reports_missing_file(monkeypatch):
    monkeypatch.setattr(gateway, "_extract_info", lambda url: {"title": "x"})
    monkeypatch.setattr(gateway, "_run_download", lambda url, output_path, quality: None)

    with pytest.raises(DownloadFailed) as exc:
        asyncio.run(gateway.download_video("https://vimeo.com/1"))

    assert exc.value.details == "Download failed - file not created"


def test_download_video_passes_quality(monkeypatch):
    seen = {}

    def fake_download(url, output_path, quality):
        seen["quality"] = quality
        output_path.write_bytes(b"data")

    monkeypatch.setattr(gateway, "_extract_info", lambda url: {"title": "clip", "duration": 3})
    monkeypatch.setattr(gateway, "_run_download", fake_download)

    source = asyncio.run(gateway.download_video("https://vimeo.com/1", quality="worst"))

    assert seen["quality"] == "worst"
    assert source.size_bytes == 4
    assert source.local_path.parent == gateway.settings.DOWNLOADS_DIR
    source.local_path.unlink()
