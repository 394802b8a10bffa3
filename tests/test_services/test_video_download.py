"""Unit tests for VideoDownloadService."""

from unittest.mock import AsyncMock, Mock

import pytest

from audiobook_uploader.clients.douyin import DouyinClient
from audiobook_uploader.exceptions import MediaProcessError, VendorError
from audiobook_uploader.services.media_transform import MediaTransformService
from audiobook_uploader.services.video_download import VideoDownloadService

FULL_URL = "https://www.douyin.com/video/7301234567890"
SHARE_TEXT = "7.92 复制打开抖音，看看【美食作品】 https://v.douyin.com/iRNBho5/ abc:/ 12/05"
RESOLVER_PAYLOAD = {
    "code": 200,
    "data": {
        "video_id": "7301234567890",
        "desc": "红烧肉",
        "video_data": {
            "wm_video_url": "https://cdn.test/wm.mp4",
            "nwm_video_url_HQ": "https://cdn.test/nwm_hq.mp4",
        },
    },
}


@pytest.fixture
def douyin():
    client = Mock(spec=DouyinClient)
    client.fetch_video_data = AsyncMock(return_value=RESOLVER_PAYLOAD)

    async def download(url, output_path):
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"clip-bytes")
        return 10

    client.download = AsyncMock(side_effect=download)
    return client


@pytest.fixture
def media():
    service = Mock(spec=MediaTransformService)
    service.probe_duration = AsyncMock(return_value=14.8)
    return service


class TestResolveSourceUrl:
    @pytest.mark.parametrize(
        "text,expected",
        [
            (FULL_URL, FULL_URL),
            (SHARE_TEXT, "https://v.douyin.com/iRNBho5/"),
            ("https://youtube.com/watch?v=abc", None),
            ("no links here", None),
            ("", None),
            (None, None),
        ],
    )
    def test_resolve(self, text, expected):
        assert VideoDownloadService.resolve_source_url(text) == expected


class TestDownload:
    @pytest.mark.asyncio
    async def test_downloads_preferred_url_into_run_dir(self, douyin, media, tmp_path):
        service = VideoDownloadService(douyin, media)

        video = await service.download(SHARE_TEXT, tmp_path)

        douyin.fetch_video_data.assert_awaited_once_with("https://v.douyin.com/iRNBho5/")
        download_url, output_path = douyin.download.await_args.args
        assert download_url == "https://cdn.test/nwm_hq.mp4"
        assert output_path == tmp_path / "source_video.mp4"
        assert video.video_id == "7301234567890"
        assert video.title == "红烧肉"
        assert video.local_path == tmp_path / "source_video.mp4"
        assert video.file_size == 10
        assert video.duration == 14.8

    @pytest.mark.asyncio
    async def test_invalid_url_rejected_before_any_request(self, douyin, tmp_path):
        service = VideoDownloadService(douyin)

        with pytest.raises(VendorError, match="Invalid Douyin URL"):
            await service.download("https://vimeo.com/123", tmp_path)

        douyin.fetch_video_data.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_download_url(self, douyin, tmp_path):
        douyin.fetch_video_data.return_value = {"code": 200, "data": {"video_data": {}}}
        service = VideoDownloadService(douyin)

        with pytest.raises(VendorError, match="extract video download URL"):
            await service.download("https://v.douyin.com/iRNBho5/", tmp_path)

    @pytest.mark.asyncio
    async def test_empty_download_is_removed(self, douyin, tmp_path):
        async def empty_download(url, output_path):
            output_path.write_bytes(b"")
            return 0

        douyin.download.side_effect = empty_download
        service = VideoDownloadService(douyin)

        with pytest.raises(VendorError, match="empty"):
            await service.download("https://v.douyin.com/iRNBho5/", tmp_path)

        assert not (tmp_path / "source_video.mp4").exists()

    @pytest.mark.asyncio
    async def test_probe_failure_keeps_download(self, douyin, media, tmp_path):
        media.probe_duration.side_effect = MediaProcessError("ffprobe", 1, "moov atom not found")
        service = VideoDownloadService(douyin, media)

        video = await service.download("https://v.douyin.com/iRNBho5/", tmp_path)

        assert video.duration is None
        assert video.local_path.exists()
