"""Tests for DouyinClient and the Douyin URL helpers.

HTTP traffic goes through httpx.MockTransport so request construction and
response handling are exercised end to end without the network.
"""

import httpx
import pytest

from audiobook_uploader.clients.douyin import (
    DouyinClient,
    extract_douyin_url_from_text,
    extract_download_url,
    extract_video_id,
    is_valid_douyin_url,
)
from audiobook_uploader.exceptions import VendorError

RESOLVER_URL = "https://resolver.test/api/hybrid/video_data"


def _client(handler) -> DouyinClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DouyinClient(http_client=http_client, api_url=RESOLVER_URL)


class TestUrlHelpers:
    @pytest.mark.parametrize(
        "url",
        [
            "https://www.douyin.com/video/7301234567890",
            "https://v.douyin.com/iRNBho5/",
            "https://vt.tiktok.com/ZSabc123/",
            "https://dy.zzz.com.cn/abc123",
        ],
    )
    def test_valid_urls(self, url):
        assert is_valid_douyin_url(url)

    @pytest.mark.parametrize("url", ["https://youtube.com/watch?v=1", "", None])
    def test_invalid_urls(self, url):
        assert not is_valid_douyin_url(url)

    def test_extract_video_id(self):
        assert extract_video_id("https://www.douyin.com/video/7301234567890") == "7301234567890"
        assert extract_video_id("https://v.douyin.com/iRNBho5/") == "iRNBho5"
        assert extract_video_id("https://example.com/") is None

    def test_extract_url_from_share_text(self):
        text = "看看【作品】 https://example.com/x https://v.douyin.com/iRNBho5/ 复制此链接"
        assert extract_douyin_url_from_text(text) == "https://v.douyin.com/iRNBho5/"
        assert extract_douyin_url_from_text("   ") is None

    def test_download_url_field_order(self):
        payload = {
            "data": {
                "video_data": {
                    "wm_video_url_HQ": "https://cdn.test/wm_hq.mp4",
                    "nwm_video_url": "https://cdn.test/nwm.mp4",
                }
            }
        }
        assert extract_download_url(payload) == "https://cdn.test/nwm.mp4"
        assert extract_download_url({"data": None}) is None


class TestFetchVideoData:
    @pytest.mark.asyncio
    async def test_success(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["url"] == "https://v.douyin.com/iRNBho5/"
            assert request.url.params["minimal"] == "true"
            return httpx.Response(200, json={"code": 200, "data": {"video_id": "1"}})

        payload = await _client(handler).fetch_video_data("https://v.douyin.com/iRNBho5/")

        assert payload["data"]["video_id"] == "1"

    @pytest.mark.asyncio
    async def test_resolver_error_code(self):
        def handler(request):
            return httpx.Response(200, json={"code": 400, "msg": "video not found"})

        with pytest.raises(VendorError, match="Douyin API error 400: video not found") as exc:
            await _client(handler).fetch_video_data("https://v.douyin.com/x/")

        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>blocked</html>")

        with pytest.raises(VendorError, match="invalid JSON"):
            await _client(handler).fetch_video_data("https://v.douyin.com/x/")

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        def handler(request):
            return httpx.Response(502)

        with pytest.raises(httpx.HTTPStatusError):
            await _client(handler).fetch_video_data("https://v.douyin.com/x/")


class TestDownload:
    @pytest.mark.asyncio
    async def test_streams_to_disk_with_browser_headers(self, tmp_path):
        def handler(request):
            assert request.headers["Referer"] == "https://www.douyin.com/"
            return httpx.Response(206, content=b"x" * 5000)

        output = tmp_path / "run" / "source_video.mp4"

        written = await _client(handler).download("https://cdn.test/clip.mp4", output)

        assert written == 5000
        assert output.read_bytes() == b"x" * 5000

    @pytest.mark.asyncio
    async def test_forbidden_cdn_response(self, tmp_path):
        def handler(request):
            return httpx.Response(403)

        output = tmp_path / "source_video.mp4"
        with pytest.raises(VendorError, match="HTTP 403") as exc:
            await _client(handler).download("https://cdn.test/clip.mp4", output)

        assert exc.value.status_code == 403
        assert not output.exists()
