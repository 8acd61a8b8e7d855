"""Unit tests for the external push endpoint mirror."""

import re

import aiohttp
from aioresponses import aioresponses

from rss_pusher.mirror import PushInfoMirror

TEMPLATE = "https://push.example.com/send?text="
ENDPOINT = re.compile(r"^https://push\.example\.com/send.*$")


class TestPushInfoMirror:
    """Tests for PushInfoMirror."""

    def test_build_url(self) -> None:
        """Test the text is URL-encoded and appended to the template."""
        mirror = PushInfoMirror(TEMPLATE)

        assert mirror.build_url("a b&c") == TEMPLATE + "a+b%26c"

    def test_build_url_non_ascii(self) -> None:
        """Test non-ASCII text is percent-encoded."""
        mirror = PushInfoMirror(TEMPLATE)

        assert mirror.build_url("📌") == TEMPLATE + "%F0%9F%93%8C"

    async def test_push_success(self) -> None:
        """Test HTTP 200 counts as delivered."""
        mirror = PushInfoMirror(TEMPLATE)
        with aioresponses() as mocked:
            mocked.get(ENDPOINT, status=200, body="ok")
            try:
                assert await mirror.push("📌 title") is True
            finally:
                await mirror.close()

    async def test_push_bad_status(self) -> None:
        """Test other statuses count as failures."""
        mirror = PushInfoMirror(TEMPLATE)
        with aioresponses() as mocked:
            mocked.get(ENDPOINT, status=502, body="bad gateway")
            try:
                assert await mirror.push("text") is False
            finally:
                await mirror.close()

    async def test_push_connection_error(self) -> None:
        """Test connection failures count as failures."""
        mirror = PushInfoMirror(TEMPLATE)
        with aioresponses() as mocked:
            mocked.get(ENDPOINT, exception=aiohttp.ClientConnectionError("refused"))
            try:
                assert await mirror.push("text") is False
            finally:
                await mirror.close()

    async def test_close_without_session(self) -> None:
        """Test closing an unused mirror is a no-op."""
        mirror = PushInfoMirror(TEMPLATE)

        await mirror.close()

        assert mirror._session is None
