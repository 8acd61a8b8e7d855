"""
External push endpoint.

Mirrors administrator notifications to a URL that takes the message as
a single URL-encoded query parameter.
"""

import logging
from urllib.parse import quote_plus

import aiohttp
from aiohttp_socks import ProxyConnector

logger = logging.getLogger(__name__)


class PushInfoMirror:
    """
    Sends plain-text summaries to an HTTP push endpoint.

    The encoded text is appended to ``url_template``, e.g.
    ``https://push.example.com/send?text=``.
    """

    def __init__(
        self,
        url_template: str,
        proxy_url: str | None = None,
        timeout: int = 60,
    ):
        """
        Initialize the mirror.

        Parameters
        ----------
        url_template : str
            Endpoint prefix the encoded text is appended to.
        proxy_url : str | None
            Optional proxy URL.
        timeout : int
            HTTP request timeout in seconds.
        """
        self.url_template = url_template
        self.proxy_url = proxy_url
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            connector = None
            if self.proxy_url:
                connector = ProxyConnector.from_url(self.proxy_url)
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=connector,
            )
        return self._session

    def build_url(self, text: str) -> str:
        """Return the request URL for a message."""
        return f"{self.url_template}{quote_plus(text)}"

    async def push(self, text: str) -> bool:
        """
        Send a summary to the endpoint.

        Parameters
        ----------
        text : str
            Plain-text summary.

        Returns
        -------
        bool
            True on HTTP 200.
        """
        session = await self._get_session()
        try:
            async with session.get(self.build_url(text)) as response:
                body = await response.text()
                if response.status != 200:
                    logger.error(
                        "Push endpoint returned %d: %s",
                        response.status,
                        body[:200],
                    )
                    return False
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error("Failed to call push endpoint: %s", e)
            return False

        logger.debug("Mirrored notification to push endpoint")
        return True

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
