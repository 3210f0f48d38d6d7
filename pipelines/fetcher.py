"""HTTP retrieval for SiteCorpus ingestion.

TLS certificate verification is disabled by default so that sources with
self-signed or otherwise invalid certificates stay reachable. This is a
known risk: responses from such hosts are not authenticated. Set
``SITECORPUS_VERIFY_TLS=true`` to enforce verification.
"""

import asyncio
import logging
from typing import Optional, Tuple

import aiohttp

from .errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)


class PageFetcher:
    """Fetches raw markup for a URL, optionally with basic-auth credentials.

    Failures are never retried here; every transport error, timeout and
    non-2xx response is raised as a single ``FetchError``.
    """

    def __init__(self,
                 timeout: float = 10.0,
                 user_agent: Optional[str] = None,
                 verify_tls: bool = False):
        self.timeout = timeout
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.verify_tls = verify_tls
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": self.user_agent},
            )
        return self.session

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def fetch(self, url: str, credentials: Optional[Tuple[str, str]] = None) -> str:
        """Return the response body of ``url`` as text.

        ``credentials`` is a ``(username, password)`` pair; basic auth is only
        sent when both parts are non-empty.
        """
        session = await self._ensure_session()
        auth = None
        if credentials and credentials[0] and credentials[1]:
            auth = aiohttp.BasicAuth(credentials[0], credentials[1])

        logger.debug(f"Fetching {url}")
        try:
            async with session.get(url, auth=auth, ssl=None if self.verify_tls else False,
                                   allow_redirects=True) as response:
                if response.status < 200 or response.status >= 300:
                    raise FetchError(url, reason=response.reason or "", status=response.status)
                return await response.text(errors="replace")
        except asyncio.TimeoutError as e:
            raise FetchError(url, reason=f"timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise FetchError(url, reason=str(e)) from e
        except ValueError as e:
            # Malformed URLs surface from yarl as ValueError
            raise FetchError(url, reason=str(e)) from e
