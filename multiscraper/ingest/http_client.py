"""Shared HTTP transport for retailer adapters.

Applies the per-retailer rotating proxy and random user agent toggles so
adapters never deal with them, and maps transport failures onto the
FetchError hierarchy.
"""

import json
import logging
from typing import Any, Optional

import httpx

from multiscraper.config import settings
from multiscraper.errors import ResponseShapeError, UpstreamUnavailableError
from multiscraper.ingest.user_agent_pool import user_agent_pool

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Accept-Language": "nl,en;q=0.9,en-GB;q=0.8,en-US;q=0.7",
}

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)


class RetailerHttpClient:
    """HTTP client bound to one retailer's transport settings."""

    def __init__(
        self,
        retailer_name: str,
        use_rotating_proxy: bool = False,
        use_random_user_agent: bool = False,
        proxy_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            retailer_name: Name used in errors and logs
            use_rotating_proxy: Route requests through the configured proxy
            use_random_user_agent: Pick a fresh user agent per request
            proxy_url: Proxy endpoint (defaults to settings.proxy_url)
            timeout: Request timeout in seconds (defaults to settings)
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.retailer_name = retailer_name
        self.use_rotating_proxy = use_rotating_proxy
        self.use_random_user_agent = use_random_user_agent
        self.proxy_url = settings.proxy_url if proxy_url is None else proxy_url
        self.timeout = timeout or settings.http_request_timeout_seconds
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._closed = False

        if use_rotating_proxy and not self.proxy_url:
            logger.warning(
                f"{retailer_name} wants a rotating proxy but PROXY_URL is not set; "
                "connecting directly"
            )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._closed:
            raise UpstreamUnavailableError(self.retailer_name, "HTTP client was closed")
        if self._http_client is None:
            kwargs: dict[str, Any] = {
                "timeout": self.timeout,
                "follow_redirects": True,
                "headers": DEFAULT_HEADERS,
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            elif self.use_rotating_proxy and self.proxy_url:
                kwargs["proxy"] = self.proxy_url
            self._http_client = httpx.AsyncClient(**kwargs)
        return self._http_client

    async def close(self):
        """Close HTTP client. A closed client rejects further requests."""
        self._closed = True
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _request_headers(self, headers: Optional[dict[str, str]]) -> dict[str, str]:
        if self.use_random_user_agent:
            user_agent = user_agent_pool.get_random()
        else:
            user_agent = DEFAULT_USER_AGENT
        merged = {"User-Agent": user_agent}
        if headers:
            merged.update(headers)
        return merged

    async def get_json(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """
        GET a URL and decode its JSON body.

        Raises:
            UpstreamUnavailableError: Network error, timeout or error status
            ResponseShapeError: Body is not JSON
        """
        client = await self._get_client()
        logger.debug(f"GET {url} params={params}")

        try:
            response = await client.get(
                url, params=params, headers=self._request_headers(headers)
            )
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError(
                self.retailer_name, f"timeout after {self.timeout}s for {url}"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(
                self.retailer_name, f"request to {url} failed: {e}"
            ) from e

        if response.status_code >= 400:
            logger.warning(
                f"{self.retailer_name} answered HTTP {response.status_code} for {url}"
            )
            raise UpstreamUnavailableError(
                self.retailer_name,
                f"HTTP {response.status_code} for {url}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.debug(f"{self.retailer_name} non-JSON body: {response.text[:500]}")
            raise ResponseShapeError(
                self.retailer_name, f"response from {url} is not valid JSON"
            ) from e
