import time
from typing import Protocol

import httpx
import structlog
from selectolax.parser import HTMLParser

from scrapeflow.models.job import AuthType, ScrapingConfig, SelectorConfig
from scrapeflow.models.scraping import RawContent
from scrapeflow.utils.errors import CollectionError, TransientError

log = structlog.get_logger()


class CollectionStrategy(Protocol):
    async def execute(self, config: ScrapingConfig) -> RawContent: ...


def extract_selectors(html: str, selectors: dict[str, SelectorConfig]) -> dict[str, list[str]]:
    """Apply CSS selectors to a page. Required selectors must match something."""
    tree = HTMLParser(html)
    extracted: dict[str, list[str]] = {}
    for name, rule in selectors.items():
        if rule.type != "css":
            raise CollectionError(f"Selector {name}: only css selectors are supported")
        values = [node.text(strip=True) for node in tree.css(rule.selector)]
        if rule.required and not values:
            raise CollectionError(f"Required selector {name} matched nothing")
        extracted[name] = values
    return extracted


class HttpCollector:
    """Default collection strategy: one HTTP GET, optional CSS extraction."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    def _headers(self, config: ScrapingConfig) -> dict[str, str]:
        headers = {"User-Agent": config.options.user_agent}
        auth = config.source.authentication
        if auth is not None and auth.type != AuthType.NONE:
            headers.update(auth.headers)
        return headers

    async def execute(self, config: ScrapingConfig) -> RawContent:
        url = config.source.url
        start = time.monotonic()
        timeout = config.options.timeout / 1000.0

        try:
            if self._client is not None:
                response = await self._client.get(
                    url, headers=self._headers(config), timeout=timeout
                )
            else:
                async with httpx.AsyncClient(follow_redirects=True) as client:
                    response = await client.get(
                        url, headers=self._headers(config), timeout=timeout
                    )
        except httpx.TimeoutException as e:
            raise TransientError(f"Timed out fetching {url}") from e
        except httpx.TransportError as e:
            raise TransientError(f"Network error fetching {url}: {e}") from e

        duration_ms = int((time.monotonic() - start) * 1000)
        log.info(
            "collection_fetched",
            url=url,
            status=response.status_code,
            duration_ms=duration_ms,
            size=len(response.content),
        )

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(f"{url} answered {response.status_code}")
        if response.status_code >= 400:
            raise CollectionError(
                f"{url} answered {response.status_code}",
                details={"status": response.status_code},
            )

        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        if content_type.endswith("json"):
            content = response.json()
        elif config.source.selectors:
            content = extract_selectors(response.text, config.source.selectors)
        else:
            content = {"body": response.text}

        return RawContent(
            url=str(response.url),
            status_code=response.status_code,
            content=content,
            content_type=content_type or "text/html",
            headers=dict(response.headers),
            bytes_received=len(response.content),
            duration_ms=duration_ms,
        )
