"""
Image URL filtering for marketplace listings and chat attachments.

Marketplace CDNs serve many images that are useless to the assistant:
profile pictures, avatars and tiny thumbnails. These are recognised by
path patterns and dropped before anything is sent to the backend.

Product images additionally get an accessibility check (an HTTP HEAD
request) because listing URLs expire; message images only get the
pattern filter.

Usage:
    from sellable.utils.image_validation import filter_image_urls, ImageValidator

    urls = filter_image_urls(message_urls)

    validator = ImageValidator()
    product_urls = await validator.validate(product.images, limit=5)
"""

import logging
import re
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import httpx

LOGGER = logging.getLogger(__name__)

MARKETPLACE_IMAGE_HOSTS = frozenset({
    'fbcdn.net',
    'facebook.com',
    'fbsbx.com',
})

PROBLEMATIC_PATH_PATTERN = re.compile(
    r"/s\d+x\d+/|/p\d+x\d+/|/profile/|profile[-_]pic|/avatar/|_t\.|_s\.|_xs|_xxs"
)


def is_problematic_image_url(url: Optional[str]) -> bool:
    """
    True for empty URLs and for marketplace CDN URLs that point at thumbnails,
    profile pictures or avatars. URLs on other hosts are never problematic.
    """
    if not url or not isinstance(url, str) or not url.strip():
        return True
    if not any(host in url for host in MARKETPLACE_IMAGE_HOSTS):
        return False
    return PROBLEMATIC_PATH_PATTERN.search(url) is not None


def filter_image_urls(urls: Optional[Iterable[str]]) -> List[str]:
    """
    Drops problematic URLs and duplicates, keeping the original order.
    """
    if not urls:
        return []
    seen = set()
    result = []
    for url in urls:
        if is_problematic_image_url(url) or url in seen:
            continue
        seen.add(url)
        result.append(url)
    return result


class ImageValidator:
    """
    HEAD-checks image URLs, remembering each result for ``result_ttl``
    seconds. At most ``max_results`` results are kept; the oldest go first.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0,
                 result_ttl: float = 60 * 60, max_results: int = 1000,
                 clock: Callable[[], float] = time.monotonic):
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self.result_ttl = result_ttl
        self.max_results = max_results
        self.clock = clock
        self._results: Dict[str, Tuple[bool, float]] = {}

    def _remembered(self, url: str) -> Optional[bool]:
        result = self._results.get(url)
        if result is None:
            return None
        accessible, checked_at = result
        if self.clock() - checked_at > self.result_ttl:
            del self._results[url]
            return None
        return accessible

    def _remember(self, url: str, accessible: bool) -> None:
        self._results.pop(url, None)
        self._results[url] = (accessible, self.clock())
        while len(self._results) > self.max_results:
            del self._results[next(iter(self._results))]

    async def is_accessible(self, url: str) -> bool:
        if is_problematic_image_url(url):
            return False
        remembered = self._remembered(url)
        if remembered is not None:
            return remembered
        try:
            response = await self.http_client.head(url)
            accessible = response.status_code < 400
            if not accessible:
                LOGGER.warning(f"Image not accessible: {url} (status {response.status_code})")
        except httpx.HTTPError as e:
            LOGGER.warning(f"Error checking image {url}: {e}")
            accessible = False
        self._remember(url, accessible)
        return accessible

    async def validate(self, urls: Optional[Iterable[str]], limit: Optional[int] = None) -> List[str]:
        """
        Returns up to ``limit`` URLs that pass both the pattern filter and the
        HEAD check, checking sequentially and stopping once the limit is met.
        """
        valid = []
        for url in filter_image_urls(urls):
            if limit is not None and len(valid) >= limit:
                break
            if await self.is_accessible(url):
                valid.append(url)
        LOGGER.debug(f"Validated {len(valid)} image(s)")
        return valid

    async def close(self) -> None:
        await self.http_client.aclose()
