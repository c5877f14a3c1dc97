"""Shopify REST Admin API client.

WHAT:
    Async wrapper for the Shopify REST Admin API with:
    - Access-token authentication
    - Fixed delay between requests (2 requests/second)
    - Link-header (page_info) pagination
    - 429 retry honouring Retry-After

WHY:
    Encapsulates all Shopify API interaction for the backfill sync service.
    The REST resources return the same shapes as the webhook bodies, so the
    webhook payload models and upsert functions are reused as-is.

REFERENCES:
    - Shopify REST Admin API: https://shopify.dev/docs/api/admin-rest
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - Pagination: https://shopify.dev/docs/api/usage/pagination-rest
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from storepulse.errors import UpstreamFailure

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-07"

# Shopify allows 2 requests/second for regular apps
RATE_LIMIT_DELAY = 0.5

PAGE_LIMIT = 250
DEFAULT_ORDER_LOOKBACK_DAYS = 90
DEFAULT_RETRY_AFTER_SECONDS = 2.0
MAX_RETRY_AFTER_SECONDS = 60.0

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')


class ShopifyAPIError(UpstreamFailure):
    """Shopify API unreachable or returned an error."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message)
        self.upstream_status = status_code
        self.errors = errors or []


def retry_after_seconds(value: Optional[str]) -> float:
    """Seconds to wait from a Retry-After header; HTTP-date or garbage -> default."""
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    if not 0 <= seconds <= MAX_RETRY_AFTER_SECONDS:
        return DEFAULT_RETRY_AFTER_SECONDS
    return seconds


def next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Extract the page_info cursor of the rel="next" link, if any."""
    if not link_header:
        return None
    match = _NEXT_LINK_RE.search(link_header)
    if not match:
        return None
    values = parse_qs(urlparse(match.group(1)).query).get("page_info")
    return values[0] if values else None


class ShopifyClient:
    """REST client for one shop.

    Usage:
        client = ShopifyClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        if await client.test_connection():
            products = await client.get_all_products()
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        request_delay: float = RATE_LIMIT_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Shopify client.

        Args:
            shop_domain: Shopify store domain (e.g., "mystore.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use
            request_delay: Seconds to sleep after each request
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        domain = shop_domain.replace("https://", "").replace("http://", "").rstrip("/")
        self.shop_domain = domain
        self.access_token = access_token
        self.api_version = api_version
        self.request_delay = request_delay
        self.base_url = f"https://{domain}/admin/api/{api_version}"
        self._transport = transport

        logger.info(f"[SHOPIFY_CLIENT] Initialized for {domain} (API version: {api_version})")

    async def _request(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        retries: int = 3,
    ) -> httpx.Response:
        """GET a REST resource with retry on 429 and transport errors.

        Raises:
            ShopifyAPIError: non-2xx response, or failure after all retries
        """
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}/{path}"
        last_error: Optional[Exception] = None

        for attempt in range(retries):
            try:
                async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                    response = await client.get(url, params=params, headers=headers)
            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"[SHOPIFY_CLIENT] Request error: {e} (attempt {attempt + 1}/{retries})")
                if attempt < retries - 1:
                    await asyncio.sleep(self.request_delay * (attempt + 1))
                continue

            if response.status_code == 429:
                retry_after = retry_after_seconds(response.headers.get("Retry-After"))
                logger.warning(
                    f"[SHOPIFY_CLIENT] Rate limited, waiting {retry_after}s (attempt {attempt + 1}/{retries})"
                )
                last_error = ShopifyAPIError("Rate limited", status_code=429)
                await asyncio.sleep(retry_after)
                continue

            if response.is_error:
                raise ShopifyAPIError(
                    f"Shopify API error {response.status_code} for {path}",
                    status_code=response.status_code,
                    errors=[response.text[:500]],
                )

            if self.request_delay:
                await asyncio.sleep(self.request_delay)
            return response

        raise ShopifyAPIError(f"Failed after {retries} attempts: {last_error}")

    @staticmethod
    def _parse_page(response: httpx.Response, resource: str) -> List[Dict[str, Any]]:
        """Extract the resource list from a page body.

        Raises:
            ShopifyAPIError: body is not a JSON object with a list under resource
        """
        try:
            body = response.json()
        except ValueError:
            raise ShopifyAPIError(
                f"Invalid JSON in {resource} response",
                status_code=response.status_code,
                errors=[response.text[:500]],
            )

        batch = body.get(resource, []) if isinstance(body, dict) else None
        if not isinstance(batch, list):
            raise ShopifyAPIError(
                f"Unexpected {resource} response shape",
                status_code=response.status_code,
                errors=[response.text[:500]],
            )
        return batch

    async def _get_all(self, resource: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Fetch every page of a list resource (products, customers, orders).

        After the first page only limit and page_info may be sent.
        """
        items: List[Dict[str, Any]] = []
        page_params: Dict[str, Any] = {"limit": PAGE_LIMIT, **(params or {})}
        page = 0

        while True:
            response = await self._request(f"{resource}.json", params=page_params)
            batch = self._parse_page(response, resource)
            items.extend(batch)
            page += 1
            logger.debug(f"[SHOPIFY_CLIENT] {resource}: page {page}, {len(batch)} items")

            cursor = next_page_info(response.headers.get("Link"))
            if not cursor:
                break
            page_params = {"limit": PAGE_LIMIT, "page_info": cursor}

        logger.info(f"[SHOPIFY_CLIENT] Fetched {len(items)} {resource} from {self.shop_domain}")
        return items

    # =========================================================================
    # RESOURCES
    # =========================================================================

    async def test_connection(self) -> bool:
        """Check credentials by fetching shop.json."""
        try:
            await self._request("shop.json", retries=1)
            return True
        except ShopifyAPIError as e:
            logger.warning(f"[SHOPIFY_CLIENT] Connection test failed for {self.shop_domain}: {e}")
            return False

    async def get_all_products(self) -> List[Dict[str, Any]]:
        return await self._get_all("products")

    async def get_all_customers(self) -> List[Dict[str, Any]]:
        return await self._get_all("customers")

    async def get_all_orders(
        self,
        created_at_min: Optional[datetime] = None,
        lookback_days: int = DEFAULT_ORDER_LOOKBACK_DAYS,
    ) -> List[Dict[str, Any]]:
        """Fetch orders of any status created since created_at_min.

        Defaults to the last `lookback_days` days.
        """
        if created_at_min is None:
            created_at_min = datetime.utcnow() - timedelta(days=lookback_days)
        return await self._get_all(
            "orders",
            params={"status": "any", "created_at_min": created_at_min.isoformat()},
        )
