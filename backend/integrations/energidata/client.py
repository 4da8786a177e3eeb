"""
Energi Data Service Client

Thin async client for the public dataset API:

    GET {base_url}/{dataset}?filter={json}&sort={field dir}&limit={n}

Maps HTTP statuses onto the upstream error taxonomy; retries and caching
live one layer up.
"""

from typing import Any, Optional
import json

import httpx
import structlog

from .base import (
    TransientUpstreamError,
    UpstreamClientError,
    UpstreamPayloadError,
    UpstreamRateLimitedError,
)
from .http import DEFAULT_TIMEOUT_SECONDS, fetch_with_timeout
from .rate_limiter import SlidingWindowLimiter

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.energidataservice.dk/dataset"

DATAHUB_PRICELIST = "DatahubPricelist"
ELSPOT_PRICES = "Elspotprices"

# Upstream answers these for unknown filters; they mean "no data"
EMPTY_RESULT_STATUSES = (400, 404)


class EnergiDataServiceClient:
    """
    Client for Energi Data Service datasets.

    One httpx.AsyncClient is created lazily and reused for connection
    pooling. Every request first takes a token from the shared upstream
    rate limiter, when one is configured.
    """

    api_name = "energidataservice"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = "DinElPortal/1.0",
        rate_limiter: Optional[SlidingWindowLimiter] = None,
        rate_limit_wait: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self.rate_limiter = rate_limiter
        self.rate_limit_wait = rate_limit_wait
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None

        self.logger = logger.bind(api_client=self.api_name)

    def _get_default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=self._get_default_headers(),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "EnergiDataServiceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @staticmethod
    def build_params(
        filter: Optional[dict] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> dict[str, str]:
        """Query parameters for a dataset request, skipping unset ones"""
        params: dict[str, str] = {}
        if start is not None:
            params["start"] = start
        if end is not None:
            params["end"] = end
        if filter:
            params["filter"] = json.dumps(filter, separators=(",", ":"))
        if sort:
            params["sort"] = sort
        if limit is not None:
            params["limit"] = str(limit)
        return params

    async def fetch_dataset(
        self,
        dataset: str,
        *,
        filter: Optional[dict] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        empty_on_missing: bool = False,
    ) -> dict[str, Any]:
        """
        Fetch one page of a dataset.

        Args:
            dataset: Dataset name, e.g. "DatahubPricelist"
            filter: Field filter, sent as compact JSON
            sort: Sort expression, e.g. "ValidFrom desc"
            limit: Maximum number of records
            start: Inclusive start (YYYY-MM-DD) for time series datasets
            end: Exclusive end (YYYY-MM-DD) for time series datasets
            empty_on_missing: Answer 400/404 with no records instead of an error

        Returns:
            The decoded payload; "records" is always a list

        Raises:
            TransientUpstreamError: 429, 5xx, timeouts, transport and payload errors
            UpstreamClientError: any other 4xx
        """
        if self.rate_limiter is not None:
            acquired = await self.rate_limiter.wait_for_token(
                self.api_name, timeout=self.rate_limit_wait
            )
            if not acquired:
                raise UpstreamRateLimitedError(api_name=self.api_name)

        url = f"{self.base_url}/{dataset}"
        params = self.build_params(filter=filter, sort=sort, limit=limit, start=start, end=end)
        client = await self._get_client()

        self.logger.debug("api_request_start", dataset=dataset, params=params)

        response = await fetch_with_timeout(
            client,
            url,
            params=params,
            timeout=self.timeout,
            api_name=self.api_name,
        )
        status_code = response.status_code

        if status_code in EMPTY_RESULT_STATUSES and empty_on_missing:
            self.logger.info("api_request_empty", dataset=dataset, status_code=status_code)
            return {"records": []}

        if status_code == 429 or status_code >= 500:
            raise TransientUpstreamError(
                f"{dataset} returned {status_code}",
                status_code=status_code,
                response_body=response.text,
                api_name=self.api_name,
            )

        if status_code >= 400:
            raise UpstreamClientError(
                f"{dataset} rejected the request",
                status_code=status_code,
                response_body=response.text,
                api_name=self.api_name,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamPayloadError(
                f"{dataset} returned invalid JSON",
                status_code=status_code,
                api_name=self.api_name,
            ) from e

        if not isinstance(payload, dict):
            raise UpstreamPayloadError(
                f"{dataset} returned {type(payload).__name__}, expected an object",
                status_code=status_code,
                api_name=self.api_name,
            )

        if not isinstance(payload.get("records"), list):
            payload["records"] = []

        self.logger.info(
            "api_request_success",
            dataset=dataset,
            status_code=status_code,
            record_count=len(payload["records"]),
        )
        return payload

    async def fetch_datahub_pricelist(
        self,
        filter: Optional[dict] = None,
        sort: str = "ValidFrom desc",
        limit: int = 10,
        empty_on_missing: bool = False,
    ) -> list[dict]:
        """Price list records (grid tariffs and provider charges)"""
        payload = await self.fetch_dataset(
            DATAHUB_PRICELIST,
            filter=filter,
            sort=sort,
            limit=limit,
            empty_on_missing=empty_on_missing,
        )
        return payload["records"]

    async def fetch_spot_prices(
        self,
        price_area: str,
        start: str,
        end: str,
    ) -> dict[str, Any]:
        """Hourly spot prices for one price area between start and end"""
        return await self.fetch_dataset(
            ELSPOT_PRICES,
            start=start,
            end=end,
            filter={"PriceArea": [price_area]},
            sort="HourUTC ASC",
            empty_on_missing=True,
        )
