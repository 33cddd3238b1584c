"""
Bsale API Client

Handles API calls to Bsale for inventory sync and sales consumption.
One client is built per tenant from that tenant's (decrypted) access token.

Retry policy per request:
  - 401  -> BsaleAuthError, raised immediately
  - 429  -> BsaleRateLimitError, raised immediately (caller defers the tenant)
  - 5xx / transport failure -> retried with linear backoff (attempt x base delay)
  - other non-2xx -> BsaleRequestError, raised immediately
"""

import asyncio
import re
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any, TypeVar

import httpx
import structlog
from prometheus_client import Counter, Histogram
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from core.config import Settings, get_settings
from core.errors import (
    BsaleAuthError,
    BsaleError,
    BsaleNetworkError,
    BsaleRateLimitError,
    BsaleRequestError,
    BsaleServerError,
    BsaleValidationError,
)
from integrations.schemas import Document, Page, PriceList, PriceListDetail, StockItem, Variant

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)

# ── Metrics ────────────────────────────────────────────────────────────────

BSALE_REQUESTS = Counter(
    "bsale_requests_total",
    "Bsale API requests by endpoint and HTTP status",
    ["endpoint", "status"],
)
BSALE_REQUEST_ERRORS = Counter(
    "bsale_request_errors_total",
    "Bsale API request failures by endpoint and error kind",
    ["endpoint", "kind"],
)
BSALE_REQUEST_DURATION = Histogram(
    "bsale_request_duration_seconds",
    "Bsale API request latency",
    ["endpoint"],
)

_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|\.json|$)")


def normalize_endpoint(path: str) -> str:
    """``/v1/variants/123.json`` -> ``/v1/variants/:id.json``"""
    return _NUMERIC_SEGMENT.sub("/:id", path.split("?", 1)[0])


def _bracket_list(values: Iterable[Any]) -> str:
    return "[" + ",".join(str(v) for v in values) + "]"


class BsaleClient:
    """Client for Bsale API interactions."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = "https://api.bsale.cl",
        page_size: int = 50,
        request_delay: float = 0.1,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        variant_batch_size: int = 10,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._sleep = sleep or asyncio.sleep
        self.page_size = page_size
        self.request_delay = request_delay
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.variant_batch_size = variant_batch_size
        self.headers = {
            "access_token": access_token,
            "Accept": "application/json",
        }
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(
        cls,
        access_token: str,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "BsaleClient":
        settings = settings or get_settings()
        return cls(
            access_token,
            base_url=settings.resolved_bsale_base_url,
            page_size=settings.bsale_page_size,
            request_delay=settings.bsale_request_delay_ms / 1000,
            retry_attempts=settings.bsale_retry_attempts,
            retry_base_delay=settings.bsale_retry_base_delay_ms / 1000,
            variant_batch_size=settings.bsale_variant_batch_size,
            timeout=settings.bsale_timeout_seconds,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "BsaleClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ── Transport ────────────────────────────────────────────────────────

    async def _request(self, path: str, params: dict[str, Any] | None) -> Any:
        endpoint = normalize_endpoint(path)
        started = time.perf_counter()
        try:
            response = await self._http.get(f"{self.base_url}{path}", headers=self.headers, params=params)
        except httpx.TransportError as exc:
            BSALE_REQUEST_ERRORS.labels(endpoint=endpoint, kind=BsaleNetworkError.kind.value).inc()
            raise BsaleNetworkError(f"Network error calling {endpoint}: {exc}") from exc
        finally:
            BSALE_REQUEST_DURATION.labels(endpoint=endpoint).observe(time.perf_counter() - started)

        status = response.status_code
        BSALE_REQUESTS.labels(endpoint=endpoint, status=str(status)).inc()

        error: BsaleError | None = None
        if status == 401:
            error = BsaleAuthError("Token expired or invalid", status)
        elif status == 429:
            error = BsaleRateLimitError("Rate limit exceeded", status)
        elif status >= 500:
            error = BsaleServerError(f"Server error: HTTP {status}", status)
        elif status >= 400:
            error = BsaleRequestError(f"HTTP {status}: {response.reason_phrase}", status)
        if error is not None:
            BSALE_REQUEST_ERRORS.labels(endpoint=endpoint, kind=error.kind.value).inc()
            raise error

        try:
            return response.json()
        except ValueError as exc:
            BSALE_REQUEST_ERRORS.labels(endpoint=endpoint, kind=BsaleValidationError.kind.value).inc()
            raise BsaleValidationError(f"Invalid JSON from {endpoint}") from exc

    async def fetch_page(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET one resource, retrying server and network failures."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_incrementing(start=self.retry_base_delay, increment=self.retry_base_delay),
            retry=retry_if_exception_type((BsaleServerError, BsaleNetworkError)),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                payload = await self._request(path, params)
        return payload

    @staticmethod
    def _log_retry(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "bsale.request.retry",
            attempt=retry_state.attempt_number,
            error=str(exc),
        )

    @staticmethod
    def _parse(model: type[ModelT], raw: Any, path: str) -> ModelT:
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            raise BsaleValidationError(
                f"Unexpected {model.__name__} payload from {normalize_endpoint(path)}: {exc.error_count()} errors"
            ) from exc

    async def stream_all(
        self,
        path: str,
        model: type[ModelT],
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[ModelT]:
        """
        Yield every item of a paginated list endpoint.

        Advances ``offset`` by the page size until a short page comes back,
        sleeping ``request_delay`` between pages.
        """
        offset = 0
        while True:
            query = dict(params or {})
            query.update(limit=self.page_size, offset=offset)
            page = self._parse(Page, await self.fetch_page(path, query), path)

            for raw in page.items:
                yield self._parse(model, raw, path)

            if len(page.items) < self.page_size:
                return
            offset += self.page_size
            await self._sleep(self.request_delay)

    # ── Resources ────────────────────────────────────────────────────────

    def get_all_stocks(self) -> AsyncIterator[StockItem]:
        return self.stream_all("/v1/stocks.json", StockItem)

    async def get_variant(self, variant_id: int) -> Variant:
        path = f"/v1/variants/{variant_id}.json"
        return self._parse(Variant, await self.fetch_page(path, {"expand": "[product]"}), path)

    async def _get_variant_or_none(self, variant_id: int) -> Variant | None:
        try:
            return await self.get_variant(variant_id)
        except BsaleError as exc:
            logger.warning(
                "bsale.variant.fetch_failed",
                variant_id=variant_id,
                kind=exc.kind.value,
                error=str(exc),
            )
            return None

    async def get_variants_batch(self, variant_ids: Iterable[int]) -> dict[int, Variant]:
        """
        Fetch many variants, ``variant_batch_size`` concurrently per chunk.

        A variant that fails to load is logged and left out of the result;
        one bad id never aborts the batch.
        """
        unique_ids = list(dict.fromkeys(variant_ids))
        variants: dict[int, Variant] = {}

        for start in range(0, len(unique_ids), self.variant_batch_size):
            chunk = unique_ids[start : start + self.variant_batch_size]
            results = await asyncio.gather(*(self._get_variant_or_none(vid) for vid in chunk))
            for vid, variant in zip(chunk, results):
                if variant is not None:
                    variants[vid] = variant

            if start + self.variant_batch_size < len(unique_ids):
                await self._sleep(self.request_delay)

        return variants

    async def get_price_lists(self) -> list[PriceList]:
        return [item async for item in self.stream_all("/v1/price_lists.json", PriceList)]

    def get_price_list_details(self, price_list_id: int) -> AsyncIterator[PriceListDetail]:
        return self.stream_all(f"/v1/price_lists/{price_list_id}/details.json", PriceListDetail)

    async def get_price_map(self, price_list_id: int) -> dict[int, float]:
        """variant id -> price with taxes for one price list."""
        return {
            detail.variant.id: detail.variant_value_with_taxes
            async for detail in self.get_price_list_details(price_list_id)
        }

    @staticmethod
    def _document_params(
        start: datetime,
        end: datetime,
        expand: list[str] | None,
        state: int | None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "emissiondaterange": _bracket_list([int(start.timestamp()), int(end.timestamp())]),
        }
        if expand:
            params["expand"] = _bracket_list(expand)
        if state is not None:
            params["state"] = state
        return params

    async def get_documents(
        self,
        start: datetime,
        end: datetime,
        expand: list[str] | None = None,
        state: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> Page:
        """Fetch a single page of sales documents."""
        params = self._document_params(start, end, expand, state)
        params.update(limit=limit or self.page_size, offset=offset)
        return self._parse(Page, await self.fetch_page("/v1/documents.json", params), "/v1/documents.json")

    async def get_all_documents(
        self,
        start: datetime,
        end: datetime,
        expand: list[str] | None = None,
        state: int | None = None,
    ) -> list[Document]:
        params = self._document_params(start, end, expand, state)
        return [doc async for doc in self.stream_all("/v1/documents.json", Document, params)]


def build_client_factory(settings: Settings | None = None, http_client: httpx.AsyncClient | None = None):
    """Return ``access_token -> BsaleClient`` bound to the given settings."""
    settings = settings or get_settings()

    def factory(access_token: str) -> BsaleClient:
        return BsaleClient.from_settings(access_token, settings=settings, http_client=http_client)

    return factory
