"""
Ledger API Client Module
Cursor-driven paginated fetching from the upstream ledger API, with rate
limiting, per-operation circuit breaking, retry, and tolerant parsing.

Each page request runs as:
    retry_policy( circuit_breaker( rate_limiter.acquire -> transport.get ) )
and every record on a successful page goes through the response parser.
"""

import aiohttp
import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from cancellation import CancellationToken, run_with_token
from circuit_breaker import CircuitBreakerRegistry
from config import LedgerAPIConfig
from constants import HEADER_RETRY_AFTER, MAX_RESPONSE_BODY_KEEP_LENGTH, MAX_RESPONSE_BODY_LOG_LENGTH
from exceptions import (
    APIConnectionError,
    APIRateLimitError,
    APIResponseError,
    APITimeoutError,
    CircuitOpenError,
    FetchFailedError,
    LedgerAPIError,
    OperationCancelledError,
    PaginationError,
)
from metrics_sink import (
    FETCH_ATTEMPT,
    FETCH_FAILURE,
    FETCH_PAGES,
    FETCH_SUCCESS,
    PARSER_DROPPED,
    MetricsSink,
    NullMetricsSink,
)
from models import Payment, Trade
from rate_limiter import TokenBucketRateLimiter
from response_parser import ParsedPage, ResponseParser, extract_records
from retry_policy import RetryPolicy

logger = logging.getLogger("CorridorScope.client")

ORDER_ASC = "asc"
ORDER_DESC = "desc"


# =============================================================================
# REQUEST / RESPONSE TYPES
# =============================================================================

@dataclass(frozen=True)
class FetchFilter:
    """What to fetch and where to resume from"""
    account: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    order: str = ORDER_DESC
    cursor: Optional[str] = None
    include_failed: Optional[bool] = None

    def __post_init__(self):
        if self.order not in (ORDER_ASC, ORDER_DESC):
            raise ValueError(f"order must be 'asc' or 'desc', got {self.order!r}")
        if self.start_time and self.end_time and self.start_time > self.end_time:
            raise ValueError("start_time is after end_time")

    def resource_path(self, resource: str) -> str:
        if self.account:
            return f"accounts/{self.account}/{resource}"
        return resource

    def with_cursor(self, cursor: Optional[str]) -> "FetchFilter":
        return replace(self, cursor=cursor)

    def fingerprint(self) -> str:
        """Stable identity of the query, independent of the resume cursor"""
        parts = {
            "account": self.account,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "order": self.order,
            "include_failed": self.include_failed,
        }
        encoded = json.dumps(parts, sort_keys=True)
        return hashlib.sha256(encoded.encode()).hexdigest()[:16]

    def before_range(self, moment: datetime) -> bool:
        return self.start_time is not None and moment < self.start_time

    def after_range(self, moment: datetime) -> bool:
        return self.end_time is not None and moment > self.end_time


@dataclass
class RawResponse:
    """What a transport hands back for one HTTP request"""
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None


class PageTransport(Protocol):
    """Performs one GET against the ledger API"""

    async def get(self, url: str, params: Dict[str, str]) -> RawResponse:
        ...

    async def close(self) -> None:
        ...


class AiohttpTransport:
    """aiohttp-backed transport with proper timeout configuration"""

    def __init__(self, timeout_seconds: float, connect_timeout_seconds: float):
        self._timeout = aiohttp.ClientTimeout(
            total=timeout_seconds,
            connect=connect_timeout_seconds
        )
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"Accept": "application/hal+json, application/json"}
            )
        return self.session

    async def get(self, url: str, params: Dict[str, str]) -> RawResponse:
        session = await self._get_session()
        try:
            async with session.get(url, params=params) as resp:
                headers = dict(resp.headers)
                if resp.status == 200:
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError as e:
                        raise APIResponseError(
                            f"Ledger API returned invalid JSON: {e}",
                            status_code=resp.status
                        )
                else:
                    body = await resp.text()
                return RawResponse(status=resp.status, headers=headers, body=body)
        except asyncio.TimeoutError:
            raise APITimeoutError(f"Ledger API request timed out: {url}")
        except aiohttp.ClientError as e:
            raise APIConnectionError(f"Ledger API connection error: {e}")

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None


@dataclass
class FetchPage:
    """One parsed page"""
    resource: str
    cursor: Optional[str]
    next_cursor: Optional[str]
    records: List[Any]
    raw_count: int
    dropped: int


@dataclass
class FetchResult:
    """Everything collected for one resource + filter"""
    resource: str
    records: List[Any] = field(default_factory=list)
    pages: int = 0
    dropped: int = 0
    next_cursor: Optional[str] = None
    exhausted: bool = False  # upstream returned an empty page
    truncated: bool = False  # max_records reached
    error: Optional[LedgerAPIError] = None


def _retry_after(headers: Mapping[str, str]) -> Optional[float]:
    for key, value in headers.items():
        if str(key).lower() == HEADER_RETRY_AFTER.lower():
            try:
                return max(0.0, float(value))
            except (TypeError, ValueError):
                return None
    return None


def _truncate(body: Any, limit: int) -> str:
    text = body if isinstance(body, str) else repr(body)
    return text[:limit]


# =============================================================================
# CLIENT
# =============================================================================

class LedgerAPIClient:
    """Ledger API wrapper with pagination, retry, circuit breaking and rate limiting"""

    def __init__(
        self,
        config: LedgerAPIConfig,
        rate_limiter: TokenBucketRateLimiter,
        breakers: CircuitBreakerRegistry,
        retry_policy: RetryPolicy,
        parser: Optional[ResponseParser] = None,
        transport: Optional[PageTransport] = None,
        metrics: Optional[MetricsSink] = None
    ):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self.breakers = breakers
        self.retry_policy = retry_policy
        self.parser = parser or ResponseParser()
        self.transport = transport
        self.metrics = metrics or NullMetricsSink()
        self._connected = transport is not None

    @property
    def is_connected(self) -> bool:
        return self._connected and self.transport is not None

    async def connect(self):
        """Create the default aiohttp transport unless one was injected"""
        if self.transport is None:
            self.transport = AiohttpTransport(
                self.config.timeout_seconds,
                self.config.connect_timeout_seconds
            )
        self._connected = True
        logger.info(f"Ledger API client connected to {self.base_url}")

    async def disconnect(self):
        """Close the transport gracefully"""
        if self.transport is not None:
            await self.transport.close()
        self._connected = False
        logger.info("Ledger API client disconnected")

    async def __aenter__(self) -> "LedgerAPIClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # -------------------------------------------------------------------------
    # Single page
    # -------------------------------------------------------------------------

    def _build_params(self, fetch_filter: FetchFilter) -> Dict[str, str]:
        include_failed = fetch_filter.include_failed
        if include_failed is None:
            include_failed = self.config.include_failed
        params = {
            "limit": str(self.config.page_size),
            "order": fetch_filter.order,
            "include_failed": "true" if include_failed else "false",
        }
        if fetch_filter.cursor:
            params["cursor"] = fetch_filter.cursor
        return params

    async def _request_once(
        self,
        url: str,
        params: Dict[str, str],
        operation: str,
        cancel_token: Optional[CancellationToken]
    ) -> Any:
        """One rate-limited, time-bounded HTTP attempt"""
        if not self.is_connected:
            raise APIConnectionError("Ledger API client not connected")

        await self.rate_limiter.acquire(cancel_token)
        self.metrics.increment(FETCH_ATTEMPT, tags={"operation": operation})

        try:
            response = await run_with_token(
                asyncio.wait_for(
                    self.transport.get(url, params),
                    timeout=self.config.timeout_seconds
                ),
                cancel_token
            )
        except asyncio.TimeoutError:
            raise APITimeoutError(
                f"Ledger API {operation} request exceeded {self.config.timeout_seconds}s"
            )

        self.rate_limiter.update_from_headers(response.headers)

        if response.status == 200:
            return response.body
        if response.status == 429:
            raise APIRateLimitError(
                "Ledger API rate limit exceeded",
                retry_after_seconds=_retry_after(response.headers)
            )

        logger.warning(
            f"Ledger API {operation} error {response.status}: "
            f"{_truncate(response.body, MAX_RESPONSE_BODY_LOG_LENGTH)}"
        )
        raise APIResponseError(
            "Ledger API error",
            status_code=response.status,
            response_body=_truncate(response.body, MAX_RESPONSE_BODY_KEEP_LENGTH)
        )

    async def fetch_page(
        self,
        resource: str,
        fetch_filter: FetchFilter,
        cancel_token: Optional[CancellationToken] = None
    ) -> ParsedPage:
        """
        Fetch and parse one page starting after fetch_filter.cursor.

        Raises:
            CircuitOpenError: breaker for the resource is open (not retried)
            OperationCancelledError: cancel_token fired
            FetchFailedError: permanent failure or retries exhausted
        """
        operation = resource
        breaker = self.breakers.get(operation)
        url = f"{self.base_url}/{fetch_filter.resource_path(resource)}"
        params = self._build_params(fetch_filter)

        async def attempt():
            return await breaker.call(self._request_once, url, params, operation, cancel_token)

        try:
            body = await self.retry_policy.execute(
                attempt,
                operation=operation,
                cancel_token=cancel_token
            )
            raw_records = extract_records(body)
        except (CircuitOpenError, OperationCancelledError):
            self.metrics.increment(FETCH_FAILURE, tags={"operation": operation})
            raise
        except Exception as e:
            self.metrics.increment(FETCH_FAILURE, tags={"operation": operation})
            raise FetchFailedError(resource, fetch_filter.cursor, e) from e

        self.metrics.increment(FETCH_SUCCESS, tags={"operation": operation})
        page = self.parser.parse_page(resource, raw_records)
        if page.dropped:
            self.metrics.increment(PARSER_DROPPED, page.dropped, tags={"resource": resource})
        return page

    # -------------------------------------------------------------------------
    # Pagination
    # -------------------------------------------------------------------------

    async def iter_pages(
        self,
        resource: str,
        fetch_filter: Optional[FetchFilter] = None,
        max_records: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> AsyncIterator[FetchPage]:
        """
        Yield pages sequentially, each one resuming from the previous page's
        last paging token.

        Stops on an empty page, once max_records is reached (truncating the
        final page), or once records fall outside the filter's time range in
        the direction of travel.
        """
        fetch_filter = fetch_filter or FetchFilter()
        limit = self.config.max_records if max_records is None else max_records
        cursor = fetch_filter.cursor
        collected = 0

        while collected < limit:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            page = await self.fetch_page(resource, fetch_filter.with_cursor(cursor), cancel_token)
            self.metrics.increment(FETCH_PAGES, tags={"resource": resource})

            if page.raw_count == 0:
                logger.debug(f"{resource}: empty page after cursor {cursor!r}, done")
                return

            next_cursor = page.last_paging_token
            if next_cursor is None or next_cursor == cursor:
                raise PaginationError(
                    f"{resource} page after cursor {cursor!r} did not advance the cursor",
                    resource=resource,
                    cursor=cursor
                )

            records, range_passed = self._apply_time_range(page.records, fetch_filter)
            remaining = limit - collected
            truncated = len(records) > remaining
            if truncated:
                records = records[:remaining]
                next_cursor = records[-1].paging_token if records else cursor
            collected += len(records)

            yield FetchPage(
                resource=resource,
                cursor=cursor,
                next_cursor=next_cursor,
                records=records,
                raw_count=page.raw_count,
                dropped=page.dropped,
            )

            if range_passed or truncated:
                return
            cursor = next_cursor

    @staticmethod
    def _apply_time_range(records: Sequence[Any], fetch_filter: FetchFilter) -> Tuple[List[Any], bool]:
        """Keep records inside the range; report whether the range has been passed"""
        if fetch_filter.start_time is None and fetch_filter.end_time is None:
            return list(records), False

        kept = []
        for record in records:
            moment = record.created_at
            if fetch_filter.order == ORDER_DESC:
                if fetch_filter.before_range(moment):
                    return kept, True
                if fetch_filter.after_range(moment):
                    continue
            else:
                if fetch_filter.after_range(moment):
                    return kept, True
                if fetch_filter.before_range(moment):
                    continue
            kept.append(record)
        return kept, False

    async def fetch_all(
        self,
        resource: str,
        fetch_filter: Optional[FetchFilter] = None,
        max_records: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> AsyncIterator[Any]:
        """Lazily yield normalized records; resume later via FetchFilter.with_cursor"""
        async for page in self.iter_pages(resource, fetch_filter, max_records, cancel_token):
            for record in page.records:
                yield record

    async def collect(
        self,
        resource: str,
        fetch_filter: Optional[FetchFilter] = None,
        max_records: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        allow_partial: bool = False
    ) -> FetchResult:
        """
        Gather all records into a FetchResult.

        With allow_partial, an upstream failure is recorded on the result
        (with the cursor to resume from) instead of raised. Cancellation always
        propagates.
        """
        fetch_filter = fetch_filter or FetchFilter()
        limit = self.config.max_records if max_records is None else max_records
        result = FetchResult(resource=resource, next_cursor=fetch_filter.cursor)

        try:
            async for page in self.iter_pages(resource, fetch_filter, max_records, cancel_token):
                result.records.extend(page.records)
                result.pages += 1
                result.dropped += page.dropped
                result.next_cursor = page.next_cursor
        except OperationCancelledError:
            raise
        except LedgerAPIError as e:
            if not allow_partial:
                raise
            logger.error(f"{resource}: fetch stopped after {result.pages} page(s): {e}")
            result.error = e
            return result

        result.truncated = len(result.records) >= limit
        result.exhausted = not result.truncated
        logger.info(
            f"{resource}: collected {len(result.records)} record(s) from {result.pages} page(s), "
            f"{result.dropped} dropped"
        )
        return result

    async def fetch_payments(
        self,
        fetch_filter: Optional[FetchFilter] = None,
        max_records: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> List[Payment]:
        result = await self.collect("payments", fetch_filter, max_records, cancel_token)
        return result.records

    async def fetch_trades(
        self,
        fetch_filter: Optional[FetchFilter] = None,
        max_records: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> List[Trade]:
        result = await self.collect("trades", fetch_filter, max_records, cancel_token)
        return result.records

    async def fetch_many(
        self,
        requests: Sequence[Tuple[str, FetchFilter]],
        max_records: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> List[FetchResult]:
        """
        Fetch independent resource/filter pairs IN PARALLEL.

        Pagination within each pair stays sequential; all pairs draw from the
        shared rate limiter. Failures are reported per result.
        """
        return list(await asyncio.gather(*[
            self.collect(resource, fetch_filter, max_records, cancel_token, allow_partial=True)
            for resource, fetch_filter in requests
        ]))

    def get_stats(self) -> Dict:
        return {
            "connected": self.is_connected,
            "base_url": self.base_url,
            "rate_limiter": self.rate_limiter.get_stats(),
            "circuit_breakers": self.breakers.snapshot(),
        }
