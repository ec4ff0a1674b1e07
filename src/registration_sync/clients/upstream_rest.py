"""REST client for the upstream registration platform."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from ..config.settings import RetryConfig, UpstreamConfig
from ..exceptions import ListingTruncatedError, RateLimitedError, UpstreamError, UpstreamValidationError
from ..utils.retry import retry_with_config

logger = logging.getLogger(__name__)

CURSOR_HEADER = "record_cursor"

TokenProvider = Callable[[], Awaitable[str]]


class RateLimiter:
    """Token bucket rate limiter for API requests."""

    def __init__(self, requests_per_minute: int):
        self.requests_per_minute = requests_per_minute
        self.tokens = float(requests_per_minute)
        self.last_update = time.monotonic()
        self.lock = asyncio.Lock()

    async def acquire(self):
        """Acquire a token for making a request."""
        async with self.lock:
            now = time.monotonic()
            elapsed = now - self.last_update

            self.tokens = min(
                self.requests_per_minute,
                self.tokens + elapsed * (self.requests_per_minute / 60.0)
            )
            self.last_update = now

            if self.tokens >= 1:
                self.tokens -= 1
            else:
                wait_time = (1 - self.tokens) / (self.requests_per_minute / 60.0)
                await asyncio.sleep(wait_time)
                self.tokens = 0
                self.last_update = time.monotonic()


class UpstreamClient:
    """
    Client for the upstream data platform.

    Listing endpoints are paginated through a continuation cursor returned in
    the ``record_cursor`` response header; a response without the header ends
    the listing.
    """

    def __init__(
        self,
        config: UpstreamConfig,
        retry_config: RetryConfig,
        token_provider: Optional[TokenProvider] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.config = config
        self.retry_config = retry_config
        self.token_provider = token_provider
        self.session = session
        self._owns_session = session is None
        self.rate_limiter = RateLimiter(config.rate_limit_requests_per_minute)

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
                connector=aiohttp.TCPConnector(limit=100, limit_per_host=30)
            )
            self._owns_session = True

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json"
        }
        token = await self.token_provider() if self.token_provider else self.config.access_token
        if token:
            headers["Authorization"] = f"Zoho-oauthtoken {token}"
        return headers

    async def _fetch_page(
        self,
        report: str,
        criteria: Optional[str],
        cursor: Optional[str]
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Fetch one page of a report; returns (records, next_cursor)."""
        if not self.session:
            raise RuntimeError("Client not initialized. Use async context manager.")

        url = f"{self.config.base_url}/report/{report}"
        params: Dict[str, Any] = {"max_records": self.config.max_records_per_page}
        if criteria:
            params["criteria"] = criteria

        async def _request():
            await self.rate_limiter.acquire()
            headers = await self._headers()
            if cursor:
                headers[CURSOR_HEADER] = cursor

            async with self.session.get(url, params=params, headers=headers) as response:
                if response.status == 429:
                    retry_after = int(response.headers.get("Retry-After", 60))
                    logger.warning(f"Rate limit exceeded listing {report}, retry after {retry_after}s")
                    # The backoff helper waits at least retry_after before the next attempt
                    raise RateLimitedError(retry_after=retry_after)

                # Upstream answers "no records" with a 404-style body
                if response.status == 404:
                    return [], None

                if response.status >= 400:
                    body = await response.text()
                    raise UpstreamError(
                        f"Listing {report} failed with {response.status}: {body[:200]}",
                        status=response.status
                    )

                payload = await response.json()
                data = payload.get("data") or []
                if isinstance(data, dict):
                    data = [data]
                return data, response.headers.get(CURSOR_HEADER)

        try:
            return await retry_with_config(
                _request,
                self.retry_config,
                exceptions=(aiohttp.ClientError, asyncio.TimeoutError, RateLimitedError)
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Listing {report} failed: {e}") from e

    async def list_records(
        self,
        report: str,
        criteria: Optional[str] = None,
        allow_partial: bool = True
    ) -> List[Dict[str, Any]]:
        """
        Fetch every record of a report, following cursors up to the per-run ceiling.

        With allow_partial=False, reaching the ceiling raises ListingTruncatedError
        instead of returning the cut-off list.
        """
        records: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        ceiling = self.config.max_records_per_run

        logger.debug(f"Listing {report} with criteria: {criteria}")

        while True:
            page, cursor = await self._fetch_page(report, criteria, cursor)
            if not page:
                break

            records.extend(page)
            logger.debug(f"Fetched batch of {len(page)} from {report} (total: {len(records)})")

            if len(records) >= ceiling:
                logger.warning(f"Stopping {report} pagination at safety ceiling of {ceiling} records")
                records = records[:ceiling]
                if not allow_partial:
                    raise ListingTruncatedError(report, ceiling, records)
                break

            if not cursor:
                break

        logger.info(f"Retrieved {len(records)} records from {report}")
        return records

    def _event_criteria(self, event_id: str) -> str:
        return f"{self.config.event_field} = {event_id}"

    async def get_events(self) -> List[Dict[str, Any]]:
        return await self.list_records(self.config.events_report)

    async def get_event_records(self, event_id: str) -> List[Dict[str, Any]]:
        """Every record of an event; raises ListingTruncatedError rather than return an incomplete set."""
        return await self.list_records(
            self.config.registrations_report,
            self._event_criteria(event_id),
            allow_partial=False
        )

    async def get_records_modified_since(self, event_id: str, since: datetime) -> List[Dict[str, Any]]:
        """Records of an event created or modified after since."""
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        stamp = since.astimezone(timezone.utc).isoformat()
        criteria = (
            f'{self._event_criteria(event_id)} AND '
            f'(Created_Time > "{stamp}" OR Modified_Time > "{stamp}")'
        )
        return await self.list_records(self.config.registrations_report, criteria)

    async def count_event_records(self, event_id: str) -> int:
        return len(await self.get_event_records(event_id))

    async def create_record(self, data: Dict[str, Any], form: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a record in a form.

        Not retried here: rate-limit rejections raise RateLimitedError so the
        write path can buffer the payload.

        Raises:
            RateLimitedError: upstream refused because of rate limiting
            UpstreamValidationError: upstream rejected the payload
            UpstreamError: any other failure
        """
        if not self.session:
            raise RuntimeError("Client not initialized. Use async context manager.")

        form = form or self.config.registration_form
        url = f"{self.config.base_url}/form/{form}"

        await self.rate_limiter.acquire()
        headers = await self._headers()

        try:
            async with self.session.post(url, json={"data": data}, headers=headers) as response:
                if response.status == 429:
                    retry_after = response.headers.get('Retry-After')
                    raise RateLimitedError(retry_after=int(retry_after) if retry_after else None)

                body = await response.json(content_type=None)

                if 400 <= response.status < 500:
                    raise UpstreamValidationError(
                        f"Upstream rejected record for {form}: {body}",
                        status=response.status
                    )
                if response.status >= 500:
                    raise UpstreamError(f"Upstream error creating record: {response.status}", status=response.status)

                created = (body or {}).get("data") or {}
                logger.info(f"Created record {created.get('ID')} in {form}")
                return created
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Creating record in {form} failed: {e}") from e
