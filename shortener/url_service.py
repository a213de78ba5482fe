"""URL Shortener Service Layer - Core Business Logic

This module provides the resolution engine: short code creation with
collision retry, cache-aside redirects with expiry enforcement, stats,
updates and deletion with cache invalidation, and hand-off of click
analytics to the background dispatcher.

Architecture Overview
==================
::
    ┌─────────────────────────────────────────────────────────────┐
    │                 URLShorteningService                        │
    │  ┌─────────────────┐  ┌─────────────────┐  ┌──────────────┐ │
    │  │  Create / Update│  │   Resolve       │  │ Stats/Delete │ │
    │  │                 │  │                 │  │              │ │
    │  │ • Validate URL  │  │ • Cache first   │  │ • Join stats │ │
    │  │ • Claim code    │  │ • Store fallback│  │ • Invalidate │ │
    │  │ • Warm cache    │  │ • Expiry check  │  │   cache      │ │
    │  └─────────────────┘  └─────────────────┘  └──────────────┘ │
    └─────────────────────────────────────────────────────────────┘
                │                    │                    │
                ▼                    ▼                    ▼
    ┌─────────────────┐  ┌─────────────────┐  ┌─────────────────┐
    │   URL store     │  │   Redis cache   │  │ ClickDispatcher │
    │  (PostgreSQL)   │  │  (not trusted   │  │ (queue+worker)  │
    │  authoritative  │  │   for absence)  │  │                 │
    └─────────────────┘  └─────────────────┘  └─────────────────┘

Flow Diagram — URL Creation
===========================
::
    ┌─────────────┐
    │ Validate URL│──── invalid ───▶ InvalidURLError
    └──────┬──────┘
           ▼
    ┌─────────────┐  custom code taken (expired or not)
    │ Custom code?│──────────────────▶ CodeAlreadyExistsError
    └──────┬──────┘
           ▼ (no custom code)
    ┌──────────────────────────┐
    │ generate → probe → insert│◀─┐ collision / duplicate key
    └──────┬───────────────────┘──┘ (at most N attempts, then
           ▼                         CodeGenerationExhaustedError)
    ┌─────────────┐
    │ Cache (best │
    │ effort)     │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Response    │
    └─────────────┘

Flow Diagram — Resolve
======================
::
    ┌─────────────┐
    │ Redis GET   │── error ──┐
    └──────┬──────┘           │
    HIT?  │                   │
    ┌─────┴─────┐             │
    │ YES        │ NO ◀───────┘
    ▼            ▼
┌─────────┐  ┌──────────┐
│ expired?│  │ Store GET│── missing ──▶ URLNotFoundError
│ → evict,│  └────┬─────┘
│ Expired │       ▼
└────┬────┘  ┌──────────┐
     │       │ expired? │── yes ──▶ ExpiredURLError (no cache, no click)
     │       └────┬─────┘
     │            ▼
     │       ┌──────────┐
     │       │ Re-cache │ (best effort)
     │       └────┬─────┘
     ▼            ▼
    ┌──────────────────┐
    │ dispatch click   │ (non-blocking)
    └──────┬───────────┘
           ▼
    ┌──────────────────┐
    │ return URL       │
    └──────────────────┘

Key Behaviours
===============
- Only InvalidURLError, CodeAlreadyExistsError, URLNotFoundError,
  ExpiredURLError and CodeGenerationExhaustedError reach callers as typed
  errors. Cache failures and click recording failures are logged and
  absorbed; store failures propagate unchanged.
- The cache payload carries the expiry, so a warm cache still refuses an
  expired code.
- Click analytics are dispatched only after the result is known.
"""

import datetime
import logging
import time
from typing import TYPE_CHECKING, Optional

from prometheus_client import Counter, Histogram

from shortener.analytics import ClickDispatcher
from shortener.cache import URLCache
from shortener.config import Settings, get_settings
from shortener.enums import CacheStatus, RequestStatus
from shortener.exceptions import (
    CodeAlreadyExistsError,
    CodeGenerationExhaustedError,
    DuplicateShortCodeError,
    ExpiredURLError,
    InvalidURLError,
    URLNotFoundError,
)
from shortener.models import URL
from shortener.repositories import AnalyticsRepository, URLRepository
from shortener.schemas import (
    CachedURLPayload,
    ClickContext,
    ClickEventPayload,
    URLCreate,
    URLCreateResponse,
    URLStats,
    URLUpdate,
)
from shortener.shortcode import generate_short_code, is_reserved_code
from shortener.validation import is_valid_url

if TYPE_CHECKING:
    from shortener.dependencies import RequestContext

__all__ = ["URLShorteningService"]


# ============================================================================
# PROMETHEUS METRICS
# ============================================================================

URL_CREATION_REQUESTS_TOTAL = Counter(
    "url_shortener_creation_requests_total",
    "Total URL creation requests",
    ["status"],
)
URL_LOOKUP_REQUESTS_TOTAL = Counter(
    "url_shortener_lookup_requests_total",
    "Total URL lookup requests",
    ["status", "cache_hit"],
)
URL_MANAGEMENT_REQUESTS_TOTAL = Counter(
    "url_shortener_management_requests_total",
    "Total URL update and delete requests",
    ["operation", "status"],
)
CODE_COLLISIONS_TOTAL = Counter(
    "url_shortener_code_collisions_total",
    "Generated short codes that were already taken",
)
CACHE_FAILURES_TOTAL = Counter(
    "url_shortener_cache_failures_total",
    "Redis cache operations that failed and were bypassed",
    ["operation"],
)
URL_CREATION_DURATION = Histogram(
    "url_shortener_creation_duration_seconds",
    "Time taken to create short URLs",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
URL_LOOKUP_DURATION = Histogram(
    "url_shortener_lookup_duration_seconds",
    "Time taken to resolve short codes",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# ============================================================================
# CORE SERVICE CLASS
# ============================================================================


class URLShorteningService:
    """Resolution engine for short URLs.

    The service holds no cross-request state of its own; the store, the
    cache and the dispatcher are shared collaborators.

    Example:
        >>> service = URLShorteningService(urls, cache, analytics, dispatcher)
        >>> created = await service.create_short_url(URLCreate(url="https://example.com/page"))
        >>> await service.resolve(created.short_code, ClickContext())
        'https://example.com/page'
    """

    def __init__(
        self,
        url_repository: URLRepository,
        cache: URLCache,
        analytics_repository: AnalyticsRepository,
        dispatcher: ClickDispatcher,
        settings: Optional[Settings] = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self._urls = url_repository
        self._cache = cache
        self._analytics = analytics_repository
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()
        self._logger = logger or logging.getLogger("urlshortener")

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "URLShorteningService":
        """Build a service bound to the request's logger and shared resources."""
        manager = ctx.service_manager
        return cls(
            url_repository=manager.url_repository,
            cache=manager.url_cache,
            analytics_repository=manager.analytics_repository,
            dispatcher=manager.dispatcher,
            settings=ctx.settings,
            logger=ctx.logger,
        )

    # ========================================================================
    # PUBLIC API METHODS
    # ========================================================================

    async def create_short_url(self, request: URLCreate) -> URLCreateResponse:
        """Create a new short URL.

        Args:
            request: Target URL plus optional custom code, lifetime and metadata

        Returns:
            URLCreateResponse: The stored record with its fully qualified short URL

        Raises:
            InvalidURLError: If the URL is not absolute with scheme and host
            CodeAlreadyExistsError: If the custom code is already taken
            CodeGenerationExhaustedError: If every generated code collided
        """
        start_time = time.perf_counter()
        try:
            if not is_valid_url(request.url):
                raise InvalidURLError(request.url)

            now = _utcnow()
            expires_at = None
            if request.expires_in is not None and request.expires_in > 0:
                expires_at = now + datetime.timedelta(seconds=request.expires_in)

            if request.custom_code:
                url = await self._create_with_custom_code(request, now, expires_at)
            else:
                url = await self._create_with_generated_code(request, now, expires_at)

            await self._cache_url(url)

            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
            self._logger.info(f"Created short URL: {url.short_code} -> {url.original_url}")
            return self._build_response(url)

        except InvalidURLError:
            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.VALIDATION_ERROR).inc()
            self._logger.warning(f"Rejected invalid URL: {request.url!r}")
            raise
        except CodeAlreadyExistsError as exc:
            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.CONFLICT).inc()
            self._logger.warning(f"URL creation failed: {exc}")
            raise
        except Exception as exc:
            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error(f"URL creation error: {exc}")
            raise
        finally:
            URL_CREATION_DURATION.observe(time.perf_counter() - start_time)

    async def resolve(self, short_code: str, context: ClickContext) -> str:
        """Resolve a short code to its original URL and queue a click.

        Raises:
            URLNotFoundError: If no record exists for the code
            ExpiredURLError: If the record's expiry has passed
        """
        start_time = time.perf_counter()
        cache_status = CacheStatus.MISS
        try:
            now = _utcnow()
            cached = await self._lookup_from_cache(short_code)
            if cached is not None:
                cache_status = CacheStatus.HIT
                if cached.is_expired(now):
                    await self._invalidate_cache(short_code)
                    raise ExpiredURLError(short_code)
                self._dispatch_click(short_code, context, now)
                self._logger.debug(f"Cache hit for {short_code}")
                original_url = cached.original_url
            else:
                url = await self._urls.get_by_code(short_code)
                if url is None:
                    raise URLNotFoundError(short_code)
                if url.is_expired(now):
                    raise ExpiredURLError(short_code)
                await self._cache_url(url)
                self._dispatch_click(short_code, context, now)
                self._logger.debug(f"Database hit and cached for {short_code}")
                original_url = url.original_url

            URL_LOOKUP_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS, cache_hit=cache_status).inc()
            return original_url

        except URLNotFoundError:
            URL_LOOKUP_REQUESTS_TOTAL.labels(status=RequestStatus.NOT_FOUND, cache_hit=cache_status).inc()
            self._logger.warning(f"Short code not found: {short_code}")
            raise
        except ExpiredURLError:
            URL_LOOKUP_REQUESTS_TOTAL.labels(status=RequestStatus.EXPIRED, cache_hit=cache_status).inc()
            self._logger.info(f"Short code expired: {short_code}")
            raise
        except Exception as exc:
            URL_LOOKUP_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR, cache_hit=cache_status).inc()
            self._logger.error(f"URL lookup error for {short_code}: {exc}")
            raise
        finally:
            URL_LOOKUP_DURATION.observe(time.perf_counter() - start_time)

    async def get_url_stats(self, short_code: str) -> URLStats:
        """Return click count, creation time and last click for a short code."""
        try:
            return await self._analytics.get_stats(short_code)
        except URLNotFoundError:
            self._logger.warning(f"Stats not found for code: {short_code}")
            raise
        except Exception as exc:
            self._logger.error(f"Failed to get stats for {short_code}: {exc}")
            raise

    async def update_url(self, short_code: str, request: URLUpdate) -> URLCreateResponse:
        """Change the target, expiry or metadata of an existing short URL.

        The click counter and the code itself are never touched here. An
        ``expires_in`` of 0 removes the expiry; the cached copy is dropped so
        the next resolve reads the new state from the store.

        Raises:
            InvalidURLError: If the new URL is not absolute with scheme and host
            URLNotFoundError: If no record exists for the code
        """
        try:
            if request.url is not None and not is_valid_url(request.url):
                raise InvalidURLError(request.url)

            url = await self._urls.get_by_code(short_code)
            if url is None:
                raise URLNotFoundError(short_code)

            now = _utcnow()
            if request.url is not None:
                url.original_url = request.url
            if request.expires_in is not None:
                url.expires_at = now + datetime.timedelta(seconds=request.expires_in) if request.expires_in > 0 else None
            if request.metadata is not None:
                url.metadata_ = request.metadata
            url.updated_at = now

            await self._urls.update(url)
        except InvalidURLError:
            URL_MANAGEMENT_REQUESTS_TOTAL.labels(operation="update", status=RequestStatus.VALIDATION_ERROR).inc()
            self._logger.warning(f"Rejected invalid URL for {short_code}: {request.url!r}")
            raise
        except URLNotFoundError:
            URL_MANAGEMENT_REQUESTS_TOTAL.labels(operation="update", status=RequestStatus.NOT_FOUND).inc()
            self._logger.warning(f"Update requested for unknown code: {short_code}")
            raise
        except Exception as exc:
            URL_MANAGEMENT_REQUESTS_TOTAL.labels(operation="update", status=RequestStatus.ERROR).inc()
            self._logger.error(f"Failed to update URL {short_code}: {exc}")
            raise

        await self._invalidate_cache(short_code)
        URL_MANAGEMENT_REQUESTS_TOTAL.labels(operation="update", status=RequestStatus.SUCCESS).inc()
        self._logger.info(f"Updated short URL: {short_code}")
        return self._build_response(url)

    async def delete_url(self, short_code: str) -> None:
        """Delete a short URL, then drop its cached copy."""
        try:
            await self._urls.delete(short_code)
        except URLNotFoundError:
            URL_MANAGEMENT_REQUESTS_TOTAL.labels(operation="delete", status=RequestStatus.NOT_FOUND).inc()
            self._logger.warning(f"Delete requested for unknown code: {short_code}")
            raise
        except Exception as exc:
            URL_MANAGEMENT_REQUESTS_TOTAL.labels(operation="delete", status=RequestStatus.ERROR).inc()
            self._logger.error(f"Failed to delete URL {short_code}: {exc}")
            raise

        # An entry that survives here expires on its own TTL.
        await self._invalidate_cache(short_code)
        URL_MANAGEMENT_REQUESTS_TOTAL.labels(operation="delete", status=RequestStatus.SUCCESS).inc()
        self._logger.info(f"Deleted short URL: {short_code}")

    # ========================================================================
    # PRIVATE HELPER METHODS
    # ========================================================================

    async def _create_with_custom_code(
        self,
        request: URLCreate,
        now: datetime.datetime,
        expires_at: datetime.datetime | None,
    ) -> URL:
        short_code = request.custom_code
        # Fast path only; the unique index decides when two creators race.
        if await self._urls.get_by_code(short_code) is not None:
            raise CodeAlreadyExistsError(short_code)

        try:
            return await self._urls.create(self._new_record(short_code, request, now, expires_at))
        except DuplicateShortCodeError as exc:
            raise CodeAlreadyExistsError(short_code) from exc

    async def _create_with_generated_code(
        self,
        request: URLCreate,
        now: datetime.datetime,
        expires_at: datetime.datetime | None,
    ) -> URL:
        max_attempts = self._settings.CODE_GENERATION_MAX_ATTEMPTS
        for attempt in range(max_attempts):
            # Later attempts mix in the attempt number on top of the clock.
            seed = request.url if attempt == 0 else f"{request.url}#{attempt}:{time.time_ns()}"
            short_code = generate_short_code(seed, self._settings.SHORT_CODE_LENGTH)

            if is_reserved_code(short_code) or await self._urls.get_by_code(short_code) is not None:
                CODE_COLLISIONS_TOTAL.inc()
                self._logger.warning(f"Generated code collision on attempt {attempt + 1}: {short_code}")
                continue

            try:
                return await self._urls.create(self._new_record(short_code, request, now, expires_at))
            except DuplicateShortCodeError:
                CODE_COLLISIONS_TOTAL.inc()
                self._logger.warning(f"Generated code taken concurrently on attempt {attempt + 1}: {short_code}")

        raise CodeGenerationExhaustedError(max_attempts)

    @staticmethod
    def _new_record(
        short_code: str,
        request: URLCreate,
        now: datetime.datetime,
        expires_at: datetime.datetime | None,
    ) -> URL:
        return URL(
            short_code=short_code,
            original_url=request.url,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            click_count=0,
            metadata_=request.metadata,
        )

    def _build_response(self, url: URL) -> URLCreateResponse:
        return URLCreateResponse(
            short_code=url.short_code,
            short_url=f"{self._settings.BASE_URL}/{url.short_code}",
            original_url=url.original_url,
            created_at=url.created_at,
            expires_at=url.expires_at,
            metadata=url.metadata_,
        )

    async def _lookup_from_cache(self, short_code: str) -> CachedURLPayload | None:
        try:
            return await self._cache.get(short_code)
        except Exception as exc:
            CACHE_FAILURES_TOTAL.labels(operation="get").inc()
            self._logger.warning(f"Cache lookup failed for {short_code}, falling back to store: {exc}")
            return None

    async def _cache_url(self, url: URL) -> None:
        try:
            await self._cache.set(url.short_code, CachedURLPayload.model_validate(url))
        except Exception as exc:
            CACHE_FAILURES_TOTAL.labels(operation="set").inc()
            self._logger.warning(f"Failed to cache URL {url.short_code}: {exc}")

    async def _invalidate_cache(self, short_code: str) -> None:
        try:
            await self._cache.delete(short_code)
        except Exception as exc:
            CACHE_FAILURES_TOTAL.labels(operation="delete").inc()
            self._logger.warning(f"Failed to delete {short_code} from cache: {exc}")

    def _dispatch_click(self, short_code: str, context: ClickContext, clicked_at: datetime.datetime) -> None:
        self._dispatcher.dispatch(ClickEventPayload.from_context(short_code, context, clicked_at))
