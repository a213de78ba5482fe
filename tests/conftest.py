"""Shared pytest fixtures: in-memory store, cache and sink plus an API client."""

import logging
from dataclasses import dataclass
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from shortener.analytics import ClickDispatcher
from shortener.config import Settings, get_settings
from shortener.dependencies import get_service_manager
from shortener.exceptions import DuplicateShortCodeError, URLNotFoundError
from shortener.main import app
from shortener.models import URL
from shortener.schemas import CachedURLPayload, ClickEventPayload, URLStats
from shortener.url_service import URLShorteningService


class InMemoryURLRepository:
    def __init__(self) -> None:
        self.records: dict[str, URL] = {}
        self.get_calls: list[str] = []
        self.fail_increments = False

    async def create(self, url: URL) -> URL:
        if url.short_code in self.records:
            raise DuplicateShortCodeError(url.short_code)
        url.id = len(self.records) + 1
        self.records[url.short_code] = url
        return url

    async def get_by_code(self, short_code: str) -> URL | None:
        self.get_calls.append(short_code)
        return self.records.get(short_code)

    async def update(self, url: URL) -> URL:
        if url.short_code not in self.records:
            raise URLNotFoundError(url.short_code)
        self.records[url.short_code] = url
        return url

    async def delete(self, short_code: str) -> None:
        if self.records.pop(short_code, None) is None:
            raise URLNotFoundError(short_code)

    async def increment_clicks(self, short_code: str) -> None:
        if self.fail_increments:
            raise RuntimeError("database unavailable")
        if short_code in self.records:
            self.records[short_code].click_count += 1

    async def ping(self) -> None:
        return None


class InMemoryAnalyticsRepository:
    def __init__(self, urls: InMemoryURLRepository) -> None:
        self.urls = urls
        self.events: list[ClickEventPayload] = []
        self.fail_records = False

    async def record_click(self, event: ClickEventPayload) -> None:
        if self.fail_records:
            raise RuntimeError("analytics table unavailable")
        self.events.append(event)

    async def get_stats(self, short_code: str) -> URLStats:
        url = self.urls.records.get(short_code)
        if url is None:
            raise URLNotFoundError(short_code)
        clicks = [event.clicked_at for event in self.events if event.short_code == short_code]
        return URLStats(
            short_code=url.short_code,
            original_url=url.original_url,
            click_count=url.click_count,
            created_at=url.created_at,
            last_clicked=max(clicks) if clicks else None,
        )


class InMemoryURLCache:
    def __init__(self) -> None:
        self.entries: dict[str, CachedURLPayload] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise RedisConnectionError("Error 111 connecting to redis:6379. Connection refused.")

    async def get(self, short_code: str) -> CachedURLPayload | None:
        self._check()
        return self.entries.get(short_code)

    async def set(self, short_code: str, payload: CachedURLPayload) -> None:
        self._check()
        self.entries[short_code] = payload

    async def delete(self, short_code: str) -> None:
        self._check()
        self.entries.pop(short_code, None)

    async def ping(self) -> None:
        self._check()


@dataclass
class FakeServiceManager:
    settings: Settings
    logger: logging.Logger
    url_repository: InMemoryURLRepository
    url_cache: InMemoryURLCache
    analytics_repository: InMemoryAnalyticsRepository
    dispatcher: ClickDispatcher


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("urlshortener.tests")


@pytest.fixture
def url_repository() -> InMemoryURLRepository:
    return InMemoryURLRepository()


@pytest.fixture
def analytics_repository(url_repository: InMemoryURLRepository) -> InMemoryAnalyticsRepository:
    return InMemoryAnalyticsRepository(url_repository)


@pytest.fixture
def url_cache() -> InMemoryURLCache:
    return InMemoryURLCache()


@pytest_asyncio.fixture
async def dispatcher(
    url_repository: InMemoryURLRepository,
    analytics_repository: InMemoryAnalyticsRepository,
    logger: logging.Logger,
) -> AsyncGenerator[ClickDispatcher, None]:
    click_dispatcher = ClickDispatcher(url_repository, analytics_repository, logger=logger, max_queue_size=100)
    click_dispatcher.start()
    yield click_dispatcher
    await click_dispatcher.stop()


@pytest.fixture
def url_service(
    url_repository: InMemoryURLRepository,
    url_cache: InMemoryURLCache,
    analytics_repository: InMemoryAnalyticsRepository,
    dispatcher: ClickDispatcher,
    settings: Settings,
    logger: logging.Logger,
) -> URLShorteningService:
    return URLShorteningService(
        url_repository,
        url_cache,
        analytics_repository,
        dispatcher,
        settings=settings,
        logger=logger,
    )


@pytest.fixture
def service_manager(
    settings: Settings,
    logger: logging.Logger,
    url_repository: InMemoryURLRepository,
    url_cache: InMemoryURLCache,
    analytics_repository: InMemoryAnalyticsRepository,
    dispatcher: ClickDispatcher,
) -> FakeServiceManager:
    return FakeServiceManager(
        settings=settings,
        logger=logger,
        url_repository=url_repository,
        url_cache=url_cache,
        analytics_repository=analytics_repository,
        dispatcher=dispatcher,
    )


@pytest_asyncio.fixture
async def client(service_manager: FakeServiceManager) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_service_manager() -> FakeServiceManager:
        return service_manager

    app.dependency_overrides[get_service_manager] = override_get_service_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
