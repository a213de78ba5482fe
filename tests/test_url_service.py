"""Unit tests for the URL shortening service.

The service runs against the in-memory store, cache and analytics sink from
conftest, with a live ClickDispatcher so background click recording is
exercised too.
"""

import datetime
import logging
from unittest.mock import AsyncMock, patch

import pytest
from prometheus_client import REGISTRY
from pydantic import ValidationError

from shortener.exceptions import (
    CodeAlreadyExistsError,
    CodeGenerationExhaustedError,
    DuplicateShortCodeError,
    ExpiredURLError,
    InvalidURLError,
    URLNotFoundError,
)
from shortener.models import URL
from shortener.schemas import CachedURLPayload, ClickContext, URLCreate, URLUpdate

# ============================================================================
# TEST UTILITIES
# ============================================================================


def _utc(*args: int) -> datetime.datetime:
    return datetime.datetime(*args, tzinfo=datetime.timezone.utc)


def _record(short_code: str, original_url: str = "https://example.com", **overrides) -> URL:
    now = datetime.datetime.now(datetime.timezone.utc)
    fields = {
        "short_code": short_code,
        "original_url": original_url,
        "created_at": now,
        "updated_at": now,
        "expires_at": None,
        "click_count": 0,
        "metadata_": None,
    }
    fields.update(overrides)
    return URL(**fields)


@pytest.fixture
def click_context() -> ClickContext:
    return ClickContext(ip_address="203.0.113.7", user_agent="pytest", referer="https://news.example.org")


# ============================================================================
# CREATE
# ============================================================================


class TestCreateShortURL:
    @pytest.mark.asyncio
    async def test_create_generates_seven_char_code(self, url_service, url_repository, settings):
        response = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        assert len(response.short_code) == 7
        assert response.short_url == f"{settings.BASE_URL}/{response.short_code}"
        assert response.original_url == "https://example.com/page"
        assert response.expires_at is None
        stored = url_repository.records[response.short_code]
        assert stored.click_count == 0
        assert stored.created_at == stored.updated_at

    @pytest.mark.asyncio
    async def test_create_populates_cache(self, url_service, url_cache):
        response = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        cached = url_cache.entries[response.short_code]
        assert cached.original_url == "https://example.com/page"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_url", ["", "not-a-url", "example.com/page", "https://", "mailto:someone@example.com"])
    async def test_create_rejects_invalid_url(self, url_service, url_repository, bad_url):
        with pytest.raises(InvalidURLError):
            await url_service.create_short_url(URLCreate(url=bad_url))

        assert url_repository.records == {}

    @pytest.mark.asyncio
    async def test_create_with_custom_code(self, url_service, url_repository):
        response = await url_service.create_short_url(URLCreate(url="https://example.com", custom_code="promo"))

        assert response.short_code == "promo"
        assert "promo" in url_repository.records

    @pytest.mark.asyncio
    async def test_custom_code_conflict(self, url_service, url_repository):
        url_repository.records["promo"] = _record("promo")

        with pytest.raises(CodeAlreadyExistsError, match="Custom code 'promo' is already taken"):
            await url_service.create_short_url(URLCreate(url="https://example.org", custom_code="promo"))

    @pytest.mark.asyncio
    async def test_custom_code_conflict_with_expired_record(self, url_service, url_repository):
        url_repository.records["promo"] = _record("promo", expires_at=_utc(2020, 1, 1))

        with pytest.raises(CodeAlreadyExistsError):
            await url_service.create_short_url(URLCreate(url="https://example.org", custom_code="promo"))

    @pytest.mark.asyncio
    async def test_custom_code_lost_race_surfaces_conflict(self, url_service, url_repository):
        # Pre-check passes, then the store's unique constraint fires.
        url_repository.create = AsyncMock(side_effect=DuplicateShortCodeError("promo"))

        with pytest.raises(CodeAlreadyExistsError):
            await url_service.create_short_url(URLCreate(url="https://example.org", custom_code="promo"))

    @pytest.mark.asyncio
    async def test_generated_code_collision_retries(self, url_service, url_repository):
        url_repository.records["taken01"] = _record("taken01")

        with patch("shortener.url_service.generate_short_code", side_effect=["taken01", "fresh01"]) as generator:
            response = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        assert response.short_code == "fresh01"
        assert generator.call_count == 2
        first_seed, second_seed = (call.args[0] for call in generator.call_args_list)
        assert first_seed == "https://example.com/page"
        assert second_seed != first_seed
        assert url_repository.records["taken01"].original_url == "https://example.com"

    @pytest.mark.asyncio
    async def test_generated_code_duplicate_on_insert_retries(self, url_service, url_repository):
        original_create = url_repository.create

        # Probe sees nothing, but another writer claims the code first.
        async def create(url):
            if url.short_code == "raced01":
                raise DuplicateShortCodeError("raced01")
            return await original_create(url)

        url_repository.create = create

        with patch("shortener.url_service.generate_short_code", side_effect=["raced01", "fresh02"]):
            response = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        assert response.short_code == "fresh02"

    @pytest.mark.asyncio
    async def test_generation_attempts_are_bounded(self, url_service, url_repository, settings):
        url_repository.records["always1"] = _record("always1")

        with patch("shortener.url_service.generate_short_code", return_value="always1") as generator:
            with pytest.raises(CodeGenerationExhaustedError):
                await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        assert generator.call_count == settings.CODE_GENERATION_MAX_ATTEMPTS

    @pytest.mark.asyncio
    async def test_generated_reserved_word_is_skipped(self, url_service, url_repository):
        with patch("shortener.url_service.generate_short_code", side_effect=["metrics", "fresh03"]):
            response = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        assert response.short_code == "fresh03"
        assert "metrics" not in url_repository.records

    @pytest.mark.asyncio
    async def test_create_accepts_app_deep_link(self, url_service):
        response = await url_service.create_short_url(URLCreate(url="myapp://open/page"))

        assert response.original_url == "myapp://open/page"

    @pytest.mark.asyncio
    async def test_create_sets_expiry(self, url_service):
        before = datetime.datetime.now(datetime.timezone.utc)
        response = await url_service.create_short_url(URLCreate(url="https://example.com", expires_in=60))

        assert response.expires_at is not None
        delta = response.expires_at - before
        assert datetime.timedelta(seconds=59) < delta <= datetime.timedelta(seconds=61)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expires_in", [0, -5])
    async def test_non_positive_expiry_is_ignored(self, url_service, expires_in):
        response = await url_service.create_short_url(URLCreate(url="https://example.com", expires_in=expires_in))

        assert response.expires_at is None

    def test_oversized_expiry_is_rejected(self):
        with pytest.raises(ValidationError):
            URLCreate(url="https://example.com", expires_in=10**12)

    @pytest.mark.parametrize("code", ["health", "metrics", "docs", "redoc", "Health"])
    def test_reserved_custom_code_is_rejected(self, code):
        with pytest.raises(ValidationError):
            URLCreate(url="https://example.com", custom_code=code)

    @pytest.mark.asyncio
    async def test_metadata_round_trips_in_order(self, url_service, url_repository):
        metadata = {"campaign": "spring", "tags": ["a", "b"], "priority": 2}
        response = await url_service.create_short_url(URLCreate(url="https://example.com", metadata=metadata))

        assert response.metadata == metadata
        assert list(url_repository.records[response.short_code].metadata_) == ["campaign", "tags", "priority"]

    @pytest.mark.asyncio
    async def test_cache_failure_does_not_fail_creation(self, url_service, url_repository, url_cache):
        url_cache.available = False

        response = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        assert response.short_code in url_repository.records

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, url_service, url_repository):
        url_repository.create = AsyncMock(side_effect=RuntimeError("connection reset"))

        with pytest.raises(RuntimeError, match="connection reset"):
            await url_service.create_short_url(URLCreate(url="https://example.com/page"))


# ============================================================================
# RESOLVE
# ============================================================================


class TestResolve:
    @pytest.mark.asyncio
    async def test_create_then_resolve(self, url_service, click_context):
        created = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        assert await url_service.resolve(created.short_code, click_context) == "https://example.com/page"

    @pytest.mark.asyncio
    async def test_cache_hit_skips_store(self, url_service, url_repository, url_cache, click_context):
        url_cache.entries["cached1"] = CachedURLPayload(original_url="https://cached.example.com")

        assert await url_service.resolve("cached1", click_context) == "https://cached.example.com"
        assert url_repository.get_calls == []

    @pytest.mark.asyncio
    async def test_cache_miss_reads_store_and_repopulates(self, url_service, url_repository, url_cache, click_context):
        url_repository.records["abc1234"] = _record("abc1234", "https://example.com/docs")

        assert await url_service.resolve("abc1234", click_context) == "https://example.com/docs"
        assert url_repository.get_calls == ["abc1234"]
        assert url_cache.entries["abc1234"].original_url == "https://example.com/docs"

    @pytest.mark.asyncio
    async def test_cache_error_falls_back_to_store(self, url_service, url_repository, url_cache, click_context):
        url_repository.records["abc1234"] = _record("abc1234", "https://example.com/docs")
        url_cache.available = False

        assert await url_service.resolve("abc1234", click_context) == "https://example.com/docs"

    @pytest.mark.asyncio
    async def test_unknown_code_not_found(self, url_service, click_context):
        with pytest.raises(URLNotFoundError):
            await url_service.resolve("missing", click_context)

    @pytest.mark.asyncio
    async def test_expired_code_on_cold_cache(
        self, url_service, url_repository, url_cache, analytics_repository, dispatcher, click_context
    ):
        url_repository.records["old1234"] = _record("old1234", expires_at=_utc(2020, 1, 1))

        with pytest.raises(ExpiredURLError):
            await url_service.resolve("old1234", click_context)

        await dispatcher.join()
        assert "old1234" not in url_cache.entries
        assert analytics_repository.events == []
        assert url_repository.records["old1234"].click_count == 0

    @pytest.mark.asyncio
    async def test_expired_payload_in_cache_is_refused_and_evicted(self, url_service, url_cache, click_context):
        url_cache.entries["old1234"] = CachedURLPayload(
            original_url="https://example.com", expires_at=_utc(2020, 1, 1)
        )

        with pytest.raises(ExpiredURLError):
            await url_service.resolve("old1234", click_context)

        assert "old1234" not in url_cache.entries

    @pytest.mark.asyncio
    async def test_resolve_is_idempotent_across_hit_and_miss(self, url_service, url_cache, click_context):
        created = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        warm = await url_service.resolve(created.short_code, click_context)
        url_cache.entries.clear()
        cold = await url_service.resolve(created.short_code, click_context)
        again = await url_service.resolve(created.short_code, click_context)

        assert warm == cold == again == "https://example.com/page"

    @pytest.mark.asyncio
    async def test_resolve_records_click_with_context(
        self, url_service, url_repository, analytics_repository, dispatcher, click_context
    ):
        created = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        await url_service.resolve(created.short_code, click_context)
        await dispatcher.join()

        assert url_repository.records[created.short_code].click_count == 1
        [event] = analytics_repository.events
        assert event.short_code == created.short_code
        assert event.ip_address == "203.0.113.7"
        assert event.user_agent == "pytest"
        assert event.referer == "https://news.example.org"

    @pytest.mark.asyncio
    async def test_expiring_custom_code_lifecycle(self, url_service, url_cache, click_context):
        created = await url_service.create_short_url(
            URLCreate(url="https://example.com/sale", custom_code="promo", expires_in=1)
        )
        assert await url_service.resolve("promo", click_context) == "https://example.com/sale"

        later = created.created_at + datetime.timedelta(seconds=2)
        with patch("shortener.url_service._utcnow", return_value=later):
            with pytest.raises(ExpiredURLError):
                await url_service.resolve("promo", click_context)

            url_cache.entries.clear()
            with pytest.raises(ExpiredURLError):
                await url_service.resolve("promo", click_context)


# ============================================================================
# STATS / DELETE / UPDATE
# ============================================================================


class TestStatsDeleteUpdate:
    @pytest.mark.asyncio
    async def test_stats_after_click(self, url_service, dispatcher, click_context):
        created = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        await url_service.resolve(created.short_code, click_context)
        await dispatcher.join()
        stats = await url_service.get_url_stats(created.short_code)

        assert stats.short_code == created.short_code
        assert stats.original_url == "https://example.com/page"
        assert stats.click_count >= 1
        assert stats.last_clicked is not None

    @pytest.mark.asyncio
    async def test_stats_never_clicked(self, url_service):
        created = await url_service.create_short_url(URLCreate(url="https://example.com/page"))

        stats = await url_service.get_url_stats(created.short_code)

        assert stats.click_count == 0
        assert stats.last_clicked is None

    @pytest.mark.asyncio
    async def test_stats_unknown_code(self, url_service):
        with pytest.raises(URLNotFoundError):
            await url_service.get_url_stats("missing")

    @pytest.mark.asyncio
    async def test_delete_then_resolve_not_found(self, url_service, url_cache, click_context):
        created = await url_service.create_short_url(URLCreate(url="https://example.com/page"))
        assert created.short_code in url_cache.entries

        await url_service.delete_url(created.short_code)

        assert created.short_code not in url_cache.entries
        with pytest.raises(URLNotFoundError):
            await url_service.resolve(created.short_code, click_context)

    @pytest.mark.asyncio
    async def test_delete_unknown_code(self, url_service):
        with pytest.raises(URLNotFoundError):
            await url_service.delete_url("missing")

    @pytest.mark.asyncio
    async def test_delete_survives_cache_failure(self, url_service, url_repository, url_cache):
        url_repository.records["abc1234"] = _record("abc1234")
        url_cache.available = False

        await url_service.delete_url("abc1234")

        assert "abc1234" not in url_repository.records

    @pytest.mark.asyncio
    async def test_update_changes_target_and_invalidates_cache(self, url_service, url_repository, url_cache):
        created = await url_service.create_short_url(URLCreate(url="https://example.com/old"))
        url_repository.records[created.short_code].click_count = 42

        updated = await url_service.update_url(
            created.short_code, URLUpdate(url="https://example.com/new", metadata={"v": 2})
        )

        assert updated.original_url == "https://example.com/new"
        assert updated.metadata == {"v": 2}
        stored = url_repository.records[created.short_code]
        assert stored.click_count == 42
        assert stored.updated_at >= stored.created_at
        assert created.short_code not in url_cache.entries

    @pytest.mark.asyncio
    async def test_update_expiry_then_clear_it(self, url_service, url_repository):
        created = await url_service.create_short_url(URLCreate(url="https://example.com"))

        updated = await url_service.update_url(created.short_code, URLUpdate(expires_in=30))
        assert updated.expires_at is not None

        cleared = await url_service.update_url(created.short_code, URLUpdate(expires_in=0))
        assert cleared.expires_at is None
        assert url_repository.records[created.short_code].expires_at is None

    @pytest.mark.asyncio
    async def test_update_rejects_invalid_url(self, url_service):
        created = await url_service.create_short_url(URLCreate(url="https://example.com"))

        with pytest.raises(InvalidURLError):
            await url_service.update_url(created.short_code, URLUpdate(url="nope"))

    @pytest.mark.asyncio
    async def test_update_unknown_code(self, url_service):
        with pytest.raises(URLNotFoundError):
            await url_service.update_url("missing", URLUpdate(url="https://example.com"))

    def test_update_oversized_expiry_is_rejected(self):
        with pytest.raises(ValidationError):
            URLUpdate(expires_in=10**12)

    @pytest.mark.asyncio
    async def test_update_unknown_code_is_logged_and_counted(self, url_service, caplog):
        labels = {"operation": "update", "status": "not_found"}
        before = REGISTRY.get_sample_value("url_shortener_management_requests_total", labels) or 0.0

        with caplog.at_level(logging.WARNING, logger="urlshortener.tests"):
            with pytest.raises(URLNotFoundError):
                await url_service.update_url("missing", URLUpdate(url="https://example.com"))

        assert REGISTRY.get_sample_value("url_shortener_management_requests_total", labels) == before + 1
        assert "Update requested for unknown code: missing" in caplog.text

    @pytest.mark.asyncio
    async def test_update_success_is_counted(self, url_service):
        labels = {"operation": "update", "status": "success"}
        before = REGISTRY.get_sample_value("url_shortener_management_requests_total", labels) or 0.0
        created = await url_service.create_short_url(URLCreate(url="https://example.com"))

        await url_service.update_url(created.short_code, URLUpdate(metadata={"owner": "growth"}))

        assert REGISTRY.get_sample_value("url_shortener_management_requests_total", labels) == before + 1
