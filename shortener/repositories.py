"""Persistent URL store and analytics sink.

The service layer depends on the ``URLRepository`` and
``AnalyticsRepository`` protocols; the SQLAlchemy classes below are the
PostgreSQL-backed implementations wired in by ``shortener.dependencies``.

Query Overview
==============
::
    create            INSERT INTO urls ...            (unique short_code)
    get_by_code       SELECT ... WHERE short_code = ?
    update            UPDATE urls SET original_url, updated_at,
                                      expires_at, metadata
    delete            DELETE FROM urls WHERE short_code = ?
    increment_clicks  UPDATE urls SET click_count = click_count + 1
    record_click      INSERT INTO url_analytics ...
    get_stats         urls LEFT JOIN url_analytics, MAX(clicked_at)

Key Behaviours
===============
- Every operation opens its own session from the injected factory.
- A unique-index violation on insert is reported as
  ``DuplicateShortCodeError``; the pre-insert existence probe in the
  service is only a fast path.
- ``update`` never writes click_count; ``increment_clicks`` is a single
  relative UPDATE so concurrent increments cannot lose counts.
"""

from typing import Protocol

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortener.exceptions import DuplicateShortCodeError, URLNotFoundError
from shortener.models import URL, ClickEvent
from shortener.schemas import ClickEventPayload, URLStats

__all__ = [
    "URLRepository",
    "AnalyticsRepository",
    "SQLAlchemyURLRepository",
    "SQLAlchemyAnalyticsRepository",
]


class URLRepository(Protocol):
    async def create(self, url: URL) -> URL: ...

    async def get_by_code(self, short_code: str) -> URL | None: ...

    async def update(self, url: URL) -> URL: ...

    async def delete(self, short_code: str) -> None: ...

    async def increment_clicks(self, short_code: str) -> None: ...

    async def ping(self) -> None: ...


class AnalyticsRepository(Protocol):
    async def record_click(self, event: ClickEventPayload) -> None: ...

    async def get_stats(self, short_code: str) -> URLStats: ...


class SQLAlchemyURLRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, url: URL) -> URL:
        async with self._session_factory() as session:
            session.add(url)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateShortCodeError(url.short_code) from exc
        return url

    async def get_by_code(self, short_code: str) -> URL | None:
        async with self._session_factory() as session:
            result = await session.execute(select(URL).where(URL.short_code == short_code))
            return result.scalar_one_or_none()

    async def update(self, url: URL) -> URL:
        async with self._session_factory() as session:
            result = await session.execute(
                update(URL)
                .where(URL.short_code == url.short_code)
                .values(
                    {
                        URL.original_url: url.original_url,
                        URL.updated_at: url.updated_at,
                        URL.expires_at: url.expires_at,
                        URL.metadata_: url.metadata_,
                    }
                )
            )
            await session.commit()
        if result.rowcount == 0:
            raise URLNotFoundError(url.short_code)
        return url

    async def delete(self, short_code: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(delete(URL).where(URL.short_code == short_code))
            await session.commit()
        if result.rowcount == 0:
            raise URLNotFoundError(short_code)

    async def increment_clicks(self, short_code: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(URL).where(URL.short_code == short_code).values(click_count=URL.click_count + 1)
            )
            await session.commit()

    async def ping(self) -> None:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))


class SQLAlchemyAnalyticsRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_click(self, event: ClickEventPayload) -> None:
        async with self._session_factory() as session:
            session.add(ClickEvent(**event.model_dump()))
            await session.commit()

    async def get_stats(self, short_code: str) -> URLStats:
        stmt = (
            select(
                URL.short_code,
                URL.original_url,
                URL.click_count,
                URL.created_at,
                func.max(ClickEvent.clicked_at).label("last_clicked"),
            )
            .outerjoin(ClickEvent, ClickEvent.short_code == URL.short_code)
            .where(URL.short_code == short_code)
            .group_by(URL.id)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).one_or_none()
        if row is None:
            raise URLNotFoundError(short_code)
        return URLStats(**row._mapping)
