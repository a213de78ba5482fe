"""SQLAlchemy ORM models for the URL shortener service.

This module defines the database schema using SQLAlchemy declarative models
with proper indexing and timestamp management for URL mappings and the
append-only click log.

Data Model Layout
=================
::
    urls table
    ├─ id (SERIAL PRIMARY KEY)
    ├─ short_code (VARCHAR(20) UNIQUE, INDEXED)
    ├─ original_url (TEXT NOT NULL)
    ├─ created_at (TIMESTAMPTZ NOT NULL)
    ├─ updated_at (TIMESTAMPTZ NOT NULL)
    ├─ expires_at (TIMESTAMPTZ NULL)
    ├─ click_count (BIGINT DEFAULT 0)
    └─ metadata (JSON NULL)

    url_analytics table
    ├─ id (SERIAL PRIMARY KEY)
    ├─ short_code (VARCHAR(20), INDEXED)
    ├─ clicked_at (TIMESTAMPTZ NOT NULL)
    ├─ ip_address (VARCHAR(64))
    ├─ user_agent (TEXT)
    ├─ referer (TEXT)
    └─ country (VARCHAR(2))

How to Use
===========
**Step 1 — Import**::
    from shortener.models import URL, ClickEvent

**Step 2 — Query URLs**::
    result = await db.execute(select(URL).where(URL.short_code == "abc1234"))
    url = result.scalar_one_or_none()

Key Behaviours
===============
- short_code is unique and indexed; the unique index is the final arbiter
  of code ownership when two creators race.
- click_count is only ever changed by a relative UPDATE, never by
  assigning the attribute.
- url_analytics rows are not tied to urls by a foreign key, so deleting a
  URL keeps its click history.
- metadata is stored as JSON (not JSONB) to keep key order.

Classes:
    URL:  A shortened URL mapping with expiry and click counter.
    ClickEvent:  One recorded redirect.
"""

import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shortener.database import Base

__all__ = ["URL", "ClickEvent"]


class URL(Base):
    __tablename__ = "urls"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code: Mapped[str] = mapped_column(String(20), unique=True, index=True, nullable=False)
    original_url: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    click_count: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    # "metadata" is reserved on declarative classes.
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    def is_expired(self, now: datetime.datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def __repr__(self) -> str:
        return f"<URL(id={self.id}, short_code='{self.short_code}', click_count={self.click_count})>"


class ClickEvent(Base):
    __tablename__ = "url_analytics"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    clicked_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    referer: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)

    def __repr__(self) -> str:
        return f"<ClickEvent(id={self.id}, short_code='{self.short_code}', clicked_at={self.clicked_at})>"
