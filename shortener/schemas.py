"""Pydantic schemas for request validation, responses and internal payloads.

Request bodies (``URLCreate``, ``URLUpdate``) are validated at the HTTP
boundary. Target URL validation itself happens in the service layer so
that every caller, not only HTTP, gets ``InvalidURLError``.
"""

import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from shortener.enums import HealthStatus
from shortener.shortcode import is_reserved_code

__all__ = [
    "URLCreate",
    "URLUpdate",
    "URLCreateResponse",
    "URLStats",
    "ClickContext",
    "ClickEventPayload",
    "CachedURLPayload",
    "HealthResponse",
]

# About 100 years; larger lifetimes overflow datetime arithmetic.
MAX_EXPIRES_IN_SECONDS = 100 * 365 * 24 * 3600


class URLCreate(BaseModel):
    url: str
    custom_code: str | None = None
    expires_in: int | None = Field(
        None,
        le=MAX_EXPIRES_IN_SECONDS,
        description="Lifetime in seconds; non-positive values are ignored.",
    )
    metadata: dict[str, Any] | None = None

    @field_validator("custom_code")
    @classmethod
    def validate_custom_code(cls, v: str | None) -> str | None:
        if v is not None:
            if len(v) < 3 or len(v) > 20:
                raise ValueError("Custom code must be between 3 and 20 characters")
            if not v.isalnum():
                raise ValueError("Custom code must be alphanumeric")
            if is_reserved_code(v):
                raise ValueError(f"'{v}' is a reserved word and cannot be used")
        return v


class URLUpdate(BaseModel):
    url: str | None = None
    expires_in: int | None = Field(
        None,
        ge=0,
        le=MAX_EXPIRES_IN_SECONDS,
        description="New lifetime in seconds from now; 0 removes the expiry.",
    )
    metadata: dict[str, Any] | None = None


class URLCreateResponse(BaseModel):
    short_code: str
    short_url: str
    original_url: str
    created_at: datetime.datetime
    expires_at: datetime.datetime | None = None
    metadata: dict[str, Any] | None = None


class URLStats(BaseModel):
    short_code: str
    original_url: str
    click_count: int
    created_at: datetime.datetime
    last_clicked: datetime.datetime | None = None

    model_config = {"from_attributes": True}


class ClickContext(BaseModel):
    """Request-side details captured for a redirect."""

    ip_address: str | None = None
    user_agent: str | None = None
    referer: str | None = None
    country: str | None = Field(None, max_length=2, description="ISO 3166-1 alpha-2 code, e.g. 'DE'")


class ClickEventPayload(BaseModel):
    """One click queued for the analytics worker."""

    short_code: str = Field(..., description="Short code being clicked, e.g. 'aB3_x9Q'")
    clicked_at: datetime.datetime
    ip_address: str | None = None
    user_agent: str | None = None
    referer: str | None = None
    country: str | None = None

    @classmethod
    def from_context(
        cls,
        short_code: str,
        context: ClickContext,
        clicked_at: datetime.datetime,
    ) -> "ClickEventPayload":
        return cls(short_code=short_code, clicked_at=clicked_at, **context.model_dump())


class CachedURLPayload(BaseModel):
    """Redis cache payload for a short code.

    The expiry travels with the URL so a cache hit can enforce it without
    a database round trip.
    """

    original_url: str
    expires_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}

    def is_expired(self, now: datetime.datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
